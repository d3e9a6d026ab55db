"""
Core data model for the AML screening engine

Enums and dataclasses shared by the matcher, list store, screening engine
and review workflow. Storage layers map these to their own representation.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field


class SubjectType(str, Enum):
    """Kind of subject being screened"""
    INDIVIDUAL = "INDIVIDUAL"
    COMPANY = "COMPANY"


class MatchType(str, Enum):
    """Corpus that produced a match; also selects the risk weight"""
    SANCTIONS = "SANCTIONS"
    PEP = "PEP"
    ADVERSE_MEDIA = "ADVERSE_MEDIA"
    WATCHLIST = "WATCHLIST"


class ReviewStatus(str, Enum):
    """Review lifecycle of a single match"""
    PENDING = "PENDING"
    CONFIRMED_MATCH = "CONFIRMED_MATCH"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    ESCALATED = "ESCALATED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ScreeningStatus(str, Enum):
    """Lifecycle of a persisted screening"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    INCOMPLETE = "INCOMPLETE"
    FAILED = "FAILED"


# Watchlist entity_type values
ENTITY_INDIVIDUAL = "individual"
ENTITY_ORGANISATION = "entity"

SUBJECT_ENTITY_TYPES = {
    SubjectType.INDIVIDUAL: ENTITY_INDIVIDUAL,
    SubjectType.COMPANY: ENTITY_ORGANISATION,
}


def parse_iso_date(value: Any) -> Optional[date]:
    """Parse a full YYYY-MM-DD date

    Partial dates (YYYY or YYYY-MM) and unparseable strings return None,
    since only complete dates can take part in exact date-of-birth matching.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10]) if len(text) >= 10 else None
    except ValueError:
        return None


@dataclass(frozen=True)
class WatchlistEntity:
    """A single sanctions, PEP or adverse-media record

    Instances are immutable; a list refresh replaces them wholesale.
    """
    id: str
    name: str
    entity_type: str = ENTITY_INDIVIDUAL
    aliases: Tuple[str, ...] = ()
    source_lists: Tuple[str, ...] = ()
    date_of_birth: Optional[date] = None
    place_of_birth: Optional[str] = None
    nationalities: Tuple[str, ...] = ()
    addresses: Tuple[str, ...] = ()
    positions: Tuple[str, ...] = ()
    programs: Tuple[str, ...] = ()
    remarks: Optional[str] = None
    source_url: Optional[str] = None
    last_updated: Optional[datetime] = None

    @property
    def all_names(self) -> List[str]:
        return [self.name] + list(self.aliases)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WatchlistEntity':
        """Build an entity from a feed record (keys as produced by to_dict)"""
        last_updated = data.get('last_updated')
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)

        def _tuple(key: str) -> Tuple[str, ...]:
            value = data.get(key) or ()
            if isinstance(value, str):
                return (value,)
            return tuple(str(v) for v in value)

        return cls(
            id=str(data['id']),
            name=str(data['name']),
            entity_type=data.get('entity_type', ENTITY_INDIVIDUAL),
            aliases=_tuple('aliases'),
            source_lists=_tuple('source_lists'),
            date_of_birth=parse_iso_date(data.get('date_of_birth')),
            place_of_birth=data.get('place_of_birth'),
            nationalities=_tuple('nationalities'),
            addresses=_tuple('addresses'),
            positions=_tuple('positions'),
            programs=_tuple('programs'),
            remarks=data.get('remarks'),
            source_url=data.get('source_url'),
            last_updated=last_updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'entity_type': self.entity_type,
            'aliases': list(self.aliases),
            'source_lists': list(self.source_lists),
            'date_of_birth': self.date_of_birth.isoformat() if self.date_of_birth else None,
            'place_of_birth': self.place_of_birth,
            'nationalities': list(self.nationalities),
            'addresses': list(self.addresses),
            'positions': list(self.positions),
            'programs': list(self.programs),
            'remarks': self.remarks,
            'source_url': self.source_url,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class ScreeningRequest:
    """Input for one screening; consumed once"""
    subject_name: str
    subject_type: SubjectType = SubjectType.INDIVIDUAL
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    nationality: Optional[str] = None
    company_number: Optional[str] = None
    registration_country: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject_name': self.subject_name,
            'subject_type': self.subject_type.value,
            'email': self.email,
            'phone': self.phone,
            'date_of_birth': self.date_of_birth.isoformat() if self.date_of_birth else None,
            'nationality': self.nationality,
            'company_number': self.company_number,
            'registration_country': self.registration_country,
            'notes': self.notes,
        }


@dataclass
class ScreeningMatch:
    """A candidate hit produced by one screening"""
    match_type: MatchType
    entity_id: str
    entity_name: str
    match_score: int
    aliases: List[str] = field(default_factory=list)
    list_name: str = ''
    list_type: str = ''
    source_url: Optional[str] = None
    date_of_birth: Optional[date] = None
    nationalities: List[str] = field(default_factory=list)
    positions: List[str] = field(default_factory=list)
    review_status: ReviewStatus = ReviewStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'match_type': self.match_type.value,
            'entity_id': self.entity_id,
            'entity_name': self.entity_name,
            'match_score': self.match_score,
            'aliases': list(self.aliases),
            'list_name': self.list_name,
            'list_type': self.list_type,
            'source_url': self.source_url,
            'date_of_birth': self.date_of_birth.isoformat() if self.date_of_birth else None,
            'nationalities': list(self.nationalities),
            'positions': list(self.positions),
            'review_status': self.review_status.value,
            'metadata': self.metadata,
        }


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: int
    risk_level: RiskLevel


@dataclass
class ScreeningResult:
    """Aggregate outcome of one screening

    ``risk_level`` is None only for an incomplete screening whose computed
    level would have been LOW: a missing corpus must not read as low risk.
    """
    risk_score: int
    risk_level: Optional[RiskLevel]
    matches: List[ScreeningMatch] = field(default_factory=list)
    sanctions_match: bool = False
    pep_match: bool = False
    adverse_media: bool = False
    complete: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def match_found(self) -> bool:
        return bool(self.matches)

    @property
    def edd_required(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    @property
    def status(self) -> ScreeningStatus:
        return ScreeningStatus.COMPLETED if self.complete else ScreeningStatus.INCOMPLETE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value if self.risk_level else None,
            'complete': self.complete,
            'match_found': self.match_found,
            'sanctions_match': self.sanctions_match,
            'pep_match': self.pep_match,
            'adverse_media': self.adverse_media,
            'edd_required': self.edd_required,
            'matches': [m.to_dict() for m in self.matches],
            'metadata': self.metadata,
        }
