"""
AML Screening Engine v2.0
Screens a subject against sanctions, PEP and adverse-media corpora

Features:
- Request validation per subject type
- Per-corpus matcher profiles and auxiliary-attribute boosts
- Weighted risk aggregation with sanctions overrides
- Degraded screening when a source list is unavailable (never a false LOW)
- Vendor boundary with a cancellable simulated delay and caller deadline
- Configurable thresholds via config.yaml

SECURITY: Subject names are sanitized before they reach the logs.
"""

import argparse
import csv
import json
import logging
import re
import sys
import threading
import time
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from aml_errors import ScreeningTimeout, ValidationError
from aml_models import (
    MatchType, RiskAssessment, RiskLevel, ScreeningMatch, ScreeningRequest, ScreeningResult,
    SubjectType,
)
from company_checks import CompanyProfile
from config_manager import ConfigManager, get_config, setup_logging
from list_search import SearchOptions, search
from list_store import ListSnapshot, ListStore
from metrics import operation_timer, record_screening
from name_matcher import GENERAL_PROFILE, MatcherProfile
from risk_aggregator import RiskAggregator
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Corpora searched per subject type, in result order
CORPORA = {
    SubjectType.INDIVIDUAL: (MatchType.SANCTIONS, MatchType.PEP, MatchType.ADVERSE_MEDIA),
    SubjectType.COMPANY: (MatchType.SANCTIONS, MatchType.ADVERSE_MEDIA),
}

IDENTITY_FIELDS = {
    SubjectType.INDIVIDUAL: ('date_of_birth', 'nationality'),
    SubjectType.COMPANY: ('company_number', 'registration_country'),
}

INDIVIDUAL_ONLY_FIELDS = ('date_of_birth',)
COMPANY_ONLY_FIELDS = ('company_number', 'registration_country')


def parse_subject_type(value: Any) -> SubjectType:
    """Coerce a loosely typed subject type ('company', SubjectType.COMPANY...)

    Raises:
        ValidationError: If the value names no known subject type
    """
    if isinstance(value, SubjectType):
        return value
    try:
        return SubjectType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown subject type: {value!r}",
            field="subject_type",
            code="INVALID_SUBJECT_TYPE",
            suggestion="Use INDIVIDUAL or COMPANY"
        )


def validate_screening_request(request: ScreeningRequest,
                               config: Optional[ConfigManager] = None) -> List[str]:
    """Validate a screening request before any search runs

    Args:
        request: Request to validate
        config: Optional configuration manager for validation settings

    Returns:
        Identity fields for the subject type that were not supplied. They are
        only errors when ``input_validation.strict_identity_fields`` is set.

    Raises:
        ValidationError: If validation fails, with field-level detail
    """
    if config is None:
        config = get_config()
    iv_config = config.input_validation

    subject_type = parse_subject_type(request.subject_type)

    name = request.subject_name or ""
    name_stripped = name.strip()
    if not name_stripped:
        raise ValidationError(
            "Subject name is required",
            field="subject_name",
            code="NAME_REQUIRED",
            suggestion="Provide the full name of the person or company"
        )
    if len(name_stripped) < iv_config.name_min_length:
        raise ValidationError(
            f"Name too short ({len(name_stripped)} chars, minimum {iv_config.name_min_length})",
            field="subject_name",
            code="NAME_TOO_SHORT",
            suggestion=f"Provide a name with at least {iv_config.name_min_length} characters"
        )
    if len(name) > iv_config.name_max_length:
        raise ValidationError(
            f"Name too long ({len(name)} chars, maximum {iv_config.name_max_length})",
            field="subject_name",
            code="NAME_TOO_LONG",
            suggestion=f"Shorten the name to {iv_config.name_max_length} characters or less"
        )

    found_blocked = [c for c in name if c in iv_config.blocked_characters]
    if found_blocked:
        logger.warning("SECURITY: Blocked characters detected in name input: %s", sanitize_for_logging(name))
        raise ValidationError(
            f"Name contains blocked characters: {found_blocked}",
            field="subject_name",
            code="BLOCKED_CHARACTERS",
            suggestion="Remove special characters like < > { } [ ] | \\ ; ` $"
        )
    for char in name:
        if unicodedata.category(char).startswith('C'):
            logger.warning("SECURITY: Control character detected in name: %s", sanitize_for_logging(name))
            raise ValidationError(
                f"Name contains invalid control character (code: {ord(char)})",
                field="subject_name",
                code="CONTROL_CHARACTER",
                suggestion="Remove invisible or control characters from the name"
            )

    if request.date_of_birth is not None:
        if not isinstance(request.date_of_birth, date):
            raise ValidationError(
                f"Date of birth must be a date, got {type(request.date_of_birth).__name__}",
                field="date_of_birth",
                code="INVALID_DOB_FORMAT",
                suggestion="Use format YYYY-MM-DD"
            )
        if request.date_of_birth > date.today():
            raise ValidationError(
                "Date of birth is in the future",
                field="date_of_birth",
                code="DOB_IN_FUTURE",
                suggestion="Check the date of birth"
            )

    not_applicable = COMPANY_ONLY_FIELDS if subject_type == SubjectType.INDIVIDUAL else INDIVIDUAL_ONLY_FIELDS
    for field_name in not_applicable:
        if getattr(request, field_name):
            raise ValidationError(
                f"{field_name} does not apply to {subject_type.value} subjects",
                field=field_name,
                code="FIELD_NOT_APPLICABLE",
                suggestion=f"Remove {field_name} or change the subject type"
            )

    if request.email and not EMAIL_PATTERN.match(request.email):
        raise ValidationError(
            "Email address is not valid",
            field="email",
            code="INVALID_EMAIL",
            suggestion="Use the form name@example.com"
        )
    if request.notes and len(request.notes) > iv_config.max_notes_length:
        raise ValidationError(
            f"Notes too long ({len(request.notes)} chars, maximum {iv_config.max_notes_length})",
            field="notes",
            code="NOTES_TOO_LONG"
        )

    missing = [f for f in IDENTITY_FIELDS[subject_type] if not getattr(request, f)]
    if missing and iv_config.strict_identity_fields:
        raise ValidationError(
            f"{missing[0]} is required for {subject_type.value} screenings",
            field=missing[0],
            code="IDENTITY_FIELD_REQUIRED",
            suggestion=f"Provide: {', '.join(missing)}"
        )
    return missing


class VendorGateway(ABC):
    """Boundary to the external screening vendor

    Implementations block until the vendor has answered or the deadline
    passes; on the latter they raise ScreeningTimeout.
    """

    @abstractmethod
    def await_response(self, request: ScreeningRequest, deadline: Optional[float],
                       timeout: Optional[float]) -> None:
        """Wait for the vendor; ``deadline`` is a time.monotonic() value"""


class SimulatedVendorGateway(VendorGateway):
    """Stands in for the vendor call with a fixed, cancellable delay

    ``cancel()`` aborts every in-flight and future wait with ScreeningTimeout
    until ``reset()`` is called (used on shutdown).
    """

    def __init__(self, latency_seconds: float = 1.5):
        self.latency_seconds = latency_seconds
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def reset(self) -> None:
        self._cancelled.clear()

    def await_response(self, request: ScreeningRequest, deadline: Optional[float],
                       timeout: Optional[float]) -> None:
        delay = self.latency_seconds
        if self._cancelled.is_set():
            raise ScreeningTimeout(timeout or 0.0, "Screening cancelled")
        if delay <= 0:
            return

        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining < delay:
                self._cancelled.wait(max(0.0, remaining))
                raise ScreeningTimeout(timeout or 0.0)

        if self._cancelled.wait(delay):
            raise ScreeningTimeout(timeout or 0.0, "Screening cancelled")


class ScreeningEngine:
    """Orchestrates one screening: search each corpus, then aggregate

    Holds no per-subject state; concurrent screen() calls share only the
    ListStore, which is read through immutable snapshots.
    """

    def __init__(self, list_store: ListStore, vendor: Optional[VendorGateway] = None,
                 config: Optional[ConfigManager] = None,
                 aggregator: Optional[RiskAggregator] = None):
        self.config = config or get_config()
        self.list_store = list_store
        self.vendor = vendor or SimulatedVendorGateway(self.config.screening.vendor_latency_seconds)
        self.aggregator = aggregator or RiskAggregator.from_config(self.config.risk)

        profiles = {
            name: MatcherProfile.from_config(name, cfg)
            for name, cfg in self.config.matching.profiles.items()
        }
        self.profiles: Dict[MatchType, MatcherProfile] = {
            match_type: profiles.get(self.config.matching.corpus_profiles.get(match_type.value), GENERAL_PROFILE)
            for match_type in MatchType
        }

        logger.info("🔧 Screening engine initialized:")
        logger.info(f"   - Floor: {self.config.matching.floor}")
        logger.info(f"   - Profiles: " + ", ".join(f"{mt.value}={p.name}" for mt, p in self.profiles.items()))

    @staticmethod
    def corpora_for(subject_type: SubjectType) -> tuple:
        return CORPORA[subject_type]

    @staticmethod
    def _check_deadline(deadline: Optional[float], timeout: Optional[float]) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise ScreeningTimeout(timeout or 0.0)

    def _search_options(self, request: ScreeningRequest) -> SearchOptions:
        return SearchOptions.from_config(
            self.config.matching,
            date_of_birth=request.date_of_birth,
            nationality=request.nationality or request.registration_country,
            subject_type=request.subject_type,
        )

    def screen(self, request: ScreeningRequest, timeout: Optional[float] = None) -> ScreeningResult:
        """Screen one subject

        Args:
            request: Subject to screen
            timeout: Seconds allowed for the whole screening; defaults to
                ``screening.default_timeout_seconds`` (0 disables the deadline)

        Returns:
            ScreeningResult (``complete`` is False when a source list was unavailable)

        Raises:
            ValidationError: Request rejected before any search
            ScreeningTimeout: Deadline passed; no partial result is produced
            InternalMatchingError: Scoring an entity failed
        """
        if timeout is None:
            timeout = self.config.screening.default_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        with operation_timer("screen"):
            missing_fields = validate_screening_request(request, self.config)
            request = replace(request, subject_type=parse_subject_type(request.subject_type))
            safe_name = sanitize_for_logging(request.subject_name)
            logger.info(f"Screening {request.subject_type.value}: {safe_name}")

            self.vendor.await_response(request, deadline, timeout)

            snapshot = self.list_store.snapshot()
            options = self._search_options(request)
            matches: List[ScreeningMatch] = []
            unavailable: List[str] = []
            uncovered: List[str] = []
            searched_lists: List[str] = []

            for match_type in self.corpora_for(request.subject_type):
                self._check_deadline(deadline, timeout)
                unavailable.extend(snapshot.unavailable_sources(match_type))
                # No configured source at all: the corpus was never searched
                if snapshot.refreshed_at is not None and not snapshot.list_ids(match_type):
                    uncovered.append(match_type.value)
                searched_lists.extend(
                    list_id for list_id in snapshot.list_ids(match_type)
                    if snapshot.sources[list_id].loaded
                )
                matches.extend(search(
                    request.subject_name, options, snapshot.corpus(match_type),
                    match_type=match_type, profile=self.profiles[match_type]
                ))

            self._check_deadline(deadline, timeout)
            result = self._assemble(request, matches, snapshot, searched_lists, unavailable,
                                    uncovered, missing_fields)

        record_screening(result.risk_level.value if result.risk_level else None, result.complete)
        level = result.risk_level.value if result.risk_level else "UNDETERMINED"
        if result.complete:
            logger.info(f"  ✓ {safe_name}: {len(matches)} matches, risk {result.risk_score} ({level})")
        else:
            logger.warning(f"  ⚠ {safe_name}: screening incomplete, unavailable lists "
                           f"{unavailable + uncovered or ['<not loaded>']}, risk {result.risk_score} ({level})")
        return result

    @staticmethod
    def _reported_level(assessment: RiskAssessment, complete: bool) -> Optional[RiskLevel]:
        # An incomplete screening never reads as LOW
        if not complete and assessment.risk_level == RiskLevel.LOW:
            return None
        return assessment.risk_level

    @staticmethod
    def _match_flags(matches: List[ScreeningMatch]) -> Dict[str, bool]:
        return {
            'sanctions_match': any(m.match_type == MatchType.SANCTIONS for m in matches),
            'pep_match': any(m.match_type == MatchType.PEP for m in matches),
            'adverse_media': any(m.match_type == MatchType.ADVERSE_MEDIA for m in matches),
        }

    def _assemble(self, request: ScreeningRequest, matches: List[ScreeningMatch],
                  snapshot: ListSnapshot, searched_lists: List[str], unavailable: List[str],
                  uncovered: List[str], missing_fields: List[str]) -> ScreeningResult:
        assessment = self.aggregator.aggregate(matches)
        lists_loaded = snapshot.refreshed_at is not None
        complete = lists_loaded and not unavailable and not uncovered

        metadata: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'provider': self.config.screening.provider_name,
            'version': self.config.screening.version,
            'subject_type': request.subject_type.value,
            'data_sources': searched_lists,
            'unavailable_lists': unavailable,
            'uncovered_corpora': uncovered,
            'lists_loaded': lists_loaded,
            'list_snapshot_at': snapshot.refreshed_at.isoformat() if lists_loaded else None,
            'computed_risk_level': assessment.risk_level.value,
            'identity_notes': [f"{f} not provided" for f in missing_fields],
        }

        return ScreeningResult(
            risk_score=assessment.risk_score,
            risk_level=self._reported_level(assessment, complete),
            matches=matches,
            complete=complete,
            metadata=metadata,
            **self._match_flags(matches)
        )

    def screen_officers(self, company: CompanyProfile) -> List[ScreeningMatch]:
        """Screen a company's registered officers against the sanctions corpus

        Args:
            company: Registry record whose ``officers`` are screened

        Returns:
            SANCTIONS matches, each tagged with ``company_officer`` metadata
            naming the officer and the company

        Raises:
            InternalMatchingError: Scoring an entity failed
        """
        corpus = self.list_store.snapshot().corpus(MatchType.SANCTIONS)
        matches: List[ScreeningMatch] = []

        with operation_timer("screen_officers"):
            for officer in company.officers:
                name = (officer.get('name') or '').strip()
                if not name:
                    continue
                options = SearchOptions.from_config(
                    self.config.matching,
                    nationality=officer.get('nationality'),
                    subject_type=SubjectType.INDIVIDUAL,
                )
                for match in search(name, options, corpus, match_type=MatchType.SANCTIONS,
                                    profile=self.profiles[MatchType.SANCTIONS]):
                    match.metadata['company_officer'] = {
                        'name': name,
                        'officer_role': officer.get('officer_role'),
                        'appointed_on': officer.get('appointed_on'),
                        'company_name': company.company_name,
                        'company_number': company.company_number,
                    }
                    matches.append(match)

        if matches:
            logger.warning(f"  ⚠ {len(matches)} sanctions hit(s) among officers of "
                           f"{sanitize_for_logging(company.company_name)}")
        return matches

    def with_additional_matches(self, result: ScreeningResult,
                                extra: List[ScreeningMatch]) -> ScreeningResult:
        """Fold extra matches (officer hits) into a result and re-score it"""
        if not extra:
            return result
        matches = list(result.matches) + list(extra)
        assessment = self.aggregator.aggregate(matches)
        metadata = dict(result.metadata)
        metadata['computed_risk_level'] = assessment.risk_level.value
        return replace(
            result,
            risk_score=assessment.risk_score,
            risk_level=self._reported_level(assessment, result.complete),
            matches=matches,
            metadata=metadata,
            **self._match_flags(matches)
        )

    def bulk_screen(self, csv_file: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Bulk screening from CSV file

        Args:
            csv_file: CSV with columns name, subject_type, date_of_birth,
                nationality, company_number (only name is required)

        Returns:
            Summary with per-row results; invalid rows are reported, not raised
        """
        results = []
        errors = []
        with open(csv_file, 'r', encoding='utf-8') as f:
            rows = list(csv.DictReader(f))

        total = len(rows)
        for idx, row in enumerate(rows, 1):
            name = (row.get('name') or '').strip()
            if not name:
                continue
            logger.info(f"[{idx}/{total}] Screening: {sanitize_for_logging(name)}...")
            try:
                request = request_from_fields(
                    name,
                    subject_type=row.get('subject_type') or 'INDIVIDUAL',
                    date_of_birth=row.get('date_of_birth') or None,
                    nationality=row.get('nationality') or None,
                    company_number=row.get('company_number') or None,
                )
                result = self.screen(request, timeout=timeout)
            except ValidationError as e:
                errors.append({'row': idx, 'name': name, **e.to_dict()})
                continue
            results.append({'row': idx, 'name': name, **result.to_dict()})

        return {
            'screening_info': {
                'date': datetime.now(timezone.utc).isoformat(),
                'total_screened': len(results),
                'total_hits': len([r for r in results if r['match_found']]),
                'invalid_rows': len(errors),
                'version': self.config.screening.version,
            },
            'results': results,
            'errors': errors,
        }


def request_from_fields(name: str, subject_type: str = 'INDIVIDUAL',
                        date_of_birth: Optional[str] = None, **fields: Any) -> ScreeningRequest:
    """Build a request from loosely typed input (CLI, CSV)

    Raises:
        ValidationError: If subject type or date of birth cannot be parsed
    """
    st = parse_subject_type(subject_type)
    dob = None
    if date_of_birth:
        try:
            dob = date.fromisoformat(date_of_birth)
        except ValueError:
            raise ValidationError(f"DOB must be ISO 8601 format. Got: '{date_of_birth}'",
                                  field="date_of_birth", code="INVALID_DOB_FORMAT",
                                  suggestion="Use format YYYY-MM-DD")
    return ScreeningRequest(subject_name=name, subject_type=st, date_of_birth=dob, **fields)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="AML sanctions / PEP / adverse-media screening")
    parser.add_argument('name', nargs='?', help="Subject name")
    parser.add_argument('--type', dest='subject_type', default='individual',
                        choices=['individual', 'company'])
    parser.add_argument('--dob', help="Date of birth (YYYY-MM-DD)")
    parser.add_argument('--nationality')
    parser.add_argument('--company-number')
    parser.add_argument('--csv', help="Bulk screen rows from a CSV file")
    parser.add_argument('--timeout', type=float)
    parser.add_argument('--config', help="Path to config.yaml")
    args = parser.parse_args(argv)

    if not args.name and not args.csv:
        parser.error("a name or --csv is required")

    config = get_config(args.config)
    setup_logging(config.logging)

    store = ListStore.from_config(config)
    store.init()
    engine = ScreeningEngine(store, config=config)

    if args.csv:
        print(json.dumps(engine.bulk_screen(args.csv, timeout=args.timeout), indent=2, default=str))
        return 0

    try:
        request = request_from_fields(
            args.name,
            subject_type=args.subject_type,
            date_of_birth=args.dob,
            nationality=args.nationality,
            company_number=args.company_number,
        )
        result = engine.screen(request, timeout=args.timeout)
    except ValidationError as e:
        print(json.dumps({'error': e.to_dict()}, indent=2), file=sys.stderr)
        return 2
    except ScreeningTimeout as e:
        print(json.dumps({'error': e.to_dict()}, indent=2), file=sys.stderr)
        return 3

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
