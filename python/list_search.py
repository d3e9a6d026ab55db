"""
List Search

Scans one corpus of watchlist entities for a query name, keeps entities
whose best name/alias score clears the floor, applies auxiliary-attribute
boosts and returns ranked ScreeningMatch objects.
"""

import logging
from datetime import date
from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass

from rapidfuzz import fuzz

from aml_errors import InternalMatchingError
from aml_models import (
    MatchType, ReviewStatus, ScreeningMatch, SubjectType, WatchlistEntity,
    SUBJECT_ENTITY_TYPES,
)
from name_matcher import GENERAL_PROFILE, MatcherProfile, best_similarity

logger = logging.getLogger(__name__)

DEFAULT_FLOOR = 70
DEFAULT_DOB_BOOST = 15
DEFAULT_NATIONALITY_BOOST = 10
DEFAULT_SUBJECT_TYPE_BOOST = 5


@dataclass(frozen=True)
class SearchOptions:
    """Optional attributes and tuning for one search"""
    date_of_birth: Optional[date] = None
    nationality: Optional[str] = None
    subject_type: Optional[SubjectType] = None
    floor: int = DEFAULT_FLOOR
    dob_boost: int = DEFAULT_DOB_BOOST
    nationality_boost: int = DEFAULT_NATIONALITY_BOOST
    subject_type_boost: int = DEFAULT_SUBJECT_TYPE_BOOST

    @classmethod
    def from_config(cls, matching_config, **attrs) -> 'SearchOptions':
        return cls(
            floor=matching_config.floor,
            dob_boost=matching_config.dob_boost,
            nationality_boost=matching_config.nationality_boost,
            subject_type_boost=matching_config.subject_type_boost,
            **attrs
        )


def _boosts(entity: WatchlistEntity, options: SearchOptions) -> List[Tuple[str, int]]:
    applied = []
    if options.date_of_birth and entity.date_of_birth == options.date_of_birth:
        applied.append(('date_of_birth', options.dob_boost))
    if options.nationality:
        wanted = options.nationality.strip().lower()
        if wanted and any(n.strip().lower() == wanted for n in entity.nationalities):
            applied.append(('nationality', options.nationality_boost))
    if options.subject_type and entity.entity_type == SUBJECT_ENTITY_TYPES.get(options.subject_type):
        applied.append(('subject_type', options.subject_type_boost))
    return applied


def score_entity(query: str, entity: WatchlistEntity, options: SearchOptions,
                 profile: MatcherProfile) -> Optional[Tuple[int, int, str, List[Tuple[str, int]]]]:
    """Score one entity

    Returns:
        (final score, base score, matched name, boosts) or None when the base
        score is below the floor
    """
    base, matched_name = best_similarity(query, entity.all_names, profile)
    if base < options.floor:
        return None
    boosts = _boosts(entity, options)
    final = min(100, base + sum(amount for _, amount in boosts))
    return final, base, matched_name, boosts


def _to_match(entity: WatchlistEntity, match_type: MatchType, score: int, base: int,
              matched_name: str, boosts: List[Tuple[str, int]]) -> ScreeningMatch:
    return ScreeningMatch(
        match_type=match_type,
        entity_id=entity.id,
        entity_name=entity.name,
        match_score=score,
        aliases=list(entity.aliases),
        list_name=', '.join(entity.source_lists),
        list_type=match_type.value.lower(),
        source_url=entity.source_url,
        date_of_birth=entity.date_of_birth,
        nationalities=list(entity.nationalities),
        positions=list(entity.positions) if match_type == MatchType.PEP else [],
        review_status=ReviewStatus.PENDING,
        metadata={
            'record': entity.to_dict(),
            'matched_name': matched_name,
            'base_score': base,
            'boosts': dict(boosts),
        },
    )


def search(query: str, options: Optional[SearchOptions], corpus: Iterable[WatchlistEntity],
           match_type: MatchType = MatchType.WATCHLIST,
           profile: Optional[MatcherProfile] = None) -> List[ScreeningMatch]:
    """Search a corpus for a name

    Args:
        query: Subject name
        options: Date of birth, nationality, subject type and tuning
        corpus: Entities to scan (read only)
        match_type: Tag given to every returned match
        profile: Matcher profile; general profile when omitted

    Returns:
        Matches at or above the floor, best first. Equal scores are ordered by
        token-sort ratio of the matched name, then by entity id.

    Raises:
        InternalMatchingError: If scoring an entity fails unexpectedly
    """
    options = options or SearchOptions()
    profile = profile or GENERAL_PROFILE

    ranked = []
    for entity in corpus:
        try:
            scored = score_entity(query, entity, options, profile)
            if scored is None:
                continue
            score, base, matched_name, boosts = scored
            tie_break = fuzz.token_sort_ratio(query, matched_name)
        except Exception as e:
            logger.error(f"Scoring failed for entity {entity.id}: {e}")
            raise InternalMatchingError(entity.id, f"Scoring failed for entity {entity.id}: {e}") from e
        ranked.append((-score, -tie_break, entity.id, _to_match(entity, match_type, score, base,
                                                                  matched_name, boosts)))

    ranked.sort(key=lambda item: item[:3])
    return [item[3] for item in ranked]
