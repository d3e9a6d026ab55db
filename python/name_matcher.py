"""
Name Matcher

Heuristic 0-100 similarity between a query name and a candidate name.
One algorithm, parameterized by a MatcherProfile selected per corpus:

1. normalize (lowercase, trim, collapse whitespace)
2. exact match -> 100
3. token-boundary containment either way -> profile.containment_score
4. otherwise word overlap: exact token = 1.0, token substring (both tokens
   at least ``min_partial_token_length`` long) = ``partial_token_credit``;
   score = round(matched / max(len(q), len(c)) * profile.partial_token_max)
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class MatcherProfile:
    """Scoring parameters for one corpus family"""
    containment_score: int
    partial_token_max: int
    partial_token_credit: float = 0.7
    min_partial_token_length: int = 4
    name: str = "custom"

    @classmethod
    def from_config(cls, name: str, cfg) -> 'MatcherProfile':
        return cls(
            containment_score=cfg.containment_score,
            partial_token_max=cfg.partial_token_max,
            partial_token_credit=cfg.partial_token_credit,
            min_partial_token_length=cfg.min_partial_token_length,
            name=name,
        )


SANCTIONS_PROFILE = MatcherProfile(containment_score=90, partial_token_max=85, name="sanctions")
GENERAL_PROFILE = MatcherProfile(containment_score=85, partial_token_max=75, name="general")


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative scores (built-in round() is banker's)"""
    return int(math.floor(value + 0.5))


def normalize_name(name: Optional[str]) -> str:
    if not name:
        return ''
    return _WHITESPACE.sub(' ', name.lower()).strip()


def _contains_phrase(haystack: str, needle: str) -> bool:
    # Both sides are normalized so token boundaries are single spaces
    return f' {needle} ' in f' {haystack} '


def _token_credit(token: str, candidates: List[str], profile: MatcherProfile) -> float:
    if token in candidates:
        return 1.0
    if len(token) < profile.min_partial_token_length:
        return 0.0
    for other in candidates:
        if len(other) >= profile.min_partial_token_length and (token in other or other in token):
            return profile.partial_token_credit
    return 0.0


def similarity(query: str, candidate: str, profile: MatcherProfile = GENERAL_PROFILE) -> int:
    """Score how closely ``candidate`` matches ``query``

    Args:
        query: Name being screened
        candidate: Watchlist name or alias
        profile: Scoring parameters

    Returns:
        Integer score in [0, 100]
    """
    q = normalize_name(query)
    c = normalize_name(candidate)
    if not q or not c:
        return 0

    if q == c:
        return 100

    if _contains_phrase(c, q) or _contains_phrase(q, c):
        return max(0, min(100, profile.containment_score))

    query_tokens = q.split(' ')
    candidate_tokens = c.split(' ')
    matched = sum(_token_credit(token, candidate_tokens, profile) for token in query_tokens)
    overlap = matched / max(len(query_tokens), len(candidate_tokens))

    return max(0, min(100, round_half_up(overlap * profile.partial_token_max)))


def best_similarity(query: str, names: Iterable[str],
                    profile: MatcherProfile = GENERAL_PROFILE) -> Tuple[int, str]:
    """Best score over a canonical name and its aliases

    Returns:
        Tuple of (score, name that produced it); ties keep the first name
    """
    best_score, best_name = 0, ''
    for name in names:
        score = similarity(query, name, profile)
        if score > best_score:
            best_score, best_name = score, name
            if score == 100:
                break
    return best_score, best_name
