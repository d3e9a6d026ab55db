"""
Risk Aggregator

Turns the typed matches of one screening into a 0-100 risk score and a
RiskLevel. The score is a max-biased blend of weighted match scores; a
sanctions hit is a hard override on the level.
"""

from typing import Dict, Iterable, Optional
from dataclasses import dataclass, field

from aml_models import MatchType, RiskAssessment, RiskLevel, ScreeningMatch
from name_matcher import round_half_up

DEFAULT_WEIGHTS: Dict[MatchType, float] = {
    MatchType.SANCTIONS: 1.5,
    MatchType.PEP: 1.2,
    MatchType.ADVERSE_MEDIA: 1.0,
    MatchType.WATCHLIST: 1.1,
}


@dataclass(frozen=True)
class RiskThresholds:
    critical_sanctions_score: int = 85
    critical_score: int = 90
    high_score: int = 70
    medium_score: int = 40


@dataclass
class RiskAggregator:
    """Weighted max/mean blend with sanctions overrides"""
    weights: Dict[MatchType, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    mean_weight: float = 0.4
    max_weight: float = 0.6

    @classmethod
    def from_config(cls, risk_config) -> 'RiskAggregator':
        weights = dict(DEFAULT_WEIGHTS)
        for key, value in risk_config.weights.items():
            weights[MatchType(key)] = float(value)
        return cls(
            weights=weights,
            thresholds=RiskThresholds(
                critical_sanctions_score=risk_config.critical_sanctions_score,
                critical_score=risk_config.critical_score,
                high_score=risk_config.high_score,
                medium_score=risk_config.medium_score,
            ),
            mean_weight=risk_config.mean_weight,
            max_weight=risk_config.max_weight,
        )

    def risk_score(self, matches: Iterable[ScreeningMatch]) -> int:
        weighted = [m.match_score * self.weights[m.match_type] for m in matches]
        if not weighted:
            return 0
        average = sum(weighted) / len(weighted)
        blended = average * self.mean_weight + max(weighted) * self.max_weight
        return max(0, min(100, round_half_up(blended)))

    def classify(self, risk_score: int, matches: Iterable[ScreeningMatch]) -> RiskLevel:
        """Map a score and the sanctions hits to a level; first rule wins"""
        t = self.thresholds
        sanctions_scores = [m.match_score for m in matches if m.match_type == MatchType.SANCTIONS]

        if any(s >= t.critical_sanctions_score for s in sanctions_scores) or risk_score >= t.critical_score:
            return RiskLevel.CRITICAL
        if sanctions_scores or risk_score >= t.high_score:
            return RiskLevel.HIGH
        if risk_score >= t.medium_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def aggregate(self, matches: Iterable[ScreeningMatch]) -> RiskAssessment:
        matches = list(matches)
        if not matches:
            return RiskAssessment(risk_score=0, risk_level=RiskLevel.LOW)
        score = self.risk_score(matches)
        return RiskAssessment(risk_score=score, risk_level=self.classify(score, matches))


_default_aggregator: Optional[RiskAggregator] = None


def aggregate(matches: Iterable[ScreeningMatch]) -> RiskAssessment:
    """Aggregate with the default weights and thresholds"""
    global _default_aggregator
    if _default_aggregator is None:
        _default_aggregator = RiskAggregator()
    return _default_aggregator.aggregate(matches)
