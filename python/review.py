"""
Review / Monitoring workflow

Tracks each produced match through its review lifecycle and records whether
a screening should be re-run periodically. State lives in the persistence
collaborator; this module only enforces the transition rules.

Match states:
    PENDING -> CONFIRMED_MATCH | FALSE_POSITIVE | ESCALATED
"""

import logging
from datetime import date, timedelta
from typing import Any, Iterable, List, Optional, Protocol

from aml_errors import EDDError, ScreeningNotFoundError, ValidationError
from aml_models import ReviewStatus, ScreeningMatch, ScreeningRequest, ScreeningResult
from config_manager import ReviewConfig

logger = logging.getLogger(__name__)

REVIEW_DECISIONS = (ReviewStatus.CONFIRMED_MATCH, ReviewStatus.FALSE_POSITIVE, ReviewStatus.ESCALATED)
MAX_DAYS_AHEAD = 365


class ScreeningStore(Protocol):
    """Persistence collaborator used by the workflow"""

    def save_screening(self, result: ScreeningResult, request: ScreeningRequest,
                       performed_by: Optional[str] = None) -> Any: ...

    def save_matches(self, screening_id: Any, matches: Iterable[ScreeningMatch]) -> List[Any]: ...

    def get_screening(self, screening_id: Any) -> Any: ...

    def update_match_review_status(self, match_id: Any, status: ReviewStatus,
                                   reviewed_by: Optional[str] = None,
                                   notes: Optional[str] = None) -> Any: ...

    def set_monitoring(self, screening_id: Any, enabled: bool,
                       performed_by: Optional[str] = None) -> bool: ...

    def record_edd(self, screening_id: Any, notes: str, performed_by: Optional[str] = None) -> Any: ...

    def set_next_review_date(self, screening_id: Any, review_date: date,
                             performed_by: Optional[str] = None) -> Any: ...

    def due_for_review(self, until: date) -> List[Any]: ...


class ReviewWorkflow:
    """Review-status transitions, monitoring toggles and EDD / review scheduling"""

    def __init__(self, store: ScreeningStore, review_config: Optional[ReviewConfig] = None):
        self.store = store
        self.review_config = review_config or ReviewConfig()

    def set_review_status(self, match_id: Any, status: ReviewStatus,
                          reviewed_by: Optional[str] = None, notes: Optional[str] = None) -> Any:
        """Record a reviewer decision on a match

        Raises:
            ValidationError: If ``status`` is not a review decision
            MatchNotFoundError: If the match does not exist
        """
        try:
            status = ReviewStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown review status: {status!r}", field="status",
                                  code="INVALID_REVIEW_STATUS")
        if status not in REVIEW_DECISIONS:
            raise ValidationError(
                f"Cannot set review status to {status.value}",
                field="status",
                code="INVALID_REVIEW_STATUS",
                suggestion="Use CONFIRMED_MATCH, FALSE_POSITIVE or ESCALATED"
            )
        match = self.store.update_match_review_status(match_id, status, reviewed_by, notes)
        logger.info(f"Match {match_id} marked {status.value} by {reviewed_by or 'unknown'}")
        return match

    def enable_monitoring(self, screening_id: Any, performed_by: Optional[str] = None) -> bool:
        return self._set_monitoring(screening_id, True, performed_by)

    def disable_monitoring(self, screening_id: Any, performed_by: Optional[str] = None) -> bool:
        return self._set_monitoring(screening_id, False, performed_by)

    def _set_monitoring(self, screening_id: Any, enabled: bool, performed_by: Optional[str]) -> bool:
        changed = self.store.set_monitoring(screening_id, enabled, performed_by)
        if changed:
            logger.info(f"Monitoring {'enabled' if enabled else 'disabled'} for screening {screening_id}")
        return changed

    def complete_edd(self, screening_id: Any, notes: str, performed_by: Optional[str] = None) -> Any:
        """Record completion of enhanced due diligence

        Raises:
            ScreeningNotFoundError: Unknown screening
            EDDError: EDD not required, or already completed
            ValidationError: Notes shorter than ``review.edd_min_notes_length``
        """
        screening = self.store.get_screening(screening_id)
        if screening is None:
            raise ScreeningNotFoundError(screening_id)
        if not screening.edd_required:
            raise EDDError("EDD is not required for this screening")
        if screening.edd_completed:
            raise EDDError("EDD has already been completed for this screening")

        min_length = self.review_config.edd_min_notes_length
        if not notes or len(notes.strip()) < min_length:
            raise ValidationError(
                f"EDD notes must be at least {min_length} characters",
                field="notes",
                code="EDD_NOTES_TOO_SHORT",
                suggestion="Summarise the checks performed and their outcome"
            )
        return self.store.record_edd(screening_id, notes.strip(), performed_by)

    def schedule_review(self, screening_id: Any, review_date: date,
                        performed_by: Optional[str] = None, today: Optional[date] = None) -> Any:
        today = today or date.today()
        if review_date < today:
            raise ValidationError("Review date cannot be in the past", field="review_date",
                                  code="REVIEW_DATE_IN_PAST")
        return self.store.set_next_review_date(screening_id, review_date, performed_by)

    def due_for_review(self, days_ahead: Optional[int] = None, today: Optional[date] = None) -> List[Any]:
        """Screenings due for periodic review within ``days_ahead`` days (overdue included)"""
        if days_ahead is None:
            days_ahead = self.review_config.due_window_days
        if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
            raise ValidationError(f"days_ahead must be between 1 and {MAX_DAYS_AHEAD}",
                                  field="days_ahead", code="INVALID_RANGE")
        today = today or date.today()
        return self.store.due_for_review(today + timedelta(days=days_ahead))
