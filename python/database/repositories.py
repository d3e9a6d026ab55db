"""
Repository Pattern for AML Screening Persistence

Provides the persistence collaborator of the screening engine: saving
screening results and matches, review-state updates, monitoring flags,
enhanced due diligence (EDD), review scheduling and statistics. Every
mutation writes an audit row.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session

from aml_errors import MatchNotFoundError, ScreeningNotFoundError, ScreeningStateError
from aml_models import (
    ReviewStatus, RiskLevel, ScreeningMatch, ScreeningRequest, ScreeningResult, ScreeningStatus,
)
from config_manager import ReviewConfig
from database.models import AuditAction, AuditRecord, MatchRecord, ScreeningRecord
from metrics import timed_operation

logger = logging.getLogger(__name__)

IdLike = Union[UUID, str]


def _as_uuid(value: IdLike) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScreeningRepository:
    """Repository for screening, match and audit operations."""

    def __init__(self, session: Session, review_config: Optional[ReviewConfig] = None):
        self.session = session
        self.review_config = review_config or ReviewConfig()

    # ============================================
    # LOOKUPS
    # ============================================

    def get_screening(self, screening_id: IdLike) -> Optional[ScreeningRecord]:
        """
        Get a screening with its matches.

        Returns:
            ScreeningRecord or None
        """
        uid = _as_uuid(screening_id)
        if uid is None:
            return None
        return self.session.get(ScreeningRecord, uid)

    def require_screening(self, screening_id: IdLike) -> ScreeningRecord:
        record = self.get_screening(screening_id)
        if record is None:
            raise ScreeningNotFoundError(screening_id)
        return record

    def get_match(self, match_id: IdLike) -> Optional[MatchRecord]:
        uid = _as_uuid(match_id)
        if uid is None:
            return None
        return self.session.get(MatchRecord, uid)

    # ============================================
    # CREATION / LIFECYCLE
    # ============================================

    def _new_record(self, request: ScreeningRequest) -> ScreeningRecord:
        return ScreeningRecord(
            subject_type=request.subject_type,
            subject_name=request.subject_name.strip(),
            subject_email=request.email,
            subject_phone=request.phone,
            date_of_birth=request.date_of_birth,
            nationality=request.nationality,
            company_number=request.company_number,
            registration_country=request.registration_country,
            notes=request.notes,
            status=ScreeningStatus.PENDING,
        )

    def _apply_result(self, record: ScreeningRecord, result: ScreeningResult) -> None:
        record.status = result.status
        record.risk_score = result.risk_score
        record.risk_level = result.risk_level
        record.match_found = result.match_found
        record.sanctions_match = result.sanctions_match
        record.pep_match = result.pep_match
        record.adverse_media = result.adverse_media
        record.result_metadata = result.metadata
        record.edd_required = result.edd_required
        record.completed_at = _utcnow()
        record.next_review_date = date.today() + timedelta(days=self.review_config.annual_review_days)
        record.review_completed = not result.matches

    def create_pending(self, request: ScreeningRequest, performed_by: Optional[str] = None) -> ScreeningRecord:
        """
        Record a screening before it runs (status PENDING).
        """
        record = self._new_record(request)
        self.session.add(record)
        self.session.flush()
        self._audit(record.id, AuditAction.SCREENING_INITIATED, performed_by,
                    f"Screening initiated for {record.subject_name}")
        return record

    def mark_in_progress(self, screening_id: IdLike) -> ScreeningRecord:
        record = self.require_screening(screening_id)
        if record.status != ScreeningStatus.PENDING:
            raise ScreeningStateError(f"Screening already processed (status {record.status.value})")
        record.status = ScreeningStatus.IN_PROGRESS
        self.session.flush()
        return record

    @timed_operation("complete_screening")
    def complete(self, screening_id: IdLike, result: ScreeningResult,
                 performed_by: Optional[str] = None) -> ScreeningRecord:
        """
        Store the result of an IN_PROGRESS screening and its matches.
        """
        record = self.require_screening(screening_id)
        if record.status != ScreeningStatus.IN_PROGRESS:
            raise ScreeningStateError(f"Screening is not in progress (status {record.status.value})")
        self._apply_result(record, result)
        self.session.flush()
        self.save_matches(record.id, result.matches)
        self._audit_completed(record, performed_by)
        return record

    def fail(self, screening_id: IdLike, error_message: str, error_code: Optional[str] = None,
             performed_by: Optional[str] = None) -> ScreeningRecord:
        """
        Mark a screening as failed.
        """
        record = self.require_screening(screening_id)
        record.status = ScreeningStatus.FAILED
        record.error_message = error_message
        record.error_code = error_code
        record.completed_at = _utcnow()
        self.session.flush()
        self._audit(record.id, AuditAction.SCREENING_FAILED, performed_by,
                    f"Screening failed: {error_message}", new_value={'error_code': error_code})
        return record

    @timed_operation("save_screening")
    def save_screening(self, result: ScreeningResult, request: ScreeningRequest,
                       performed_by: Optional[str] = None) -> UUID:
        """
        Persist a finished screening in one step.

        Matches are stored separately through save_matches().

        Returns:
            Id of the new screening
        """
        record = self._new_record(request)
        self._apply_result(record, result)
        self.session.add(record)
        self.session.flush()
        self._audit_completed(record, performed_by)
        return record.id

    def save_matches(self, screening_id: IdLike, matches: Iterable[ScreeningMatch]) -> List[UUID]:
        """
        Attach matches to a screening, keeping result order.

        Returns:
            Ids of the stored matches
        """
        record = self.require_screening(screening_id)
        start = len(record.matches)
        stored = []
        for offset, match in enumerate(matches):
            row = MatchRecord(
                screening_id=record.id,
                position=start + offset,
                match_type=match.match_type,
                entity_id=match.entity_id,
                entity_name=match.entity_name,
                match_score=match.match_score,
                aliases=list(match.aliases),
                list_name=match.list_name,
                list_type=match.list_type,
                source_url=match.source_url,
                date_of_birth=match.date_of_birth,
                nationalities=list(match.nationalities),
                positions=list(match.positions),
                match_metadata=match.metadata,
                review_status=match.review_status,
            )
            self.session.add(row)
            record.matches.append(row)
            stored.append(row)
        self.session.flush()
        if stored:
            record.match_found = True
            self._rollup_review(record, None)
        return [row.id for row in stored]

    def _audit_completed(self, record: ScreeningRecord, performed_by: Optional[str]) -> None:
        level = record.risk_level.value if record.risk_level else "UNDETERMINED"
        self._audit(
            record.id, AuditAction.SCREENING_COMPLETED, performed_by,
            f"Screening {record.status.value.lower()}: risk {record.risk_score} ({level})",
            new_value={'risk_score': record.risk_score, 'risk_level': level, 'status': record.status.value}
        )

    # ============================================
    # REVIEW / MONITORING
    # ============================================

    def update_match_review_status(self, match_id: IdLike, status: ReviewStatus,
                                   reviewed_by: Optional[str] = None,
                                   notes: Optional[str] = None) -> MatchRecord:
        """
        Record a reviewer decision on one match.

        When no PENDING matches remain, the screening is marked reviewed.
        """
        match = self.get_match(match_id)
        if match is None:
            raise MatchNotFoundError(match_id)

        old_status = match.review_status
        match.review_status = status
        match.reviewed_at = _utcnow()
        match.reviewed_by = reviewed_by
        match.review_notes = notes
        self.session.flush()

        self._audit(
            match.screening_id, AuditAction.MATCH_REVIEWED, reviewed_by,
            f'Match "{match.entity_name}" marked as {status.value}' + (f": {notes}" if notes else ""),
            old_value={'match_id': str(match.id), 'review_status': old_status.value},
            new_value={'match_id': str(match.id), 'review_status': status.value}
        )
        self._rollup_review(match.screening, reviewed_by)
        return match

    def _rollup_review(self, record: ScreeningRecord, reviewed_by: Optional[str]) -> None:
        pending = self.session.execute(
            select(func.count()).select_from(MatchRecord).where(and_(
                MatchRecord.screening_id == record.id,
                MatchRecord.review_status == ReviewStatus.PENDING
            ))
        ).scalar_one()
        completed = pending == 0
        if completed and not record.review_completed:
            record.reviewed_at = _utcnow()
            record.reviewed_by = reviewed_by
        record.review_completed = completed
        self.session.flush()

    def set_monitoring(self, screening_id: IdLike, enabled: bool,
                       performed_by: Optional[str] = None) -> bool:
        """
        Set the ongoing-monitoring flag.

        Returns:
            True if the flag changed
        """
        record = self.require_screening(screening_id)
        if record.monitoring_enabled == enabled:
            return False
        record.monitoring_enabled = enabled
        record.monitoring_updated_at = _utcnow()
        self.session.flush()
        self._audit(
            record.id,
            AuditAction.MONITORING_ENABLED if enabled else AuditAction.MONITORING_DISABLED,
            performed_by,
            f"Ongoing monitoring {'enabled' if enabled else 'disabled'}",
            old_value={'monitoring_enabled': not enabled},
            new_value={'monitoring_enabled': enabled}
        )
        return True

    def monitored_screenings(self) -> List[ScreeningRecord]:
        query = select(ScreeningRecord).where(
            ScreeningRecord.monitoring_enabled == True  # noqa: E712
        ).order_by(ScreeningRecord.created_at)
        return list(self.session.execute(query).scalars().all())

    def record_edd(self, screening_id: IdLike, notes: str,
                   performed_by: Optional[str] = None) -> ScreeningRecord:
        record = self.require_screening(screening_id)
        record.edd_completed = True
        record.edd_notes = notes
        record.edd_completed_at = _utcnow()
        self.session.flush()
        self._audit(record.id, AuditAction.EDD_COMPLETED, performed_by,
                    "Enhanced due diligence completed", new_value={'edd_completed': True})
        return record

    def set_next_review_date(self, screening_id: IdLike, review_date: date,
                             performed_by: Optional[str] = None) -> ScreeningRecord:
        record = self.require_screening(screening_id)
        old = record.next_review_date
        record.next_review_date = review_date
        self.session.flush()
        self._audit(
            record.id, AuditAction.ANNUAL_REVIEW_SCHEDULED, performed_by,
            f"Review scheduled for {review_date.isoformat()}",
            old_value={'next_review_date': old.isoformat() if old else None},
            new_value={'next_review_date': review_date.isoformat()}
        )
        return record

    def due_for_review(self, until: date) -> List[ScreeningRecord]:
        """
        Screenings whose next review date is on or before ``until`` (overdue included).
        """
        query = select(ScreeningRecord).where(and_(
            ScreeningRecord.next_review_date.is_not(None),
            ScreeningRecord.next_review_date <= until
        )).order_by(ScreeningRecord.next_review_date.asc())
        return list(self.session.execute(query).scalars().all())

    # ============================================
    # LISTING / STATS / DELETE
    # ============================================

    def list_screenings(
        self,
        status: Optional[ScreeningStatus] = None,
        risk_level: Optional[RiskLevel] = None,
        review_completed: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[ScreeningRecord], int]:
        """
        List screenings, newest first.

        Returns:
            Tuple of (screenings, total count)
        """
        conditions = []
        if status is not None:
            conditions.append(ScreeningRecord.status == status)
        if risk_level is not None:
            conditions.append(ScreeningRecord.risk_level == risk_level)
        if review_completed is not None:
            conditions.append(ScreeningRecord.review_completed == review_completed)

        count_query = select(func.count()).select_from(ScreeningRecord)
        query = select(ScreeningRecord)
        if conditions:
            count_query = count_query.where(and_(*conditions))
            query = query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = query.order_by(ScreeningRecord.created_at.desc()).offset(offset).limit(limit)
        return list(self.session.execute(query).scalars().all()), total

    def delete_screening(self, screening_id: IdLike, performed_by: Optional[str] = None) -> None:
        record = self.require_screening(screening_id)
        subject = record.subject_name
        self.session.delete(record)
        self.session.flush()
        # Kept without a screening link so it survives the cascade
        self._audit(None, AuditAction.SCREENING_DELETED, performed_by,
                    f"Screening {screening_id} for {subject} deleted",
                    old_value={'screening_id': str(screening_id)})

    def get_stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Summary counts for dashboards.
        """
        today = today or date.today()

        def count(*conditions) -> int:
            query = select(func.count()).select_from(ScreeningRecord)
            if conditions:
                query = query.where(and_(*conditions))
            return self.session.execute(query).scalar_one()

        finished = ScreeningRecord.status.in_([ScreeningStatus.COMPLETED, ScreeningStatus.INCOMPLETE])
        by_status = {
            row[0].value: row[1] for row in self.session.execute(
                select(ScreeningRecord.status, func.count()).group_by(ScreeningRecord.status)
            )
        }
        by_risk = {
            row[0].value: row[1] for row in self.session.execute(
                select(ScreeningRecord.risk_level, func.count())
                .where(ScreeningRecord.risk_level.is_not(None))
                .group_by(ScreeningRecord.risk_level)
            )
        }

        return {
            'total': count(),
            'pending_review': count(finished, ScreeningRecord.review_completed == False),  # noqa: E712
            'high_risk': count(ScreeningRecord.risk_level.in_([RiskLevel.HIGH, RiskLevel.CRITICAL])),
            'edd_outstanding': count(ScreeningRecord.edd_required == True,  # noqa: E712
                                     ScreeningRecord.edd_completed == False),  # noqa: E712
            'due_for_review': count(
                ScreeningRecord.next_review_date.is_not(None),
                ScreeningRecord.next_review_date <= today + timedelta(days=self.review_config.due_window_days)
            ),
            'monitored': count(ScreeningRecord.monitoring_enabled == True),  # noqa: E712
            'by_status': by_status,
            'by_risk_level': by_risk,
        }

    # ============================================
    # AUDIT
    # ============================================

    def _audit(self, screening_id: Optional[UUID], action: AuditAction, performed_by: Optional[str],
               description: str, old_value: Optional[Dict[str, Any]] = None,
               new_value: Optional[Dict[str, Any]] = None) -> AuditRecord:
        entry = AuditRecord(
            screening_id=screening_id,
            action=action,
            performed_by=performed_by,
            description=description,
            old_value=old_value,
            new_value=new_value,
        )
        self.session.add(entry)
        self.session.flush()
        logger.debug(f"Audit {action.value} for screening {screening_id}")
        return entry

    def audit_trail(self, screening_id: IdLike) -> List[AuditRecord]:
        uid = _as_uuid(screening_id)
        if uid is None:
            return []
        query = select(AuditRecord).where(
            AuditRecord.screening_id == uid
        ).order_by(AuditRecord.timestamp.asc())
        return list(self.session.execute(query).scalars().all())
