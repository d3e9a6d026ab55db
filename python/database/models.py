"""
SQLAlchemy ORM Models for the AML Screening Engine

Storage representation of screenings, their matches and the audit trail.
Core enums from aml_models are mapped with SQLAlchemy Enum columns so the
matching code never depends on this schema.

Column types are portable (Uuid, JSON) so the same schema runs on
PostgreSQL in production and SQLite in tests.

Tables:
1. aml_screenings - One row per screening run, with risk verdict, review,
   monitoring and EDD state
2. aml_matches - Candidate hits of a screening, each with its own review state
3. aml_audits - Append-only audit trail of screening actions
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text, ForeignKey, Index,
    CheckConstraint, Enum, JSON, Uuid,
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from aml_models import MatchType, ReviewStatus, RiskLevel, ScreeningStatus, SubjectType

# Base class for all models
Base = declarative_base()


class AuditAction(str, PyEnum):
    """Type of audit action"""
    SCREENING_INITIATED = "SCREENING_INITIATED"
    SCREENING_COMPLETED = "SCREENING_COMPLETED"
    SCREENING_FAILED = "SCREENING_FAILED"
    SCREENING_DELETED = "SCREENING_DELETED"
    MATCH_REVIEWED = "MATCH_REVIEWED"
    MONITORING_ENABLED = "MONITORING_ENABLED"
    MONITORING_DISABLED = "MONITORING_DISABLED"
    EDD_COMPLETED = "EDD_COMPLETED"
    ANNUAL_REVIEW_SCHEDULED = "ANNUAL_REVIEW_SCHEDULED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False
    )


class ScreeningRecord(Base, TimestampMixin):
    """
    A persisted screening: subject input, risk verdict and lifecycle state.
    """
    __tablename__ = "aml_screenings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Subject
    subject_type: Mapped[SubjectType] = mapped_column(Enum(SubjectType), nullable=False)
    subject_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    subject_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    subject_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    company_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    registration_country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[ScreeningStatus] = mapped_column(
        Enum(ScreeningStatus),
        nullable=False,
        default=ScreeningStatus.PENDING,
        index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Verdict
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[Optional[RiskLevel]] = mapped_column(Enum(RiskLevel), nullable=True, index=True)
    match_found: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sanctions_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pep_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adverse_media: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Screening-level review rollup (all matches decided)
    review_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Ongoing monitoring
    monitoring_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    monitoring_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Enhanced due diligence
    edd_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    edd_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    edd_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    edd_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    next_review_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)

    # Relationships
    matches: Mapped[List["MatchRecord"]] = relationship(
        "MatchRecord",
        back_populates="screening",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MatchRecord.position"
    )
    audits: Mapped[List["AuditRecord"]] = relationship(
        "AuditRecord",
        back_populates="screening",
        cascade="all, delete-orphan",
        order_by="AuditRecord.timestamp"
    )

    __table_args__ = (
        Index('ix_screening_status_date', 'status', 'created_at'),
        CheckConstraint('risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)',
                        name='ck_screening_risk_range'),
    )

    def __repr__(self) -> str:
        return f"<ScreeningRecord(id={self.id}, name='{self.subject_name}', status={self.status})>"


class MatchRecord(Base, TimestampMixin):
    """
    A candidate hit of one screening with its review decision.
    """
    __tablename__ = "aml_matches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    screening_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("aml_screenings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Rank within the screening (result order)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    match_type: Mapped[MatchType] = mapped_column(Enum(MatchType), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(500), nullable=False)
    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    aliases: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    list_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    list_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    nationalities: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    positions: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    match_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    review_status: Mapped[ReviewStatus] = mapped_column(
        Enum(ReviewStatus),
        nullable=False,
        default=ReviewStatus.PENDING,
        index=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    screening: Mapped["ScreeningRecord"] = relationship("ScreeningRecord", back_populates="matches")

    __table_args__ = (
        CheckConstraint('match_score >= 0 AND match_score <= 100', name='ck_match_score_range'),
    )

    def __repr__(self) -> str:
        return f"<MatchRecord(id={self.id}, name='{self.entity_name}', score={self.match_score})>"


class AuditRecord(Base):
    """
    Audit trail of screening actions.

    Immutable - no updates; removed only with the screening it belongs to.
    """
    __tablename__ = "aml_audits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    screening_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("aml_screenings.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False, index=True)
    performed_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    old_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    screening: Mapped[Optional["ScreeningRecord"]] = relationship("ScreeningRecord", back_populates="audits")

    def __repr__(self) -> str:
        return f"<AuditRecord(id={self.id}, action={self.action}, screening={self.screening_id})>"
