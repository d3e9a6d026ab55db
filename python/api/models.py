"""
Pydantic request/response schemas for the AML Screening API

Request models validate transport-level shape only; screening rules
(blocked characters, identity fields per subject type) stay in
screener.validate_screening_request so the CLI and API behave the same.
Response models read straight from the ORM records (from_attributes).
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aml_models import MatchType, ReviewStatus, RiskLevel, ScreeningStatus, SubjectType
from database.models import AuditAction


class ScreeningCreateRequest(BaseModel):
    """Request schema for a new screening.

    Length limits match input_validation in config.yaml.
    """
    subject_name: str = Field(
        ...,
        min_length=2,
        max_length=200,
        description="Name of the person or company to screen"
    )
    subject_type: SubjectType = Field(default=SubjectType.INDIVIDUAL, description="INDIVIDUAL or COMPANY")
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)
    date_of_birth: Optional[date] = Field(default=None, description="Date of birth (YYYY-MM-DD), individuals only")
    nationality: Optional[str] = Field(default=None, max_length=100)
    company_number: Optional[str] = Field(default=None, max_length=50, description="Companies only")
    registration_country: Optional[str] = Field(default=None, max_length=100, description="Companies only")
    notes: Optional[str] = Field(default=None)
    performed_by: Optional[str] = Field(default=None, max_length=200, description="User for the audit trail")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=300)
    verify_company: bool = Field(default=False, description="Run company registry checks (companies only)")

    @field_validator('subject_type', mode='before')
    @classmethod
    def normalize_subject_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class MatchResponse(BaseModel):
    """A stored match with its review state."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    match_type: MatchType
    entity_id: str
    entity_name: str
    match_score: int = Field(..., ge=0, le=100)
    aliases: Optional[List[str]] = None
    list_name: Optional[str] = None
    list_type: Optional[str] = None
    source_url: Optional[str] = None
    date_of_birth: Optional[date] = None
    nationalities: Optional[List[str]] = None
    positions: Optional[List[str]] = None
    match_metadata: Optional[Dict[str, Any]] = None
    review_status: ReviewStatus
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None


class ScreeningSummary(BaseModel):
    """Screening without its matches (list views)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_type: SubjectType
    subject_name: str
    status: ScreeningStatus
    risk_score: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
    match_found: bool
    sanctions_match: bool
    pep_match: bool
    adverse_media: bool
    review_completed: bool
    monitoring_enabled: bool
    edd_required: bool
    edd_completed: bool
    next_review_date: Optional[date] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ScreeningResponse(ScreeningSummary):
    """Full screening with subject details, metadata and matches."""
    subject_email: Optional[str] = None
    subject_phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    nationality: Optional[str] = None
    company_number: Optional[str] = None
    registration_country: Optional[str] = None
    notes: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    result_metadata: Optional[Dict[str, Any]] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    edd_notes: Optional[str] = None
    edd_completed_at: Optional[datetime] = None
    monitoring_updated_at: Optional[datetime] = None
    matches: List[MatchResponse] = Field(default_factory=list)


class ScreeningListResponse(BaseModel):
    items: List[ScreeningSummary]
    total: int = Field(..., ge=0)
    limit: int
    offset: int


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    screening_id: Optional[UUID] = None
    timestamp: datetime
    action: AuditAction
    performed_by: Optional[str] = None
    description: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None


class ReviewRequest(BaseModel):
    """Reviewer decision on a match."""
    status: ReviewStatus = Field(..., description="CONFIRMED_MATCH, FALSE_POSITIVE or ESCALATED")
    reviewed_by: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)


class MonitoringResponse(BaseModel):
    screening_id: UUID
    monitoring_enabled: bool
    changed: bool = Field(..., description="False when the flag already had this value")


class EDDRequest(BaseModel):
    """Enhanced due diligence completion."""
    notes: str = Field(..., max_length=5000, description="Summary of the checks performed")
    performed_by: Optional[str] = Field(default=None, max_length=200)


class ReviewScheduleRequest(BaseModel):
    review_date: date
    performed_by: Optional[str] = Field(default=None, max_length=200)


class SourceStatusResponse(BaseModel):
    list_id: str
    match_type: MatchType
    loaded: bool
    stale: bool
    entity_count: int
    refreshed_at: Optional[datetime] = None
    error: Optional[str] = None


class ListStatusResponse(BaseModel):
    """Response schema for the list store status endpoint."""
    total: int = Field(..., ge=0, description="Entities across all corpora")
    by_match_type: Dict[str, int]
    sources: List[SourceStatusResponse]
    last_refreshed: Optional[datetime] = None
    needs_refresh: bool


class RefreshResponse(BaseModel):
    """Response schema for a list refresh."""
    success: bool
    refreshed: bool = Field(True, description="False when the lists were fresh and no refresh ran")
    refreshed_at: datetime
    loaded: Dict[str, int] = Field(default_factory=dict, description="Entities loaded per list")
    failed: Dict[str, str] = Field(default_factory=dict, description="Error per failed list")
    processing_time_ms: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    screenings: Dict[str, Any]
    lists: Dict[str, Any]
    operations: Dict[str, Any]


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="healthy or degraded")
    lists_loaded: bool
    entities_loaded: int = Field(..., ge=0)
    unavailable_lists: List[str] = Field(default_factory=list)
    database: bool = Field(..., description="Database reachable")
    version: str
    uptime_seconds: Optional[int] = None
    memory_usage_mb: Optional[float] = Field(default=None, description="Resident memory of the API process")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Extra context (ids, limits)")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
