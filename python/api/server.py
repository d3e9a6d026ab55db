"""
FastAPI AML Screening API Server

Provides REST API endpoints for screening subjects against sanctions, PEP
and adverse-media lists, persisting the results, and driving the review,
monitoring and EDD workflow.

Usage:
    uvicorn api.server:create_app --factory --port 8000
"""

import os
import time
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from functools import partial
from typing import Generator, List, Optional

import psutil
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.responses import RedirectResponse
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from api.models import (
    AuditEntryResponse,
    EDDRequest,
    ErrorResponse,
    HealthResponse,
    ListStatusResponse,
    MatchResponse,
    MonitoringResponse,
    RefreshResponse,
    ReviewRequest,
    ReviewScheduleRequest,
    ScreeningCreateRequest,
    ScreeningListResponse,
    ScreeningResponse,
    ScreeningSummary,
    StatsResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from aml_errors import AMLError, ValidationError
from aml_models import RiskLevel, ScreeningRequest, ScreeningResult, ScreeningStatus, SubjectType
from company_checks import CompaniesHouseRegistry, CompanyRegistryError, CompanyVerifier
from config_manager import ConfigManager, get_config, setup_logging
from database.connection import DatabaseSessionProvider
from database.repositories import ScreeningRepository
from jobs import refresh_lists_if_stale
from list_store import ListStore, RefreshReport
from metrics import get_operation_stats
from review import ReviewWorkflow
from screener import ScreeningEngine, SimulatedVendorGateway, validate_screening_request
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

PROTECTED_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
}


class ServiceState:
    """Everything the endpoints share: config, lists, engine, database"""

    def __init__(self, config: ConfigManager, list_store: ListStore, engine: ScreeningEngine,
                 db_provider: DatabaseSessionProvider, company_verifier: Optional[CompanyVerifier] = None):
        self.config = config
        self.list_store = list_store
        self.engine = engine
        self.db_provider = db_provider
        self.company_verifier = company_verifier
        # Blocking screening and list refresh work runs here
        self.executor = ThreadPoolExecutor(max_workers=config.screening.max_workers)
        self.refresh_lock = asyncio.Lock()
        self.refresh_task: Optional[asyncio.Task] = None
        self.started_at: Optional[datetime] = None


def get_state(request: Request) -> ServiceState:
    """Dependency to get the service state."""
    return request.app.state.aml


def get_session(state: ServiceState = Depends(get_state)) -> Generator[Session, None, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    yield from state.db_provider.get_session()


def get_repository(session: Session = Depends(get_session),
                   state: ServiceState = Depends(get_state)) -> ScreeningRepository:
    return ScreeningRepository(session, state.config.review)


def get_workflow(repo: ScreeningRepository = Depends(get_repository),
                 state: ServiceState = Depends(get_state)) -> ReviewWorkflow:
    return ReviewWorkflow(repo, state.config.review)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header),
                         state: ServiceState = Depends(get_state)) -> str:
    """Verify API key for mutating endpoints.

    The key is read from the environment variable named by api.api_key_env;
    if it is not set, authentication is disabled.
    """
    expected = os.getenv(state.config.api.api_key_env, "")
    if not expected:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != expected:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


async def refresh_stale_lists(state: ServiceState, force: bool = False) -> Optional[RefreshReport]:
    """Refresh the lists on the executor when they are stale (or when forced).

    Shares the refresh lock with the manual refresh endpoint.
    """
    async with state.refresh_lock:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            state.executor, partial(refresh_lists_if_stale, state.list_store, force=force)
        )


async def _refresh_when_stale(state: ServiceState, interval_seconds: float) -> None:
    """Background staleness check; runs for the lifetime of the app."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await refresh_stale_lists(state)
        except Exception:
            logger.exception("✗ Scheduled list refresh failed")


def _to_core_request(body: ScreeningCreateRequest) -> ScreeningRequest:
    return ScreeningRequest(
        subject_name=body.subject_name,
        subject_type=body.subject_type,
        email=body.email,
        phone=body.phone,
        date_of_birth=body.date_of_birth,
        nationality=body.nationality,
        company_number=body.company_number,
        registration_country=body.registration_country,
        notes=body.notes,
    )


def create_app(
    config: Optional[ConfigManager] = None,
    list_store: Optional[ListStore] = None,
    engine: Optional[ScreeningEngine] = None,
    db_provider: Optional[DatabaseSessionProvider] = None,
    company_verifier: Optional[CompanyVerifier] = None,
) -> FastAPI:
    """Build the API application.

    Collaborators default to the ones described by config.yaml; tests pass
    their own (in-memory SQLite, zero vendor latency).
    """
    config = config or get_config()
    setup_logging(config.logging)

    list_store = list_store or ListStore.from_config(config)
    engine = engine or ScreeningEngine(list_store, config=config)
    if db_provider is None:
        db_provider = DatabaseSessionProvider.from_config(config)
    if company_verifier is None:
        registry = CompaniesHouseRegistry.from_env()
        company_verifier = CompanyVerifier(registry) if registry else None

    state = ServiceState(config, list_store, engine, db_provider, company_verifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting AML Screening API...")
        start_time = time.time()
        state.db_provider.create_tables()
        if isinstance(state.engine.vendor, SimulatedVendorGateway):
            state.engine.vendor.reset()
        if not state.list_store.loaded:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(state.executor, state.list_store.init)
        state.started_at = datetime.now(timezone.utc)
        interval_seconds = state.config.data.refresh_check_minutes * 60
        if interval_seconds > 0:
            state.refresh_task = asyncio.create_task(_refresh_when_stale(state, interval_seconds))
        logger.info("✓ API ready: %d entities loaded in %.2f seconds",
                    state.list_store.snapshot().total_entities, time.time() - start_time)
        yield
        logger.info("Shutting down AML Screening API...")
        if state.refresh_task is not None:
            state.refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await state.refresh_task
            state.refresh_task = None
        if isinstance(state.engine.vendor, SimulatedVendorGateway):
            # Unblock screenings still waiting on the vendor
            state.engine.vendor.cancel()
        state.executor.shutdown(wait=False)
        state.db_provider.close()

    app = FastAPI(
        title="AML Screening API",
        description="Sanctions, PEP and adverse-media screening with review workflow",
        version=config.screening.version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.aml = state

    setup_cors(app, config.api.cors_origins)
    app.add_middleware(RequestLoggingMiddleware)
    setup_exception_handlers(app)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ============================================
    # SCREENINGS
    # ============================================

    @app.post(
        "/api/v1/screenings",
        response_model=ScreeningResponse,
        status_code=201,
        responses={
            **PROTECTED_RESPONSES,
            422: {"model": ErrorResponse, "description": "Validation error"},
            504: {"model": ErrorResponse, "description": "Screening timed out"},
        },
        summary="Screen a subject",
    )
    async def create_screening(
        body: ScreeningCreateRequest,
        state: ServiceState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Screen a person or company and store the result.

        Requests failing validation are rejected before anything is stored.
        A screening that times out or fails while matching is stored as FAILED.
        """
        request = _to_core_request(body)
        validate_screening_request(request, state.config)
        if body.verify_company:
            _check_company_verification(request)

        with state.db_provider.session_scope() as session:
            repo = ScreeningRepository(session, state.config.review)
            record = repo.create_pending(request, body.performed_by)
            repo.mark_in_progress(record.id)
            screening_id = record.id

        loop = asyncio.get_running_loop()
        try:
            result: ScreeningResult = await loop.run_in_executor(
                state.executor, partial(state.engine.screen, request, body.timeout_seconds)
            )
            if body.verify_company:
                result = await _apply_company_verification(state, request, result)
        except AMLError as e:
            with state.db_provider.session_scope() as session:
                ScreeningRepository(session, state.config.review).fail(
                    screening_id, e.message, e.code, body.performed_by
                )
            raise
        except Exception as e:
            logger.exception(f"✗ Unexpected error in screening {screening_id}")
            with state.db_provider.session_scope() as session:
                ScreeningRepository(session, state.config.review).fail(
                    screening_id, f"Internal error: {type(e).__name__}", "INTERNAL_ERROR", body.performed_by
                )
            raise

        with state.db_provider.session_scope() as session:
            record = ScreeningRepository(session, state.config.review).complete(
                screening_id, result, body.performed_by
            )
            return ScreeningResponse.model_validate(record)

    @app.get("/api/v1/screenings", response_model=ScreeningListResponse, summary="List screenings")
    def list_screenings(
        status: Optional[ScreeningStatus] = None,
        risk_level: Optional[RiskLevel] = None,
        review_completed: Optional[bool] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        repo: ScreeningRepository = Depends(get_repository),
    ):
        records, total = repo.list_screenings(status, risk_level, review_completed, limit, offset)
        return ScreeningListResponse(
            items=[ScreeningSummary.model_validate(r) for r in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    # Declared before /screenings/{screening_id}
    @app.get(
        "/api/v1/screenings/due-for-review",
        response_model=List[ScreeningSummary],
        summary="Screenings due for periodic review",
    )
    def screenings_due_for_review(
        days_ahead: Optional[int] = None,
        workflow: ReviewWorkflow = Depends(get_workflow),
    ):
        return [ScreeningSummary.model_validate(r) for r in workflow.due_for_review(days_ahead)]

    @app.get(
        "/api/v1/screenings/{screening_id}",
        response_model=ScreeningResponse,
        responses={404: {"model": ErrorResponse, "description": "Screening not found"}},
        summary="Get a screening with its matches",
    )
    def get_screening(screening_id: str, repo: ScreeningRepository = Depends(get_repository)):
        return ScreeningResponse.model_validate(repo.require_screening(screening_id))

    @app.delete(
        "/api/v1/screenings/{screening_id}",
        status_code=204,
        responses={**PROTECTED_RESPONSES, 404: {"model": ErrorResponse, "description": "Screening not found"}},
        summary="Delete a screening",
    )
    def delete_screening(
        screening_id: str,
        performed_by: Optional[str] = None,
        repo: ScreeningRepository = Depends(get_repository),
        api_key: str = Depends(verify_api_key),
    ):
        repo.delete_screening(screening_id, performed_by)
        return Response(status_code=204)

    @app.get(
        "/api/v1/screenings/{screening_id}/audit",
        response_model=List[AuditEntryResponse],
        summary="Audit trail of a screening",
    )
    def get_audit_trail(screening_id: str, repo: ScreeningRepository = Depends(get_repository)):
        repo.require_screening(screening_id)
        return [AuditEntryResponse.model_validate(a) for a in repo.audit_trail(screening_id)]

    # ============================================
    # REVIEW / MONITORING / EDD
    # ============================================

    @app.post(
        "/api/v1/matches/{match_id}/review",
        response_model=MatchResponse,
        responses={**PROTECTED_RESPONSES, 404: {"model": ErrorResponse, "description": "Match not found"}},
        summary="Record a review decision on a match",
    )
    def review_match(
        match_id: str,
        body: ReviewRequest,
        workflow: ReviewWorkflow = Depends(get_workflow),
        api_key: str = Depends(verify_api_key),
    ):
        match = workflow.set_review_status(match_id, body.status, body.reviewed_by, body.notes)
        return MatchResponse.model_validate(match)

    @app.post(
        "/api/v1/screenings/{screening_id}/monitoring",
        response_model=MonitoringResponse,
        responses=PROTECTED_RESPONSES,
        summary="Enable ongoing monitoring",
    )
    def enable_monitoring(
        screening_id: str,
        performed_by: Optional[str] = None,
        workflow: ReviewWorkflow = Depends(get_workflow),
        api_key: str = Depends(verify_api_key),
    ):
        changed = workflow.enable_monitoring(screening_id, performed_by)
        record = workflow.store.require_screening(screening_id)
        return MonitoringResponse(screening_id=record.id, monitoring_enabled=True, changed=changed)

    @app.delete(
        "/api/v1/screenings/{screening_id}/monitoring",
        response_model=MonitoringResponse,
        responses=PROTECTED_RESPONSES,
        summary="Disable ongoing monitoring",
    )
    def disable_monitoring(
        screening_id: str,
        performed_by: Optional[str] = None,
        workflow: ReviewWorkflow = Depends(get_workflow),
        api_key: str = Depends(verify_api_key),
    ):
        changed = workflow.disable_monitoring(screening_id, performed_by)
        record = workflow.store.require_screening(screening_id)
        return MonitoringResponse(screening_id=record.id, monitoring_enabled=False, changed=changed)

    @app.post(
        "/api/v1/screenings/{screening_id}/edd",
        response_model=ScreeningResponse,
        responses={**PROTECTED_RESPONSES, 409: {"model": ErrorResponse, "description": "EDD not allowed"}},
        summary="Complete enhanced due diligence",
    )
    def complete_edd(
        screening_id: str,
        body: EDDRequest,
        workflow: ReviewWorkflow = Depends(get_workflow),
        api_key: str = Depends(verify_api_key),
    ):
        return ScreeningResponse.model_validate(
            workflow.complete_edd(screening_id, body.notes, body.performed_by)
        )

    @app.post(
        "/api/v1/screenings/{screening_id}/review-schedule",
        response_model=ScreeningResponse,
        responses=PROTECTED_RESPONSES,
        summary="Schedule the next periodic review",
    )
    def schedule_review(
        screening_id: str,
        body: ReviewScheduleRequest,
        workflow: ReviewWorkflow = Depends(get_workflow),
        api_key: str = Depends(verify_api_key),
    ):
        workflow.store.require_screening(screening_id)
        return ScreeningResponse.model_validate(
            workflow.schedule_review(screening_id, body.review_date, body.performed_by)
        )

    # ============================================
    # LISTS / STATS / HEALTH
    # ============================================

    @app.get("/api/v1/lists", response_model=ListStatusResponse, summary="Watchlist status")
    def list_status(state: ServiceState = Depends(get_state)):
        return ListStatusResponse(**state.list_store.stats())

    @app.post(
        "/api/v1/lists/refresh",
        response_model=RefreshResponse,
        responses=PROTECTED_RESPONSES,
        summary="Refresh watchlists",
    )
    async def refresh_lists(
        force: bool = True,
        state: ServiceState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Fetch every source list and swap in a new snapshot.

        With force=false the refresh only runs when the lists are stale.
        Screenings keep running against the previous snapshot meanwhile.
        """
        start_time = time.time()
        report = await refresh_stale_lists(state, force=force)
        if report is None:
            return RefreshResponse(
                success=True,
                refreshed=False,
                refreshed_at=state.list_store.snapshot().refreshed_at,
                processing_time_ms=int((time.time() - start_time) * 1000),
            )
        return RefreshResponse(
            success=report.success,
            refreshed_at=report.refreshed_at,
            loaded=report.loaded,
            failed=report.failed,
            processing_time_ms=int((time.time() - start_time) * 1000),
        )

    @app.get("/api/v1/stats", response_model=StatsResponse, summary="Screening statistics")
    def stats(
        repo: ScreeningRepository = Depends(get_repository),
        state: ServiceState = Depends(get_state),
    ):
        return StatsResponse(
            screenings=repo.get_stats(),
            lists=state.list_store.stats(),
            operations=get_operation_stats(),
        )

    @app.get("/api/v1/health", response_model=HealthResponse, summary="Health check")
    def health_check(state: ServiceState = Depends(get_state)):
        """Always returns HTTP 200; problems are reported as status "degraded"."""
        snapshot = state.list_store.snapshot()
        unavailable = snapshot.unavailable_sources()
        lists_loaded = snapshot.refreshed_at is not None
        database_ok = state.db_provider.health_check()

        uptime_seconds = None
        if state.started_at:
            uptime_seconds = int((datetime.now(timezone.utc) - state.started_at).total_seconds())
        memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)

        healthy = lists_loaded and database_ok and not unavailable
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            lists_loaded=lists_loaded,
            entities_loaded=snapshot.total_entities,
            unavailable_lists=unavailable,
            database=database_ok,
            version=state.config.screening.version,
            uptime_seconds=uptime_seconds,
            memory_usage_mb=memory_usage_mb,
        )

    @app.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Root redirect to docs
    @app.get("/", include_in_schema=False)
    async def root():
        return RedirectResponse(url="/api/docs")


def _check_company_verification(request: ScreeningRequest) -> None:
    if request.subject_type != SubjectType.COMPANY:
        raise ValidationError("Company verification applies to COMPANY subjects only",
                              field="verify_company", code="FIELD_NOT_APPLICABLE")
    if not request.company_number:
        raise ValidationError("company_number is required for company verification",
                              field="company_number", code="IDENTITY_FIELD_REQUIRED")


async def _apply_company_verification(state: ServiceState, request: ScreeningRequest,
                                      result: ScreeningResult) -> ScreeningResult:
    """Verify the company and screen its officers.

    Registry red flags go to the result metadata only and never change the
    score. Officer sanctions hits are sanctions matches and are scored.
    """
    if state.company_verifier is None:
        result.metadata['company_verification'] = {'verified': False, 'error': 'Company registry not configured'}
        return result

    loop = asyncio.get_running_loop()
    try:
        verification = await loop.run_in_executor(
            state.executor, state.company_verifier.verify, request.company_number
        )
    except CompanyRegistryError as e:
        logger.warning("⚠ Company verification failed for %s: %s",
                       sanitize_for_logging(request.company_number), e.message)
        result.metadata['company_verification'] = {'verified': False, 'error': e.message}
        return result
    result.metadata['company_verification'] = verification.to_dict()
    if verification.company is None:
        return result

    officer_matches = await loop.run_in_executor(
        state.executor, state.engine.screen_officers, verification.company
    )
    result.metadata['company_verification']['officers_screened'] = len(verification.company.officers)
    return state.engine.with_additional_matches(result, officer_matches)


def main() -> None:
    import uvicorn

    config = get_config()
    uvicorn.run(create_app(config), host=config.api.host, port=config.api.port)


if __name__ == "__main__":
    main()
