"""
Scheduled jobs

Entry points for an external scheduler (cron, k8s CronJob, APScheduler...):
- refresh_lists_if_stale: staleness-gated watchlist refresh of a list store
  (the API runs it periodically on its own store)
- trigger_service_refresh: ask the running API to refresh its lists
- rescreen_monitored: re-run every screening with monitoring enabled

Usage:
    python jobs.py refresh [--force] [--api-url http://localhost:8000]
    python jobs.py rescreen
"""

import argparse
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from aml_errors import AMLError
from aml_models import ScreeningRequest
from config_manager import get_config, setup_logging
from database.connection import DatabaseSessionProvider
from database.models import ScreeningRecord
from database.repositories import ScreeningRepository
from list_store import ListStore, RefreshReport
from metrics import operation_timer
from screener import ScreeningEngine
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

MONITORING_USER = "monitoring-scheduler"
REFRESH_PATH = "/api/v1/lists/refresh"


def refresh_lists_if_stale(store: ListStore, now: Optional[datetime] = None,
                           force: bool = False) -> Optional[RefreshReport]:
    """Refresh the list store when it is stale

    Returns:
        RefreshReport, or None if the lists were fresh and no refresh ran
    """
    if not force and not store.needs_refresh(now):
        logger.info("Lists are fresh, skipping refresh")
        return None
    return store.refresh()


def trigger_service_refresh(api_url: str, force: bool = False, api_key: Optional[str] = None,
                            timeout: int = 300,
                            session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """Refresh the lists held by a running API instance

    The lists live in the API process, so refreshing a store in this
    process would not reach them.

    Returns:
        The API's refresh response (``refreshed`` is False when the lists
        were fresh)

    Raises:
        requests.RequestException: If the service cannot be reached or rejects the call
    """
    client = session or requests
    headers = {'X-API-Key': api_key} if api_key else {}
    response = client.post(
        f"{api_url.rstrip('/')}{REFRESH_PATH}",
        params={'force': 'true' if force else 'false'},
        headers=headers,
        timeout=timeout,
    )
    response.raise_for_status()
    return response.json()


def service_url(api_config) -> str:
    host = "127.0.0.1" if api_config.host in ("0.0.0.0", "") else api_config.host
    return f"http://{host}:{api_config.port}"


def request_from_record(record: ScreeningRecord) -> ScreeningRequest:
    return ScreeningRequest(
        subject_name=record.subject_name,
        subject_type=record.subject_type,
        email=record.subject_email,
        phone=record.subject_phone,
        date_of_birth=record.date_of_birth,
        nationality=record.nationality,
        company_number=record.company_number,
        registration_country=record.registration_country,
        notes=record.notes,
    )


def rescreen_monitored(engine: ScreeningEngine, db_provider: DatabaseSessionProvider,
                       timeout: Optional[float] = None,
                       performed_by: str = MONITORING_USER) -> Dict[str, Any]:
    """Re-screen every monitored screening against the current lists

    Each run is saved as a new screening. Monitoring moves to the new
    screening so only the latest one in a chain is re-run next time.
    Failures are reported per screening and do not stop the batch.

    Returns:
        Summary with the new screening ids, risk changes and failures
    """
    with db_provider.session_scope() as session:
        monitored = [(r.id, request_from_record(r), r.risk_level)
                     for r in ScreeningRepository(session).monitored_screenings()]

    rescreened: List[Dict[str, Any]] = []
    failures: List[Dict[str, Any]] = []
    logger.info(f"Re-screening {len(monitored)} monitored screenings")

    with operation_timer("rescreen_monitored"):
        for previous_id, request, previous_level in monitored:
            safe_name = sanitize_for_logging(request.subject_name)
            try:
                result = engine.screen(request, timeout=timeout)
            except AMLError as e:
                logger.error(f"✗ Re-screening {safe_name} ({previous_id}) failed: {e}")
                failures.append({'screening_id': str(previous_id), **e.to_dict()})
                continue

            result.metadata['rescreen_of'] = str(previous_id)
            with db_provider.session_scope() as session:
                repo = ScreeningRepository(session, engine.config.review)
                new_id = repo.save_screening(result, request, performed_by)
                repo.save_matches(new_id, result.matches)
                repo.set_monitoring(previous_id, False, performed_by)
                repo.set_monitoring(new_id, True, performed_by)

            risk_level = result.risk_level.value if result.risk_level else None
            changed = previous_level is None or risk_level != previous_level.value
            if changed:
                logger.warning(f"⚠ Risk change for {safe_name}: "
                               f"{previous_level.value if previous_level else None} -> {risk_level}")
            rescreened.append({
                'previous_id': str(previous_id),
                'screening_id': str(new_id),
                'risk_score': result.risk_score,
                'risk_level': risk_level,
                'risk_changed': changed,
                'complete': result.complete,
            })

    return {
        'total': len(monitored),
        'rescreened': rescreened,
        'failed': failures,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AML screening scheduled jobs")
    parser.add_argument('job', choices=['refresh', 'rescreen'])
    parser.add_argument('--force', action='store_true', help="Refresh even if lists are fresh")
    parser.add_argument('--api-url', help="Base URL of the running API (refresh job)")
    parser.add_argument('--config', help="Path to config.yaml")
    args = parser.parse_args(argv)

    config = get_config(args.config)
    setup_logging(config.logging)

    if args.job == 'refresh':
        api_url = args.api_url or service_url(config.api)
        try:
            data = trigger_service_refresh(api_url, force=args.force,
                                           api_key=os.getenv(config.api.api_key_env))
        except requests.RequestException as e:
            logger.error(f"✗ List refresh via {api_url} failed: {e}")
            return 1
        if not data.get('refreshed', True):
            logger.info("Lists are fresh, no refresh needed")
        elif data['failed']:
            logger.warning(f"⚠ Refresh finished with failed lists: {sorted(data['failed'])}")
        else:
            logger.info(f"✓ Refreshed {len(data['loaded'])} lists")
        return 0 if data['success'] else 1

    store = ListStore.from_config(config)
    store.init()
    db_provider = DatabaseSessionProvider.from_config(config)
    db_provider.create_tables()
    try:
        summary = rescreen_monitored(ScreeningEngine(store, config=config), db_provider)
    finally:
        db_provider.close()
    logger.info(f"✓ Re-screened {len(summary['rescreened'])}/{summary['total']} "
                f"({len(summary['failed'])} failed)")
    return 0 if not summary['failed'] else 1


if __name__ == "__main__":
    sys.exit(main())
