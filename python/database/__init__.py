"""
Database Package for the AML Screening Engine

This package provides:
- SQLAlchemy ORM models for screenings, matches and the audit trail
- Session provider for FastAPI dependencies, the CLI and scheduled jobs
- Repository pattern for data access
"""

from database.models import (
    Base,
    AuditAction,
    ScreeningRecord,
    MatchRecord,
    AuditRecord,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    db_retry,
    create_test_provider,
)
from database.repositories import ScreeningRepository

__all__ = [
    # Models
    'Base',
    'AuditAction',
    'ScreeningRecord',
    'MatchRecord',
    'AuditRecord',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'db_retry',
    'create_test_provider',
    # Repositories
    'ScreeningRepository',
]
