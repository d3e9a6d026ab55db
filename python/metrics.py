"""
Screening Performance Monitoring

This module provides:
- Operation timing context manager for slow operation detection
- Prometheus metrics for screenings and list refreshes
- Thread-safe per-operation statistics exposed by the API

Usage:
    from metrics import operation_timer

    with operation_timer("screen"):
        result = engine.screen(request)
"""

import logging
import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any, Callable

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

SLOW_OPERATION_THRESHOLD_MS = 2000.0


# ============================================
# PROMETHEUS METRICS
# ============================================

operation_duration = Histogram(
    'aml_operation_duration_seconds',
    'Duration of screening engine operations in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

screenings_total = Counter(
    'aml_screenings_total',
    'Total number of screenings by outcome',
    ['risk_level', 'complete']
)

list_refresh_total = Counter(
    'aml_list_refresh_total',
    'Source list fetches by outcome',
    ['list_id', 'outcome']
)

list_entities = Gauge(
    'aml_list_entities',
    'Entities currently loaded per corpus',
    ['match_type']
)


def record_screening(risk_level: Optional[str], complete: bool) -> None:
    screenings_total.labels(risk_level=risk_level or 'UNDETERMINED', complete=str(complete).lower()).inc()


def record_list_refresh(list_id: str, outcome: str) -> None:
    list_refresh_total.labels(list_id=list_id, outcome=outcome).inc()


def set_list_entities(match_type: str, count: int) -> None:
    list_entities.labels(match_type=match_type).set(count)


# ============================================
# OPERATION STATS TRACKING
# ============================================

@dataclass
class OperationStats:
    """Statistics for a single operation type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = float('inf')
    max_time_ms: float = 0.0
    errors: int = 0
    slow: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.min_time_ms = min(self.min_time_ms, duration_ms)
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()
        if error:
            self.errors += 1
        if slow:
            self.slow += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'min_time_ms': round(self.min_time_ms, 2) if self.min_time_ms != float('inf') else 0.0,
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow': self.slow,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class OperationStatsCollector:
    """Thread-safe collector for operation statistics."""

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = OperationStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stat = self._stats.get(operation)
                return stat.to_dict() if stat else {}
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {op: stats.to_dict() for op, stats in self._stats.items()}
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = OperationStatsCollector()


def get_operation_stats(operation: Optional[str] = None) -> Dict[str, Any]:
    return _stats_collector.get_stats(operation)


def reset_operation_stats() -> None:
    _stats_collector.reset()


# ============================================
# OPERATION TIMER
# ============================================

@contextmanager
def operation_timer(operation: str):
    """
    Context manager to time and monitor an operation.

    Records duration in Prometheus and in the stats collector; logs slow runs.

    Args:
        operation: Name of the operation (e.g., 'screen', 'save_screening')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000
        is_slow = duration_ms > SLOW_OPERATION_THRESHOLD_MS

        _stats_collector.record(operation, duration_ms, error=error_occurred, slow=is_slow)

        status = "error" if error_occurred else "success"
        operation_duration.labels(operation=operation, status=status).observe(duration)

        if is_slow:
            logger.warning(
                f"SLOW OPERATION: {operation} took {duration_ms:.2f}ms "
                f"(threshold: {SLOW_OPERATION_THRESHOLD_MS}ms)"
            )


def timed_operation(operation: str):
    """
    Decorator form of operation_timer.

    Usage:
        @timed_operation("save_screening")
        def save_screening(self, result, request):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with operation_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator
