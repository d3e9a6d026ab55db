"""
List Store

Holds the in-memory watchlist corpora as an immutable ListSnapshot. A
refresh builds a complete new snapshot off to the side (single writer) and
swaps the reference under a brief lock, so readers always see a consistent
corpus and never a partially populated one.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from dataclasses import dataclass, field

from aml_errors import ListUnavailableError
from aml_models import MatchType, WatchlistEntity
from list_providers import ListProvider, build_providers
from metrics import record_list_refresh, set_list_entities

logger = logging.getLogger(__name__)

DEFAULT_STALENESS = timedelta(hours=24)


@dataclass(frozen=True)
class SourceStatus:
    """Load state of one source list inside a snapshot"""
    list_id: str
    match_type: MatchType
    loaded: bool
    entity_count: int = 0
    refreshed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def stale(self) -> bool:
        """Serving data from an earlier refresh after a failed fetch"""
        return self.loaded and self.error is not None

    def to_dict(self) -> Dict:
        return {
            'list_id': self.list_id,
            'match_type': self.match_type.value,
            'loaded': self.loaded,
            'stale': self.stale,
            'entity_count': self.entity_count,
            'refreshed_at': self.refreshed_at.isoformat() if self.refreshed_at else None,
            'error': self.error,
        }


@dataclass(frozen=True)
class ListSnapshot:
    """Immutable view of every corpus at one refresh"""
    entities_by_list: Mapping[str, Tuple[WatchlistEntity, ...]] = field(default_factory=dict)
    sources: Mapping[str, SourceStatus] = field(default_factory=dict)
    refreshed_at: Optional[datetime] = None

    def corpus(self, match_type: MatchType) -> Tuple[WatchlistEntity, ...]:
        """All loaded entities feeding one corpus, in source-list order"""
        entities: List[WatchlistEntity] = []
        for list_id, status in self.sources.items():
            if status.match_type == match_type:
                entities.extend(self.entities_by_list.get(list_id, ()))
        return tuple(entities)

    def list_ids(self, match_type: MatchType) -> List[str]:
        return [s.list_id for s in self.sources.values() if s.match_type == match_type]

    def unavailable_sources(self, match_type: Optional[MatchType] = None) -> List[str]:
        """Source lists with no usable data"""
        return [
            s.list_id for s in self.sources.values()
            if not s.loaded and (match_type is None or s.match_type == match_type)
        ]

    def is_available(self, match_type: MatchType) -> bool:
        """True when the corpus has sources and all of them loaded"""
        return bool(self.list_ids(match_type)) and not self.unavailable_sources(match_type)

    @property
    def total_entities(self) -> int:
        return sum(len(v) for v in self.entities_by_list.values())


@dataclass
class RefreshReport:
    refreshed_at: datetime
    loaded: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict:
        return {
            'refreshed_at': self.refreshed_at.isoformat(),
            'loaded': self.loaded,
            'failed': self.failed,
            'success': self.success,
        }


class ListStore:
    """Explicit lifecycle for the watchlist cache: init / refresh / snapshot

    Args:
        providers: List providers to pull sources from
        staleness: Age after which needs_refresh() reports True
    """

    def __init__(self, providers: Iterable[ListProvider], staleness: timedelta = DEFAULT_STALENESS):
        self._providers = list(providers)
        self.staleness = staleness
        self._snapshot = ListSnapshot()
        self._refresh_lock = threading.Lock()
        self._swap_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, providers: Optional[Iterable[ListProvider]] = None) -> 'ListStore':
        return cls(
            providers if providers is not None else build_providers(config),
            staleness=timedelta(hours=config.data.staleness_hours),
        )

    def snapshot(self) -> ListSnapshot:
        with self._swap_lock:
            return self._snapshot

    @property
    def loaded(self) -> bool:
        return self.snapshot().refreshed_at is not None

    def init(self) -> Optional[RefreshReport]:
        """Load lists once; no-op when a snapshot already exists"""
        if self.loaded:
            return None
        return self.refresh()

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        snap = self.snapshot()
        refreshed_at = snap.refreshed_at
        if refreshed_at is None or snap.unavailable_sources():
            return True
        now = now or datetime.now(timezone.utc)
        return now - refreshed_at > self.staleness

    @staticmethod
    def _fetch_source(provider: ListProvider, list_id: str) -> Tuple[WatchlistEntity, ...]:
        """Fetch one list; any provider failure counts as the list being unavailable"""
        try:
            return tuple(provider.fetch_source_list(list_id))
        except ListUnavailableError:
            raise
        except Exception as e:
            logger.exception(f"✗ Unexpected error loading {list_id}")
            raise ListUnavailableError(list_id, f"Unexpected error loading {list_id}: {e}") from e

    def refresh(self) -> RefreshReport:
        """Fetch every source and swap in a new snapshot

        A failed source keeps its data from the previous snapshot (flagged
        stale); a source that never loaded is reported unavailable. Only
        one refresh runs at a time.
        """
        with self._refresh_lock:
            previous = self.snapshot()
            now = datetime.now(timezone.utc)
            report = RefreshReport(refreshed_at=now)
            entities_by_list: Dict[str, Tuple[WatchlistEntity, ...]] = {}
            sources: Dict[str, SourceStatus] = {}

            for provider in self._providers:
                for list_id, match_type in provider.sources().items():
                    try:
                        entities = self._fetch_source(provider, list_id)
                    except ListUnavailableError as e:
                        logger.warning(f"⚠ {list_id} unavailable: {e}")
                        report.failed[list_id] = str(e)
                        record_list_refresh(list_id, 'failed')
                        prior = previous.sources.get(list_id)
                        if prior is not None and prior.loaded:
                            entities_by_list[list_id] = previous.entities_by_list.get(list_id, ())
                            sources[list_id] = SourceStatus(
                                list_id, match_type, loaded=True,
                                entity_count=prior.entity_count,
                                refreshed_at=prior.refreshed_at, error=str(e)
                            )
                        else:
                            sources[list_id] = SourceStatus(list_id, match_type, loaded=False, error=str(e))
                        continue

                    entities_by_list[list_id] = entities
                    sources[list_id] = SourceStatus(
                        list_id, match_type, loaded=True,
                        entity_count=len(entities), refreshed_at=now
                    )
                    report.loaded[list_id] = len(entities)
                    record_list_refresh(list_id, 'loaded')

            new_snapshot = ListSnapshot(
                entities_by_list=MappingProxyType(entities_by_list),
                sources=MappingProxyType(sources),
                refreshed_at=now
            )
            with self._swap_lock:
                self._snapshot = new_snapshot

        for match_type in MatchType:
            set_list_entities(match_type.value, len(new_snapshot.corpus(match_type)))
        logger.info(f"✓ List refresh complete: {new_snapshot.total_entities} entities from "
                    f"{len(report.loaded)} lists ({len(report.failed)} failed)")
        return report

    def stats(self) -> Dict:
        """Totals by corpus and per-source status"""
        snap = self.snapshot()
        return {
            'total': snap.total_entities,
            'by_match_type': {mt.value: len(snap.corpus(mt)) for mt in MatchType},
            'sources': [s.to_dict() for s in snap.sources.values()],
            'last_refreshed': snap.refreshed_at.isoformat() if snap.refreshed_at else None,
            'needs_refresh': self.needs_refresh(),
        }
