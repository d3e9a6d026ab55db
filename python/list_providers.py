"""
Watchlist providers

A ListProvider knows a set of source lists and fetches each one as a list of
WatchlistEntity records. The ListStore calls providers during refresh; the
screening engine never does.

Variants:
- SampleListProvider: built-in sample sanctions/PEP/adverse-media records
- JsonFeedProvider: HTTP JSON feed of entity records
- UnConsolidatedListProvider: UN Security Council consolidated XML list
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from lxml import etree
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential, RetryError,
)

from aml_errors import ListUnavailableError
from aml_models import (
    MatchType, WatchlistEntity, ENTITY_INDIVIDUAL, ENTITY_ORGANISATION, parse_iso_date,
)
from xml_utils import get_text_from_element, secure_fromstring

logger = logging.getLogger(__name__)

OFAC_SDN_LIST = "OFAC SDN List"
UN_CONSOLIDATED_LIST = "UN Consolidated List"
EU_SANCTIONS_LIST = "EU Sanctions List"
UK_PEP_DATABASE = "UK PEP Database"
EU_PEP_DATABASE = "EU PEP Database"
ADVERSE_MEDIA_SAMPLE = "Adverse Media Sample"

TRANSIENT_HTTP_ERRORS = (requests.ConnectionError, requests.Timeout)


class ListProvider(ABC):
    """Source of one or more watchlists"""

    @abstractmethod
    def sources(self) -> Dict[str, MatchType]:
        """Map of list id to the corpus it feeds"""

    @abstractmethod
    def fetch_source_list(self, list_id: str) -> List[WatchlistEntity]:
        """Fetch every entity of one list

        Raises:
            ListUnavailableError: If the list cannot be fetched or parsed
        """


def http_get(url: str, timeout: int, attempts: int,
             session: Optional[requests.Session] = None) -> requests.Response:
    """GET with retries on connection errors and timeouts"""
    client = session or requests

    @retry(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(TRANSIENT_HTTP_ERRORS),
        reraise=True,
    )
    def _get() -> requests.Response:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        return response

    return _get()


class SampleListProvider(ListProvider):
    """In-memory sample data for development and tests

    Args:
        lists: Optional override of {list_id: (match_type, [entity dicts])}
    """

    def __init__(self, lists: Optional[Dict[str, Any]] = None):
        self._lists = lists if lists is not None else _sample_lists()

    def sources(self) -> Dict[str, MatchType]:
        return {list_id: match_type for list_id, (match_type, _) in self._lists.items()}

    def fetch_source_list(self, list_id: str) -> List[WatchlistEntity]:
        if list_id not in self._lists:
            raise ListUnavailableError(list_id, f"Unknown sample list: {list_id}")
        _, records = self._lists[list_id]
        loaded_at = datetime.now(timezone.utc)
        entities = []
        for record in records:
            record = dict(record)
            record.setdefault('source_lists', [list_id])
            record.setdefault('last_updated', loaded_at.isoformat())
            entities.append(WatchlistEntity.from_dict(record))
        logger.info(f"✓ Loaded {len(entities)} entries from {list_id} (sample data)")
        return entities


class JsonFeedProvider(ListProvider):
    """One watchlist published as a JSON array of entity records

    Each record uses the keys of WatchlistEntity.to_dict(); ``id`` and
    ``name`` are required.
    """

    def __init__(self, list_id: str, match_type: MatchType, url: str,
                 timeout: int = 60, retry_attempts: int = 3,
                 session: Optional[requests.Session] = None):
        self.list_id = list_id
        self.match_type = match_type
        self.url = url
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.session = session

    def sources(self) -> Dict[str, MatchType]:
        return {self.list_id: self.match_type}

    def fetch_source_list(self, list_id: str) -> List[WatchlistEntity]:
        if list_id != self.list_id:
            raise ListUnavailableError(list_id, f"Feed {self.url} does not serve {list_id}")

        logger.info(f"Downloading {list_id} from {self.url}...")
        try:
            response = http_get(self.url, self.timeout, self.retry_attempts, self.session)
            payload = response.json()
        except (requests.RequestException, RetryError, ValueError) as e:
            logger.error(f"✗ Error downloading {list_id}: {e}")
            raise ListUnavailableError(list_id, f"Download failed for {list_id}: {e}") from e

        records = payload.get('entities', []) if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise ListUnavailableError(list_id, f"Unexpected payload for {list_id}")

        entities = []
        skipped = 0
        for record in records:
            if not isinstance(record, dict) or not record.get('id') or not record.get('name'):
                skipped += 1
                continue
            record = dict(record)
            record.setdefault('source_lists', [list_id])
            record.setdefault('source_url', self.url)
            try:
                entities.append(WatchlistEntity.from_dict(record))
            except (ValueError, TypeError) as e:
                logger.debug(f"Bad record {record.get('id')!r} in {list_id}: {e}")
                skipped += 1
        if skipped:
            logger.warning(f"⚠ Skipped {skipped} malformed records in {list_id}")
        logger.info(f"✓ Parsed {len(entities)} entries from {list_id}")
        return entities


class UnConsolidatedListProvider(ListProvider):
    """UN Security Council consolidated sanctions list (XML)"""

    def __init__(self, url: str, list_id: str = UN_CONSOLIDATED_LIST,
                 timeout: int = 120, retry_attempts: int = 3,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.list_id = list_id
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.session = session

    def sources(self) -> Dict[str, MatchType]:
        return {self.list_id: MatchType.SANCTIONS}

    def fetch_source_list(self, list_id: str) -> List[WatchlistEntity]:
        if list_id != self.list_id:
            raise ListUnavailableError(list_id, f"UN provider does not serve {list_id}")

        logger.info(f"Downloading UN list from {self.url}...")
        try:
            response = http_get(self.url, self.timeout, self.retry_attempts, self.session)
        except (requests.RequestException, RetryError) as e:
            logger.error(f"✗ Error downloading UN list: {e}")
            raise ListUnavailableError(list_id, f"Download failed for {list_id}: {e}") from e

        try:
            return self.parse(response.content)
        except etree.XMLSyntaxError as e:
            logger.error(f"✗ Error parsing UN XML: {e}")
            raise ListUnavailableError(list_id, f"Malformed XML for {list_id}: {e}") from e

    def parse(self, content: bytes) -> List[WatchlistEntity]:
        """Parse the consolidated list document into entities"""
        root = secure_fromstring(content)
        loaded_at = datetime.now(timezone.utc)
        entities = []

        for elem in root.findall('.//INDIVIDUAL'):
            entity = self._parse_individual(elem, loaded_at)
            if entity:
                entities.append(entity)

        for elem in root.findall('.//ENTITY'):
            entity = self._parse_entity(elem, loaded_at)
            if entity:
                entities.append(entity)

        individuals = len([e for e in entities if e.entity_type == ENTITY_INDIVIDUAL])
        logger.info(f"✓ Parsed {len(entities)} UN entities "
                    f"({individuals} individuals, {len(entities) - individuals} entities)")
        return entities

    def _common(self, elem: Any) -> Dict[str, Any]:
        programs = [p for p in (get_text_from_element(elem, 'UN_LIST_TYPE'),
                                get_text_from_element(elem, 'REFERENCE_NUMBER')) if p]
        return {
            'programs': tuple(programs),
            'remarks': get_text_from_element(elem, 'COMMENTS1'),
            'source_lists': (self.list_id,),
            'source_url': self.url,
        }

    @staticmethod
    def _addresses(elem: Any, tag: str) -> List[str]:
        addresses = []
        for addr in elem.findall(f'.//{tag}'):
            parts = [get_text_from_element(addr, key) for key in ('STREET', 'CITY', 'STATE_PROVINCE', 'COUNTRY')]
            text = ', '.join(p for p in parts if p)
            if text:
                addresses.append(text)
        return addresses

    def _parse_individual(self, elem: Any, loaded_at: datetime) -> Optional[WatchlistEntity]:
        dataid = get_text_from_element(elem, 'DATAID')
        name_parts = [get_text_from_element(elem, tag) for tag in
                      ('FIRST_NAME', 'SECOND_NAME', 'THIRD_NAME', 'FOURTH_NAME')]
        name_parts = [n for n in name_parts if n]
        if not dataid or not name_parts:
            return None

        aliases = [get_text_from_element(a, 'ALIAS_NAME') for a in elem.findall('.//INDIVIDUAL_ALIAS')]
        nationalities = [v.text.strip() for v in elem.findall('.//NATIONALITY/VALUE') if v.text]
        dob = get_text_from_element(elem, './/INDIVIDUAL_DATE_OF_BIRTH/DATE')
        pob_parts = [get_text_from_element(elem, f'.//INDIVIDUAL_PLACE_OF_BIRTH/{tag}')
                     for tag in ('CITY', 'COUNTRY')]

        return WatchlistEntity(
            id=f"UN-{dataid}",
            name=' '.join(name_parts),
            entity_type=ENTITY_INDIVIDUAL,
            aliases=tuple(a for a in aliases if a),
            date_of_birth=parse_iso_date(dob),
            place_of_birth=', '.join(p for p in pob_parts if p) or None,
            nationalities=tuple(nationalities),
            addresses=tuple(self._addresses(elem, 'INDIVIDUAL_ADDRESS')),
            last_updated=loaded_at,
            **self._common(elem)
        )

    def _parse_entity(self, elem: Any, loaded_at: datetime) -> Optional[WatchlistEntity]:
        dataid = get_text_from_element(elem, 'DATAID')
        name = get_text_from_element(elem, 'FIRST_NAME')  # Entity name is in FIRST_NAME
        if not dataid or not name:
            return None

        aliases = [get_text_from_element(a, 'ALIAS_NAME') for a in elem.findall('.//ENTITY_ALIAS')]
        return WatchlistEntity(
            id=f"UN-{dataid}",
            name=name,
            entity_type=ENTITY_ORGANISATION,
            aliases=tuple(a for a in aliases if a),
            addresses=tuple(self._addresses(elem, 'ENTITY_ADDRESS')),
            last_updated=loaded_at,
            **self._common(elem)
        )


def build_providers(config) -> List[ListProvider]:
    """Providers for the configured data sources"""
    providers: List[ListProvider] = []
    data = config.data
    if data.use_sample_data:
        providers.append(SampleListProvider())
    if data.un_enabled:
        providers.append(UnConsolidatedListProvider(
            data.un_url, timeout=data.request_timeout, retry_attempts=data.retry_attempts
        ))
    for feed in data.feeds:
        providers.append(JsonFeedProvider(
            feed.list_id, MatchType(feed.match_type), feed.url,
            timeout=data.request_timeout, retry_attempts=data.retry_attempts
        ))
    return providers


def _sample_lists() -> Dict[str, Any]:
    return {
        OFAC_SDN_LIST: (MatchType.SANCTIONS, [
            {
                'id': 'OFAC-001',
                'name': 'PUTIN, Vladimir Vladimirovich',
                'aliases': ['PUTIN, Vladimir', 'Putin Vladimir'],
                'entity_type': ENTITY_INDIVIDUAL,
                'programs': ['RUSSIA-EO14024'],
                'date_of_birth': '1952-10-07',
                'place_of_birth': 'Leningrad, Russia',
                'nationalities': ['Russia'],
                'remarks': 'President of the Russian Federation',
                'source_url': 'https://sanctionslistservice.ofac.treas.gov/',
            },
            {
                'id': 'OFAC-002',
                'name': 'ISLAMIC STATE IN IRAQ AND THE LEVANT',
                'aliases': ['ISIS', 'ISIL', 'DAESH', 'Islamic State'],
                'entity_type': ENTITY_ORGANISATION,
                'programs': ['SDGT', 'FTO'],
                'remarks': 'Terrorist organization',
                'source_url': 'https://sanctionslistservice.ofac.treas.gov/',
            },
        ]),
        UN_CONSOLIDATED_LIST: (MatchType.SANCTIONS, [
            {
                'id': 'UN-001',
                'name': 'AL-QAIDA',
                'aliases': ['Al-Qaida', 'Al Qaeda', 'The Base'],
                'entity_type': ENTITY_ORGANISATION,
                'programs': ['UN Security Council Resolution 1267'],
                'remarks': 'Terrorist organization',
                'source_url': 'https://scsanctions.un.org/',
            },
        ]),
        EU_SANCTIONS_LIST: (MatchType.SANCTIONS, [
            {
                'id': 'EU-001',
                'name': 'LUKASHENKO, Alexander',
                'aliases': ['Lukashenka, Alyaksandr', 'Lukashenko, Aleksandr'],
                'entity_type': ENTITY_INDIVIDUAL,
                'programs': ['Belarus'],
                'date_of_birth': '1954-08-30',
                'nationalities': ['Belarus'],
                'remarks': 'President of Belarus',
                'source_url': 'https://webgate.ec.europa.eu/fsd/',
            },
        ]),
        UK_PEP_DATABASE: (MatchType.PEP, [
            {
                'id': 'PEP-001',
                'name': 'Robert Johnson',
                'entity_type': ENTITY_INDIVIDUAL,
                'date_of_birth': '1965-05-10',
                'nationalities': ['UK'],
                'positions': ['Former Member of Parliament', 'Government Minister'],
            },
        ]),
        EU_PEP_DATABASE: (MatchType.PEP, [
            {
                'id': 'PEP-002',
                'name': 'Maria Garcia',
                'entity_type': ENTITY_INDIVIDUAL,
                'date_of_birth': '1970-08-15',
                'nationalities': ['Spain'],
                'positions': ['Mayor', 'Regional Government Official'],
            },
        ]),
        ADVERSE_MEDIA_SAMPLE: (MatchType.ADVERSE_MEDIA, [
            {
                'id': 'AM-001',
                'name': 'Northgate Offshore Holdings Ltd',
                'aliases': ['Northgate Offshore Holdings'],
                'entity_type': ENTITY_ORGANISATION,
                'remarks': 'Named in press reporting on shell-company layering',
            },
        ]),
    }
