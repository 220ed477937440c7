"""
Upstream data sources (Toronto Open Data CKAN portal).

Every HTTP request goes through one shared rate limiter so the portal sees
at most one request per ``min_delay`` across all sources.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import requests
from pydantic import ValidationError

from ..settings import Settings
from ..utils.errors import DataValidationError, FetchError
from ..utils.throttling import MinDelayRateLimiter, RateLimiter, RateLimiterConfig
from .models import DisruptionRecord, FetchResult, SegmentRecord, Severity

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://ckan0.cf.opendata.inter.prod-toronto.ca'
DATASTORE_PAGE_SIZE = 5000

ROAD_RESTRICTIONS_PACKAGE = 'road-restrictions'
ROAD_RESTRICTIONS_SOURCE = 'Toronto Open Data - Road Restrictions'

TRANSIT_ALERTS_PACKAGE = '9ab4c9af-652f-4a84-abac-afcf40aae882'
TRANSIT_ALERTS_SOURCE = 'Toronto Open Data - TTC Service Alerts'

CENTRELINE_PACKAGE = '1d079757-377b-4564-82df-eb5638583bfb'
CENTRELINE_RESOURCE = 'ad296ebf-fca6-4e67-b3ce-48040a20e6cd'


class CKANClient:
    """
    Minimal client for the CKAN action API.

    Args:
        base_url: Portal root, without ``/api/3``
        rate_limiter: Shared limiter; every request is queued through it
        session: requests session (replaced by a stub in tests)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        page_size: int = DATASTORE_PAGE_SIZE,
    ):
        self.base_url = base_url.rstrip('/')
        self.rate_limiter = rate_limiter or MinDelayRateLimiter()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings: Settings, rate_limiter: Optional[RateLimiter] = None) -> "CKANClient":
        return cls(
            base_url=settings.ckan_base_url,
            rate_limiter=rate_limiter or MinDelayRateLimiter(RateLimiterConfig.from_settings(settings)),
            timeout=settings.http_timeout,
        )

    def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> requests.Response:
        def call() -> requests.Response:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response

        try:
            return self.rate_limiter.execute_queued(call)
        except requests.RequestException as e:
            raise FetchError(f"GET {url} failed: {e}") from e

    def action(self, name: str, **params: Any) -> Any:
        """Call ``/api/3/action/<name>`` and return its ``result``."""
        url = f"{self.base_url}/api/3/action/{name}"
        response = self._get(url, params)
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"CKAN {name} returned invalid JSON") from e
        if not payload.get('success'):
            raise FetchError(f"CKAN {name} returned success=false")
        return payload.get('result')

    def package_show(self, package_id: str) -> dict[str, Any]:
        return self.action('package_show', id=package_id)

    def datastore_search(self, resource_id: str) -> list[dict[str, Any]]:
        """All records of a datastore resource, fetched page by page."""
        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            result = self.action(
                'datastore_search',
                resource_id=resource_id,
                limit=self.page_size,
                offset=offset,
            )
            page = result.get('records') or []
            records.extend(page)
            total = result.get('total', len(records))
            offset += self.page_size
            logger.debug(f"datastore_search {resource_id}: {len(records)}/{total} records")
            if not page or offset >= total:
                break
        return records

    def download(self, url: str) -> Any:
        """Fetch a resource file; JSON bodies are decoded, anything else is returned as ``{'raw': text}``."""
        response = self._get(url)
        try:
            return response.json()
        except ValueError:
            return {'raw': response.text}


class DisruptionSource(ABC):
    """
    Abstract base for disruption feeds.

    Subclasses return candidate rows shaped like ``DisruptionRecord``;
    validation is shared.
    """

    NAME: str = 'source'

    @abstractmethod
    def fetch_rows(self) -> list[dict[str, Any]]:
        """
        Fetch the current feed.

        Raises:
            FetchError: the feed could not be read at all
        """
        pass

    def validate(self, rows: Iterable[dict[str, Any]]) -> tuple[list[DisruptionRecord], list[dict[str, Any]]]:
        """Validate rows against DisruptionRecord; returns (records, error dicts of rejected rows)."""
        records = []
        errors: list[dict[str, Any]] = []
        for row in rows:
            try:
                records.append(DisruptionRecord.model_validate(row))
            except ValidationError as e:
                for err in e.errors():
                    errors.append({**err, 'loc': (row.get('external_id', '?'), *err.get('loc', ()))})
        return records, errors


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, '') else None
    except (TypeError, ValueError):
        return None


def road_restriction_severity(record: dict[str, Any]) -> Severity:
    max_impact = str(record.get('maxImpact') or '').lower()
    curr_impact = str(record.get('currImpact') or '').lower()
    kind = str(record.get('type') or '').lower()

    if 'high' in (max_impact, curr_impact) or kind == 'road_closed':
        return Severity.SEVERE
    if 'medium' in (max_impact, curr_impact):
        return Severity.MODERATE
    return Severity.MINOR


def map_road_restriction(record: dict[str, Any], source_url: str) -> Optional[dict[str, Any]]:
    """
    Map one road restriction record to the fetch contract.

    Records without an upstream id are dropped: the id is the only stable
    identity of a restriction across fetches.
    """
    upstream_id = record.get('id')
    if upstream_id in (None, ''):
        return None

    road = record.get('road') or record.get('street_name') or record.get('location') or 'Unknown Road'
    name = str(record.get('name') or '').strip()
    work_type = record.get('workEventType') or record.get('work_type') or 'Road Work'
    if work_type == 'false':
        work_type = 'Road Work'

    lat = _as_float(record.get('latitude'))
    lon = _as_float(record.get('longitude'))
    if lat is None or lon is None:
        lat = lon = None

    return {
        'external_id': f"road-{upstream_id}",
        'category': 'road',
        'severity': road_restriction_severity(record),
        'title': name or f"{work_type} on {road}",
        'description': record.get('description') or (f"{work_type} - {name}" if name else work_type),
        'affected_lines': [],
        'source_name': ROAD_RESTRICTIONS_SOURCE,
        'source_url': source_url,
        'raw_data': record,
        'latitude': lat,
        'longitude': lon,
    }


def _records_from_payload(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    if 'Closure' in payload:
        return payload['Closure'] or []
    if 'records' in payload:
        return payload['records'] or []
    return (payload.get('result') or {}).get('records') or []


class RoadRestrictionsSource(DisruptionSource):
    """Active road restrictions from the ``road-restrictions`` CKAN package."""

    NAME = ROAD_RESTRICTIONS_SOURCE

    def __init__(self, client: CKANClient, package_id: str = ROAD_RESTRICTIONS_PACKAGE):
        self.client = client
        self.package_id = package_id

    def fetch_rows(self) -> list[dict[str, Any]]:
        package = self.client.package_show(self.package_id)
        resources = package.get('resources') or []
        rows: list[dict[str, Any]] = []
        processed = 0

        for resource in resources:
            fmt = str(resource.get('format') or '').upper()
            datastore = bool(resource.get('datastore_active'))
            if not datastore and fmt not in ('JSON', 'CSV'):
                logger.debug(f"Skipping {fmt} resource {resource.get('name')}")
                continue

            try:
                if datastore:
                    records = self.client.datastore_search(resource['id'])
                elif resource.get('url'):
                    records = _records_from_payload(self.client.download(resource['url']))
                else:
                    continue
            except FetchError as e:
                logger.warning(f"Road restrictions: resource {resource.get('name')} failed: {e}")
                continue

            source_url = resource.get('url') or f"datastore:{resource.get('id')}"
            mapped = [map_road_restriction(r, source_url) for r in records if isinstance(r, dict)]
            kept = [m for m in mapped if m is not None]
            if len(kept) < len(mapped):
                logger.debug(f"Dropped {len(mapped) - len(kept)} road restrictions without an id")
            rows.extend(kept)
            processed += 1

        if resources and processed == 0:
            raise FetchError("no road restriction resource could be read", source=self.NAME)

        logger.info(f"Road restrictions: {len(rows)} records from {processed} resources")
        return rows


def _translated(alert: dict[str, Any], key: str) -> Optional[str]:
    """First non-empty text of a GTFS-RT TranslatedString."""
    for translation in (alert.get(key) or {}).get('translation') or []:
        text = str(translation.get('text') or '').strip()
        if text:
            return text
    return None


def transit_alert_severity(effect: Optional[str], cause: Optional[str]) -> Severity:
    if effect == 'NO_SERVICE' or cause == 'ACCIDENT':
        return Severity.SEVERE
    if effect in ('SIGNIFICANT_DELAYS', 'DETOUR'):
        return Severity.MODERATE
    return Severity.MINOR


def transit_mode(route_ids: list[str]) -> str:
    """Subway for lines 1-4, streetcar for 5xx routes, bus otherwise."""
    if not route_ids or route_ids[0] in ('1', '2', '3', '4'):
        return 'subway'
    if route_ids[0].startswith('5'):
        return 'streetcar'
    return 'bus'


def map_transit_alert(alert: dict[str, Any], source_url: str) -> Optional[dict[str, Any]]:
    """
    Map one GTFS-RT alert (bare or wrapped in ``{'alert': ...}``) to the fetch contract.

    Alerts without an id or a header text are dropped.
    """
    body = alert['alert'] if isinstance(alert.get('alert'), dict) else alert
    upstream_id = alert.get('id') or body.get('id')
    header = _translated(body, 'header_text')
    if upstream_id in (None, '') or header is None:
        return None

    external_id = f"ttc-{upstream_id}"
    if external_id.startswith('ttc-ttc-'):
        external_id = external_id[len('ttc-'):]

    entities = body.get('informed_entity') or []
    route_ids = [str(e['route_id']) for e in entities if isinstance(e, dict) and e.get('route_id')]

    return {
        'external_id': external_id,
        'category': transit_mode(route_ids),
        'severity': transit_alert_severity(body.get('effect'), body.get('cause')),
        'title': header,
        'description': _translated(body, 'description_text') or header,
        'affected_lines': route_ids,
        'source_name': TRANSIT_ALERTS_SOURCE,
        'source_url': source_url,
        'raw_data': alert,
    }


def _alerts_from_payload(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [a for a in payload if isinstance(a, dict)]
    if not isinstance(payload, dict):
        return []
    if 'entity' in payload:
        # FeedMessage: the id lives on the entity, the alert inside it
        return [
            {**e['alert'], 'id': e['alert'].get('id') or e.get('id')}
            for e in payload['entity'] or []
            if isinstance(e, dict) and isinstance(e.get('alert'), dict)
        ]
    return [a for a in payload.get('alerts') or [] if isinstance(a, dict)]


class TransitAlertsSource(DisruptionSource):
    """TTC service alerts (GTFS-RT as JSON) from the latest alert resource of their CKAN package."""

    NAME = TRANSIT_ALERTS_SOURCE

    def __init__(self, client: CKANClient, package_id: str = TRANSIT_ALERTS_PACKAGE):
        self.client = client
        self.package_id = package_id

    @staticmethod
    def _is_alert_resource(resource: dict[str, Any]) -> bool:
        fmt = str(resource.get('format') or '').upper()
        name = str(resource.get('name') or '').lower()
        return fmt in ('JSON', 'GTFS-RT') or 'alert' in name or 'service' in name

    def fetch_rows(self) -> list[dict[str, Any]]:
        package = self.client.package_show(self.package_id)
        resources = [r for r in package.get('resources') or [] if self._is_alert_resource(r) and r.get('url')]
        if not resources:
            logger.warning("Transit alerts: no alert resource in package")
            return []

        latest = max(resources, key=lambda r: str(r.get('last_modified') or ''))
        alerts = _alerts_from_payload(self.client.download(latest['url']))

        mapped = [map_transit_alert(a, latest['url']) for a in alerts]
        rows = [m for m in mapped if m is not None]
        if len(rows) < len(mapped):
            logger.debug(f"Dropped {len(mapped) - len(rows)} transit alerts without an id or header")
        logger.info(f"Transit alerts: {len(rows)} records from {latest.get('name')}")
        return rows


class CentrelineSource:
    """Toronto Centreline street segments from the CKAN datastore."""

    NAME = 'Toronto Centreline'

    def __init__(self, client: CKANClient, resource_id: str = CENTRELINE_RESOURCE):
        self.client = client
        self.resource_id = resource_id

    def fetch_segments(self) -> list[SegmentRecord]:
        rows = self.client.datastore_search(self.resource_id)
        segments = []
        errors: list[dict[str, Any]] = []
        for row in rows:
            if not row.get('geometry') or not row.get('LINEAR_NAME_FULL'):
                continue
            try:
                segments.append(
                    SegmentRecord.model_validate({
                        'centreline_id': row.get('CENTRELINE_ID'),
                        'street_name': row.get('LINEAR_NAME_FULL'),
                        'feature_code': row.get('FEATURE_CODE'),
                        'feature_code_desc': row.get('FEATURE_CODE_DESC'),
                        'from_address': _address_range(row.get('LO_NUM_L'), row.get('HI_NUM_L')),
                        'to_address': _address_range(row.get('LO_NUM_R'), row.get('HI_NUM_R')),
                        'geometry': row.get('geometry'),
                    })
                )
            except (ValidationError, ValueError) as e:
                errors.append({'loc': (row.get('CENTRELINE_ID'),), 'msg': str(e), 'type': type(e).__name__})

        if errors:
            err = DataValidationError(self.NAME, errors)
            logger.warning(f"{err}\n{err.summary()}")
        logger.info(f"Centreline: {len(segments)} segments from {len(rows)} records")
        return segments


def _address_range(lo: Any, hi: Any) -> Optional[str]:
    if lo in (None, '') and hi in (None, ''):
        return None
    return f"{lo or ''}-{hi or ''}"


class DisruptionFetcher:
    """
    Fetches every configured source; a failing source does not stop the others.

    Raises FetchError only when every source failed.
    """

    def __init__(self, sources: Iterable[DisruptionSource]):
        self.sources = list(sources)

    def fetch(self) -> FetchResult:
        result = FetchResult()
        for source in self.sources:
            try:
                rows = source.fetch_rows()
            except Exception as e:
                logger.error(f"Source '{source.NAME}' failed: {e}")
                result.errors[source.NAME] = str(e)
                continue

            records, errors = source.validate(rows)
            if errors:
                err = DataValidationError(source.NAME, errors)
                logger.warning(f"{err}\n{err.summary()}")
                result.invalid_records += len(rows) - len(records)
            result.records.extend(records)
            result.succeeded_sources.append(source.NAME)

        if self.sources and not result.succeeded_sources:
            raise FetchError(f"all {len(self.sources)} sources failed: {result.errors}")
        return result
