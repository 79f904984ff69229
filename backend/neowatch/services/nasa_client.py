import logging
from datetime import date, datetime, timedelta, timezone

import requests

from neowatch.config import NASA_API_KEY, NASA_FEED_URL, NASA_LOOKUP_URL, NASA_TIMEOUT_SECONDS
from neowatch.schemas import FeedResult

logger = logging.getLogger(__name__)

_feed_cache: dict[tuple[str, str], tuple[datetime, dict]] = {}
_lookup_cache: dict[str, tuple[datetime, dict]] = {}
_FEED_TTL_SECONDS = 90
_LOOKUP_TTL_SECONDS = 60 * 60 * 6
# Cache entries older than this are evicted on the next write
_STALE_HORIZON_SECONDS = 60 * 60 * 24
# NeoWs rejects feed windows longer than 7 days
_MAX_FEED_SPAN_DAYS = 6


class FeedUnavailable(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _cache_get(cache: dict, key: str | tuple[str, str], ttl_seconds: int) -> dict | None:
    cached = cache.get(key)
    if not cached:
        return None
    ts, payload = cached
    if _now_utc() - ts > timedelta(seconds=ttl_seconds):
        return None
    return payload


def _cache_set(cache: dict, key: str | tuple[str, str], payload: dict) -> None:
    now = _now_utc()
    horizon = now - timedelta(seconds=_STALE_HORIZON_SECONDS)
    for old_key in [k for k, (ts, _) in cache.items() if ts < horizon]:
        del cache[old_key]
    cache[key] = (now, payload)


def clear_cache() -> None:
    _feed_cache.clear()
    _lookup_cache.clear()


def _looks_like_rate_limit(exc: requests.RequestException) -> bool:
    response = getattr(exc, 'response', None)
    status = getattr(response, 'status_code', None)
    if status == 429:
        return True
    if status in (401, 403) and response is not None:
        try:
            body = response.json()
            text = str(body).lower()
        except ValueError:
            text = (response.text or '').lower()
        if 'rate limit' in text or 'too many requests' in text:
            return True
    return False


def _describe_nasa_error(exc: requests.RequestException) -> FeedUnavailable:
    response = getattr(exc, 'response', None)
    status = getattr(response, 'status_code', None)
    if _looks_like_rate_limit(exc):
        return FeedUnavailable('NASA API rate limit reached', status)
    if status in (401, 403):
        return FeedUnavailable('NASA API key rejected the request', status)
    return FeedUnavailable(f'Unable to fetch data from NASA NeoWs: {exc}', status)


def _fetch_feed_chunk(start_date: date, end_date: date) -> dict:
    cache_key = (start_date.isoformat(), end_date.isoformat())
    fresh_cache = _cache_get(_feed_cache, cache_key, _FEED_TTL_SECONDS)
    if fresh_cache is not None:
        return fresh_cache

    params = {
        'start_date': cache_key[0],
        'end_date': cache_key[1],
        'api_key': NASA_API_KEY,
    }
    logger.info('Fetching NEO feed from NASA: %s to %s', cache_key[0], cache_key[1])
    try:
        response = requests.get(NASA_FEED_URL, params=params, timeout=NASA_TIMEOUT_SECONDS)
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        if _looks_like_rate_limit(exc):
            stale = _feed_cache.get(cache_key)
            if stale:
                logger.warning('NASA rate limit hit; serving stale feed for %s..%s', *cache_key)
                return stale[1]
        raise _describe_nasa_error(exc) from exc
    except ValueError as exc:
        raise FeedUnavailable(f'NASA feed returned invalid JSON: {exc}') from exc

    days = payload.get('near_earth_objects') if isinstance(payload, dict) else None
    if not isinstance(days, dict) or not all(isinstance(rows, list) for rows in days.values()):
        raise FeedUnavailable('NASA feed returned an unexpected payload')

    _cache_set(_feed_cache, cache_key, payload)
    return payload


def fetch_neo_feed(start_date: date, end_date: date | None = None) -> FeedResult:
    """Fetch the NeoWs feed for a date range.

    Never raises for transport or upstream problems: those come back as a
    failed result carrying no records, which callers treat as nothing to do.
    """
    end_date = end_date or start_date
    if end_date < start_date:
        return FeedResult(success=True)

    merged: dict[str, list] = {}
    cursor = start_date
    try:
        while cursor <= end_date:
            chunk_end = min(cursor + timedelta(days=_MAX_FEED_SPAN_DAYS), end_date)
            chunk = _fetch_feed_chunk(cursor, chunk_end)
            for day, rows in (chunk.get('near_earth_objects') or {}).items():
                merged.setdefault(day, []).extend(rows or [])
            cursor = chunk_end + timedelta(days=1)
    except FeedUnavailable as exc:
        logger.error('NASA feed fetch failed (status=%s): %s', exc.status, exc)
        return FeedResult(success=False, error=str(exc))

    total = sum(len(rows) for rows in merged.values())
    logger.info('Fetched %d NEOs across %d day(s)', total, len(merged))
    return FeedResult(success=True, element_count=total, near_earth_objects=merged)


def fetch_neo_lookup(asteroid_id: str) -> dict | None:
    fresh_cache = _cache_get(_lookup_cache, asteroid_id, _LOOKUP_TTL_SECONDS)
    if fresh_cache is not None:
        return fresh_cache

    params = {'api_key': NASA_API_KEY}
    try:
        response = requests.get(f'{NASA_LOOKUP_URL}/{asteroid_id}', params=params, timeout=NASA_TIMEOUT_SECONDS)
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        if _looks_like_rate_limit(exc):
            stale = _lookup_cache.get(asteroid_id)
            if stale:
                return stale[1]
        logger.error('NASA lookup for %s failed: %s', asteroid_id, _describe_nasa_error(exc))
        return None
    except ValueError as exc:
        logger.error('NASA lookup for %s returned invalid JSON: %s', asteroid_id, exc)
        return None

    if not isinstance(payload, dict):
        logger.error('NASA lookup for %s returned an unexpected payload', asteroid_id)
        return None

    _cache_set(_lookup_cache, asteroid_id, payload)
    return payload
