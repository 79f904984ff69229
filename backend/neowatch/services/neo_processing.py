import logging
from datetime import datetime, time, timezone

from dateutil import parser as date_parser

from neowatch.schemas import NeoRecord, RiskInput

logger = logging.getLogger(__name__)


def to_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _mapping(value, field: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f'{field} must be a mapping, got {type(value).__name__}')
    return value


def pick_close_approach(asteroid, approach_date=None):
    entries = asteroid.get('close_approach_data') or []
    if not isinstance(entries, list):
        raise ValueError(f'close_approach_data must be a list, got {type(entries).__name__}')
    entries = [_mapping(entry, 'close_approach_data entry') for entry in entries]
    if approach_date:
        for idx, entry in enumerate(entries):
            if entry.get('close_approach_date') == approach_date and entry.get('orbiting_body') == 'Earth':
                return idx, entry
    for idx, entry in enumerate(entries):
        if entry.get('orbiting_body') == 'Earth':
            return idx, entry
    if entries:
        return 0, entries[0]
    return None, {}


def parse_approach_datetime(close_data) -> datetime | None:
    """Full timestamp ('2024-Jan-15 12:34') when present, else midnight of the approach date."""
    full = close_data.get('close_approach_date_full')
    if full:
        try:
            parsed = date_parser.parse(full)
        except (ValueError, OverflowError, TypeError) as exc:
            logger.debug("Unparseable close_approach_date_full %r: %s", full, exc)
        else:
            return parsed.replace(tzinfo=timezone.utc) if parsed.tzinfo is None else parsed.astimezone(timezone.utc)

    day = close_data.get('close_approach_date')
    if day:
        try:
            parsed_day = date_parser.parse(day).date()
        except (ValueError, OverflowError, TypeError) as exc:
            logger.debug("Unparseable close_approach_date %r: %s", day, exc)
            return None
        return datetime.combine(parsed_day, time.min, tzinfo=timezone.utc)
    return None


def normalize_feed_record(asteroid, approach_date=None) -> NeoRecord:
    if not isinstance(asteroid, dict):
        raise TypeError(f'feed record must be a mapping, got {type(asteroid).__name__}')

    neo_id = asteroid.get('neo_reference_id') or asteroid.get('id')
    if not neo_id:
        raise ValueError(f"feed record {asteroid.get('name')!r} has no id")

    _, close_data = pick_close_approach(asteroid, approach_date)
    rel_vel = _mapping(close_data.get('relative_velocity'), 'relative_velocity')
    miss_dist = _mapping(close_data.get('miss_distance'), 'miss_distance')
    diameter = _mapping(
        _mapping(asteroid.get('estimated_diameter'), 'estimated_diameter').get('meters'),
        'estimated_diameter.meters',
    )

    return NeoRecord(
        neo_reference_id=str(neo_id),
        name=asteroid.get('name') or str(neo_id),
        nasa_jpl_url=asteroid.get('nasa_jpl_url'),
        absolute_magnitude_h=to_float(asteroid.get('absolute_magnitude_h')),
        is_potentially_hazardous=bool(asteroid.get('is_potentially_hazardous_asteroid', False)),
        estimated_diameter_min_m=to_float(diameter.get('estimated_diameter_min')),
        estimated_diameter_max_m=to_float(diameter.get('estimated_diameter_max')),
        close_approach_date=parse_approach_datetime(close_data),
        close_approach_date_full=close_data.get('close_approach_date_full'),
        miss_distance_km=to_float(miss_dist.get('kilometers')),
        miss_distance_au=to_float(miss_dist.get('astronomical')),
        miss_distance_lunar=to_float(miss_dist.get('lunar')),
        relative_velocity_kps=to_float(rel_vel.get('kilometers_per_second')),
        relative_velocity_kph=to_float(rel_vel.get('kilometers_per_hour')),
        orbiting_body=close_data.get('orbiting_body', 'Earth'),
        raw_data=asteroid,
    )


def to_risk_input(neo) -> RiskInput:
    """Works for both a NeoRecord and a stored Asteroid row; they share attribute names."""
    return RiskInput(
        is_hazardous=bool(getattr(neo, 'is_potentially_hazardous', False)),
        diameter_max_m=getattr(neo, 'estimated_diameter_max_m', None) or 0.0,
        miss_distance_lunar=getattr(neo, 'miss_distance_lunar', None) or 0.0,
        velocity_kps=getattr(neo, 'relative_velocity_kps', None) or 0.0,
    )


def flatten_feed(neo_by_date) -> list[dict]:
    items = []
    for approach_date in sorted(neo_by_date or {}):
        items.extend(neo_by_date[approach_date] or [])
    return items
