import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from neowatch.config import SNAPSHOT_TTL_HOURS
from neowatch.models import Alert, Asteroid, User, utc_now
from neowatch.schemas import NeoRecord, RiskAssessment

logger = logging.getLogger(__name__)


def _apply(asteroid: Asteroid, record: NeoRecord, risk: RiskAssessment, now: datetime) -> None:
    asteroid.name = record.name
    asteroid.nasa_jpl_url = record.nasa_jpl_url
    asteroid.absolute_magnitude_h = record.absolute_magnitude_h
    asteroid.risk_score = risk.score
    asteroid.risk_category = risk.category
    asteroid.is_potentially_hazardous = record.is_potentially_hazardous
    asteroid.estimated_diameter_min_m = record.estimated_diameter_min_m
    asteroid.estimated_diameter_max_m = record.estimated_diameter_max_m
    asteroid.close_approach_date = record.close_approach_date
    asteroid.close_approach_date_full = record.close_approach_date_full
    asteroid.miss_distance_km = record.miss_distance_km
    asteroid.miss_distance_au = record.miss_distance_au
    asteroid.miss_distance_lunar = record.miss_distance_lunar
    asteroid.relative_velocity_kps = record.relative_velocity_kps
    asteroid.relative_velocity_kph = record.relative_velocity_kph
    asteroid.orbiting_body = record.orbiting_body
    asteroid.raw_data = record.raw_data
    asteroid.fetched_at = now
    asteroid.expires_at = now + timedelta(hours=SNAPSHOT_TTL_HOURS)


def get_asteroid(db: Session, neo_reference_id: str) -> Asteroid | None:
    return db.query(Asteroid).filter(Asteroid.neo_reference_id == neo_reference_id).first()


def upsert_asteroid(db: Session, record: NeoRecord, risk: RiskAssessment, now: datetime | None = None) -> Asteroid:
    """Insert or overwrite the snapshot for ``record.neo_reference_id`` and refresh its TTL.

    Commits immediately; batches are never all-or-nothing.
    """
    now = now or utc_now()
    asteroid = get_asteroid(db, record.neo_reference_id)
    if asteroid is None:
        asteroid = Asteroid(neo_reference_id=record.neo_reference_id)
        db.add(asteroid)
    _apply(asteroid, record, risk, now)

    try:
        db.commit()
    except IntegrityError:
        # An overlapping run inserted the same id first.
        db.rollback()
        asteroid = get_asteroid(db, record.neo_reference_id)
        if asteroid is None:
            raise
        _apply(asteroid, record, risk, now)
        db.commit()

    db.refresh(asteroid)
    return asteroid


def find_upcoming(
    db: Session,
    start: datetime,
    end: datetime,
    limit: int | None = None,
    now: datetime | None = None,
) -> list[Asteroid]:
    now = now or utc_now()
    query = (
        db.query(Asteroid)
        .filter(
            Asteroid.close_approach_date >= start,
            Asteroid.close_approach_date <= end,
            Asteroid.expires_at > now,
        )
        .order_by(Asteroid.close_approach_date.asc(), Asteroid.risk_score.desc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def purge_expired(db: Session, now: datetime | None = None) -> int:
    now = now or utc_now()
    deleted = (
        db.query(Asteroid)
        .filter(Asteroid.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info('Purged %d expired NEO snapshot(s)', deleted)
    return deleted


def snapshot_counts(db: Session) -> dict:
    total = db.query(func.count(Asteroid.id)).scalar() or 0
    hazardous = db.query(func.count(Asteroid.id)).filter(Asteroid.is_potentially_hazardous.is_(True)).scalar() or 0
    high_risk = db.query(func.count(Asteroid.id)).filter(Asteroid.risk_category == 'high').scalar() or 0
    users = db.query(func.count(User.id)).scalar() or 0
    alerts = db.query(func.count(Alert.id)).scalar() or 0
    unread = db.query(func.count(Alert.id)).filter(Alert.is_read.is_(False)).scalar() or 0
    return {
        'asteroids': {'total': total, 'hazardous': hazardous, 'high_risk': high_risk},
        'users': users,
        'alerts': {'total': alerts, 'unread': unread},
    }
