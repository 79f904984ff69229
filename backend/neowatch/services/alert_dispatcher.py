"""Match upcoming close approaches against user alert profiles and notify.

Recipients for an object are its watchers plus, for objects scoring at least
``THRESHOLD_MATCH_MIN_SCORE``, any non-watching user whose risk threshold the
score meets. Everyone must then pass their personal filter, and a (user,
object) pair already alerted inside the dedup window is skipped.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from neowatch.config import ALERT_DEDUP_HOURS, THRESHOLD_MATCH_MIN_SCORE
from neowatch.models import Alert, Asteroid, User, WatchlistItem, as_utc, utc_now
from neowatch.schemas import SweepResult
from neowatch.services.asteroid_store import find_upcoming
from neowatch.services.notifications import BROADCAST_CHANNEL, NotificationGateway, iso, user_channel

logger = logging.getLogger(__name__)

CLOSE_APPROACH = 'close_approach'


def alert_severity(score: int) -> str:
    if score >= 75:
        return 'danger'
    if score >= 50:
        return 'warning'
    return 'info'


def matches_user_thresholds(asteroid: Asteroid, user: User) -> bool:
    # Unset (null/0) profile values do not filter.
    if user.min_diameter_m and (asteroid.estimated_diameter_max_m or 0.0) < user.min_diameter_m:
        return False
    # Unknown miss distance is treated as 0 LD, the worst case.
    if user.max_distance_ld and (asteroid.miss_distance_lunar or 0.0) > user.max_distance_ld:
        return False
    if user.risk_threshold and asteroid.risk_score < user.risk_threshold:
        return False
    return True


def find_watchers(db: Session, asteroid_id: str) -> list[User]:
    return (
        db.query(User)
        .join(WatchlistItem, WatchlistItem.user_id == User.id)
        .filter(WatchlistItem.asteroid_id == asteroid_id, User.alerts_enabled.is_(True))
        .order_by(User.id)
        .all()
    )


def find_threshold_matchers(db: Session, asteroid: Asteroid) -> list[User]:
    watching = select(WatchlistItem.user_id).where(WatchlistItem.asteroid_id == asteroid.neo_reference_id)
    return (
        db.query(User)
        .filter(
            User.alerts_enabled.is_(True),
            User.risk_threshold <= asteroid.risk_score,
            User.id.not_in(watching),
        )
        .order_by(User.id)
        .all()
    )


def candidate_recipients(db: Session, asteroid: Asteroid) -> list[User]:
    users = find_watchers(db, asteroid.neo_reference_id)
    if asteroid.risk_score >= THRESHOLD_MATCH_MIN_SCORE:
        users.extend(find_threshold_matchers(db, asteroid))
    return users


def find_recent_alert(db: Session, user_id: int, asteroid_id: str, since: datetime) -> Alert | None:
    return (
        db.query(Alert)
        .filter(
            Alert.user_id == user_id,
            Alert.asteroid_id == asteroid_id,
            Alert.type == CLOSE_APPROACH,
            Alert.created_at >= since,
        )
        .first()
    )


def create_close_approach_alert(db: Session, user: User, asteroid: Asteroid, now: datetime) -> Alert:
    lunar = f'{asteroid.miss_distance_lunar:.2f}' if asteroid.miss_distance_lunar is not None else 'N/A'
    approach = as_utc(asteroid.close_approach_date)
    alert = Alert(
        user_id=user.id,
        asteroid_id=asteroid.neo_reference_id,
        asteroid_name=asteroid.name,
        type=CLOSE_APPROACH,
        severity=alert_severity(asteroid.risk_score),
        title=f'Close Approach Alert: {asteroid.name}',
        message=(
            f'Asteroid {asteroid.name} will pass within {lunar} lunar distances of Earth. '
            f'Risk Score: {asteroid.risk_score}/100'
        ),
        data={
            'risk_score': asteroid.risk_score,
            'miss_distance_km': asteroid.miss_distance_km,
            'miss_distance_lunar': asteroid.miss_distance_lunar,
            'close_approach_date': iso(approach),
            'velocity_kps': asteroid.relative_velocity_kps,
            'diameter_max_m': asteroid.estimated_diameter_max_m,
        },
        event_date=approach,
        created_at=now,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    return alert


def object_summary(asteroid: Asteroid) -> dict:
    return {
        'id': asteroid.neo_reference_id,
        'name': asteroid.name,
        'score': asteroid.risk_score,
        'category': asteroid.risk_category,
        'missDistanceLunar': asteroid.miss_distance_lunar,
        'closeApproachDate': iso(as_utc(asteroid.close_approach_date)),
    }


def alert_event_payload(alert: Alert, asteroid: Asteroid, now: datetime) -> dict:
    return {
        'alertId': alert.id,
        'type': alert.type,
        'severity': alert.severity,
        'title': alert.title,
        'message': alert.message,
        'object': object_summary(asteroid),
        'timestamp': iso(now),
    }


def broadcast_high_risk(gateway: NotificationGateway, asteroid: Asteroid, now: datetime | None = None) -> None:
    now = now or utc_now()
    gateway.publish(
        BROADCAST_CHANNEL,
        'new-hazardous-object',
        {
            'id': asteroid.neo_reference_id,
            'name': asteroid.name,
            'score': asteroid.risk_score,
            'category': asteroid.risk_category,
            'isPotentiallyHazardous': asteroid.is_potentially_hazardous,
            'diameterMax': asteroid.estimated_diameter_max_m,
            'missDistanceLunar': asteroid.miss_distance_lunar,
            'closeApproachDate': iso(as_utc(asteroid.close_approach_date)),
            'timestamp': iso(now),
        },
    )
    logger.info('Broadcast high-risk NEO %s (score %d)', asteroid.name, asteroid.risk_score)


def check_and_dispatch_alerts(
    db: Session,
    gateway: NotificationGateway,
    days_ahead: int = 1,
    now: datetime | None = None,
) -> SweepResult:
    now = now or utc_now()
    result = SweepResult(days_ahead=days_ahead)
    logger.info('Running alert sweep with %d-day lookahead', days_ahead)

    try:
        upcoming = find_upcoming(db, now, now + timedelta(days=days_ahead), now=now)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error('Alert sweep could not load upcoming NEOs: %s', exc)
        result.error = str(exc)
        return result

    result.scanned = len(upcoming)
    if not upcoming:
        logger.info('No upcoming close approaches in the next %d day(s)', days_ahead)
        return result

    dedup_since = now - timedelta(hours=ALERT_DEDUP_HOURS)
    for asteroid in upcoming:
        try:
            users = candidate_recipients(db, asteroid)
        except SQLAlchemyError as exc:
            db.rollback()
            result.failures += 1
            logger.error('Could not resolve recipients for %s: %s', asteroid.name, exc)
            continue

        result.candidates += len(users)
        for user in users:
            if not matches_user_thresholds(asteroid, user):
                result.filtered += 1
                continue
            try:
                if find_recent_alert(db, user.id, asteroid.neo_reference_id, dedup_since):
                    logger.debug('Alert already sent to user %s for %s', user.id, asteroid.name)
                    result.duplicates += 1
                    continue
                alert = create_close_approach_alert(db, user, asteroid, now)
            except SQLAlchemyError as exc:
                db.rollback()
                result.failures += 1
                logger.error('Failed to create alert for user %s on %s: %s', user.id, asteroid.name, exc)
                continue

            gateway.publish(user_channel(user.id), 'close-approach-alert', alert_event_payload(alert, asteroid, now))
            result.alerts_sent += 1
            logger.info('Alert %s created for user %s: %s', alert.id, user.id, asteroid.name)

    logger.info(
        'Alert sweep complete: scanned=%d sent=%d duplicates=%d filtered=%d failures=%d',
        result.scanned, result.alerts_sent, result.duplicates, result.filtered, result.failures,
    )
    return result


def list_alerts(db: Session, user_id: int, page: int = 1, limit: int = 20, unread_only: bool = False) -> tuple[list[Alert], int]:
    query = db.query(Alert).filter(Alert.user_id == user_id)
    if unread_only:
        query = query.filter(Alert.is_read.is_(False))
    total = query.count()
    items = (
        query.order_by(Alert.created_at.desc(), Alert.id.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def get_unread_alerts(db: Session, user_id: int, limit: int = 20) -> list[Alert]:
    items, _ = list_alerts(db, user_id, limit=limit, unread_only=True)
    return items


def mark_alert_read(db: Session, alert_id: int, user_id: int) -> Alert | None:
    alert = db.query(Alert).filter(Alert.id == alert_id, Alert.user_id == user_id).first()
    if alert is None:
        return None
    alert.is_read = True
    db.commit()
    db.refresh(alert)
    return alert


def mark_all_alerts_read(db: Session, user_id: int) -> int:
    updated = (
        db.query(Alert)
        .filter(Alert.user_id == user_id, Alert.is_read.is_(False))
        .update({Alert.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated
