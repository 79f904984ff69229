from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from neowatch.db import Base

RISK_CATEGORIES = ('minimal', 'low', 'moderate', 'high')
ALERT_TYPES = ('close_approach', 'high_risk', 'watched_update', 'new_hazardous')
ALERT_SEVERITIES = ('info', 'warning', 'danger')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; every stored value is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ', '.join(f"'{value}'" for value in values)
    return f'{column} IN ({quoted})'


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (
        CheckConstraint('risk_threshold BETWEEN 1 AND 100', name='ck_user_risk_threshold'),
    )

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(32), default='user', nullable=False)

    alerts_enabled = Column(Boolean, default=True, nullable=False, index=True)
    min_diameter_m = Column(Float, default=100.0, nullable=True)
    max_distance_ld = Column(Float, default=10.0, nullable=True)
    risk_threshold = Column(Integer, default=50, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    watch_items = relationship('WatchlistItem', back_populates='user', cascade='all, delete-orphan')
    alerts = relationship('Alert', back_populates='user', cascade='all, delete-orphan')


class WatchlistItem(Base):
    __tablename__ = 'watchlist_items'
    __table_args__ = (UniqueConstraint('user_id', 'asteroid_id', name='uq_user_asteroid'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    asteroid_id = Column(String(64), nullable=False, index=True)
    asteroid_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship('User', back_populates='watch_items')


class Asteroid(Base):
    __tablename__ = 'asteroids'
    __table_args__ = (
        CheckConstraint('risk_score BETWEEN 1 AND 100', name='ck_asteroid_risk_score'),
        CheckConstraint(_in_clause('risk_category', RISK_CATEGORIES), name='ck_asteroid_risk_category'),
        Index('ix_asteroid_approach_score', 'close_approach_date', 'risk_score'),
    )

    id = Column(Integer, primary_key=True, index=True)
    neo_reference_id = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    nasa_jpl_url = Column(String(512), nullable=True)
    absolute_magnitude_h = Column(Float, nullable=True)

    risk_score = Column(Integer, nullable=False, index=True)
    risk_category = Column(String(16), nullable=False, index=True)
    is_potentially_hazardous = Column(Boolean, default=False, nullable=False, index=True)

    estimated_diameter_min_m = Column(Float, nullable=True)
    estimated_diameter_max_m = Column(Float, nullable=True)

    close_approach_date = Column(DateTime(timezone=True), nullable=True, index=True)
    close_approach_date_full = Column(String(32), nullable=True)
    miss_distance_km = Column(Float, nullable=True)
    miss_distance_au = Column(Float, nullable=True)
    miss_distance_lunar = Column(Float, nullable=True)
    relative_velocity_kps = Column(Float, nullable=True)
    relative_velocity_kph = Column(Float, nullable=True)
    orbiting_body = Column(String(32), default='Earth', nullable=True)

    raw_data = Column(JSON, nullable=True)

    fetched_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class Alert(Base):
    __tablename__ = 'alerts'
    __table_args__ = (
        CheckConstraint(_in_clause('type', ALERT_TYPES), name='ck_alert_type'),
        CheckConstraint(_in_clause('severity', ALERT_SEVERITIES), name='ck_alert_severity'),
        Index('ix_alert_dedup', 'user_id', 'asteroid_id', 'type', 'created_at'),
        Index('ix_alert_user_read', 'user_id', 'is_read', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    asteroid_id = Column(String(64), nullable=False)
    asteroid_name = Column(String(255), nullable=False)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), default='info', nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(String(1024), nullable=False)
    data = Column(JSON, nullable=True)
    event_date = Column(DateTime(timezone=True), nullable=True, index=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    user = relationship('User', back_populates='alerts')
