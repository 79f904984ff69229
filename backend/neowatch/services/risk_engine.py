"""Deterministic risk scoring for near-Earth objects.

Score = 0.40 * hazard + 0.25 * diameter + 0.25 * distance + 0.10 * velocity,
each sub-score on a 0-100 scale, final value clamped to 1-100.
"""
import math

from neowatch.schemas import RiskAssessment, RiskBreakdown, RiskInput

MAX_DIAMETER_M = 1000.0
MAX_VELOCITY_KPS = 30.0
MIN_SAFE_DISTANCE_LD = 1.0
MAX_CONCERNING_DISTANCE_LD = 50.0

HAZARD_WEIGHT = 0.40
DIAMETER_WEIGHT = 0.25
DISTANCE_WEIGHT = 0.25
VELOCITY_WEIGHT = 0.10


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(high, max(low, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def diameter_score(diameter_m: float) -> float:
    # log scale: 10 m ~ 33, 100 m ~ 67, 1000 m = 100
    if not diameter_m or diameter_m <= 0:
        return 0.0
    return _clamp(100.0 * math.log10(diameter_m) / math.log10(MAX_DIAMETER_M))


def distance_score(lunar_distance: float) -> float:
    if not lunar_distance or lunar_distance <= 0:
        return 100.0
    if lunar_distance <= MIN_SAFE_DISTANCE_LD:
        return 100.0
    if lunar_distance >= MAX_CONCERNING_DISTANCE_LD:
        return 0.0
    span = MAX_CONCERNING_DISTANCE_LD - MIN_SAFE_DISTANCE_LD
    return _clamp(100.0 * (MAX_CONCERNING_DISTANCE_LD - lunar_distance) / span)


def velocity_score(velocity_kps: float) -> float:
    if not velocity_kps or velocity_kps <= 0:
        return 0.0
    return _clamp(100.0 * velocity_kps / MAX_VELOCITY_KPS)


def risk_category(score: int) -> str:
    if score >= 76:
        return 'high'
    if score >= 51:
        return 'moderate'
    if score >= 26:
        return 'low'
    return 'minimal'


def calculate_risk(neo: RiskInput) -> RiskAssessment:
    hazard = 100.0 if neo.is_hazardous else 0.0
    weighted = {
        'hazard': hazard * HAZARD_WEIGHT,
        'diameter': diameter_score(neo.diameter_max_m) * DIAMETER_WEIGHT,
        'distance': distance_score(neo.miss_distance_lunar) * DISTANCE_WEIGHT,
        'velocity': velocity_score(neo.velocity_kps) * VELOCITY_WEIGHT,
    }

    score = _round_half_up(sum(weighted.values()))
    score = int(_clamp(score, 1, 100))

    return RiskAssessment(
        score=score,
        category=risk_category(score),
        breakdown=RiskBreakdown(**{key: _round_half_up(value) for key, value in weighted.items()}),
        factors=neo,
    )
