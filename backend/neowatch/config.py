import os
from pathlib import Path

from dotenv import load_dotenv

_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_PROJECT_DIR = _BACKEND_DIR.parent
load_dotenv(_PROJECT_DIR / '.env')
load_dotenv(_BACKEND_DIR / '.env')


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


NASA_API_KEY = os.getenv('NASA_API_KEY', 'DEMO_KEY')
NASA_API_BASE_URL = os.getenv('NASA_API_BASE_URL', 'https://api.nasa.gov/neo/rest/v1').rstrip('/')
NASA_FEED_URL = f'{NASA_API_BASE_URL}/feed'
NASA_LOOKUP_URL = f'{NASA_API_BASE_URL}/neo'
NASA_TIMEOUT_SECONDS = float(os.getenv('NASA_TIMEOUT_SECONDS', '20'))

JWT_SECRET = os.getenv('JWT_SECRET', 'change-me')
JWT_ALGORITHM = 'HS256'

POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
POSTGRES_PORT = os.getenv('POSTGRES_PORT', '5432')
POSTGRES_DB = os.getenv('POSTGRES_DB', 'neowatch')
POSTGRES_USER = os.getenv('POSTGRES_USER', 'neowatch')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'neowatch')

DATABASE_URL = os.getenv('DATABASE_URL') or (
    f'postgresql+psycopg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}'
)
SQLITE_FALLBACK_URL = os.getenv('SQLITE_FALLBACK_URL', 'sqlite:///./neowatch_local.db')

# Snapshot freshness and alert dedup horizons
SNAPSHOT_TTL_HOURS = int(os.getenv('SNAPSHOT_TTL_HOURS', '24'))
ALERT_DEDUP_HOURS = int(os.getenv('ALERT_DEDUP_HOURS', '24'))
THRESHOLD_MATCH_MIN_SCORE = int(os.getenv('THRESHOLD_MATCH_MIN_SCORE', '50'))

SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', True)
RUN_FETCH_ON_STARTUP = _env_flag('RUN_FETCH_ON_STARTUP', True)

# Cadences, all UTC. Weekday follows datetime.weekday() (0 = Monday).
DAILY_FETCH_HOUR = int(os.getenv('DAILY_FETCH_HOUR', '0'))
DAILY_FETCH_MINUTE = int(os.getenv('DAILY_FETCH_MINUTE', '1'))
WEEKLY_FETCH_WEEKDAY = int(os.getenv('WEEKLY_FETCH_WEEKDAY', '0'))
WEEKLY_FETCH_HOUR = int(os.getenv('WEEKLY_FETCH_HOUR', '0'))
WEEKLY_FETCH_MINUTE = int(os.getenv('WEEKLY_FETCH_MINUTE', '30'))
ALERT_SWEEP_INTERVAL_HOURS = int(os.getenv('ALERT_SWEEP_INTERVAL_HOURS', '6'))
EXPIRY_PURGE_INTERVAL_MINUTES = int(os.getenv('EXPIRY_PURGE_INTERVAL_MINUTES', '60'))

PIPELINE_WORKERS = int(os.getenv('PIPELINE_WORKERS', '2'))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.getenv('LOG_FILE') or None

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv('CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173').split(',')
    if origin.strip()
]
