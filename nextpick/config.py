import os
from dataclasses import dataclass

from .env import load_optional_dotenv

load_optional_dotenv()


def _int_env(name, default):
    raw = (os.getenv(name) or '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


PICQER_API_URL = (os.getenv('PICQER_API_URL') or '').rstrip('/')
PICQER_API_KEY = os.getenv('PICQER_API_KEY') or ''

BASIC_AUTH_USER = os.getenv('BASIC_AUTH_USER')
BASIC_AUTH_PASS = os.getenv('BASIC_AUTH_PASS')

APP_HOST = os.getenv('APP_HOST', '0.0.0.0')
APP_PORT = _int_env('APP_PORT', 8000)
APP_VERSION = os.getenv('APP_VERSION') or 'dev'
LOG_LEVEL = (os.getenv('LOG_LEVEL') or 'INFO').upper()
IMAGE_CACHE_TTL = _int_env('IMAGE_CACHE_TTL', 15 * 60)
IMAGE_CACHE_MAX = _int_env('IMAGE_CACHE_MAX', 512)


@dataclass(frozen=True)
class Policy:
    """Timing and streak knobs shared by the selector, detector and poller.

    All durations are milliseconds.
    """
    base_poll_ms: int = 800
    burst_poll_ms: int = 150
    burst_window_ms: int = 8000
    fetch_timeout_ms: int = 2000
    sticky_ms: int = 15000
    ignore_ms: int = 8000
    done_confirm: int = 2
    no_id_streak_max: int = 3
    absent_streak_max: int = 3
    error_tolerance: int = 3
    grace_ms: int = 20000
    max_batches: int = 2

    @classmethod
    def from_env(cls):
        d = cls()
        return cls(
            base_poll_ms=_int_env('BASE_POLL_MS', d.base_poll_ms),
            burst_poll_ms=_int_env('BURST_POLL_MS', d.burst_poll_ms),
            burst_window_ms=_int_env('BURST_WINDOW_MS', d.burst_window_ms),
            fetch_timeout_ms=_int_env('FETCH_TIMEOUT_MS', d.fetch_timeout_ms),
            sticky_ms=_int_env('STICKY_MS', d.sticky_ms),
            ignore_ms=_int_env('IGNORE_MS', d.ignore_ms),
            done_confirm=max(1, _int_env('DONE_CONFIRM', d.done_confirm)),
            no_id_streak_max=max(1, _int_env('NO_ID_STREAK_MAX', d.no_id_streak_max)),
            absent_streak_max=max(1, _int_env('ABSENT_STREAK_MAX', d.absent_streak_max)),
            error_tolerance=_int_env('ERROR_TOLERANCE', d.error_tolerance),
            grace_ms=_int_env('GRACE_MS', d.grace_ms),
            max_batches=min(2, max(1, _int_env('MAX_BATCHES', d.max_batches))),
        )
