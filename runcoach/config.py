"""Environment-driven settings for runcoach."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


_GEMINI_KEY_PRIORITY = (
    'GEMINI_API_KEY',
    'GOOGLE_API_KEY',
    'RUNCOACH_GEMINI_API_KEY',
)

_SUPABASE_URL_PRIORITY = (
    'SUPABASE_URL',
    'SUPABASE_PROJECT_URL',
)

_SUPABASE_KEY_PRIORITY = (
    'SUPABASE_SERVICE_ROLE_KEY',
    'SUPABASE_ANON_KEY',
    'SUPABASE_API_KEY',
)

_REDIS_URL_PRIORITY = (
    'REDIS_URL',
    'UPSTASH_REDIS_URL',
)


def _get_env_value(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _bool_from_env(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _float_from_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Resolved configuration shared by the app factory and its services.

    Every optional integration (Gemini, Supabase, Redis) may be missing; the
    services then fall back to local behaviour instead of failing at import.
    """

    gemini_api_key: Optional[str] = None
    text_model_id: str = 'gemini-2.5-flash'
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    redis_url: Optional[str] = None
    data_dir: Path = Path('/tmp/runcoach-data')
    default_user_id: str = 'local-user'
    tick_interval_seconds: Optional[float] = 1.0
    log_level: str = 'INFO'
    debug: bool = False


def load_settings() -> Settings:
    """Read :class:`Settings` from the process environment (and ``.env``)."""

    load_dotenv()

    tick = _float_from_env('RUNCOACH_TICK_SECONDS', 1.0)

    return Settings(
        gemini_api_key=_get_env_value(*_GEMINI_KEY_PRIORITY),
        text_model_id=os.environ.get('RUNCOACH_TEXT_MODEL', 'gemini-2.5-flash'),
        supabase_url=_get_env_value(*_SUPABASE_URL_PRIORITY),
        supabase_key=_get_env_value(*_SUPABASE_KEY_PRIORITY),
        redis_url=_get_env_value(*_REDIS_URL_PRIORITY),
        data_dir=Path(os.getenv('STORAGE_DATA_DIR', '/tmp/runcoach-data')).expanduser(),
        default_user_id=os.environ.get('RUNCOACH_DEFAULT_USER', 'local-user'),
        # A non-positive interval disables the background ticker entirely.
        tick_interval_seconds=tick if tick > 0 else None,
        log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        debug=_bool_from_env('FLASK_DEBUG', False),
    )
