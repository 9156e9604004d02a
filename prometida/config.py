"""Configuration for the Prometida client.

Backend credentials and push settings come from the environment (``.env`` is
honoured through python-dotenv). The keys mirror the ones the web build bakes
in at compile time:

- SUPABASE_URL / SUPABASE_ANON_KEY: project URL and public anon key
- SUPABASE_STORAGE_BUCKET: bucket for gallery uploads (default ``couple_uploads``)
- PUSH_FUNCTION_NAME: edge function that relays to OneSignal
- PUSH_PARTNER_PLAYER_ID: OneSignal player id of the partner's device
- PUSH_BROADCAST: set when the relay targets every subscription itself
- STORE_IDLE_SECONDS: idle time after which a browser's store is closed
- APP_TIMEZONE: timezone used to decide which mood belongs to "today"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Gallery uploads above this size are rejected before any network call.
MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024

DEFAULT_BUCKET = "couple_uploads"
DEFAULT_PUSH_FUNCTION = "push-notification"
DEFAULT_PUSH_HEADING = "Mi Prometida 💌"
NOTE_PUSH_HEADING = "¡Nueva Nota! 💌"

# Stores untouched for this long are closed; the next request resumes them.
DEFAULT_STORE_IDLE_SECONDS = 2 * 60 * 60

# The day the couple got together; drives the "days together" card.
RELATIONSHIP_START = date(2022, 12, 21)


@dataclass
class BackendConfig:
    """Supabase project configuration."""

    url: Optional[str]
    key: Optional[str]
    storage_bucket: str = DEFAULT_BUCKET

    @property
    def is_valid(self) -> bool:
        return bool(self.url and self.key and not self.key.startswith("your_"))


@dataclass
class PushConfig:
    """Push relay configuration."""

    function_name: str = DEFAULT_PUSH_FUNCTION
    default_heading: str = DEFAULT_PUSH_HEADING
    enabled: bool = True
    partner_player_id: Optional[str] = None
    # The broadcast relay ignores player ids and sends to every subscription.
    broadcast: bool = False

    @property
    def target_known(self) -> bool:
        return bool(self.partner_player_id) or self.broadcast


@dataclass
class Config:
    """Main client configuration."""

    backend: BackendConfig
    push: PushConfig = field(default_factory=PushConfig)
    timezone: str = "UTC"
    data_dir: Path = Path("/tmp/prometida-data")
    redis_url: Optional[str] = None
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    store_idle_seconds: float = DEFAULT_STORE_IDLE_SECONDS

    def log_status(self) -> None:
        logger.info("Supabase backend: %s", "configured" if self.backend.is_valid else "missing URL or key")
        logger.info("Push relay: %s", self.push.function_name if self.push.enabled else "disabled")
        if self.push.enabled and not self.push.target_known:
            logger.warning("Push relay: no PUSH_PARTNER_PLAYER_ID; notifications will be skipped")
        logger.info("Local cache: %s", "redis" if self.redis_url else self.data_dir)


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


def load_config(env_path: Optional[Path] = None) -> Config:
    """Load configuration from environment variables."""

    if env_path:
        load_dotenv(env_path)
    else:
        load_dotenv()

    backend = BackendConfig(
        url=_get_env_value("SUPABASE_URL", "SUPABASE_URL_SECRET", "SUPABASE_PROJECT_URL"),
        key=_get_env_value("SUPABASE_ANON_KEY", "SUPABASE_ANON_KEY_SECRET", "SUPABASE_API_KEY"),
        storage_bucket=os.getenv("SUPABASE_STORAGE_BUCKET", DEFAULT_BUCKET),
    )
    push = PushConfig(
        function_name=os.getenv("PUSH_FUNCTION_NAME", DEFAULT_PUSH_FUNCTION),
        default_heading=os.getenv("PUSH_DEFAULT_HEADING", DEFAULT_PUSH_HEADING),
        enabled=_bool_from_env("PUSH_ENABLED", True),
        partner_player_id=os.getenv("PUSH_PARTNER_PLAYER_ID") or None,
        broadcast=_bool_from_env("PUSH_BROADCAST", False),
    )

    return Config(
        backend=backend,
        push=push,
        timezone=os.getenv("APP_TIMEZONE", "UTC"),
        data_dir=Path(os.getenv("STORAGE_DATA_DIR", "/tmp/prometida-data")).expanduser(),
        redis_url=_get_env_value("REDIS_URL", "UPSTASH_REDIS_URL"),
        store_idle_seconds=float(os.getenv("STORE_IDLE_SECONDS", DEFAULT_STORE_IDLE_SECONDS)),
    )


def setup_logging(level: int = logging.INFO) -> None:
    """Configure the root logger for the server process."""
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    logging.basicConfig(level=level, format=fmt, handlers=[logging.StreamHandler()])
    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
