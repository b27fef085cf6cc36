"""
Centralized configuration for the IskoMarket listing sync service.

Configuration is loaded from environment variables with sensible defaults.

Usage:
    from iskomarket.config import config

    url = config.backend.url
    interval = config.sync.poll_interval_seconds
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

ESCALATION_EMPTY = "empty"
ESCALATION_FEWER = "fewer"
ESCALATION_MODES = (ESCALATION_EMPTY, ESCALATION_FEWER)

DEFAULT_ADVISORY_NOTE = (
    "Some listings exist in the database but are not visible through the "
    "primary query; check row-level security policies, the active listings "
    "view, or missing seller profiles."
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class BackendConfig:
    """Managed Postgres backend (REST + realtime) configuration."""

    url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", "").rstrip("/"))
    anon_key: str = field(default_factory=lambda: os.getenv("SUPABASE_ANON_KEY", ""))
    service_key: str = field(default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", ""))
    listings_table: str = "products"
    broad_view: str = field(
        default_factory=lambda: os.getenv("LISTING_BROAD_VIEW", "active_products_view")
    )
    users_table: str = "users"
    categories_table: str = "categories"
    request_timeout: float = 30.0
    broad_limit: int = 100

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @property
    def realtime_url(self) -> str:
        """Websocket endpoint derived from the project URL."""
        if self.url.startswith("https://"):
            base = "wss://" + self.url[len("https://"):]
        elif self.url.startswith("http://"):
            base = "ws://" + self.url[len("http://"):]
        else:
            base = self.url
        return f"{base}/realtime/v1/websocket"


@dataclass(frozen=True)
class SyncConfig:
    """Listing cache synchronization timings and policy."""

    poll_interval_seconds: float = field(
        default_factory=lambda: _env_float("LISTING_POLL_INTERVAL", 5.0)
    )
    fast_poll_interval_seconds: float = field(
        default_factory=lambda: _env_float("LISTING_FAST_POLL_INTERVAL", 5.0)
    )
    realtime_grace_seconds: float = field(
        default_factory=lambda: _env_float("LISTING_REALTIME_GRACE", 5.0)
    )
    escalation: str = field(
        default_factory=lambda: os.getenv("LISTING_ESCALATION", ESCALATION_EMPTY).lower()
    )
    advisory_note: str = DEFAULT_ADVISORY_NOTE


@dataclass(frozen=True)
class RealtimeConfig:
    """Realtime change feed configuration."""

    enabled: bool = field(
        default_factory=lambda: os.getenv("LISTING_REALTIME", "1") not in ("0", "false", "no")
    )
    heartbeat_interval: float = 30.0
    join_timeout: float = 10.0
    schema: str = "public"


@dataclass(frozen=True)
class WebConfig:
    """Web surface configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("WEB_PORT", "8080")))
    admin_token: str = field(default_factory=lambda: os.getenv("ADMIN_TOKEN", ""))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.4.0"
    backend: BackendConfig = field(default_factory=BackendConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: Optional[AppConfig] = None) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = app_config or config
    errors: List[str] = []

    if not cfg.backend.url:
        errors.append("SUPABASE_URL is required but not set")
    elif not cfg.backend.url.startswith(("http://", "https://")):
        errors.append("SUPABASE_URL must start with http:// or https://")

    if not cfg.backend.anon_key:
        errors.append("SUPABASE_ANON_KEY is required but not set")

    if cfg.sync.poll_interval_seconds <= 0:
        errors.append("LISTING_POLL_INTERVAL must be positive")
    if cfg.sync.fast_poll_interval_seconds <= 0:
        errors.append("LISTING_FAST_POLL_INTERVAL must be positive")
    if cfg.sync.realtime_grace_seconds <= 0:
        errors.append("LISTING_REALTIME_GRACE must be positive")

    if cfg.sync.escalation not in ESCALATION_MODES:
        errors.append(
            f"LISTING_ESCALATION must be one of {', '.join(ESCALATION_MODES)} "
            f"(got {cfg.sync.escalation!r})"
        )

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
