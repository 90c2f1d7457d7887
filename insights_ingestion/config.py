"""
Configuration for the Meta insights pipeline.

Values are resolved from dlt secrets/config first (.dlt/secrets.toml,
.dlt/config.toml or SOURCES__META_ADS__* environment variables) and then
from plain environment variables, loaded from .env by python-dotenv:

    META_ACCESS_TOKEN, AD_ACCOUNT_ID, META_API_VERSION, META_BASE_URL,
    CUSTOM_CONVERSIONS (JSON object), INGESTION_DESTINATION,
    SUPABASE_URL, SUPABASE_KEY, POSTGRES_HOST, POSTGRES_PORT,
    POSTGRES_DATABASE, POSTGRES_USER, POSTGRES_PASSWORD
"""

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

import dlt
from dotenv import load_dotenv

from insights_ingestion.conversions import MATCH_MODES, validate_conversion_table
from insights_ingestion.errors import ConfigError


DEFAULT_API_VERSION = "v22.0"
DEFAULT_BASE_URL = "https://graph.facebook.com"
DESTINATIONS = ("postgres", "supabase", "dlt")
MAX_THUMBNAIL_CONCURRENCY = 50


@dataclass
class Settings:
    access_token: str
    account_id: str
    api_version: str = DEFAULT_API_VERSION
    base_url: str = DEFAULT_BASE_URL
    date_preset: str = "last_30d"
    time_range: Optional[Dict[str, str]] = None
    time_increment: int = 1
    page_limit: int = 500
    max_pages: int = 50
    request_timeout: float = 30.0
    thumbnail_width: int = 1920
    thumbnail_height: int = 1080
    thumbnail_concurrency: int = 20
    timeout_seconds: float = 300.0
    custom_conversions: Dict[str, str] = field(default_factory=dict)
    conversion_match: str = "action_target_id"
    destination: str = "postgres"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    postgres: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.account_id and not self.account_id.startswith("act_"):
            self.account_id = f"act_{self.account_id}"

    def validate(self) -> "Settings":
        """
        Check required values before any network call is made.

        Raises:
            ConfigError: On the first missing or invalid value
        """
        if not self.access_token or not self.account_id:
            raise ConfigError("Missing META_ACCESS_TOKEN or AD_ACCOUNT_ID.")
        if self.destination not in DESTINATIONS:
            raise ConfigError(
                f"Unknown destination '{self.destination}'. Expected one of: {', '.join(DESTINATIONS)}"
            )
        if self.conversion_match not in MATCH_MODES:
            raise ConfigError(
                f"Unknown conversion match mode '{self.conversion_match}'. "
                f"Expected one of: {', '.join(MATCH_MODES)}"
            )
        if self.destination == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigError("Missing Supabase credentials (SUPABASE_URL or SUPABASE_KEY).")
        if self.page_limit < 1 or self.max_pages < 1:
            raise ConfigError("page_limit and max_pages must be positive")
        if self.timeout_seconds <= 0 or self.request_timeout <= 0:
            raise ConfigError("timeout_seconds and request_timeout must be positive")
        if not 1 <= self.thumbnail_concurrency <= MAX_THUMBNAIL_CONCURRENCY:
            raise ConfigError(
                f"thumbnail_concurrency must be between 1 and {MAX_THUMBNAIL_CONCURRENCY}"
            )
        if self.time_range is not None:
            _validate_time_range(self.time_range)
        validate_conversion_table(self.custom_conversions)
        return self

    def with_window(
        self,
        date_preset: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None
    ) -> "Settings":
        """Copy of these settings with the reporting window overridden."""
        if since or until:
            if not (since and until):
                raise ConfigError("Both since and until are required for a custom time range")
            return replace(self, time_range={"since": since, "until": until})
        if date_preset:
            return replace(self, date_preset=date_preset, time_range=None)
        return self


def _validate_time_range(time_range: Dict[str, str]) -> None:
    try:
        since = datetime.strptime(time_range["since"], "%Y-%m-%d")
        until = datetime.strptime(time_range["until"], "%Y-%m-%d")
    except (KeyError, TypeError, ValueError):
        raise ConfigError(
            f"Invalid time range {time_range!r}: expected since/until as YYYY-MM-DD"
        ) from None
    if until < since:
        raise ConfigError(f"Invalid time range: until {time_range['until']} is before since {time_range['since']}")


def _from_dlt(key: str, secret: bool = False) -> Any:
    accessor = dlt.secrets if secret else dlt.config
    return accessor.get(key)


def _lookup(key: str, env_name: str, default: Any = None, secret: bool = False) -> Any:
    value = _from_dlt(f"sources.meta_ads.{key}", secret=secret)
    if value in (None, ""):
        value = os.getenv(env_name)
    if value in (None, ""):
        return default
    return value


def _load_custom_conversions() -> Dict[str, str]:
    table = _from_dlt("sources.meta_ads.custom_conversions")
    if table:
        return {str(k): str(v) for k, v in dict(table).items()}

    raw = os.getenv("CUSTOM_CONVERSIONS")
    if not raw:
        return {}
    try:
        table = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"CUSTOM_CONVERSIONS is not valid JSON: {e}") from e
    if not isinstance(table, dict):
        raise ConfigError("CUSTOM_CONVERSIONS must be a JSON object of identifier -> column name")
    return {str(k): str(v) for k, v in table.items()}


def load_settings(**overrides: Any) -> Settings:
    """
    Build validated settings from dlt config, the environment and overrides.

    Args:
        **overrides: Settings fields that take precedence over configuration

    Returns:
        Validated Settings

    Raises:
        ConfigError: If credentials are missing or a value is invalid
    """
    load_dotenv()

    try:
        settings = Settings(
            access_token=_lookup("access_token", "META_ACCESS_TOKEN", "", secret=True),
            account_id=str(_lookup("account_id", "AD_ACCOUNT_ID", "")),
            api_version=_lookup("api_version", "META_API_VERSION", DEFAULT_API_VERSION),
            base_url=_lookup("base_url", "META_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            date_preset=_lookup("date_preset", "META_DATE_PRESET", "last_30d"),
            page_limit=int(_lookup("page_limit", "META_PAGE_LIMIT", 500)),
            max_pages=int(_lookup("max_pages", "META_MAX_PAGES", 50)),
            thumbnail_concurrency=int(_lookup("thumbnail_concurrency", "META_THUMBNAIL_CONCURRENCY", 20)),
            timeout_seconds=float(_lookup("timeout_seconds", "INGESTION_TIMEOUT_SECONDS", 300)),
            custom_conversions=_load_custom_conversions(),
            conversion_match=_lookup("conversion_match", "CONVERSION_MATCH", "action_target_id"),
            destination=_lookup("destination", "INGESTION_DESTINATION", "postgres"),
            supabase_url=_lookup("supabase_url", "SUPABASE_URL", secret=True),
            supabase_key=_lookup("supabase_key", "SUPABASE_KEY", secret=True),
            postgres={
                "host": os.getenv("POSTGRES_HOST", "localhost"),
                "port": os.getenv("POSTGRES_PORT", "5432"),
                "database": os.getenv("POSTGRES_DATABASE", "meta_ads"),
                "user": os.getenv("POSTGRES_USER", "postgres"),
                "password": os.getenv("POSTGRES_PASSWORD", ""),
            },
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    if overrides:
        settings = replace(settings, **overrides)

    return settings.validate()
