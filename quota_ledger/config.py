"""
Quota configuration.

Loads the usage-limits section of a YAML config file into a pydantic model
and resolves per-scope limits. Malformed values never raise: they are
dropped in favour of the compiled-in defaults so that a bad config degrades
to default quotas instead of halting the bot.
"""
from pathlib import Path
from typing import Any, List, Optional, Union
import logging
import math

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import Scope

logger = logging.getLogger(__name__)


DEFAULT_TIMEZONE = "Asia/Singapore"
DEFAULT_MAX_OUTPUT_RESERVE = 800

# Daily defaults when the operator configures nothing. A single user or
# topic must not be able to drain the shared global budget.
DEFAULT_GLOBAL_DAILY_TOKENS = 200_000
DEFAULT_USER_DAILY_TOKENS = 40_000
DEFAULT_TOPIC_DAILY_TOKENS = 60_000

DEFAULT_DB_PATH = Path.home() / ".quota-ledger" / "usage-limits.sqlite"

_SCOPE_FIELDS = {
    Scope.GLOBAL: ("global_daily_tokens", DEFAULT_GLOBAL_DAILY_TOKENS),
    Scope.USER: ("per_user_daily_tokens", DEFAULT_USER_DAILY_TOKENS),
    Scope.TOPIC: ("per_topic_daily_tokens", DEFAULT_TOPIC_DAILY_TOKENS),
}

_FALSE_STRINGS = {"false", "0", "no", "off"}

UNLIMITED = "unlimited"


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def coerce_token_count(value: Any) -> Optional[int]:
    """
    Coerce a configured token count.

    Returns a non-negative int for finite non-negative numbers (and numeric
    strings), None for anything else.
    """
    number = _finite_number(value)
    if number is None or number < 0:
        return None
    return int(number)


class LimitsConfig(BaseModel):
    """Per-scope daily limits. The string "unlimited" turns a scope's check off."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    global_daily_tokens: Any = Field(default=None, alias="globalDailyTokens")
    per_user_daily_tokens: Any = Field(default=None, alias="perUserDailyTokens")
    per_topic_daily_tokens: Any = Field(default=None, alias="perTopicDailyTokens")


class QuotaLimitsConfig(BaseModel):
    """Usage-limits configuration as handed over by the channel layer."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = True
    time_zone: Optional[str] = Field(default=None, alias="timeZone")
    max_output_reserve_tokens: Optional[int] = Field(default=None, alias="maxOutputReserveTokens")
    bootstrap_admin_user_ids: List[str] = Field(default_factory=list, alias="bootstrapAdminUserIds")
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    reservation_ttl_seconds: Optional[int] = Field(default=None, alias="reservationTtlSeconds")
    db_path: Optional[str] = Field(default=None, alias="dbPath")

    @field_validator("enabled", mode="before")
    @classmethod
    def only_explicit_false_disables(cls, v):
        if isinstance(v, str):
            return v.strip().lower() not in _FALSE_STRINGS
        return v is not False

    @field_validator("time_zone", mode="before")
    @classmethod
    def blank_zone_is_unset(cls, v):
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip()

    @field_validator("max_output_reserve_tokens", mode="before")
    @classmethod
    def clamp_reserve(cls, v):
        number = _finite_number(v)
        if number is None:
            return None
        return max(0, int(number))

    @field_validator("reservation_ttl_seconds", mode="before")
    @classmethod
    def drop_malformed_ttl(cls, v):
        ttl = coerce_token_count(v)
        return ttl or None

    @field_validator("bootstrap_admin_user_ids", mode="before")
    @classmethod
    def stringify_ids(cls, v):
        if v is None:
            return []
        if isinstance(v, (str, int)):
            v = [v]
        if not isinstance(v, (list, tuple, set)):
            return []
        return [str(item).strip() for item in v if item is not None and str(item).strip()]

    @field_validator("limits", mode="before")
    @classmethod
    def limits_must_be_mapping(cls, v):
        if not isinstance(v, dict) and not isinstance(v, LimitsConfig):
            return {}
        return v

    @field_validator("db_path", mode="before")
    @classmethod
    def blank_path_is_unset(cls, v):
        if v is None or not str(v).strip():
            return None
        return str(v)

    @property
    def database_path(self) -> str:
        return self.db_path or str(DEFAULT_DB_PATH)


def parse_config(data: Any) -> QuotaLimitsConfig:
    """
    Build a config from a raw mapping.

    Accepts either the usage-limits section itself or a document that nests
    it under ``usageLimits`` / ``usage_limits``.
    """
    if not isinstance(data, dict):
        return QuotaLimitsConfig()
    for section in ("usageLimits", "usage_limits"):
        if isinstance(data.get(section), dict):
            data = data[section]
            break
    try:
        return QuotaLimitsConfig.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Discarding invalid usage-limits config: {e}")
        return QuotaLimitsConfig()


def load_config(path: Optional[Union[str, Path]] = None) -> QuotaLimitsConfig:
    """
    Load configuration from a YAML file.

    Returns defaults if the path is None or the file doesn't exist.
    """
    if path is None:
        return QuotaLimitsConfig()
    path = Path(path)
    if not path.exists():
        return QuotaLimitsConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read quota config {path}, using defaults: {e}")
        return QuotaLimitsConfig()

    return parse_config(data)


def resolve_configured_limit(config: QuotaLimitsConfig, scope: Union[Scope, str]) -> Optional[int]:
    """
    Resolve the configured daily limit for a scope.

    Order: configured value if it is a finite non-negative number, else the
    compiled-in default. Null or blank values take the default; only the
    literal string "unlimited" disables the scope's check.
    """
    field_name, default = _SCOPE_FIELDS[Scope(scope)]
    raw = getattr(config.limits, field_name)
    if raw is None:
        return default
    if isinstance(raw, str) and raw.strip().lower() == UNLIMITED:
        return None

    value = coerce_token_count(raw)
    if value is None:
        logger.debug(f"Ignoring malformed {field_name}={raw!r}, using default {default}")
        return default
    return value


def resolve_max_output_reserve_tokens(config: QuotaLimitsConfig) -> int:
    """Tokens to hold for the model's reply on top of the prompt estimate."""
    if config.max_output_reserve_tokens is None:
        return DEFAULT_MAX_OUTPUT_RESERVE
    return config.max_output_reserve_tokens


def is_enabled(config: QuotaLimitsConfig) -> bool:
    return config.enabled
