"""
Quota Ledger - windowed token quotas with reserve/reconcile accounting.

This package provides:
- Daily accounting windows in a configured time zone
- Global, per-user and per-topic token budgets
- Atomic reserve / reconcile / release over SQLite
- An admin registry gating who may change limits

Usage:
    from quota_ledger import QuotaLedger, build_buckets, load_config, resolve_window

    config = load_config("config.yaml")
    ledger = QuotaLedger(config=config)
    window = resolve_window(config)
    buckets = build_buckets(user_id="42", topic_id="-100123:7")

    result = await ledger.reserve(run_id, window, buckets, 1500)
    if result.ok:
        # Call the model...
        await ledger.reconcile(run_id, window, buckets, actual_tokens=1210)
    else:
        print(f"Quota exceeded: {result.reason}")
"""

from .models import (
    Scope,
    BucketKey,
    UsageWindow,
    ReserveResult,
    UsageSnapshot,
    ReservationState,
    InvalidTransitionError,
    build_buckets,
)

from .config import (
    QuotaLimitsConfig,
    LimitsConfig,
    load_config,
    parse_config,
    resolve_configured_limit,
    resolve_max_output_reserve_tokens,
    is_enabled,
)

from .storage import LedgerError, DatabaseError
from .window import resolve_window
from .tokens import estimate_tokens
from .ledger import QuotaLedger
from .run import QuotaRun
from .guard import QuotaGuard, QuotaExceededError, usage_from_response

__all__ = [
    # Models
    "Scope",
    "BucketKey",
    "UsageWindow",
    "ReserveResult",
    "UsageSnapshot",
    "ReservationState",
    "InvalidTransitionError",
    "build_buckets",
    # Config
    "QuotaLimitsConfig",
    "LimitsConfig",
    "load_config",
    "parse_config",
    "resolve_configured_limit",
    "resolve_max_output_reserve_tokens",
    "is_enabled",
    # Errors
    "LedgerError",
    "DatabaseError",
    # Ledger
    "resolve_window",
    "estimate_tokens",
    "QuotaLedger",
    "QuotaRun",
    "QuotaGuard",
    "QuotaExceededError",
    "usage_from_response",
]

__version__ = "0.1.0"
