"""
Windowed token-quota reservation ledger.

Provides per-bucket daily token budgets with:
- Atomic multi-bucket reserve (all buckets granted or none)
- Reconcile (book actual usage, drop the hold) and release (drop the hold)
- SQLite persistence with BEGIN IMMEDIATE locking
- A one-time admin bootstrap and admin-managed limit overrides

The database is the only synchronization point: no in-process state is
needed for correctness, so several ledgers (or processes) may share one
database file.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union
import asyncio
import logging
import math

from .config import QuotaLimitsConfig, resolve_configured_limit
from .models import (
    DAILY,
    BucketKey,
    ReserveResult,
    Scope,
    UsageSnapshot,
    UsageWindow,
    unique_buckets,
)
from .run import QuotaRun
from .storage import DatabaseError, LedgerTransaction, SQLiteAdapter

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1
BOOTSTRAP_MARKER = "admins_bootstrapped"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admins (
        user_id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS limits (
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        window_kind TEXT NOT NULL,
        limit_tokens INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (scope, key, window_kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage (
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        window_kind TEXT NOT NULL,
        window_id TEXT NOT NULL,
        used_tokens INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (scope, key, window_kind, window_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        run_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        key TEXT NOT NULL,
        window_kind TEXT NOT NULL,
        window_id TEXT NOT NULL,
        reserved_tokens INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, scope, key, window_kind, window_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_reservations_bucket
    ON reservations(scope, key, window_kind, window_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def _whole_tokens(value: Union[int, float]) -> int:
    """Truncate toward zero and clamp at zero."""
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Token amount must be finite, got {value!r}")
    return max(0, int(value))


class QuotaLedger:
    """
    Token quota ledger backed by SQLite.

    Uses BEGIN IMMEDIATE for every decision that reads availability and
    then writes, so two concurrent reserves can never both see the same
    headroom.

    Usage:
        ledger = QuotaLedger(db_path=":memory:", config=config)
        window = resolve_window(config)
        buckets = build_buckets(user_id="42", topic_id="chat:7")

        result = await ledger.reserve("run-1", window, buckets, 1200)
        if result.ok:
            # ... metered work ...
            await ledger.reconcile("run-1", window, buckets, actual_tokens=950)
    """

    MAX_RETRIES = 3
    RETRY_DELAY_MS = 100

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[QuotaLimitsConfig] = None,
    ):
        """
        Initialize the ledger.

        Args:
            db_path: SQLite file or ":memory:"; defaults to config.database_path
            config: Quota configuration; defaults apply when omitted
        """
        self.config = config or QuotaLimitsConfig()
        self.db_path = str(db_path or self.config.database_path)
        self._adapter: Optional[SQLiteAdapter] = None
        self._initialized = False
        self._bootstrapped = False

    async def __aenter__(self) -> "QuotaLedger":
        await self._ensure_ready()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ========================================================================
    # Store plumbing
    # ========================================================================

    def _ensure_adapter(self) -> SQLiteAdapter:
        if self._adapter is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._adapter = SQLiteAdapter(self.db_path)
        return self._adapter

    async def _write(self, operation: Callable[[LedgerTransaction], Awaitable[Any]]) -> Any:
        """
        Run operation in a writer transaction.

        Retries when SQLite still reports a lock after busy_timeout; the
        whole operation is re-run so its reads are fresh.
        """
        adapter = self._ensure_adapter()
        for attempt in range(self.MAX_RETRIES):
            try:
                async with adapter.exclusive_transaction() as tx:
                    return await operation(tx)
            except DatabaseError as e:
                if "locked" in str(e) and attempt < self.MAX_RETRIES - 1:
                    logger.debug(f"Ledger database locked, retrying (attempt {attempt + 1})")
                    await asyncio.sleep(self.RETRY_DELAY_MS / 1000)
                    continue
                raise

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return

        async def create(tx: LedgerTransaction) -> None:
            for statement in SCHEMA:
                await tx.execute(statement)
            await tx.execute(
                "INSERT OR IGNORE INTO ledger_meta(key, value, updated_at) VALUES (?, ?, ?)",
                ("schema_version", str(SCHEMA_VERSION), _iso(_utcnow())),
            )

        await self._write(create)
        self._initialized = True

    async def _ensure_ready(self) -> None:
        """Schema first, then the admin bootstrap, once per ledger."""
        await self._ensure_schema()
        if not self._bootstrapped:
            await self.ensure_bootstrap_admins()

    async def close(self) -> None:
        """Close database connection."""
        if self._adapter:
            await self._adapter.close()
            self._adapter = None
        self._initialized = False
        self._bootstrapped = False

    # ========================================================================
    # Admin registry
    # ========================================================================

    async def ensure_bootstrap_admins(self, seeds: Optional[Iterable[str]] = None) -> bool:
        """
        Seed the admin set from configuration if it has never had members.

        Once the registry has been non-empty, bootstrap is a permanent
        no-op for this database, even if every admin is later removed or
        the seed list changes.

        Args:
            seeds: User ids to seed; defaults to config.bootstrap_admin_user_ids

        Returns:
            True if admins were inserted
        """
        await self._ensure_schema()
        if seeds is None:
            seeds = self.config.bootstrap_admin_user_ids
        seeds = [str(s).strip() for s in seeds if str(s).strip()]

        async def seed(tx: LedgerTransaction) -> bool:
            if await self._is_bootstrapped(tx):
                return False
            row = await tx.fetch_one("SELECT COUNT(1) AS c FROM admins")
            if row and row["c"] > 0:
                await self._mark_bootstrapped(tx)
                return False
            if not seeds:
                return False
            created_at = _iso(_utcnow())
            for user_id in seeds:
                await tx.execute(
                    "INSERT OR IGNORE INTO admins(user_id, created_at) VALUES (?, ?)",
                    (user_id, created_at),
                )
            await self._mark_bootstrapped(tx)
            return True

        seeded = await self._write(seed)
        self._bootstrapped = True
        if seeded:
            logger.info(f"Seeded quota admins: {', '.join(seeds)}")
        return seeded

    async def _is_bootstrapped(self, tx: LedgerTransaction) -> bool:
        row = await tx.fetch_one("SELECT value FROM ledger_meta WHERE key = ?", (BOOTSTRAP_MARKER,))
        return row is not None

    async def _mark_bootstrapped(self, tx: LedgerTransaction) -> None:
        await tx.execute(
            "INSERT OR IGNORE INTO ledger_meta(key, value, updated_at) VALUES (?, ?, ?)",
            (BOOTSTRAP_MARKER, "1", _iso(_utcnow())),
        )

    async def is_admin(self, user_id) -> bool:
        await self._ensure_ready()
        async with self._ensure_adapter().read_transaction() as tx:
            row = await tx.fetch_one("SELECT user_id FROM admins WHERE user_id = ?", (str(user_id),))
        return row is not None

    async def add_admin(self, user_id) -> None:
        await self._ensure_ready()

        async def add(tx: LedgerTransaction) -> None:
            await tx.execute(
                "INSERT OR IGNORE INTO admins(user_id, created_at) VALUES (?, ?)",
                (str(user_id), _iso(_utcnow())),
            )
            await self._mark_bootstrapped(tx)

        await self._write(add)
        logger.info(f"Added quota admin {user_id}")

    async def remove_admin(self, user_id) -> bool:
        """Remove an admin. Returns False if the user was not an admin."""
        await self._ensure_ready()

        async def remove(tx: LedgerTransaction) -> int:
            return await tx.execute("DELETE FROM admins WHERE user_id = ?", (str(user_id),))

        removed = await self._write(remove) > 0
        if removed:
            logger.info(f"Removed quota admin {user_id}")
        return removed

    async def list_admins(self) -> List[str]:
        await self._ensure_ready()
        async with self._ensure_adapter().read_transaction() as tx:
            rows = await tx.fetch_all("SELECT user_id FROM admins ORDER BY created_at, user_id")
        return [row["user_id"] for row in rows]

    # ========================================================================
    # Limits
    # ========================================================================

    async def set_limit(
        self,
        scope: Union[Scope, str],
        key: str,
        limit_tokens: Union[int, float],
        window_kind: str = DAILY,
    ) -> int:
        """
        Store a limit override for one bucket.

        Returns:
            The stored limit (truncated, never negative)

        Raises:
            ValueError: If limit_tokens is not a number
        """
        bucket = BucketKey(scope, key)
        if isinstance(limit_tokens, bool) or not isinstance(limit_tokens, (int, float)):
            raise ValueError(f"limit_tokens must be a number, got {limit_tokens!r}")
        if not math.isfinite(limit_tokens):
            raise ValueError(f"limit_tokens must be finite, got {limit_tokens!r}")
        value = _whole_tokens(limit_tokens)
        await self._ensure_ready()

        async def upsert(tx: LedgerTransaction) -> None:
            await tx.execute(
                """
                INSERT INTO limits(scope, key, window_kind, limit_tokens, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(scope, key, window_kind)
                DO UPDATE SET limit_tokens = excluded.limit_tokens, updated_at = excluded.updated_at
                """,
                (bucket.scope.value, bucket.key, window_kind, value, _iso(_utcnow())),
            )

        await self._write(upsert)
        logger.info(f"Set {window_kind} limit for {bucket.label} to {value} tokens")
        return value

    async def clear_limit(self, scope: Union[Scope, str], key: str, window_kind: str = DAILY) -> bool:
        """Drop a stored override so the configured default applies again."""
        bucket = BucketKey(scope, key)
        await self._ensure_ready()

        async def delete(tx: LedgerTransaction) -> int:
            return await tx.execute(
                "DELETE FROM limits WHERE scope = ? AND key = ? AND window_kind = ?",
                (bucket.scope.value, bucket.key, window_kind),
            )

        cleared = await self._write(delete) > 0
        if cleared:
            logger.info(f"Cleared {window_kind} limit override for {bucket.label}")
        return cleared

    async def get_limit(
        self,
        scope: Union[Scope, str],
        key: str,
        window_kind: str = DAILY,
    ) -> Optional[int]:
        """Effective limit: stored override, else configured default. None is unlimited."""
        bucket = BucketKey(scope, key)
        await self._ensure_ready()
        async with self._ensure_adapter().read_transaction() as tx:
            return await self._resolve_limit(tx, bucket, window_kind)

    async def _resolve_limit(
        self,
        tx: LedgerTransaction,
        bucket: BucketKey,
        window_kind: str,
    ) -> Optional[int]:
        row = await tx.fetch_one(
            "SELECT limit_tokens FROM limits WHERE scope = ? AND key = ? AND window_kind = ?",
            (bucket.scope.value, bucket.key, window_kind),
        )
        if row is not None and isinstance(row["limit_tokens"], int):
            return row["limit_tokens"]
        return resolve_configured_limit(self.config, bucket.scope)

    # ========================================================================
    # Usage and reservation reads
    # ========================================================================

    def _stale_cutoff(self, now: datetime) -> Optional[str]:
        ttl = self.config.reservation_ttl_seconds
        if not ttl:
            return None
        return _iso(now - timedelta(seconds=ttl))

    async def _used(self, tx: LedgerTransaction, bucket: BucketKey, window: UsageWindow) -> int:
        row = await tx.fetch_one(
            """
            SELECT used_tokens FROM usage
            WHERE scope = ? AND key = ? AND window_kind = ? AND window_id = ?
            """,
            (bucket.scope.value, bucket.key, window.kind, window.id),
        )
        if row is None or row["used_tokens"] is None:
            return 0
        return max(0, row["used_tokens"])

    async def _reserved(
        self,
        tx: LedgerTransaction,
        bucket: BucketKey,
        window: UsageWindow,
        cutoff: Optional[str] = None,
    ) -> int:
        """Sum of live holds on a bucket+window across every run."""
        query = """
            SELECT COALESCE(SUM(reserved_tokens), 0) AS reserved FROM reservations
            WHERE scope = ? AND key = ? AND window_kind = ? AND window_id = ?
        """
        params: tuple = (bucket.scope.value, bucket.key, window.kind, window.id)
        if cutoff is not None:
            query += " AND created_at >= ?"
            params += (cutoff,)
        row = await tx.fetch_one(query, params)
        return max(0, row["reserved"]) if row else 0

    async def _own_reservation(
        self,
        tx: LedgerTransaction,
        run_id: str,
        bucket: BucketKey,
        window: UsageWindow,
    ) -> int:
        row = await tx.fetch_one(
            """
            SELECT reserved_tokens FROM reservations
            WHERE run_id = ? AND scope = ? AND key = ? AND window_kind = ? AND window_id = ?
            """,
            (run_id, bucket.scope.value, bucket.key, window.kind, window.id),
        )
        return row["reserved_tokens"] if row else 0

    async def _sweep_buckets(
        self,
        tx: LedgerTransaction,
        buckets: Sequence[BucketKey],
        window: UsageWindow,
        cutoff: str,
    ) -> int:
        swept = 0
        for bucket in buckets:
            swept += await tx.execute(
                """
                DELETE FROM reservations
                WHERE scope = ? AND key = ? AND window_kind = ? AND window_id = ?
                  AND created_at < ?
                """,
                (bucket.scope.value, bucket.key, window.kind, window.id, cutoff),
            )
        if swept:
            logger.warning(f"Swept {swept} stale reservation(s) in window {window.id}")
        return swept

    # ========================================================================
    # Reservation protocol
    # ========================================================================

    async def reserve(
        self,
        run_id: str,
        window: UsageWindow,
        buckets: Sequence[BucketKey],
        amount: Union[int, float],
    ) -> ReserveResult:
        """
        Atomically hold amount tokens in every bucket, or in none.

        Every limit-bearing bucket must satisfy
        ``limit - used - reserved(all runs) >= amount``. Re-reserving the
        same run/bucket/window replaces the held amount.

        Args:
            run_id: Identifier of the metered run
            window: Accounting window
            buckets: Buckets to hold against
            amount: Tokens to hold

        Returns:
            ReserveResult; on rejection nothing was written

        Raises:
            ValueError: If amount is not finite
        """
        run_id = _require_run_id(run_id)
        reserve = _whole_tokens(amount)
        if not reserve:
            return ReserveResult(ok=True, reserved_tokens=0)

        buckets = unique_buckets(buckets)
        await self._ensure_ready()

        async def attempt(tx: LedgerTransaction) -> ReserveResult:
            now = _utcnow()
            cutoff = self._stale_cutoff(now)
            if cutoff is not None:
                await self._sweep_buckets(tx, buckets, window, cutoff)

            available = {}
            rejected: Optional[BucketKey] = None
            for bucket in buckets:
                limit = await self._resolve_limit(tx, bucket, window.kind)
                if limit is None:
                    continue
                used = await self._used(tx, bucket, window)
                reserved = await self._reserved(tx, bucket, window)
                available[bucket] = limit - used - reserved
                if available[bucket] < reserve and rejected is None:
                    rejected = bucket

            if rejected is not None:
                return ReserveResult(
                    ok=False,
                    reason=(
                        f"quota exceeded for {rejected.scope.value} {rejected.key}: "
                        f"need {reserve}, have {available[rejected]}"
                    ),
                    remaining={b.label: avail for b, avail in available.items()},
                )

            remaining = {}
            for bucket, avail in available.items():
                prior = await self._own_reservation(tx, run_id, bucket, window)
                remaining[bucket.label] = avail + prior - reserve

            created_at = _iso(now)
            for bucket in buckets:
                await tx.execute(
                    """
                    INSERT INTO reservations
                    (run_id, scope, key, window_kind, window_id, reserved_tokens, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(run_id, scope, key, window_kind, window_id)
                    DO UPDATE SET reserved_tokens = excluded.reserved_tokens
                    """,
                    (run_id, bucket.scope.value, bucket.key, window.kind, window.id, reserve, created_at),
                )
            return ReserveResult(ok=True, reserved_tokens=reserve, remaining=remaining)

        result = await self._write(attempt)
        if result.ok:
            logger.debug(f"Reserved {reserve} tokens for run {run_id} in window {window.id}")
        else:
            logger.warning(f"Reservation for run {run_id} rejected: {result.reason}")
        return result

    async def reconcile(
        self,
        run_id: str,
        window: UsageWindow,
        buckets: Sequence[BucketKey],
        actual_tokens: Union[int, float],
    ) -> None:
        """
        Book actual usage and drop the run's holds, in one transaction.

        Only actual_tokens reaches the usage ledger; the reserved amount is
        discarded.
        """
        run_id = _require_run_id(run_id)
        actual = _whole_tokens(actual_tokens)
        buckets = unique_buckets(buckets)
        await self._ensure_ready()

        async def commit(tx: LedgerTransaction) -> None:
            updated_at = _iso(_utcnow())
            for bucket in buckets:
                if actual > 0:
                    await tx.execute(
                        """
                        INSERT INTO usage(scope, key, window_kind, window_id, used_tokens, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(scope, key, window_kind, window_id)
                        DO UPDATE SET used_tokens = usage.used_tokens + excluded.used_tokens,
                                      updated_at = excluded.updated_at
                        """,
                        (bucket.scope.value, bucket.key, window.kind, window.id, actual, updated_at),
                    )
                await self._delete_reservation(tx, run_id, bucket, window)

        await self._write(commit)
        logger.debug(f"Reconciled run {run_id}: {actual} tokens over {len(buckets)} bucket(s)")

    async def release(
        self,
        run_id: str,
        window: UsageWindow,
        buckets: Sequence[BucketKey],
    ) -> int:
        """
        Drop the run's holds without booking usage.

        Idempotent: releasing an already released or never reserved run
        does nothing.

        Returns:
            Number of reservation rows removed
        """
        run_id = _require_run_id(run_id)
        buckets = unique_buckets(buckets)
        await self._ensure_ready()

        async def drop(tx: LedgerTransaction) -> int:
            removed = 0
            for bucket in buckets:
                removed += await self._delete_reservation(tx, run_id, bucket, window)
            return removed

        removed = await self._write(drop)
        if removed:
            logger.debug(f"Released {removed} reservation(s) for run {run_id}")
        return removed

    async def _delete_reservation(
        self,
        tx: LedgerTransaction,
        run_id: str,
        bucket: BucketKey,
        window: UsageWindow,
    ) -> int:
        return await tx.execute(
            """
            DELETE FROM reservations
            WHERE run_id = ? AND scope = ? AND key = ? AND window_kind = ? AND window_id = ?
            """,
            (run_id, bucket.scope.value, bucket.key, window.kind, window.id),
        )

    async def sweep_stale_reservations(self, older_than: Optional[timedelta] = None) -> int:
        """
        Delete holds left behind by runs that never reconciled or released.

        Args:
            older_than: Age threshold; defaults to config.reservation_ttl_seconds

        Returns:
            Number of reservation rows removed (0 when no threshold applies)
        """
        if older_than is None:
            if not self.config.reservation_ttl_seconds:
                return 0
            older_than = timedelta(seconds=self.config.reservation_ttl_seconds)
        cutoff = _iso(_utcnow() - older_than)
        await self._ensure_ready()

        async def sweep(tx: LedgerTransaction) -> int:
            return await tx.execute("DELETE FROM reservations WHERE created_at < ?", (cutoff,))

        swept = await self._write(sweep)
        if swept:
            logger.warning(f"Swept {swept} stale reservation(s) older than {older_than}")
        return swept

    # ========================================================================
    # Snapshots
    # ========================================================================

    async def get_snapshot(self, bucket: BucketKey, window: UsageWindow) -> UsageSnapshot:
        """
        Read a bucket's limit, usage and holds for reporting.

        Not an admission check: the figures may be stale as soon as they
        are returned. Holds past the configured TTL are not counted.
        """
        await self._ensure_ready()
        cutoff = self._stale_cutoff(_utcnow())
        async with self._ensure_adapter().read_transaction() as tx:
            limit = await self._resolve_limit(tx, bucket, window.kind)
            used = await self._used(tx, bucket, window)
            reserved = await self._reserved(tx, bucket, window, cutoff)
        return UsageSnapshot(
            bucket=bucket,
            window=window,
            limit_tokens=limit,
            used_tokens=used,
            reserved_tokens=reserved,
        )

    def run(self, run_id: str, window: UsageWindow, buckets: Sequence[BucketKey]) -> QuotaRun:
        """Track one run's reserve → reconcile/release lifecycle."""
        return QuotaRun(self, run_id, window, buckets)


def _require_run_id(run_id) -> str:
    run_id = str(run_id).strip() if run_id is not None else ""
    if not run_id:
        raise ValueError("run_id cannot be empty")
    return run_id
