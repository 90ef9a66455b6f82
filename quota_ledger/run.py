"""
Per-run reservation lifecycle.

A run moves unreserved -> reserved -> committed | released. Both outcomes
are terminal and leave no reservation row behind; QuotaRun refuses any
transition out of them so a run can never hold and commit at once.
"""
from typing import TYPE_CHECKING, Optional, Sequence, Union
import logging

from .models import (
    BucketKey,
    InvalidTransitionError,
    ReservationState,
    ReserveResult,
    UsageWindow,
    unique_buckets,
)

if TYPE_CHECKING:
    from .ledger import QuotaLedger

logger = logging.getLogger(__name__)


class QuotaRun:
    """
    One metered run against a fixed set of buckets in one window.

    Usage:
        async with ledger.run(run_id, window, buckets) as run:
            result = await run.reserve(1200)
            if not result.ok:
                return refuse(result.reason)
            reply = await call_model()
            await run.reconcile(reply.usage.total)

    Leaving the block while still reserved (an exception, or a missing
    reconcile) releases the hold.
    """

    def __init__(
        self,
        ledger: "QuotaLedger",
        run_id: str,
        window: UsageWindow,
        buckets: Sequence[BucketKey],
    ):
        self.ledger = ledger
        self.run_id = run_id
        self.window = window
        self.buckets = unique_buckets(buckets)
        self.state = ReservationState.UNRESERVED
        self.reserved_tokens = 0
        self.committed_tokens: Optional[int] = None

    def _check(self, target: ReservationState) -> None:
        if not self.state.can_transition(target):
            raise InvalidTransitionError(self.run_id, self.state, target)

    async def reserve(self, amount: Union[int, float]) -> ReserveResult:
        """Hold amount tokens; a rejection leaves any earlier hold in place."""
        self._check(ReservationState.RESERVED)
        result = await self.ledger.reserve(self.run_id, self.window, self.buckets, amount)
        if result.ok:
            self.state = ReservationState.RESERVED
            self.reserved_tokens = result.reserved_tokens
        return result

    async def reconcile(self, actual_tokens: Union[int, float]) -> None:
        self._check(ReservationState.COMMITTED)
        await self.ledger.reconcile(self.run_id, self.window, self.buckets, actual_tokens)
        self.state = ReservationState.COMMITTED
        self.committed_tokens = max(0, int(actual_tokens))
        self.reserved_tokens = 0

    async def release(self) -> None:
        """Drop the hold. Releasing twice is a no-op."""
        if self.state is ReservationState.RELEASED:
            return
        self._check(ReservationState.RELEASED)
        await self.ledger.release(self.run_id, self.window, self.buckets)
        self.state = ReservationState.RELEASED
        self.reserved_tokens = 0

    async def __aenter__(self) -> "QuotaRun":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.state is ReservationState.RESERVED:
            if exc_type is None:
                logger.warning(f"Run {self.run_id} finished without reconcile; releasing hold")
            await self.release()
