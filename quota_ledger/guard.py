"""
Quota-guarded metered calls.

Wraps a unit of billable work (typically one model call) with the full
ledger flow:
- Pre-call: estimate tokens, resolve window, reserve on every bucket
- Post-call: reconcile with the reported cost
- On failure: release the reservation
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
import logging

from .config import is_enabled, resolve_max_output_reserve_tokens
from .ledger import QuotaLedger
from .models import ReserveResult, build_buckets
from .storage import LedgerError
from .tokens import estimate_tokens
from .window import resolve_window

logger = logging.getLogger(__name__)


class QuotaExceededError(LedgerError):
    """Raised by QuotaGuard when a reservation is refused."""

    def __init__(self, result: ReserveResult, requested: int):
        self.result = result
        self.requested = requested
        self.remaining = dict(result.remaining)
        self.message = result.reason or f"Quota exceeded: requested {requested} tokens"
        super().__init__(self.message)


def usage_from_response(response: Any, prompt: str = "") -> int:
    """
    Extract the billed token count from a model response.

    Understands a bare int, ``response.usage.total`` /
    ``response.usage.total_tokens`` and ``{"usage": {"total_tokens": n}}``.
    Falls back to estimating prompt plus rendered response.
    """
    if isinstance(response, int) and not isinstance(response, bool):
        return response
    usage = response.get("usage") if isinstance(response, dict) else getattr(response, "usage", None)
    for name in ("total", "total_tokens"):
        total = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
        if isinstance(total, int) and not isinstance(total, bool):
            return total
    return estimate_tokens(prompt) + estimate_tokens(str(response))


class QuotaGuard:
    """
    Runs metered work under a quota reservation.

    Usage:
        guard = QuotaGuard(ledger)
        reply = await guard.call(
            run_id=message_id,
            prompt=text,
            work=lambda: client.complete(text),
            user_id=sender_id,
            topic_id=thread_id,
        )
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        usage_of: Optional[Callable[[Any, str], int]] = None,
    ):
        """
        Args:
            ledger: Ledger to reserve against
            usage_of: Maps (response, prompt) to the billed token count
        """
        self.ledger = ledger
        self.usage_of = usage_of or usage_from_response

    @property
    def config(self):
        return self.ledger.config

    def estimate(self, prompt: str) -> int:
        """Prompt estimate plus the configured output allowance."""
        return estimate_tokens(prompt) + resolve_max_output_reserve_tokens(self.config)

    async def call(
        self,
        run_id: str,
        prompt: str,
        work: Callable[[], Awaitable[Any]],
        user_id: Optional[str] = None,
        topic_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Any:
        """
        Reserve, run work, then reconcile (or release if work raises).

        Raises:
            QuotaExceededError: If any bucket lacks room for the estimate
        """
        if not is_enabled(self.config):
            return await work()

        window = resolve_window(self.config, now)
        buckets = build_buckets(user_id=user_id, topic_id=topic_id)
        estimated = self.estimate(prompt)

        async with self.ledger.run(run_id, window, buckets) as run:
            result = await run.reserve(estimated)
            if not result.ok:
                raise QuotaExceededError(result, estimated)

            try:
                response = await work()
            except Exception as e:
                logger.warning(f"Metered call for run {run_id} failed, releasing reservation: {e}")
                await run.release()
                raise

            actual = self.usage_of(response, prompt)
            await run.reconcile(actual)
            logger.debug(f"Run {run_id}: estimated {estimated}, billed {actual}")
            return response
