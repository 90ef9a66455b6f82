"""
Quota ledger data models.

Defines core dataclasses and enums:
- Scope / BucketKey: where quota is tracked
- UsageWindow: the accounting period rows are keyed by
- ReserveResult: outcome of a reserve call
- UsageSnapshot: read-only view of a bucket for reporting
- ReservationState: per-run state machine
"""
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .storage import LedgerError


GLOBAL_BUCKET_KEY = "global"
DAILY = "daily"


class Scope(str, Enum):
    """Granularity of quota enforcement."""
    GLOBAL = "global"
    USER = "user"
    TOPIC = "topic"


@dataclass(frozen=True)
class BucketKey:
    """A (scope, key) pair under which quota is tracked."""
    scope: Scope
    key: str

    def __post_init__(self):
        try:
            scope = Scope(self.scope)
        except ValueError:
            raise ValueError(f"Unknown quota scope: {self.scope!r}") from None
        object.__setattr__(self, "scope", scope)
        object.__setattr__(self, "key", str(self.key))
        if not self.key:
            raise ValueError("Bucket key cannot be empty")

    @classmethod
    def global_bucket(cls) -> "BucketKey":
        return cls(Scope.GLOBAL, GLOBAL_BUCKET_KEY)

    @classmethod
    def user(cls, user_id) -> "BucketKey":
        return cls(Scope.USER, str(user_id))

    @classmethod
    def topic(cls, topic_id) -> "BucketKey":
        return cls(Scope.TOPIC, str(topic_id))

    @property
    def label(self) -> str:
        """Key used in remaining-capacity maps, e.g. ``user:42``."""
        return f"{self.scope.value}:{self.key}"


def build_buckets(user_id=None, topic_id=None) -> List[BucketKey]:
    """
    Build the ordered bucket list a run should reserve against.

    The global bucket is always included; user and topic buckets only when
    an id is given.
    """
    buckets = [BucketKey.global_bucket()]
    if user_id is not None and str(user_id):
        buckets.append(BucketKey.user(user_id))
    if topic_id is not None and str(topic_id):
        buckets.append(BucketKey.topic(topic_id))
    return buckets


def unique_buckets(buckets: Iterable[BucketKey]) -> List[BucketKey]:
    """Drop repeated buckets, keeping first-seen order."""
    seen = set()
    result = []
    for bucket in buckets:
        if bucket not in seen:
            seen.add(bucket)
            result.append(bucket)
    return result


@dataclass(frozen=True)
class UsageWindow:
    """
    Accounting window.

    Attributes:
        kind: Window kind; only "daily" exists
        id: Calendar date (YYYY-MM-DD) in time_zone
        time_zone: IANA zone the date was computed in
    """
    kind: str
    id: str
    time_zone: str = "UTC"

    def __post_init__(self):
        if self.kind != DAILY:
            raise ValueError(f"Unsupported window kind: {self.kind!r}")
        try:
            date.fromisoformat(self.id)
        except (TypeError, ValueError):
            raise ValueError(f"Window id must be YYYY-MM-DD, got {self.id!r}") from None

    @classmethod
    def daily(cls, window_id: str, time_zone: str = "UTC") -> "UsageWindow":
        return cls(kind=DAILY, id=window_id, time_zone=time_zone)


@dataclass
class ReserveResult:
    """
    Result of a reserve operation.

    A rejection is a value, not an exception: ``ok`` is False, ``reason``
    names the first bucket that lacked room and ``remaining`` maps every
    checked bucket label to its available tokens.
    """
    ok: bool
    reserved_tokens: int = 0
    reason: Optional[str] = None
    remaining: Dict[str, int] = field(default_factory=dict)


@dataclass
class UsageSnapshot:
    """Point-in-time view of one bucket in one window."""
    bucket: BucketKey
    window: UsageWindow
    limit_tokens: Optional[int]
    used_tokens: int
    reserved_tokens: int

    @property
    def remaining_tokens(self) -> Optional[int]:
        """Tokens left for new reservations, or None when unlimited."""
        if self.limit_tokens is None:
            return None
        return self.limit_tokens - self.used_tokens - self.reserved_tokens

    @property
    def unlimited(self) -> bool:
        return self.limit_tokens is None


class InvalidTransitionError(LedgerError):
    """Raised when a run is moved out of a terminal or wrong state."""

    def __init__(self, run_id: str, current: "ReservationState", target: "ReservationState"):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(
            f"Run {run_id!r} cannot move from {current.value} to {target.value}"
        )


class ReservationState(str, Enum):
    """Lifecycle of one run's hold on its buckets."""
    UNRESERVED = "unreserved"
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"

    @property
    def terminal(self) -> bool:
        return self in (ReservationState.COMMITTED, ReservationState.RELEASED)

    def can_transition(self, target: "ReservationState") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    ReservationState.UNRESERVED: {ReservationState.RESERVED, ReservationState.RELEASED},
    ReservationState.RESERVED: {
        ReservationState.RESERVED,
        ReservationState.COMMITTED,
        ReservationState.RELEASED,
    },
    ReservationState.COMMITTED: set(),
    ReservationState.RELEASED: set(),
}
