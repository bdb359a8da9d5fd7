"""Rate limiting data models.

This module contains dataclasses for admission decisions and backend state.
"""

from dataclasses import asdict, dataclass
from typing import Optional

from ratewarden.app.services.identity import IdentitySource


@dataclass(frozen=True)
class Decision:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request may proceed.
        current: Requests counted in the window after this check; always 0
            for an unbounded tier, whose requests are not tracked.
        remaining: Requests left in the window; 0 when denied, None for
            an unbounded tier.
        reset_epoch_seconds: Unix timestamp (seconds, rounded up) when the
            least-recent counted request expires and frees a slot.
        retry_after_seconds: Seconds to wait before retrying, rounded up;
            0 when allowed.
    """
    allowed: bool
    current: int
    remaining: Optional[int]
    reset_epoch_seconds: int
    retry_after_seconds: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class WindowSnapshot:
    """What a backend reports after one prune-check-maybe-append step.

    Attributes:
        admitted: Whether a timestamp was appended for this request.
        count: Length of the pruned sequence, including the appended
            timestamp when admitted.
        oldest_ms: Earliest timestamp still inside the window, or None
            when the sequence is empty.
    """
    admitted: bool
    count: int
    oldest_ms: Optional[int]


@dataclass(frozen=True)
class BackendStats:
    """Approximate backend occupancy."""
    total_identities: int
    total_requests: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Admission:
    """Full outcome of resolving and checking one request."""
    identity_key: str
    identity_source: IdentitySource
    tier: str
    limit: Optional[int]
    decision: Decision

    @property
    def allowed(self) -> bool:
        return self.decision.allowed
