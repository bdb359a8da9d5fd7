"""Tier resolution and tier-limit lookup."""

from collections.abc import Mapping
from typing import Any, Callable, Optional

from ratewarden.app.core.config import parse_tiers
from ratewarden.app.exceptions import InvalidConfigurationError, StrategyError
from ratewarden.app.services.identity import IdentitySource, RequestMetadata

FALLBACK_TIER = "free"
GUEST_TIER = "guest"

# Custom tier resolver: returns a tier name, or None/"" to use the default rule.
TierResolver = Callable[[RequestMetadata], Optional[str]]

_AUTHENTICATED_SOURCES = {IdentitySource.CREDENTIAL, IdentitySource.USER_ID}


class TierTable:
    """Validated mapping of tier name to per-window limit.

    A limit of ``None`` means the tier is unbounded. Unknown tier names
    fall back to the ``free`` entry.
    """

    def __init__(self, tiers: Optional[Mapping[str, Any]] = None):
        try:
            self._limits = parse_tiers(dict(tiers) if tiers is not None else None)
        except (TypeError, ValueError) as exc:
            raise InvalidConfigurationError(str(exc)) from exc

    def limit_for(self, tier: str) -> Optional[int]:
        """Get the limit for a tier, falling back to ``free`` for unknown names."""
        if tier in self._limits:
            return self._limits[tier]
        return self._limits[FALLBACK_TIER]

    def as_dict(self) -> dict[str, Optional[int]]:
        return dict(self._limits)


def validate_resolver(resolver: Any, name: str = "resolve_tier") -> Optional[Callable]:
    """Check an injected strategy callable at construction time."""
    if resolver is not None and not callable(resolver):
        raise InvalidConfigurationError(
            f"{name} must be callable, got {type(resolver).__name__}"
        )
    return resolver


def resolve_tier(
    metadata: RequestMetadata,
    source: IdentitySource,
    custom_resolver: Optional[TierResolver] = None,
) -> str:
    """Resolve the tier name for a request.

    A custom resolver wins when it returns a non-empty name. Otherwise
    credentialed callers (token or user id) get ``free`` and everyone
    else gets ``guest``.

    Args:
        metadata: Request metadata
        source: Identity source chosen by the identity resolver
        custom_resolver: Optional strategy returning a tier name

    Returns:
        Tier name (may be unknown to the tier table; see ``TierTable.limit_for``)

    Raises:
        StrategyError: If the custom resolver raises
    """
    if custom_resolver is not None:
        try:
            custom_tier = custom_resolver(metadata)
        except Exception as e:
            raise StrategyError("resolve_tier", f"{type(e).__name__}: {e}") from e
        if custom_tier:
            return str(custom_tier)

    if source in _AUTHENTICATED_SOURCES:
        return FALLBACK_TIER

    return GUEST_TIER

