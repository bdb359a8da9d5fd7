"""ratewarden: identity-aware, tier-based sliding-window rate limiting."""

__version__ = "0.1.0"
