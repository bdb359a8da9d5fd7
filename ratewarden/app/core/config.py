import json
import math
import re
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Default tier limits (requests per window). None means unbounded.
DEFAULT_TIERS: dict[str, Optional[int]] = {
    "guest": 30,  # Anonymous callers (network address only)
    "free": 60,  # Credentialed callers (token or user id)
    "pro": 600,
    "admin": None,
}

DEFAULT_WINDOW_MS = 60_000
DEFAULT_KEY_PREFIX = "ratewarden:"

_UNBOUNDED_SPELLINGS = {"null", "none", "unlimited", "unbounded", "inf", "infinity", "*"}


def _parse_limit(name: str, raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"tier '{name}': limit must be an integer, got {raw!r}")
    if isinstance(raw, float):
        if math.isinf(raw) and raw > 0:
            return None
        if not raw.is_integer():
            raise ValueError(f"tier '{name}': limit must be an integer, got {raw!r}")
        raw = int(raw)
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in _UNBOUNDED_SPELLINGS:
            return None
        try:
            raw = int(text)
        except ValueError:
            raise ValueError(f"tier '{name}': limit must be an integer, got {raw!r}") from None
    if not isinstance(raw, int):
        raise ValueError(f"tier '{name}': limit must be an integer, got {raw!r}")
    if raw < 0:
        raise ValueError(f"tier '{name}': limit must be >= 0, got {raw}")
    return raw


def parse_tiers(raw: Any) -> dict[str, Optional[int]]:
    """Parse a tier table from a mapping, JSON text or ``name=limit`` pairs.

    Accepted spellings::

        {"free": 60, "admin": null}
        free=60,pro=600,admin=unlimited

    Raises:
        ValueError: On malformed input, negative limits, empty tier names
            or a table without a ``free`` entry (the documented fallback).
    """
    if raw is None:
        return dict(DEFAULT_TIERS)

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return dict(DEFAULT_TIERS)
        if text.startswith("{"):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueError(f"tiers: invalid JSON ({exc.msg})") from exc
        else:
            pairs: dict[str, Any] = {}
            for part in (p for p in re.split(r"[,\s]+", text) if p):
                name, sep, value = part.partition("=")
                if not sep:
                    raise ValueError(f"tiers: expected name=limit, got {part!r}")
                pairs[name] = value
            raw = pairs

    if not isinstance(raw, dict):
        raise ValueError(f"tiers: expected a mapping, got {type(raw).__name__}")

    tiers: dict[str, Optional[int]] = {}
    for name, limit in raw.items():
        name = str(name).strip()
        if not name:
            raise ValueError("tiers: tier names must be non-empty")
        tiers[name] = _parse_limit(name, limit)

    if "free" not in tiers:
        raise ValueError("tiers: a 'free' tier is required as the fallback entry")
    return tiers


class Settings(BaseSettings):
    """Admission-control settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Sliding window
    window_ms: int = DEFAULT_WINDOW_MS
    # Use NoDecode so "free=60,admin=unlimited" is not fed to the JSON decoder.
    tiers: Annotated[dict[str, Optional[int]], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_TIERS)
    )
    key_prefix: str = DEFAULT_KEY_PREFIX

    # HTTP adapter
    rate_limit_enabled: bool = True
    rate_limit_fail_closed: bool = (
        False  # If True, answer 503 when the shared store is unavailable
    )
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = ["/health"]

    # Local backend sweeper (defaults to window_ms)
    sweep_interval_ms: Optional[int] = None

    # Redis settings (optional shared backend)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 2.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("tiers", mode="before")
    @classmethod
    def decode_tiers(cls, v: Any) -> dict[str, Optional[int]]:
        return parse_tiers(v)

    @field_validator("rate_limit_exempt_paths", mode="before")
    @classmethod
    def decode_exempt_paths(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [str(p).strip() for p in v if str(p).strip()]
        raw = str(v).strip()
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(p).strip() for p in parsed if str(p).strip()]
        return [p for p in re.split(r"[,\s]+", raw) if p]

    @field_validator("window_ms")
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window length is positive."""
        if v < 1:
            raise ValueError("window_ms must be at least 1")
        return v

    @field_validator("sweep_interval_ms")
    @classmethod
    def validate_sweep_interval(cls, v: Optional[int]) -> Optional[int]:
        """Validate sweep interval is positive when set."""
        if v is not None and v < 1:
            raise ValueError("sweep_interval_ms must be at least 1")
        return v

    @field_validator("redis_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
