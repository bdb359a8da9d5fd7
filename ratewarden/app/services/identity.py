"""Identity resolution for rate limiting.

Derives the key a caller's request history is bucketed under, using a
fixed priority chain:

1. ``Authorization`` credential (``Bearer `` prefix stripped when present)
2. ``X-User-ID`` header
3. Network address: first ``X-Forwarded-For`` entry, then ``X-Real-IP``,
   then the connection peer, then the literal ``"unknown"``

Every candidate is hashed with SHA-256 before use so raw credentials are
never retained in memory or in the shared store. Only one source is
consulted per request, so the chain (not the digest) keeps sources apart.
"""

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

AUTHORIZATION_HEADER = "authorization"
USER_ID_HEADER = "x-user-id"
FORWARDED_FOR_HEADER = "x-forwarded-for"
REAL_IP_HEADER = "x-real-ip"

BEARER_PREFIX = "Bearer "
UNKNOWN_ADDRESS = "unknown"


class IdentitySource(str, Enum):
    """Where an identity key was derived from."""

    CREDENTIAL = "credential"
    USER_ID = "user_id"
    NETWORK = "network"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RequestMetadata:
    """The subset of an incoming request the resolvers look at.

    Header names are stored lower-cased so lookups are case-insensitive
    regardless of the framework the metadata came from.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    path: str = "/"
    method: str = "GET"

    @classmethod
    def from_mapping(
        cls,
        headers: Optional[Mapping[str, str]] = None,
        client_host: Optional[str] = None,
        **kwargs,
    ) -> "RequestMetadata":
        normalized = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        return cls(headers=normalized, client_host=client_host, **kwargs)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class Identity:
    """Resolved identity: the hashed bucket key and its source."""

    key: str
    source: IdentitySource


def hash_value(value: str) -> str:
    """Hash a string using SHA-256 to create a consistent identity key.

    Args:
        value: The raw credential, user id or address

    Returns:
        Hex-encoded digest (64 characters)
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def extract_credential(metadata: RequestMetadata) -> Optional[str]:
    """Extract the bearer/API credential from the authorization header."""
    auth = metadata.header(AUTHORIZATION_HEADER)
    if not auth:
        return None
    token = auth[len(BEARER_PREFIX):] if auth.startswith(BEARER_PREFIX) else auth
    token = token.strip()
    return token or None


def extract_user_id(metadata: RequestMetadata) -> Optional[str]:
    """Extract the caller-supplied user identifier header."""
    user_id = metadata.header(USER_ID_HEADER)
    if user_id is None:
        return None
    user_id = user_id.strip()
    return user_id or None


def extract_network_address(metadata: RequestMetadata) -> str:
    """Extract the apparent client address (total: always returns a value)."""
    forwarded = metadata.header(FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = metadata.header(REAL_IP_HEADER)
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if metadata.client_host:
        return metadata.client_host

    return UNKNOWN_ADDRESS


def resolve_identity(metadata: RequestMetadata) -> Identity:
    """Resolve the identity key for rate limiting.

    Uses the priority chain: credential > user id header > network address.

    Args:
        metadata: Request metadata

    Returns:
        Identity with the hashed key and the source it came from
    """
    credential = extract_credential(metadata)
    if credential:
        return Identity(key=hash_value(credential), source=IdentitySource.CREDENTIAL)

    user_id = extract_user_id(metadata)
    if user_id:
        return Identity(key=hash_value(user_id), source=IdentitySource.USER_ID)

    return Identity(
        key=hash_value(extract_network_address(metadata)),
        source=IdentitySource.NETWORK,
    )
