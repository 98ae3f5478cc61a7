"""Rate limit key value object."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

RATE_LIMIT_PREFIX = "rate_limit:"


class KeyType(str, Enum):
    IP = "ip"
    USER = "user"
    ENDPOINT = "endpoint"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RateLimitKey:
    """Identity an attempt is counted against.

    Attributes:
        type: What kind of identity this is (ip, user, endpoint, custom).
        identifier: The identity itself. Endpoint keys carry
            ``{endpoint}:{identifier}``.
    """

    type: KeyType
    identifier: str

    def __post_init__(self) -> None:
        if not isinstance(self.type, KeyType):
            # Accept plain strings ("ip") from callers and route params.
            object.__setattr__(self, "type", KeyType(self.type))
        if not self.identifier:
            raise ValueError("identifier must be a non-empty string")

    def __str__(self) -> str:
        return self.limiter_key

    @property
    def limiter_key(self) -> str:
        """``{type}:{identifier}``, the key rule sets and global counts use."""
        return f"{self.type.value}:{self.identifier}"

    @property
    def cache_key(self) -> str:
        """Namespaced sorted-set key holding attempt timestamps."""
        return f"{RATE_LIMIT_PREFIX}{self.limiter_key}"

    @property
    def tracking_id(self) -> str:
        """Identity behavior profiles are tracked under."""
        return self.identifier

    @classmethod
    def for_ip(cls, ip: str) -> RateLimitKey:
        return cls(KeyType.IP, ip)

    @classmethod
    def for_user(cls, user_id: str) -> RateLimitKey:
        return cls(KeyType.USER, user_id)

    @classmethod
    def for_endpoint(cls, endpoint: str, identifier: str) -> RateLimitKey:
        return cls(KeyType.ENDPOINT, f"{endpoint}:{identifier}")

    @classmethod
    def parse(cls, value: str) -> RateLimitKey:
        """Parse ``type:identifier``; unknown types become custom keys.

        Raises:
            ValueError: If the value has no identifier part.
        """
        key_type, sep, identifier = value.partition(":")
        if not sep or not identifier:
            raise ValueError(f"invalid rate limit key: {value!r}")
        try:
            return cls(KeyType(key_type), identifier)
        except ValueError:
            return cls(KeyType.CUSTOM, value)
