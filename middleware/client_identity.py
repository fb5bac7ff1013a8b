"""
Caller identity for rate-limit keys.

Forwarding headers are client-controlled unless a trusted proxy sets them, so only
headers named in TRUSTED_CLIENT_IP_HEADERS are read. For X-Forwarded-For, the entry
appended by the outermost trusted proxy is used.
"""
import logging
from typing import Iterable, List, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
FORWARDED_FOR_HEADER = "x-forwarded-for"


class ClientIdentityResolver:
    """Resolve the caller identifier used in rate-limit keys."""

    def __init__(
        self,
        trusted_headers: Optional[Iterable[str]] = None,
        trusted_proxy_count: int = 0,
        use_peer_address: bool = False
    ):
        self.trusted_headers: List[str] = [h.lower() for h in (trusted_headers or [])]
        self.trusted_proxy_count = max(0, trusted_proxy_count)
        self.use_peer_address = use_peer_address

    @classmethod
    def from_settings(cls, settings) -> "ClientIdentityResolver":
        return cls(
            trusted_headers=settings.trusted_client_ip_headers,
            trusted_proxy_count=settings.trusted_proxy_count,
            use_peer_address=settings.use_peer_address,
        )

    def _from_forwarded_for(self, value: str) -> Optional[str]:
        chain = [entry.strip() for entry in value.split(",") if entry.strip()]
        if not chain:
            return None
        if self.trusted_proxy_count == 0:
            return chain[0]
        # Each trusted proxy appends one entry; anything left of that is client supplied
        index = max(0, len(chain) - self.trusted_proxy_count)
        return chain[index]

    def resolve(self, request: Request) -> str:
        for header in self.trusted_headers:
            value = request.headers.get(header)
            if not value:
                continue
            if header == FORWARDED_FOR_HEADER:
                client_ip = self._from_forwarded_for(value)
            else:
                client_ip = value.strip()
            if client_ip:
                return client_ip

        if self.use_peer_address and request.client and request.client.host:
            return request.client.host

        return UNKNOWN_CLIENT

    __call__ = resolve


# Global instance
_identity_resolver: Optional[ClientIdentityResolver] = None


def get_identity_resolver() -> ClientIdentityResolver:
    """Get the global identity resolver built from settings."""
    global _identity_resolver
    if _identity_resolver is None:
        from config import settings
        _identity_resolver = ClientIdentityResolver.from_settings(settings)
    return _identity_resolver


def get_client_identifier(request: Request) -> str:
    return get_identity_resolver().resolve(request)
