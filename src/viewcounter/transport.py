"""
Pooled outbound HTTP client for the badge renderer.

All traffic goes to a single upstream host, so the client-wide limits are
effectively per-host limits.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

IDLE_CONN_TIMEOUT_SECONDS = 12 * 60 * 60


@dataclass(frozen=True)
class TransportConfig:
    """Connection pool tuning, fixed for the life of the process."""

    max_idle_conns_per_host: int = 20
    max_conns_per_host: int = 20
    idle_conn_timeout: float = IDLE_CONN_TIMEOUT_SECONDS

    def to_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self.max_conns_per_host,
            max_keepalive_connections=self.max_idle_conns_per_host,
            keepalive_expiry=self.idle_conn_timeout,
        )


def build_client(
    config: Optional[TransportConfig] = None,
    timeout_seconds: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the async client used for every renderer request.

    No retries are configured: each inbound request makes exactly one
    upstream attempt.
    """
    config = config or TransportConfig()
    return httpx.AsyncClient(
        limits=config.to_limits(),
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=False,
        transport=transport,
    )
