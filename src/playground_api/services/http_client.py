"""
Shared HTTP client with connection pooling for upstream communication.

Provides a long-lived httpx AsyncClient with connection pooling, timeouts
and resource management for calls to the completion endpoint. Reusing one
client avoids a TLS handshake per chat turn, which matters for a relay that
opens a streaming request on every submission.

Pool and timeout sizing come from playground_api.config.Settings
(HTTP_MAX_CONNECTIONS, HTTP_MAX_KEEPALIVE, HTTP_TIMEOUT_*).

Last Grunted: 10/15/2026 10:00:00 AM UTC
"""
from typing import Optional

import httpx
import structlog

from playground_api.config import Settings

logger = structlog.get_logger(__name__)


def _create_limits(settings: Settings) -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.http_max_connections,
        max_keepalive_connections=settings.http_max_keepalive,
        keepalive_expiry=5.0,  # Close idle connections after 5 seconds
    )


def _create_timeout(settings: Settings) -> httpx.Timeout:
    """
    Create timeout configuration for upstream requests.

    The read timeout bounds the gap between two chunks of a stream, not the
    whole stream, so long generations are not cut off.
    """
    return httpx.Timeout(
        connect=settings.http_timeout_connect,
        read=settings.http_timeout_read,
        write=settings.http_timeout_write,
        pool=settings.http_timeout_pool,
    )


# ============================================================================
# Client Singleton
# ============================================================================

# Created by the first get_client() call, reset by close_client()
_client: Optional[httpx.AsyncClient] = None


async def get_client(settings: Settings) -> httpx.AsyncClient:
    """
    Return the process-wide upstream client, building it on first use.

    Only the first caller's settings size the pool; later calls get the
    same instance. The app lifespan calls this at startup and places the
    client on ``app.state`` for the relay.

    Args:
        settings: Service settings with pool and timeout sizing

    Returns:
        httpx.AsyncClient: The shared upstream client

    Last Grunted: 10/15/2026 10:00:00 AM UTC
    """
    global _client

    if _client is None:
        logger.info(
            "http_client.init",
            max_connections=settings.http_max_connections,
            max_keepalive=settings.http_max_keepalive,
        )
        _client = httpx.AsyncClient(
            limits=_create_limits(settings),
            timeout=_create_timeout(settings),
            http2=True,
        )

    return _client


async def close_client() -> None:
    """Close the shared HTTP client and release all connections."""
    global _client

    if _client is not None:
        logger.info("http_client.close")
        await _client.aclose()
        _client = None
