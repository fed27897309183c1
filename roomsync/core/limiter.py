# roomsync/core/limiter.py
"""Rate limiting configuration."""
import logging
from http import HTTPStatus

from fastapi import HTTPException, Request
from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address

from roomsync.core.config import Settings

logger = logging.getLogger(__name__)


def create_limiter(settings: Settings) -> Limiter:
    """
    Per-client limiter shared by every route of the application.

    Counters live in process memory; the service runs as a single process.
    """
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
        default_limits=[settings.RATE_LIMIT],
    )
    logger.debug("Rate limiter configured: %s per client", settings.RATE_LIMIT)
    return limiter


def enforce_rate_limit(request: Request) -> None:
    """
    Count the request against the client's default limit.

    Installed as an application-wide dependency, so it runs for every route
    regardless of how the router resolves the endpoint.
    """
    limiter: Limiter = request.app.state.limiter
    if not limiter.enabled:
        return

    item = parse(request.app.state.settings.RATE_LIMIT)
    client = get_remote_address(request)
    if not limiter.limiter.hit(item, client, "roomsync"):
        logger.warning("Rate limit %s exceeded by %s on %s", item, client, request.url.path)
        raise HTTPException(
            status_code=HTTPStatus.TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded: {item}",
        )
