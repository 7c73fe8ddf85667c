"""Network-level rate limiting for POST /generate.

slowapi keys requests by remote address (uvicorn resolves proxy headers for
trusted forwarders) and counts them in a moving window.
"""

import logging
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from gateway.config import Settings
from pipeline.context import Rejection

logger = logging.getLogger(__name__)


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        strategy="moving-window",
        storage_uri=settings.rate_limit_storage_uri,
    )


def rate_limit_handler(settings: Settings) -> Callable[[Request, RateLimitExceeded], JSONResponse]:
    retry_after = settings.retry_after_seconds

    def _handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        logger.info("Rate limit hit for %s: %s", get_remote_address(request), exc.detail)
        return Rejection(
            429,
            "RATE_LIMIT_HIT",
            "Too many requests. Please slow down.",
            retry_after_sec=retry_after,
            headers={"Retry-After": str(retry_after)},
        ).to_response()

    return _handler
