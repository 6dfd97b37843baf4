"""HTTP middleware stack."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sfam.config import Settings
from sfam.middleware.error_handler import setup_error_handlers
from sfam.middleware.logging import setup_logging
from sfam.middleware.rate_limit import RateLimitMiddleware
from sfam.middleware.request_id import RequestIdMiddleware

_EXPOSED_HEADERS = ["X-Request-Id", "X-RateLimit-Remaining", "X-RateLimit-Limit", "Retry-After"]


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register middleware; Starlette runs them in reverse-add order.

    CORS is added last so it wraps every response, including 429s from the
    rate limiter.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=_EXPOSED_HEADERS,
    )
