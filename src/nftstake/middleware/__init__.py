"""Middleware registration."""

from fastapi import FastAPI

from nftstake.config import Settings
from nftstake.middleware.error_handler import setup_error_handlers
from nftstake.middleware.logging import setup_logging
from nftstake.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, register error handlers and the request id middleware."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
