"""Middleware registration."""

from fastapi import FastAPI

from gartic.config import Settings
from gartic.middleware.error_handler import setup_error_handlers
from gartic.middleware.logging import setup_logging
from gartic.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and request-id propagation."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
