"""
FastAPI application entry point for the poll service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pollboard.auth_routes import router as auth_router
from pollboard.config import get_settings
from pollboard.routes import router
from pollboard.security import SecurityHeadersMiddleware

logger = logging.getLogger(__name__)


def _clean_message(message: str) -> str:
    return message.removeprefix("Value error, ")


def validation_error_response(errors: list[dict]) -> JSONResponse:
    """Shape validation failures as a 400 with the first message up front."""
    details = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": _clean_message(error.get("msg", "")),
        }
        for error in errors
    ]
    detail = details[0]["msg"] if details else "Invalid input"
    return JSONResponse(status_code=400, content={"detail": detail, "errors": details})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.debug("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return validation_error_response(list(exc.errors()))


async def model_validation_handler(request: Request, exc: ValidationError):
    logger.debug("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return validation_error_response(exc.errors())


def create_app() -> FastAPI:
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    app = FastAPI(title="Pollboard API", version="0.1.0")
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationError, model_validation_handler)
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(auth_router, prefix=settings.api_prefix)
    return app


app = create_app()
