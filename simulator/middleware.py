"""Request plumbing shared by the simulator endpoints.

- Bearer / Basic credential extraction
- Translation of SimulatorErrors into OAuth-style JSON error responses
- Request logging middleware
"""

import base64
import binascii
import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from simulator.errors import InvalidRequest, SimulatorError, Unauthenticated

logger = logging.getLogger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    """Token from an ``Authorization: Bearer ...`` header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header[7:].strip()
    # Some clients send "Bearer Bearer <token>"
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def require_bearer_token(request: Request) -> str:
    token = bearer_token(request)
    if not token:
        logger.info("[AUTH] Request rejected: no Bearer token")
        raise Unauthenticated("Missing or invalid Authorization header")
    return token


def basic_credentials(request: Request) -> Optional[tuple[str, str]]:
    """``(username, password)`` from an ``Authorization: Basic ...`` header."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep or not username:
        return None
    return username, password


def require_basic_credentials(request: Request) -> tuple[str, str]:
    credentials = basic_credentials(request)
    if credentials is None:
        logger.info("[AUTH] Request rejected: no valid Basic credentials")
        raise Unauthenticated("Missing or invalid Basic Authorization header")
    return credentials


def error_response(error: SimulatorError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(error, Unauthenticated) else None
    return JSONResponse(
        {"error": error.error_code, "error_description": error.message},
        status_code=error.status_code,
        headers=headers,
    )


async def simulator_error_handler(request: Request, exc: SimulatorError) -> JSONResponse:
    logger.info(f"[HTTP] {request.method} {request.url.path} -> {exc.status_code} {exc.error_code}")
    return error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return error_response(InvalidRequest(f"Invalid request parameters: {fields}"))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and latency of every request."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[HTTP] {request.method} {request.url.path} {response.status_code} ({elapsed_ms:.1f} ms)"
        )
        return response


def install(app: FastAPI) -> None:
    """Register error handlers and request logging on ``app``."""
    app.add_exception_handler(SimulatorError, simulator_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_middleware(RequestLoggingMiddleware)
