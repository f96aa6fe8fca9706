"""Middleware configuration for FastAPI application"""
import logging
import time

from fastapi import Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ideaverse.core.logging import security_logger
from ideaverse.core.security import (
    check_rate_limit, get_allowed_origins, get_client_identifier, log_api_access, validate_origin_referer
)
from ideaverse.db.redis import get_session

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/logout",
    "/api/auth/me",
    "/api/subscription/plans",
    "/api/subscription/config",
    "/api/subscription/webhook",
    "/metrics",
    "/health",
}

# Stripe retries webhooks on its own schedule; never rate limit it
UNLIMITED_PATHS = {"/api/subscription/webhook", "/health", "/metrics"}


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _blocked(request: Request, status_code: int, message: str) -> Response:
    response = JSONResponse(status_code=status_code, content={"error": message})
    origin = request.headers.get("Origin")
    if origin and origin in get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


async def security_middleware(request: Request, call_next):
    """Rate limiting, origin checks and one access log line per request"""
    started = time.perf_counter()
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None
    path = request.url.path

    try:
        if path not in UNLIMITED_PATHS:
            identifier = get_client_identifier(request, session_id)
            strict = request.method in ("POST", "PATCH", "DELETE", "PUT")
            if not check_rate_limit(identifier, strict=strict):
                status_code, error = 429, "Rate limit exceeded"
                security_logger.warning(f"Rate limit exceeded for {identifier} on {path}")
                return _blocked(request, 429, "Rate limit exceeded. Please try again later.")

        if path not in PUBLIC_PATHS and request.method not in ("GET", "OPTIONS", "HEAD"):
            if not validate_origin_referer(request):
                status_code, error = 403, "Invalid origin or referer"
                security_logger.warning(f"Origin/Referer rejected on {path}: {request.headers.get('Origin')}")
                return _blocked(request, 403, "Invalid origin or referer")

        response = await call_next(request)
        status_code = response.status_code
        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Request to {path} failed in middleware: {error}", exc_info=True)
        raise
    finally:
        user_id = get_session(session_id) if session_id else None
        log_api_access(request, status_code, (time.perf_counter() - started) * 1000, user_id, error)


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
