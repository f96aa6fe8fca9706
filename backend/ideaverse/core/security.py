"""Security dependencies and request helpers"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from fastapi import HTTPException, Request, Response

from ideaverse.core.config import settings
from ideaverse.core.logging import api_access_logger
from ideaverse.db.redis import SESSION_TTL, get_session, check_rate_limit as redis_check_rate_limit


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def _client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"
    return f"ip:{_client_ip(request)}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """True if within limit; strict applies the tighter limit for state-changing requests"""
    return redis_check_rate_limit(identifier, strict=strict)


def get_allowed_origins():
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def validate_origin_referer(request: Request) -> bool:
    """Validate Origin and Referer headers against the allowed origins"""
    origin = request.headers.get("Origin")
    referer = request.headers.get("Referer")
    allowed = [o.rstrip("/") for o in get_allowed_origins() if o]

    # Non-browser clients send neither in development
    if settings.ENVIRONMENT == "development" and not origin and not referer:
        return True

    if origin:
        return origin.rstrip("/") in allowed

    if referer:
        parsed = urlparse(referer)
        return f"{parsed.scheme}://{parsed.netloc}" in allowed

    return False


def log_api_access(
    request: Request,
    status_code: int,
    duration_ms: float,
    user_id: Optional[int] = None,
    error: Optional[str] = None
):
    """One structured line per request on the api_access logger"""
    log_data = {
        "at": datetime.now(timezone.utc).isoformat(),
        "request": f"{request.method} {request.url.path}",
        "status": status_code,
        "duration_ms": round(duration_ms, 1),
        "user_id": user_id,
        "ip": _client_ip(request),
        "origin": request.headers.get("Origin"),
    }
    if error:
        log_data["error"] = error

    level = logging.WARNING if error or status_code >= 400 else logging.INFO
    api_access_logger.log(level, json.dumps(log_data))


def set_auth_cookie(response: Response, session_id: str, request: Request) -> None:
    """Set session cookie, shared across subdomains of the request host"""
    host = request.headers.get("host", settings.DOMAIN).split(":")[0]

    # api.example.com -> .example.com; localhost keeps the browser default
    domain_parts = host.split(".")
    cookie_domain = "." + ".".join(domain_parts[-2:]) if len(domain_parts) >= 2 else None

    response.set_cookie(
        key="session_id",
        value=session_id,
        domain=cookie_domain,
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=SESSION_TTL
    )
