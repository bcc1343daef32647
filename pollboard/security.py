"""
Request-level security: response headers, client identification, rate limits,
authentication dependencies, CSRF and payload checks, and audit logging.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import Depends, HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

from pollboard.auth import AuthClient, AuthError, AuthUser
from pollboard.config import get_settings
from pollboard.db import DbClient, PollRecord
from pollboard.dependencies import get_auth_client, get_db_client, get_rate_limit_store
from pollboard.ratelimit import RateLimitStore
from pollboard.validation import CheckResult, check_rate_limit, create_audit_log

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data: https:; "
        "font-src 'self'"
    ),
}

MAX_STRING_LENGTH = 10000
MAX_ARRAY_LENGTH = 1000
MAX_OBJECT_KEYS = 100


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the security headers to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def apply_rate_limit(
    store: RateLimitStore,
    user_id: str,
    action: str,
    window_minutes: int = 60,
) -> CheckResult:
    """Count this request against `user_id:action` and decide whether it may proceed."""
    count = store.hit(f"{user_id}:{action}", window_minutes * 60)
    if count == 1:
        return CheckResult(True)
    return check_rate_limit(user_id, action, count - 1, window_minutes)


def ip_rate_limit(key: str, max_requests: int, window_seconds: int):
    """Dependency limiting unauthenticated endpoints per client IP."""

    def dependency(
        request: Request,
        store: RateLimitStore = Depends(get_rate_limit_store),
    ) -> None:
        count = store.hit(f"{key}:{get_client_ip(request)}", window_seconds)
        if count > max_requests:
            logger.warning(
                "IP rate limit hit for %s from %s", key, get_client_ip(request)
            )
            raise HTTPException(status_code=429, detail="Too many requests")

    return dependency


def get_access_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.cookies.get(get_settings().session_cookie_name) or None


def _resolve_user(request: Request, auth: AuthClient) -> Optional[AuthUser]:
    token = get_access_token(request)
    if not token:
        return None
    try:
        return auth.get_user(token)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


def get_current_user(
    request: Request, auth: AuthClient = Depends(get_auth_client)
) -> AuthUser:
    user = _resolve_user(request, auth)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def get_optional_user(
    request: Request, auth: AuthClient = Depends(get_auth_client)
) -> Optional[AuthUser]:
    return _resolve_user(request, auth)


def require_poll_ownership(db: DbClient, poll_id: str, user_id: str) -> PollRecord:
    poll = db.get_poll(poll_id)
    if not poll:
        raise HTTPException(status_code=404, detail="Poll not found")
    if poll.creator_id != user_id:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return poll


def log_security_event(
    db: DbClient,
    request: Request,
    user_id: str,
    action: str,
    resource_id: Optional[str] = None,
    metadata: Optional[dict[str, str]] = None,
) -> None:
    """Record an audit entry. Failures are logged and never reach the caller."""
    try:
        entry = create_audit_log(
            user_id,
            action,
            get_client_ip(request),
            request.headers.get("user-agent") or "unknown",
            resource_id,
            metadata,
        )
        logger.info("Security event: %s", entry.as_dict())
        db.save_audit_log(entry)
    except Exception:
        logger.exception("Failed to log security event %s for %s", action, user_id)


def validate_csrf(request: Request) -> bool:
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    host = request.headers.get("host")
    if not origin and not referer:
        return False

    allowed = {f"https://{host}", f"http://{host}"}
    if origin and origin not in allowed:
        return False
    if referer:
        parsed = urlparse(referer)
        if f"{parsed.scheme}://{parsed.netloc}" not in allowed:
            return False
    return True


def validate_request_size(request: Request, max_bytes: int) -> None:
    content_length = request.headers.get("content-length")
    if not content_length:
        return
    try:
        size = int(content_length)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    if size > max_bytes:
        raise HTTPException(status_code=413, detail="Request payload too large")


def validate_input(data: Any) -> list[str]:
    """Walk a decoded JSON payload and report structural problems by path."""
    errors: list[str] = []

    def visit(value: Any, path: str) -> None:
        if isinstance(value, str):
            if "\0" in value:
                errors.append("Null bytes are not allowed")
            if len(value) > MAX_STRING_LENGTH:
                errors.append(f"String too long at {path}")
        elif isinstance(value, list):
            if len(value) > MAX_ARRAY_LENGTH:
                errors.append(f"Array too large at {path}")
            for index, item in enumerate(value):
                visit(item, f"{path}[{index}]")
        elif isinstance(value, dict):
            if len(value) > MAX_OBJECT_KEYS:
                errors.append(f"Object has too many properties at {path}")
            for key, item in value.items():
                visit(item, f"{path}.{key}" if path else str(key))

    visit(data, "")
    return errors


async def _check_raw_input(request: Request) -> None:
    body = await request.body()
    if not body:
        return
    try:
        payload = json.loads(body)
    except ValueError:
        # Malformed JSON is reported by body validation.
        return
    errors = validate_input(payload)
    if errors:
        raise HTTPException(status_code=400, detail="; ".join(errors))


def secured(
    action: Optional[str] = None,
    *,
    window_minutes: int = 60,
    require_csrf: Optional[bool] = None,
    max_request_size: Optional[int] = None,
):
    """
    Build a dependency that runs the request checks in order (payload size,
    CSRF, raw input shape, authentication, per-user rate limit) and returns the
    authenticated user.
    """

    async def dependency(
        request: Request,
        auth: AuthClient = Depends(get_auth_client),
        store: RateLimitStore = Depends(get_rate_limit_store),
    ) -> AuthUser:
        settings = get_settings()
        validate_request_size(request, max_request_size or settings.max_request_bytes)

        csrf = settings.require_csrf if require_csrf is None else require_csrf
        if csrf and not validate_csrf(request):
            logger.warning("CSRF validation failed for %s", request.url.path)
            raise HTTPException(status_code=403, detail="CSRF validation failed")

        await _check_raw_input(request)
        user = get_current_user(request, auth)

        if action:
            result = apply_rate_limit(store, user.id, action, window_minutes)
            if not result.ok:
                logger.warning("Rate limit exceeded for %s on %s", user.id, action)
                raise HTTPException(status_code=429, detail=result.reason)
        return user

    return dependency
