"""
HTTP routes for accounts: registration, sign-in flows, sessions and profiles.

Credentials and sessions are handled by the identity service; these handlers
validate input, forward it, and keep the local profile rows in step.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from pollboard.auth import (
    AuthClient,
    AuthError,
    AuthResult,
    AuthSession,
    AuthUser,
    generate_pkce_pair,
    is_unknown_user_error,
)
from pollboard.config import get_settings
from pollboard.db import DbClient, ProfileRecord
from pollboard.dependencies import get_auth_client, get_db_client
from pollboard.qr import generate_login_url, generate_magic_link_url, qr_data_url
from pollboard.schemas import (
    AuthResponse,
    MagicLinkGenerateResponse,
    MagicLinkVerifyResponse,
    MessageResponse,
    ProfileResponse,
    SessionResponse,
    UserResponse,
    to_iso,
)
from pollboard.security import (
    get_access_token,
    get_current_user,
    ip_rate_limit,
    log_security_event,
    secured,
)
from pollboard.validation import (
    EmailRequest,
    LoginRequest,
    MagicLinkVerifyRequest,
    OtpVerifyRequest,
    PasswordUpdateRequest,
    ProfileUpdateRequest,
    RegisterRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MAGIC_LINK_WINDOW_SECONDS = 15 * 60
PKCE_COOKIE_MAX_AGE = 60 * 60
UNKNOWN_USER_MESSAGE = (
    "User not found. Please register first or use email/password login."
)


def _auth_http_error(exc: AuthError, fallback_status: int = 400) -> HTTPException:
    if exc.status_code == 503:
        return HTTPException(status_code=503, detail=exc.message)
    if exc.status_code >= 500:
        return HTTPException(status_code=502, detail="Authentication service error")
    return HTTPException(status_code=fallback_status, detail=exc.message)


def _callback_url(kind: str) -> str:
    settings = get_settings()
    return f"{settings.app_url.rstrip('/')}{settings.api_prefix}/auth/callback?type={kind}"


def _set_session_cookie(response: Response, session: AuthSession) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session.access_token,
        max_age=session.expires_in,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _start_pkce(response: Response) -> str:
    """Keep a fresh code verifier in a cookie and return the challenge to email."""
    settings = get_settings()
    verifier, challenge = generate_pkce_pair()
    response.set_cookie(
        key=settings.pkce_cookie_name,
        value=verifier,
        max_age=PKCE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return challenge


def _profile_response(profile: ProfileRecord) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        username=profile.username,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
        created_at=to_iso(profile.created_at),
    )


def _user_response(user: AuthUser, profile: Optional[ProfileRecord]) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        email_confirmed=bool(user.email_confirmed_at),
        profile=_profile_response(profile) if profile else None,
    )


def _auth_response(
    result: AuthResult, db: DbClient, message: Optional[str] = None
) -> AuthResponse:
    profile = db.get_profile(result.user.id) if result.user else None
    session = None
    if result.session:
        session = SessionResponse(
            access_token=result.session.access_token,
            refresh_token=result.session.refresh_token,
            expires_in=result.session.expires_in,
            token_type=result.session.token_type,
        )
    return AuthResponse(
        user=_user_response(result.user, profile) if result.user else None,
        session=session,
        requires_confirmation=result.session is None,
        message=message,
    )


def _ensure_profile(db: DbClient, user: AuthUser) -> None:
    if db.get_profile(user.id) is None:
        db.create_profile(
            ProfileRecord(
                id=user.id,
                username=user.user_metadata.get("username"),
                full_name=user.user_metadata.get("full_name"),
            )
        )


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    metadata = {
        key: value
        for key, value in (
            ("full_name", payload.full_name),
            ("username", payload.username),
        )
        if value
    }
    try:
        result = auth.sign_up(
            payload.email,
            payload.password,
            metadata=metadata,
            redirect_to=_callback_url("signup"),
            code_challenge=_start_pkce(response),
        )
    except AuthError as exc:
        raise _auth_http_error(exc) from exc

    if result.user:
        db.create_profile(
            ProfileRecord(
                id=result.user.id,
                username=payload.username,
                full_name=payload.full_name,
            )
        )
        log_security_event(db, request, result.user.id, "register")
    if result.session:
        _set_session_cookie(response, result.session)
        return _auth_response(result, db, "Registration successful")
    return _auth_response(
        result, db, "Please check your email to confirm your account"
    )


@router.post("/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        result = auth.sign_in_with_password(payload.email, payload.password)
    except AuthError as exc:
        logger.info("Failed login for %s: %s", payload.email, exc.message)
        raise _auth_http_error(exc, fallback_status=401) from exc
    if result.user:
        _ensure_profile(db, result.user)
        log_security_event(db, request, result.user.id, "login")
    if result.session:
        _set_session_cookie(response, result.session)
    return _auth_response(result, db)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    auth: AuthClient = Depends(get_auth_client),
):
    token = get_access_token(request)
    if token:
        try:
            auth.sign_out(token)
        except AuthError as exc:
            logger.warning("Sign-out failed: %s", exc.message)
    response.delete_cookie(get_settings().session_cookie_name)
    return MessageResponse(message="Signed out")


@router.get("/auth/user", response_model=UserResponse)
def current_user(
    user: AuthUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return _user_response(user, db.get_profile(user.id))


@router.post(
    "/auth/magic-link/generate",
    response_model=MagicLinkGenerateResponse,
    dependencies=[
        Depends(
            ip_rate_limit("magic-link-generation", 3, MAGIC_LINK_WINDOW_SECONDS)
        )
    ],
)
def generate_magic_link(
    payload: EmailRequest,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    settings = get_settings()
    token = secrets.token_urlsafe(32)
    expires_at = time.time() + settings.magic_link_ttl_minutes * 60
    try:
        auth.sign_in_with_otp(
            payload.email,
            should_create_user=False,
            redirect_to=generate_magic_link_url(token),
        )
    except AuthError as exc:
        if is_unknown_user_error(exc):
            raise HTTPException(status_code=404, detail=UNKNOWN_USER_MESSAGE) from exc
        logger.error("Failed to send magic link to %s: %s", payload.email, exc.message)
        if exc.status_code == 503:
            raise _auth_http_error(exc) from exc
        raise HTTPException(status_code=500, detail="Failed to send magic link") from exc

    db.create_magic_link(payload.email, token, expires_at)
    login_url = generate_login_url(payload.email)
    return MagicLinkGenerateResponse(
        message="Magic link sent to your email!",
        qr_code=qr_data_url(login_url),
        email=payload.email,
        login_url=login_url,
        expires_at=to_iso(expires_at),
    )


def _verify_magic_link(token: str, db: DbClient, auth: AuthClient) -> str:
    """Consume a stored magic-link token and send the sign-in email. Returns the address."""
    link = db.find_active_magic_link(token)
    if not link:
        raise HTTPException(status_code=400, detail="Invalid or expired magic link")
    if not db.mark_magic_link_used(token):
        logger.error("Failed to mark magic link as used")
    try:
        auth.sign_in_with_otp(link.email, should_create_user=False)
    except AuthError as exc:
        logger.error("Failed to send sign-in email to %s: %s", link.email, exc.message)
        raise HTTPException(
            status_code=500,
            detail="Failed to authenticate. Please try regular login.",
        ) from exc
    return link.email


@router.post(
    "/auth/magic-link/verify",
    response_model=MagicLinkVerifyResponse,
    dependencies=[
        Depends(
            ip_rate_limit("magic-link-verification", 10, MAGIC_LINK_WINDOW_SECONDS)
        )
    ],
)
def verify_magic_link(
    payload: MagicLinkVerifyRequest,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    email = _verify_magic_link(payload.token, db, auth)
    return MagicLinkVerifyResponse(
        message="Magic link email sent! Please check your email to complete login.",
        email=email,
    )


@router.get(
    "/auth/magic-link/verify",
    dependencies=[
        Depends(
            ip_rate_limit("magic-link-verification", 10, MAGIC_LINK_WINDOW_SECONDS)
        )
    ],
)
def verify_magic_link_redirect(
    token: Optional[str] = None,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    origin = get_settings().app_url.rstrip("/")
    if not token:
        return RedirectResponse(f"{origin}/login?error=invalid_token")
    try:
        payload = MagicLinkVerifyRequest(token=token)
        email = _verify_magic_link(payload.token, db, auth)
    except (ValidationError, HTTPException):
        return RedirectResponse(f"{origin}/login?error=invalid_or_expired_token")
    return RedirectResponse(f"{origin}/login?magic_link_sent={quote(email, safe='')}")


@router.post(
    "/auth/otp/send",
    response_model=MessageResponse,
    dependencies=[Depends(ip_rate_limit("otp-send", 5, MAGIC_LINK_WINDOW_SECONDS))],
)
def send_otp(
    payload: EmailRequest,
    response: Response,
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        auth.sign_in_with_otp(
            payload.email,
            should_create_user=False,
            redirect_to=_callback_url("magiclink"),
            code_challenge=_start_pkce(response),
        )
    except AuthError as exc:
        if is_unknown_user_error(exc):
            raise HTTPException(status_code=404, detail=UNKNOWN_USER_MESSAGE) from exc
        raise _auth_http_error(exc) from exc
    return MessageResponse(message="Verification code sent to your email")


@router.post(
    "/auth/otp/verify",
    response_model=AuthResponse,
    dependencies=[Depends(ip_rate_limit("otp-verify", 10, MAGIC_LINK_WINDOW_SECONDS))],
)
def verify_otp(
    payload: OtpVerifyRequest,
    request: Request,
    response: Response,
    db: DbClient = Depends(get_db_client),
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        result = auth.verify_otp(payload.email, payload.token, payload.type)
    except AuthError as exc:
        if exc.status_code < 500:
            raise HTTPException(
                status_code=400, detail="Invalid or expired verification code"
            ) from exc
        raise _auth_http_error(exc) from exc
    if result.user:
        _ensure_profile(db, result.user)
        log_security_event(db, request, result.user.id, "login")
    if result.session:
        _set_session_cookie(response, result.session)
    return _auth_response(result, db)


@router.post(
    "/auth/password/reset",
    response_model=MessageResponse,
    dependencies=[
        Depends(ip_rate_limit("password-reset", 3, MAGIC_LINK_WINDOW_SECONDS))
    ],
)
def reset_password(payload: EmailRequest, auth: AuthClient = Depends(get_auth_client)):
    redirect_to = f"{get_settings().app_url.rstrip('/')}/reset-password"
    try:
        auth.reset_password_for_email(payload.email, redirect_to=redirect_to)
    except AuthError as exc:
        raise _auth_http_error(exc) from exc
    return MessageResponse(
        message="If an account exists for this email, a password reset link has been sent."
    )


@router.post("/auth/password/update", response_model=MessageResponse)
def update_password(
    payload: PasswordUpdateRequest,
    request: Request,
    user: AuthUser = Depends(secured()),
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        auth.update_user(get_access_token(request), payload.password)
    except AuthError as exc:
        raise _auth_http_error(exc) from exc
    logger.info("Password updated for %s", user.id)
    return MessageResponse(message="Password updated successfully")


@router.post(
    "/auth/resend-confirmation",
    response_model=MessageResponse,
    dependencies=[
        Depends(ip_rate_limit("resend-confirmation", 3, MAGIC_LINK_WINDOW_SECONDS))
    ],
)
def resend_confirmation(
    payload: EmailRequest,
    response: Response,
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        auth.resend(
            payload.email,
            "signup",
            redirect_to=_callback_url("signup"),
            code_challenge=_start_pkce(response),
        )
    except AuthError as exc:
        raise _auth_http_error(exc) from exc
    return MessageResponse(message="Confirmation email sent. Please check your inbox.")


def _safe_next(value: Optional[str]) -> str:
    # Only same-site paths; anything else falls back to the poll list.
    if not value or not value.startswith("/") or value.startswith("//"):
        return "/polls"
    return value


@router.get("/auth/callback")
def auth_callback(
    request: Request,
    code: Optional[str] = None,
    next: Optional[str] = None,
    type: Optional[str] = None,
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    settings = get_settings()
    origin = settings.app_url.rstrip("/")
    if not code:
        message = quote("Invalid or expired confirmation link", safe="")
        return RedirectResponse(f"{origin}/login?error={message}")

    code_verifier = request.cookies.get(settings.pkce_cookie_name)
    try:
        result = auth.exchange_code_for_session(code, code_verifier=code_verifier)
    except AuthError as exc:
        if "already been confirmed" in exc.message:
            message = "Email already confirmed. Please sign in."
        else:
            message = "Email confirmation failed. Please try again."
        logger.info("Auth callback failed: %s", exc.message)
        failure = RedirectResponse(
            f"{origin}/login?confirmed=false&message={quote(message, safe='')}"
        )
        failure.delete_cookie(settings.pkce_cookie_name)
        return failure

    redirect_path = _safe_next(next)
    if type == "signup":
        message = quote("Email confirmed successfully! You can now sign in.", safe="")
        redirect_path = f"/login?confirmed=true&message={message}"

    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host and not settings.is_development:
        origin = f"https://{forwarded_host}"

    redirect = RedirectResponse(f"{origin}{redirect_path}")
    redirect.delete_cookie(settings.pkce_cookie_name)
    if result.user:
        _ensure_profile(db, result.user)
    if result.session and type != "signup":
        _set_session_cookie(redirect, result.session)
    return redirect


@router.get("/profile", response_model=ProfileResponse)
def get_profile(
    user: AuthUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    profile = db.get_profile(user.id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _profile_response(profile)


@router.patch("/profile", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: AuthUser = Depends(secured()),
    db: DbClient = Depends(get_db_client),
):
    updates = payload.model_dump(include=payload.model_fields_set)
    profile = db.update_profile(user.id, updates)
    if profile is None:
        profile = db.create_profile(ProfileRecord(id=user.id, **updates))
    return _profile_response(profile)
