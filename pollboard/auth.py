"""
Client for the hosted identity service, plus an in-memory stand-in for tests.

Sign-up, sign-in, one-time codes, magic links and sessions all live on the
platform; this module only forwards requests and normalizes the replies.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import requests

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when the identity service rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class AuthUser:
    id: str
    email: str
    user_metadata: dict = field(default_factory=dict)
    email_confirmed_at: Optional[str] = None


@dataclass
class AuthSession:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"


@dataclass
class AuthResult:
    user: Optional[AuthUser]
    session: Optional[AuthSession] = None


class AuthClient(Protocol):
    """Operations the API forwards to the identity service."""

    def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[dict] = None,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult:
        ...

    def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        ...

    def sign_in_with_otp(
        self,
        email: str,
        should_create_user: bool = False,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        ...

    def verify_otp(self, email: str, token: str, type: str = "email") -> AuthResult:
        ...

    def exchange_code_for_session(
        self, code: str, code_verifier: Optional[str] = None
    ) -> AuthResult:
        ...

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        ...

    def sign_out(self, access_token: str) -> None:
        ...

    def reset_password_for_email(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        ...

    def update_user(self, access_token: str, password: str) -> AuthUser:
        ...

    def resend(
        self,
        email: str,
        type: str = "signup",
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        ...


def generate_pkce_pair() -> tuple[str, str]:
    """
    Return a ``(code_verifier, code_challenge)`` pair for the S256 method.

    Emails sent with the challenge link back with a ``?code=`` that only
    exchanges for a session together with the verifier.
    """
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_challenge(verifier)


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def is_unknown_user_error(error: AuthError) -> bool:
    """True when the service refused a passwordless sign-in for an unregistered email."""
    message = error.message.lower()
    return (
        "user not found" in message
        or "signup not allowed" in message
        or "signups not allowed" in message
    )


def _hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


class InMemoryAuthClient:
    """
    Test double for the identity service. Emails are captured in `outbox`
    instead of being sent.
    """

    def __init__(self, auto_confirm: bool = True):
        self.auto_confirm = auto_confirm
        self.users: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, str] = {}
        self.otp_codes: dict[str, str] = {}
        self.auth_codes: dict[str, tuple[str, Optional[str]]] = {}
        self.outbox: list[dict[str, Any]] = []

    def reset(self) -> None:
        self.users.clear()
        self.sessions.clear()
        self.otp_codes.clear()
        self.auth_codes.clear()
        self.outbox.clear()

    def _to_user(self, record: dict) -> AuthUser:
        return AuthUser(
            id=record["id"],
            email=record["email"],
            user_metadata=dict(record["metadata"]),
            email_confirmed_at=record["confirmed_at"],
        )

    def _find_by_id(self, user_id: str) -> Optional[dict]:
        for record in self.users.values():
            if record["id"] == user_id:
                return record
        return None

    def _issue_session(self, record: dict) -> AuthResult:
        token = secrets.token_urlsafe(24)
        self.sessions[token] = record["id"]
        return AuthResult(
            user=self._to_user(record),
            session=AuthSession(
                access_token=token,
                refresh_token=secrets.token_urlsafe(24),
                expires_in=3600,
            ),
        )

    def _send(
        self,
        kind: str,
        email: str,
        redirect_to: Optional[str],
        code_challenge: Optional[str] = None,
    ) -> str:
        code = f"{secrets.randbelow(10**6):06d}"
        auth_code = secrets.token_urlsafe(16)
        self.otp_codes[email] = code
        self.auth_codes[auth_code] = (email, code_challenge)
        self.outbox.append(
            {
                "kind": kind,
                "email": email,
                "redirect_to": redirect_to,
                "code": code,
                "auth_code": auth_code,
                "code_challenge": code_challenge,
            }
        )
        return code

    def create_user(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> AuthUser:
        """Seed a confirmed user directly."""
        record = {
            "id": str(uuid.uuid4()),
            "email": email,
            "password": _hash_password(password),
            "metadata": dict(metadata or {}),
            "confirmed_at": "1970-01-01T00:00:00+00:00",
        }
        self.users[email] = record
        return self._to_user(record)

    def issue_token(self, user_id: str) -> str:
        """Return a session token for an existing user id."""
        record = self._find_by_id(user_id)
        if record is None:
            raise AuthError("User not found", 404)
        return self._issue_session(record).session.access_token

    def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[dict] = None,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult:
        if email in self.users:
            raise AuthError("User already registered", 400)
        record = {
            "id": str(uuid.uuid4()),
            "email": email,
            "password": _hash_password(password),
            "metadata": dict(metadata or {}),
            "confirmed_at": None,
        }
        self.users[email] = record
        if self.auto_confirm:
            record["confirmed_at"] = "1970-01-01T00:00:00+00:00"
            return self._issue_session(record)
        self._send("signup", email, redirect_to, code_challenge)
        return AuthResult(user=self._to_user(record), session=None)

    def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        record = self.users.get(email)
        if not record or record["password"] != _hash_password(password):
            raise AuthError("Invalid login credentials", 400)
        if record["confirmed_at"] is None:
            raise AuthError("Email not confirmed", 400)
        return self._issue_session(record)

    def sign_in_with_otp(
        self,
        email: str,
        should_create_user: bool = False,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        if email not in self.users:
            if not should_create_user:
                raise AuthError("Signups not allowed for otp", 422)
            self.users[email] = {
                "id": str(uuid.uuid4()),
                "email": email,
                "password": None,
                "metadata": {},
                "confirmed_at": None,
            }
        self._send("magiclink", email, redirect_to, code_challenge)

    def verify_otp(self, email: str, token: str, type: str = "email") -> AuthResult:
        record = self.users.get(email)
        if not record or self.otp_codes.get(email) != token:
            raise AuthError("Token has expired or is invalid", 403)
        del self.otp_codes[email]
        if record["confirmed_at"] is None:
            record["confirmed_at"] = "1970-01-01T00:00:00+00:00"
        return self._issue_session(record)

    def exchange_code_for_session(
        self, code: str, code_verifier: Optional[str] = None
    ) -> AuthResult:
        email, challenge = self.auth_codes.pop(code, (None, None))
        if email is None or email not in self.users:
            raise AuthError("invalid flow state, no valid flow state found", 400)
        if challenge and (
            not code_verifier or pkce_challenge(code_verifier) != challenge
        ):
            raise AuthError(
                "code challenge does not match previously saved code verifier", 400
            )
        record = self.users[email]
        if record["confirmed_at"] is None:
            record["confirmed_at"] = "1970-01-01T00:00:00+00:00"
        return self._issue_session(record)

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        user_id = self.sessions.get(access_token)
        if user_id is None:
            return None
        record = self._find_by_id(user_id)
        return self._to_user(record) if record else None

    def sign_out(self, access_token: str) -> None:
        self.sessions.pop(access_token, None)

    def reset_password_for_email(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        # Unknown addresses are accepted silently, like the hosted service.
        if email in self.users:
            self._send("recovery", email, redirect_to)

    def update_user(self, access_token: str, password: str) -> AuthUser:
        user_id = self.sessions.get(access_token)
        record = self._find_by_id(user_id) if user_id else None
        if record is None:
            raise AuthError("Invalid JWT", 401)
        record["password"] = _hash_password(password)
        return self._to_user(record)

    def resend(
        self,
        email: str,
        type: str = "signup",
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        record = self.users.get(email)
        if record is None:
            return
        if type == "signup" and record["confirmed_at"] is not None:
            raise AuthError("Email already confirmed", 400)
        self._send(type, email, redirect_to, code_challenge)


class HostedAuthClient:
    """
    REST client for the platform's auth API (`/auth/v1`). Requests carry the
    project's API key; user-scoped calls also carry the user's access token.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        if not base_url or not api_key:
            raise ValueError("AUTH_URL and AUTH_API_KEY are required for HostedAuthClient")
        self.base_url = base_url.rstrip("/") + "/auth/v1"
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json_body,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Auth service request %s %s failed: %s", method, path, exc)
            raise AuthError("Authentication service unavailable", 503) from exc

        if response.status_code >= 400:
            raise AuthError(self._error_message(response), response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            for key in ("msg", "error_description", "message", "error"):
                if body.get(key):
                    return str(body[key])
        return response.reason or f"Auth service returned {response.status_code}"

    @staticmethod
    def _parse_user(payload: Optional[dict]) -> Optional[AuthUser]:
        if not payload or not payload.get("id"):
            return None
        return AuthUser(
            id=payload["id"],
            email=payload.get("email") or "",
            user_metadata=payload.get("user_metadata") or {},
            email_confirmed_at=payload.get("email_confirmed_at"),
        )

    @staticmethod
    def _pkce_fields(code_challenge: Optional[str]) -> dict:
        if not code_challenge:
            return {}
        return {"code_challenge": code_challenge, "code_challenge_method": "s256"}

    def _parse_result(self, payload: dict) -> AuthResult:
        if payload.get("access_token"):
            return AuthResult(
                user=self._parse_user(payload.get("user")),
                session=AuthSession(
                    access_token=payload["access_token"],
                    refresh_token=payload.get("refresh_token"),
                    expires_in=payload.get("expires_in"),
                    token_type=payload.get("token_type", "bearer"),
                ),
            )
        # Sign-up without auto-confirm returns the bare user object.
        return AuthResult(user=self._parse_user(payload.get("user") or payload))

    def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[dict] = None,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult:
        payload = self._request(
            "POST",
            "/signup",
            json_body={
                "email": email,
                "password": password,
                "data": metadata or {},
                **self._pkce_fields(code_challenge),
            },
            params={"redirect_to": redirect_to} if redirect_to else None,
        )
        return self._parse_result(payload)

    def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        payload = self._request(
            "POST",
            "/token",
            json_body={"email": email, "password": password},
            params={"grant_type": "password"},
        )
        return self._parse_result(payload)

    def sign_in_with_otp(
        self,
        email: str,
        should_create_user: bool = False,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        self._request(
            "POST",
            "/otp",
            json_body={
                "email": email,
                "create_user": should_create_user,
                **self._pkce_fields(code_challenge),
            },
            params={"redirect_to": redirect_to} if redirect_to else None,
        )

    def verify_otp(self, email: str, token: str, type: str = "email") -> AuthResult:
        payload = self._request(
            "POST",
            "/verify",
            json_body={"email": email, "token": token, "type": type},
        )
        return self._parse_result(payload)

    def exchange_code_for_session(
        self, code: str, code_verifier: Optional[str] = None
    ) -> AuthResult:
        body = {"auth_code": code}
        if code_verifier:
            body["code_verifier"] = code_verifier
        payload = self._request(
            "POST", "/token", json_body=body, params={"grant_type": "pkce"}
        )
        return self._parse_result(payload)

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        try:
            payload = self._request("GET", "/user", access_token=access_token)
        except AuthError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        return self._parse_user(payload)

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "/logout", access_token=access_token)

    def reset_password_for_email(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        self._request(
            "POST",
            "/recover",
            json_body={"email": email},
            params={"redirect_to": redirect_to} if redirect_to else None,
        )

    def update_user(self, access_token: str, password: str) -> AuthUser:
        payload = self._request(
            "PUT", "/user", json_body={"password": password}, access_token=access_token
        )
        user = self._parse_user(payload)
        if user is None:
            raise AuthError("Failed to update user", 500)
        return user

    def resend(
        self,
        email: str,
        type: str = "signup",
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> None:
        self._request(
            "POST",
            "/resend",
            json_body={"email": email, "type": type, **self._pkce_fields(code_challenge)},
            params={"redirect_to": redirect_to} if redirect_to else None,
        )
