"""
Request validation and sanitization for poll, vote and account payloads.

Every free-text field that ends up rendered to other users goes through
`secure_text`: HTML is stripped first, then the remaining text is rejected if
it still carries script markers or characters commonly used in injection
payloads.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional
from urllib.parse import urlparse
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from pollboard.db import AuditLogRecord

TITLE_MIN_LENGTH = 1
TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
OPTION_TEXT_MIN_LENGTH = 1
OPTION_TEXT_MAX_LENGTH = 200
MIN_OPTIONS = 2
MAX_OPTIONS = 10
MAX_OPTION_ID = 10000
MAX_VOTES_PER_USER = 50
MAX_POLLS_PER_USER_PER_DAY = 10
MIN_EXPIRY_MINUTES = 5
MAX_EXPIRY_DAYS = 365
COMMENT_MAX_LENGTH = 1000
SEARCH_MAX_LENGTH = 100
EMAIL_MAX_LENGTH = 254
USER_AGENT_MAX_LENGTH = 500

HTML_TAGS = re.compile(r"<[^>]*>")
SCRIPT_TAGS = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE)
SUSPICIOUS_PROTOCOLS = re.compile(r"^(javascript|data|vbscript):", re.IGNORECASE)
SQL_INJECTION = re.compile(r"('|\"|;|--|/\*|\*/|\||%|=|\+)")
XSS_PATTERNS = re.compile(
    r"(<script|<iframe|<object|<embed|<form|javascript:|data:|vbscript:)",
    re.IGNORECASE,
)
PASSWORD_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>?]")

RATE_LIMITS = {
    "create_poll": MAX_POLLS_PER_USER_PER_DAY,
    "vote": 100,
    "update_poll": 20,
    "comment": 30,
}
DEFAULT_RATE_LIMIT = 10

AUDIT_ACTIONS = frozenset(
    {
        "create_poll",
        "update_poll",
        "delete_poll",
        "vote",
        "comment",
        "login",
        "register",
    }
)


@dataclass(frozen=True)
class CheckResult:
    ok: bool
    reason: Optional[str] = None


def sanitize_html(value: str) -> str:
    value = HTML_TAGS.sub("", value)
    value = SCRIPT_TAGS.sub("", value)
    return value.strip()


def validate_content_security(content: str) -> CheckResult:
    if XSS_PATTERNS.search(content):
        return CheckResult(False, "Potential XSS content detected")
    if SQL_INJECTION.search(content):
        return CheckResult(False, "Potential SQL injection detected")
    if SUSPICIOUS_PROTOCOLS.search(content):
        return CheckResult(False, "Suspicious protocol detected")
    return CheckResult(True)


def secure_text(
    value,
    *,
    max_length: int,
    too_long_message: str,
    min_length: int = 0,
    empty_message: str = "Value is required",
    allow_sql_chars: bool = False,
):
    """
    Sanitize a free-text field and enforce its length bounds.

    Non-string input is returned unchanged so the field's type check reports
    it. `allow_sql_chars` is used for names, where apostrophes are legitimate.
    """
    if not isinstance(value, str):
        return value
    sanitized = sanitize_html(value)
    if XSS_PATTERNS.search(sanitized):
        raise ValueError("Invalid content detected")
    if not allow_sql_chars and SQL_INJECTION.search(sanitized):
        raise ValueError("Invalid characters detected")
    if len(sanitized) < min_length:
        raise ValueError(empty_message)
    if len(sanitized) > max_length:
        raise ValueError(too_long_message)
    return sanitized


def secure_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Only HTTP and HTTPS URLs are allowed")
    return value


def check_uuid(value, message: str) -> str:
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError):
        raise ValueError(message) from None


def check_option_id(
    value: int,
    *,
    not_positive: str = "Option ID must be a positive integer",
) -> int:
    if value <= 0:
        raise ValueError(not_positive)
    if value > MAX_OPTION_ID:
        raise ValueError("Option ID too large")
    return value


def check_expiry_window(value: datetime, now: Optional[datetime] = None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    earliest = now + timedelta(minutes=MIN_EXPIRY_MINUTES)
    latest = now + timedelta(days=MAX_EXPIRY_DAYS)
    if not earliest <= value <= latest:
        raise ValueError(
            f"Expiry date must be between {MIN_EXPIRY_MINUTES} minutes "
            f"and {MAX_EXPIRY_DAYS} days from now"
        )
    return value


class CamelModel(BaseModel):
    """Accepts both the camelCase keys clients send and snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PollOption(CamelModel):
    id: int
    text: str

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: int) -> int:
        return check_option_id(value)

    @field_validator("text", mode="before")
    @classmethod
    def _secure_text(cls, value):
        return secure_text(
            value,
            min_length=OPTION_TEXT_MIN_LENGTH,
            max_length=OPTION_TEXT_MAX_LENGTH,
            empty_message="Option text cannot be empty",
            too_long_message=(
                f"Option text cannot exceed {OPTION_TEXT_MAX_LENGTH} characters"
            ),
        )


class CreatePollRequest(CamelModel):
    title: str
    description: Optional[str] = None
    options: list[PollOption]
    is_public: bool = True
    allows_multiple_votes: bool = False
    expires_at: Optional[datetime] = None

    @field_validator("title", mode="before")
    @classmethod
    def _secure_title(cls, value):
        return secure_text(
            value,
            min_length=TITLE_MIN_LENGTH,
            max_length=TITLE_MAX_LENGTH,
            empty_message="Poll title is required",
            too_long_message=f"Poll title cannot exceed {TITLE_MAX_LENGTH} characters",
        )

    @field_validator("description", mode="before")
    @classmethod
    def _secure_description(cls, value):
        return secure_text(
            value,
            max_length=DESCRIPTION_MAX_LENGTH,
            too_long_message=(
                f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters"
            ),
        )

    @field_validator("options")
    @classmethod
    def _check_options(cls, options):
        if options is None:
            return options
        if len(options) < MIN_OPTIONS:
            raise ValueError(f"Poll must have at least {MIN_OPTIONS} options")
        if len(options) > MAX_OPTIONS:
            raise ValueError(f"Poll cannot have more than {MAX_OPTIONS} options")
        texts = [option.text.lower() for option in options]
        if len(set(texts)) != len(texts):
            raise ValueError("Poll options must be unique (case-insensitive)")
        ids = [option.id for option in options]
        if len(set(ids)) != len(ids):
            raise ValueError("Option IDs must be unique")
        return options

    @field_validator("expires_at")
    @classmethod
    def _check_expiry(cls, value):
        if value is None:
            return value
        return check_expiry_window(value)

    @property
    def expires_at_timestamp(self) -> Optional[float]:
        return self.expires_at.timestamp() if self.expires_at else None

    def options_payload(self) -> list[dict]:
        return [{"id": option.id, "text": option.text} for option in self.options]


class UpdatePollRequest(CreatePollRequest):
    title: Optional[str] = None
    options: Optional[list[PollOption]] = None
    is_public: Optional[bool] = None
    allows_multiple_votes: Optional[bool] = None

    @model_validator(mode="after")
    def _check_fields(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        for name in ("title", "options", "is_public", "allows_multiple_votes"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        return self

    def changes(self) -> dict:
        """Return the column updates this request asks for."""
        updates: dict = {}
        for name in self.model_fields_set:
            if name == "options":
                updates["options"] = self.options_payload()
            elif name == "expires_at":
                updates["expires_at"] = self.expires_at_timestamp
            else:
                updates[name] = getattr(self, name)
        return updates


class VoteRequest(CamelModel):
    poll_id: str
    option_ids: list[int]

    @field_validator("poll_id", mode="before")
    @classmethod
    def _check_poll_id(cls, value):
        return check_uuid(value, "Invalid poll ID format")

    @field_validator("option_ids")
    @classmethod
    def _check_option_ids(cls, option_ids: list[int]) -> list[int]:
        if not option_ids:
            raise ValueError("At least one option must be selected")
        if len(option_ids) > MAX_VOTES_PER_USER:
            raise ValueError(
                f"Cannot select more than {MAX_VOTES_PER_USER} options"
            )
        for option_id in option_ids:
            check_option_id(option_id, not_positive="Invalid option ID")
        if len(set(option_ids)) != len(option_ids):
            raise ValueError("Cannot vote for the same option multiple times")
        return option_ids


class PollFilter(CamelModel):
    search: Optional[str] = None
    status: Literal["active", "expired", "all"] = "all"
    created_by: Optional[str] = None
    is_public: Optional[bool] = None
    page: int = Field(default=1, ge=1, le=1000)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: Literal["created_at", "title", "votes_count"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("search", mode="before")
    @classmethod
    def _secure_search(cls, value):
        return secure_text(
            value,
            max_length=SEARCH_MAX_LENGTH,
            too_long_message="Search term too long",
        )

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        # "closed" is what the poll cards display for expired polls.
        return "expired" if value == "closed" else value

    @field_validator("created_by", mode="before")
    @classmethod
    def _check_created_by(cls, value):
        if value is None:
            return value
        return check_uuid(value, "Invalid user ID format")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class CommentRequest(CamelModel):
    content: str

    @field_validator("content", mode="before")
    @classmethod
    def _secure_content(cls, value):
        return secure_text(
            value,
            min_length=1,
            max_length=COMMENT_MAX_LENGTH,
            empty_message="Comment cannot be empty",
            too_long_message=f"Comment cannot exceed {COMMENT_MAX_LENGTH} characters",
        )


class EmailRequest(CamelModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        if not isinstance(value, str):
            return value
        value = value.strip().lower()
        if len(value) > EMAIL_MAX_LENGTH:
            raise ValueError("Email address too long")
        return value


class RegisterRequest(EmailRequest):
    password: str
    full_name: Optional[str] = None
    username: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters long")
        return value

    @field_validator("full_name", mode="before")
    @classmethod
    def _secure_full_name(cls, value):
        return secure_text(
            value,
            max_length=100,
            too_long_message="Full name cannot exceed 100 characters",
            allow_sql_chars=True,
        )

    @field_validator("username", mode="before")
    @classmethod
    def _secure_username(cls, value):
        return secure_text(
            value,
            max_length=50,
            too_long_message="Username cannot exceed 50 characters",
        )


class LoginRequest(EmailRequest):
    password: str = Field(..., min_length=1)


class OtpVerifyRequest(EmailRequest):
    token: str = Field(..., min_length=6, max_length=10)
    type: Literal["email", "magiclink", "signup", "recovery"] = "email"


class MagicLinkVerifyRequest(CamelModel):
    token: str = Field(..., min_length=32, max_length=128)


class PasswordUpdateRequest(CamelModel):
    password: str
    confirm_password: str

    @model_validator(mode="after")
    def _check_password(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        problems = validate_password_strength(self.password)
        if problems:
            raise ValueError(". ".join(problems))
        return self


class ProfileUpdateRequest(CamelModel):
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("username", mode="before")
    @classmethod
    def _secure_username(cls, value):
        return secure_text(
            value,
            min_length=1,
            max_length=50,
            empty_message="Username cannot be empty",
            too_long_message="Username cannot exceed 50 characters",
        )

    @field_validator("full_name", mode="before")
    @classmethod
    def _secure_full_name(cls, value):
        return secure_text(
            value,
            max_length=100,
            too_long_message="Full name cannot exceed 100 characters",
            allow_sql_chars=True,
        )

    @field_validator("avatar_url")
    @classmethod
    def _check_avatar_url(cls, value):
        if value is None:
            return value
        return secure_url(value)

    @model_validator(mode="after")
    def _check_fields(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


def validate_password_strength(password: str) -> list[str]:
    problems = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    if not PASSWORD_SPECIAL_CHARS.search(password):
        problems.append("Password must contain at least one special character")
    return problems


def check_rate_limit(
    user_id: str,
    action: str,
    requests_in_window: int,
    window_minutes: int = 60,
) -> CheckResult:
    limit = RATE_LIMITS.get(action, DEFAULT_RATE_LIMIT)
    if requests_in_window >= limit:
        return CheckResult(
            False,
            f"Rate limit exceeded. Maximum {limit} {action} actions "
            f"per {window_minutes} minutes",
        )
    return CheckResult(True)


def is_poll_expired(expires_at: Optional[float], now: Optional[float] = None) -> bool:
    if expires_at is None:
        return False
    now = time.time() if now is None else now
    return expires_at <= now


def can_user_vote(poll, has_user_voted: bool, now: Optional[float] = None) -> CheckResult:
    if is_poll_expired(poll.expires_at, now):
        return CheckResult(False, "Poll has expired")
    if has_user_voted and not poll.allows_multiple_votes:
        return CheckResult(False, "You have already voted on this poll")
    return CheckResult(True)


def validate_poll_ownership(poll, user_id: str) -> CheckResult:
    if poll.creator_id != user_id:
        return CheckResult(
            False, "You do not have permission to modify this poll"
        )
    return CheckResult(True)


def create_audit_log(
    user_id: str,
    action: str,
    ip: str,
    user_agent: str,
    resource_id: Optional[str] = None,
    metadata: Optional[dict[str, str]] = None,
) -> AuditLogRecord:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    return AuditLogRecord(
        user_id=user_id,
        action=action,
        ip=ip,
        user_agent=user_agent[:USER_AGENT_MAX_LENGTH],
        resource_id=resource_id,
        metadata=metadata,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
