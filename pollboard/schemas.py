"""
Response schemas for the poll API.

Request bodies live in `pollboard.validation`, next to the sanitization rules
they depend on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel


def to_iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class PollOptionResult(BaseModel):
    id: int
    text: str
    votes: int = 0
    percentage: int = 0


class PollResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    options: list[PollOptionResult]
    creator_id: str
    author_name: str
    is_public: bool
    allows_multiple_votes: bool
    expires_at: Optional[str] = None
    status: Literal["active", "closed"]
    total_votes: int = 0
    qr_code_url: Optional[str] = None
    created_at: str
    updated_at: str


class PollListResponse(BaseModel):
    polls: list[PollResponse]
    total: int
    page: int
    limit: int


class VoteResponse(BaseModel):
    id: str
    poll_id: str
    option_ids: list[int]
    created_at: str


class ResultsResponse(BaseModel):
    poll_id: str
    status: Literal["active", "closed"]
    options: list[PollOptionResult]
    total_votes: int
    total_selections: int
    total_voters: int
    user_selections: list[int]
    can_vote: bool
    reason: Optional[str] = None


class CommentResponse(BaseModel):
    id: str
    poll_id: str
    user_id: str
    author_name: str
    content: str
    created_at: str


class CommentListResponse(BaseModel):
    comments: list[CommentResponse]


class ProfileResponse(BaseModel):
    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    email_confirmed: bool
    profile: Optional[ProfileResponse] = None


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"


class AuthResponse(BaseModel):
    user: Optional[UserResponse] = None
    session: Optional[SessionResponse] = None
    requires_confirmation: bool = False
    message: Optional[str] = None


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class MagicLinkGenerateResponse(BaseModel):
    success: bool = True
    message: str
    qr_code: str
    email: str
    login_url: str
    expires_at: str


class MagicLinkVerifyResponse(BaseModel):
    success: bool = True
    message: str
    email: str


class DashboardResponse(BaseModel):
    total_polls: int
    active_polls: int
    closed_polls: int
    votes_received: int
    votes_cast: int
    recent_polls: list[PollResponse]
