"""
HTTP routes for polls, votes, results, comments and the dashboard.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response

from pollboard.auth import AuthUser
from pollboard.db import (
    AnalyticsEventRecord,
    DbClient,
    DuplicateVoteError,
    PollQuery,
    PollRecord,
    VoteRecord,
)
from pollboard.dependencies import get_db_client, get_storage_client
from pollboard.qr import generate_poll_url, generate_qr_png
from pollboard.schemas import (
    CommentListResponse,
    CommentResponse,
    DashboardResponse,
    PollListResponse,
    PollOptionResult,
    PollResponse,
    ResultsResponse,
    VoteResponse,
    to_iso,
)
from pollboard.security import (
    get_current_user,
    get_optional_user,
    log_security_event,
    require_poll_ownership,
    secured,
)
from pollboard.storage import StorageClient
from pollboard.tally import build_option_results, poll_status, user_selections
from pollboard.validation import (
    CommentRequest,
    CreatePollRequest,
    PollFilter,
    UpdatePollRequest,
    VoteRequest,
    can_user_vote,
    is_poll_expired,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CREATE_POLL_WINDOW_MINUTES = 24 * 60
RECENT_POLLS_LIMIT = 5


def _qr_code_path(poll_id: str) -> str:
    return f"polls/{poll_id}/qr.png"


def _author_names(db: DbClient, user_ids) -> dict[str, str]:
    profiles = db.get_profiles(user_ids)
    return {user_id: profile.display_name for user_id, profile in profiles.items()}


def _poll_response(
    poll: PollRecord,
    votes: list[VoteRecord],
    author_name: Optional[str],
    storage: Optional[StorageClient] = None,
    now: Optional[float] = None,
) -> PollResponse:
    options, _ = build_option_results(poll, votes)
    qr_code_url = None
    if storage and poll.qr_code_path:
        qr_code_url = storage.presign_get(poll.qr_code_path)
    return PollResponse(
        id=poll.id,
        title=poll.title,
        description=poll.description,
        options=[PollOptionResult(**option) for option in options],
        creator_id=poll.creator_id,
        author_name=author_name or "Anonymous",
        is_public=poll.is_public,
        allows_multiple_votes=poll.allows_multiple_votes,
        expires_at=to_iso(poll.expires_at),
        status=poll_status(poll, now),
        total_votes=len(votes),
        qr_code_url=qr_code_url,
        created_at=to_iso(poll.created_at),
        updated_at=to_iso(poll.updated_at),
    )


def _get_visible_poll(
    db: DbClient, poll_id: str, user: Optional[AuthUser]
) -> PollRecord:
    poll = db.get_poll(poll_id)
    if not poll:
        raise HTTPException(status_code=404, detail="Poll not found")
    if not poll.is_public and (user is None or user.id != poll.creator_id):
        raise HTTPException(status_code=404, detail="Poll not found")
    return poll


def _store_qr_code(db: DbClient, storage: StorageClient, poll: PollRecord) -> PollRecord:
    """Render and upload the poll's QR code. A failure leaves the poll without one."""
    path = _qr_code_path(poll.id)
    try:
        png = generate_qr_png(generate_poll_url(poll.id))
        storage.upload_bytes(path, png, content_type="image/png")
    except Exception:
        logger.exception("Failed to generate QR code for poll %s", poll.id)
        return poll
    return db.update_poll(poll.id, {"qr_code_path": path}) or poll


@router.get("/polls", response_model=PollListResponse)
def list_polls(
    request: Request,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    params = dict(request.query_params)
    if "userId" in params and "createdBy" not in params:
        params["createdBy"] = params.pop("userId")
    filters = PollFilter.model_validate(params)

    viewer_id = None
    if user and filters.created_by == user.id:
        viewer_id = user.id
    now = time.time()
    polls, total = db.list_polls(
        PollQuery(
            viewer_id=viewer_id,
            creator_id=filters.created_by,
            search=filters.search or None,
            status=filters.status,
            is_public=filters.is_public,
            sort_by=filters.sort_by,
            sort_order=filters.sort_order,
            limit=filters.limit,
            offset=filters.offset,
            now=now,
        )
    )
    authors = _author_names(db, (poll.creator_id for poll in polls))
    return PollListResponse(
        polls=[
            _poll_response(
                poll, db.list_votes(poll.id), authors.get(poll.creator_id), storage, now
            )
            for poll in polls
        ],
        total=total,
        page=filters.page,
        limit=filters.limit,
    )


@router.post("/polls", response_model=PollResponse, status_code=201)
def create_poll(
    payload: CreatePollRequest,
    request: Request,
    user: AuthUser = Depends(
        secured("create_poll", window_minutes=CREATE_POLL_WINDOW_MINUTES)
    ),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    poll = db.create_poll(
        title=payload.title,
        description=payload.description or None,
        options=payload.options_payload(),
        creator_id=user.id,
        is_public=payload.is_public,
        allows_multiple_votes=payload.allows_multiple_votes,
        expires_at=payload.expires_at_timestamp,
    )
    logger.info("Poll %s created by %s", poll.id, user.id)
    poll = _store_qr_code(db, storage, poll)
    log_security_event(
        db, request, user.id, "create_poll", poll.id, {"title": poll.title}
    )
    author = _author_names(db, [user.id]).get(user.id)
    return _poll_response(poll, [], author, storage)


@router.get("/polls/{poll_id}", response_model=PollResponse)
def get_poll(
    poll_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    poll = _get_visible_poll(db, poll_id, user)
    author = _author_names(db, [poll.creator_id]).get(poll.creator_id)
    return _poll_response(poll, db.list_votes(poll.id), author, storage)


@router.patch("/polls/{poll_id}", response_model=PollResponse)
def update_poll(
    poll_id: str,
    payload: UpdatePollRequest,
    request: Request,
    user: AuthUser = Depends(secured("update_poll")),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    poll = require_poll_ownership(db, poll_id, user.id)
    changes = payload.changes()
    if "options" in changes and db.count_votes([poll.id]).get(poll.id):
        raise HTTPException(
            status_code=400, detail="Cannot change options after voting has started"
        )
    if "description" in changes:
        changes["description"] = changes["description"] or None

    updated = db.update_poll(poll.id, changes)
    if not updated:
        raise HTTPException(status_code=404, detail="Poll not found")
    log_security_event(
        db,
        request,
        user.id,
        "update_poll",
        poll.id,
        {"fields": ",".join(sorted(changes))},
    )
    author = _author_names(db, [user.id]).get(user.id)
    return _poll_response(updated, db.list_votes(poll.id), author, storage)


@router.delete("/polls/{poll_id}", status_code=204)
def delete_poll(
    poll_id: str,
    request: Request,
    user: AuthUser = Depends(secured()),
    db: DbClient = Depends(get_db_client),
):
    poll = require_poll_ownership(db, poll_id, user.id)
    db.delete_poll(poll.id)
    log_security_event(db, request, user.id, "delete_poll", poll.id)
    return Response(status_code=204)


@router.get("/polls/{poll_id}/qr.png")
def get_poll_qr_code(
    poll_id: str,
    db: DbClient = Depends(get_db_client),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    poll = _get_visible_poll(db, poll_id, user)
    png = generate_qr_png(generate_poll_url(poll.id))
    return Response(
        content=png, media_type="image/png", headers={"Cache-Control": "no-store"}
    )


@router.post("/polls/{poll_id}/vote", response_model=VoteResponse, status_code=201)
def vote(
    poll_id: str,
    request: Request,
    payload: dict = Body(...),
    user: AuthUser = Depends(secured("vote")),
    db: DbClient = Depends(get_db_client),
):
    vote_request = VoteRequest.model_validate({**payload, "pollId": poll_id})
    poll = _get_visible_poll(db, vote_request.poll_id, user)

    if is_poll_expired(poll.expires_at):
        raise HTTPException(status_code=400, detail="Poll has expired")
    if not set(vote_request.option_ids) <= poll.option_ids:
        raise HTTPException(status_code=400, detail="Invalid option selected")
    if not poll.allows_multiple_votes and len(vote_request.option_ids) != 1:
        raise HTTPException(
            status_code=400, detail="This poll only allows selecting one option"
        )
    try:
        record = db.create_vote(
            poll.id,
            user.id,
            vote_request.option_ids,
            allow_repeat=poll.allows_multiple_votes,
        )
    except DuplicateVoteError:
        raise HTTPException(
            status_code=400, detail="You have already voted on this poll"
        )

    try:
        db.record_event(
            AnalyticsEventRecord(
                poll_id=poll.id,
                event_type="vote",
                user_id=user.id,
                metadata={"option_ids": vote_request.option_ids},
            )
        )
    except Exception:
        logger.exception("Failed to record vote analytics for poll %s", poll.id)
    log_security_event(
        db,
        request,
        user.id,
        "vote",
        poll.id,
        {"option_ids": ",".join(str(i) for i in vote_request.option_ids)},
    )
    return VoteResponse(
        id=record.id,
        poll_id=record.poll_id,
        option_ids=record.option_ids,
        created_at=to_iso(record.created_at),
    )


@router.get("/polls/{poll_id}/results", response_model=ResultsResponse)
def get_results(
    poll_id: str,
    db: DbClient = Depends(get_db_client),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    poll = _get_visible_poll(db, poll_id, user)
    votes = db.list_votes(poll.id)
    options, total_selections = build_option_results(poll, votes)
    now = time.time()

    if user is None:
        can_vote, reason = False, "Authentication required"
    else:
        has_voted = any(vote.user_id == user.id for vote in votes)
        check = can_user_vote(poll, has_voted, now)
        can_vote, reason = check.ok, check.reason

    return ResultsResponse(
        poll_id=poll.id,
        status=poll_status(poll, now),
        options=[PollOptionResult(**option) for option in options],
        total_votes=len(votes),
        total_selections=total_selections,
        total_voters=len({vote.user_id for vote in votes}),
        user_selections=user_selections(votes, user.id if user else None),
        can_vote=can_vote,
        reason=reason,
    )


def _comment_response(comment, authors: dict[str, str]) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        poll_id=comment.poll_id,
        user_id=comment.user_id,
        author_name=authors.get(comment.user_id, "Anonymous"),
        content=comment.content,
        created_at=to_iso(comment.created_at),
    )


@router.get("/polls/{poll_id}/comments", response_model=CommentListResponse)
def list_comments(
    poll_id: str,
    db: DbClient = Depends(get_db_client),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    poll = _get_visible_poll(db, poll_id, user)
    comments = db.list_comments(poll.id)
    authors = _author_names(db, (comment.user_id for comment in comments))
    return CommentListResponse(
        comments=[_comment_response(comment, authors) for comment in comments]
    )


@router.post(
    "/polls/{poll_id}/comments", response_model=CommentResponse, status_code=201
)
def create_comment(
    poll_id: str,
    payload: CommentRequest,
    request: Request,
    user: AuthUser = Depends(secured("comment")),
    db: DbClient = Depends(get_db_client),
):
    poll = _get_visible_poll(db, poll_id, user)
    comment = db.create_comment(poll.id, user.id, payload.content)
    log_security_event(db, request, user.id, "comment", poll.id)
    return _comment_response(comment, _author_names(db, [user.id]))


@router.delete("/polls/{poll_id}/comments/{comment_id}", status_code=204)
def delete_comment(
    poll_id: str,
    comment_id: str,
    user: AuthUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    comment = db.get_comment(comment_id)
    if not comment or comment.poll_id != poll_id:
        raise HTTPException(status_code=404, detail="Comment not found")
    poll = db.get_poll(poll_id)
    is_poll_owner = poll is not None and poll.creator_id == user.id
    if comment.user_id != user.id and not is_poll_owner:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    db.delete_comment(comment.id)
    return Response(status_code=204)


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    user: AuthUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    now = time.time()
    polls = db.list_polls_by_creator(user.id)
    counts = db.count_votes(poll.id for poll in polls)
    active = sum(1 for poll in polls if poll_status(poll, now) == "active")
    author = _author_names(db, [user.id]).get(user.id)
    return DashboardResponse(
        total_polls=len(polls),
        active_polls=active,
        closed_polls=len(polls) - active,
        votes_received=sum(counts.values()),
        votes_cast=db.count_votes_by_user(user.id),
        recent_polls=[
            _poll_response(poll, db.list_votes(poll.id), author, storage, now)
            for poll in polls[:RECENT_POLLS_LIMIT]
        ],
    )
