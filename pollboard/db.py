"""
Database abstraction for the platform's Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    String,
    create_engine,
    delete,
    func,
    or_,
    and_,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker


class DuplicateVoteError(Exception):
    """The user already holds a ballot on a single-ballot poll."""


class DbClient(Protocol):
    """Interface for database access."""

    def create_profile(self, profile: "ProfileRecord") -> "ProfileRecord":
        ...

    def get_profile(self, user_id: str) -> Optional["ProfileRecord"]:
        ...

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, "ProfileRecord"]:
        ...

    def update_profile(self, user_id: str, updates: dict) -> Optional["ProfileRecord"]:
        ...

    def create_poll(
        self,
        *,
        title: str,
        description: Optional[str],
        options: list[dict],
        creator_id: str,
        is_public: bool = True,
        allows_multiple_votes: bool = False,
        expires_at: Optional[float] = None,
    ) -> "PollRecord":
        ...

    def get_poll(self, poll_id: str) -> Optional["PollRecord"]:
        ...

    def update_poll(self, poll_id: str, updates: dict) -> Optional["PollRecord"]:
        ...

    def delete_poll(self, poll_id: str) -> bool:
        ...

    def list_polls(self, query: "PollQuery") -> tuple[list["PollRecord"], int]:
        ...

    def list_polls_by_creator(self, creator_id: str) -> list["PollRecord"]:
        ...

    def create_vote(
        self,
        poll_id: str,
        user_id: str,
        option_ids: list[int],
        *,
        allow_repeat: bool = True,
    ) -> "VoteRecord":
        """Raise DuplicateVoteError when allow_repeat is off and a ballot exists."""
        ...

    def has_user_voted(self, poll_id: str, user_id: str) -> bool:
        ...

    def list_votes(self, poll_id: str) -> list["VoteRecord"]:
        ...

    def count_votes(self, poll_ids: Iterable[str]) -> Dict[str, int]:
        ...

    def count_votes_by_user(self, user_id: str) -> int:
        ...

    def create_comment(
        self, poll_id: str, user_id: str, content: str
    ) -> "CommentRecord":
        ...

    def get_comment(self, comment_id: str) -> Optional["CommentRecord"]:
        ...

    def list_comments(self, poll_id: str) -> list["CommentRecord"]:
        ...

    def delete_comment(self, comment_id: str) -> bool:
        ...

    def create_magic_link(
        self, email: str, token: str, expires_at: float
    ) -> "MagicLinkRecord":
        ...

    def find_active_magic_link(
        self, token: str, now: Optional[float] = None
    ) -> Optional["MagicLinkRecord"]:
        ...

    def mark_magic_link_used(self, token: str, used_at: Optional[float] = None) -> bool:
        ...

    def purge_magic_links(self, before: float) -> int:
        ...

    def record_event(self, event: "AnalyticsEventRecord") -> None:
        ...

    def save_audit_log(self, entry: "AuditLogRecord") -> None:
        ...


@dataclass
class ProfileRecord:
    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    @property
    def display_name(self) -> str:
        return self.username or self.full_name or "Anonymous"


@dataclass
class PollRecord:
    id: str
    title: str
    description: Optional[str]
    options: list[dict]
    creator_id: str
    is_public: bool = True
    allows_multiple_votes: bool = False
    expires_at: Optional[float] = None
    qr_code_path: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def option_ids(self) -> set[int]:
        return {option["id"] for option in self.options}


@dataclass
class VoteRecord:
    id: str
    poll_id: str
    user_id: str
    option_ids: list[int]
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class CommentRecord:
    id: str
    poll_id: str
    user_id: str
    content: str
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class MagicLinkRecord:
    token: str
    email: str
    expires_at: float
    used_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class AnalyticsEventRecord:
    poll_id: str
    event_type: str
    user_id: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class AuditLogRecord:
    user_id: str
    action: str
    ip: str
    user_agent: str
    timestamp: str
    resource_id: Optional[str] = None
    metadata: Optional[dict] = None

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "action": self.action,
            "resource_id": self.resource_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class PollQuery:
    """Filters for listing polls. Private polls only show up for their creator."""

    viewer_id: Optional[str] = None
    creator_id: Optional[str] = None
    search: Optional[str] = None
    status: str = "all"
    is_public: Optional[bool] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = 20
    offset: int = 0
    now: float = field(default_factory=lambda: time.time())


def _poll_matches(
    poll: PollRecord, query: PollQuery
) -> bool:
    if not poll.is_public and (
        query.viewer_id is None or poll.creator_id != query.viewer_id
    ):
        return False
    if query.is_public is not None and poll.is_public != query.is_public:
        return False
    if query.creator_id and poll.creator_id != query.creator_id:
        return False
    if query.search and query.search.lower() not in poll.title.lower():
        return False
    expired = poll.expires_at is not None and poll.expires_at <= query.now
    if query.status == "active" and expired:
        return False
    if query.status == "expired" and not expired:
        return False
    return True


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.profiles: Dict[str, ProfileRecord] = {}
        self.polls: Dict[str, PollRecord] = {}
        self.votes: Dict[str, VoteRecord] = {}
        self.comments: Dict[str, CommentRecord] = {}
        self.magic_links: Dict[str, MagicLinkRecord] = {}
        self.events: list[AnalyticsEventRecord] = []
        self.audit_logs: list[AuditLogRecord] = []
        self._vote_lock = threading.Lock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.profiles.clear()
        self.polls.clear()
        self.votes.clear()
        self.comments.clear()
        self.magic_links.clear()
        self.events.clear()
        self.audit_logs.clear()

    def create_profile(self, profile: ProfileRecord) -> ProfileRecord:
        self.profiles[profile.id] = profile
        return profile

    def get_profile(self, user_id: str) -> Optional[ProfileRecord]:
        return self.profiles.get(user_id)

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ProfileRecord]:
        return {
            user_id: self.profiles[user_id]
            for user_id in set(user_ids)
            if user_id in self.profiles
        }

    def update_profile(self, user_id: str, updates: dict) -> Optional[ProfileRecord]:
        profile = self.profiles.get(user_id)
        if not profile:
            return None
        for key, value in updates.items():
            setattr(profile, key, value)
        return profile

    def create_poll(
        self,
        *,
        title: str,
        description: Optional[str],
        options: list[dict],
        creator_id: str,
        is_public: bool = True,
        allows_multiple_votes: bool = False,
        expires_at: Optional[float] = None,
    ) -> PollRecord:
        record = PollRecord(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            options=[dict(option) for option in options],
            creator_id=creator_id,
            is_public=is_public,
            allows_multiple_votes=allows_multiple_votes,
            expires_at=expires_at,
        )
        self.polls[record.id] = record
        return record

    def get_poll(self, poll_id: str) -> Optional[PollRecord]:
        return self.polls.get(poll_id)

    def update_poll(self, poll_id: str, updates: dict) -> Optional[PollRecord]:
        poll = self.polls.get(poll_id)
        if not poll:
            return None
        for key, value in updates.items():
            setattr(poll, key, value)
        poll.updated_at = time.time()
        return poll

    def delete_poll(self, poll_id: str) -> bool:
        if self.polls.pop(poll_id, None) is None:
            return False
        self.votes = {k: v for k, v in self.votes.items() if v.poll_id != poll_id}
        self.comments = {
            k: c for k, c in self.comments.items() if c.poll_id != poll_id
        }
        self.events = [e for e in self.events if e.poll_id != poll_id]
        return True

    def list_polls(self, query: PollQuery) -> tuple[list[PollRecord], int]:
        polls = [poll for poll in self.polls.values() if _poll_matches(poll, query)]
        counts = self.count_votes(poll.id for poll in polls)
        reverse = query.sort_order == "desc"
        if query.sort_by == "title":
            key = lambda poll: (poll.title.lower(), poll.created_at)
        elif query.sort_by == "votes_count":
            key = lambda poll: (counts.get(poll.id, 0), poll.created_at)
        else:
            key = lambda poll: poll.created_at
        polls.sort(key=key, reverse=reverse)
        total = len(polls)
        return polls[query.offset : query.offset + query.limit], total

    def list_polls_by_creator(self, creator_id: str) -> list[PollRecord]:
        polls = [p for p in self.polls.values() if p.creator_id == creator_id]
        polls.sort(key=lambda poll: poll.created_at, reverse=True)
        return polls

    def create_vote(
        self,
        poll_id: str,
        user_id: str,
        option_ids: list[int],
        *,
        allow_repeat: bool = True,
    ) -> VoteRecord:
        with self._vote_lock:
            if not allow_repeat and self.has_user_voted(poll_id, user_id):
                raise DuplicateVoteError(poll_id)
            record = VoteRecord(
                id=str(uuid.uuid4()),
                poll_id=poll_id,
                user_id=user_id,
                option_ids=list(option_ids),
            )
            self.votes[record.id] = record
            return record

    def has_user_voted(self, poll_id: str, user_id: str) -> bool:
        return any(
            vote.poll_id == poll_id and vote.user_id == user_id
            for vote in self.votes.values()
        )

    def list_votes(self, poll_id: str) -> list[VoteRecord]:
        votes = [vote for vote in self.votes.values() if vote.poll_id == poll_id]
        votes.sort(key=lambda vote: vote.created_at)
        return votes

    def count_votes(self, poll_ids: Iterable[str]) -> Dict[str, int]:
        wanted = set(poll_ids)
        counts: Dict[str, int] = {}
        for vote in self.votes.values():
            if vote.poll_id in wanted:
                counts[vote.poll_id] = counts.get(vote.poll_id, 0) + 1
        return counts

    def count_votes_by_user(self, user_id: str) -> int:
        return sum(1 for vote in self.votes.values() if vote.user_id == user_id)

    def create_comment(self, poll_id: str, user_id: str, content: str) -> CommentRecord:
        record = CommentRecord(
            id=str(uuid.uuid4()), poll_id=poll_id, user_id=user_id, content=content
        )
        self.comments[record.id] = record
        return record

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        return self.comments.get(comment_id)

    def list_comments(self, poll_id: str) -> list[CommentRecord]:
        comments = [c for c in self.comments.values() if c.poll_id == poll_id]
        comments.sort(key=lambda comment: comment.created_at)
        return comments

    def delete_comment(self, comment_id: str) -> bool:
        return self.comments.pop(comment_id, None) is not None

    def create_magic_link(
        self, email: str, token: str, expires_at: float
    ) -> MagicLinkRecord:
        record = MagicLinkRecord(token=token, email=email, expires_at=expires_at)
        self.magic_links[token] = record
        return record

    def find_active_magic_link(
        self, token: str, now: Optional[float] = None
    ) -> Optional[MagicLinkRecord]:
        now = time.time() if now is None else now
        link = self.magic_links.get(token)
        if not link or link.used_at is not None or link.expires_at <= now:
            return None
        return link

    def mark_magic_link_used(self, token: str, used_at: Optional[float] = None) -> bool:
        link = self.magic_links.get(token)
        if not link:
            return False
        link.used_at = time.time() if used_at is None else used_at
        return True

    def purge_magic_links(self, before: float) -> int:
        stale = [
            token
            for token, link in self.magic_links.items()
            if link.expires_at < before
            or (link.used_at is not None and link.used_at < before)
        ]
        for token in stale:
            del self.magic_links[token]
        return len(stale)

    def record_event(self, event: AnalyticsEventRecord) -> None:
        self.events.append(event)

    def save_audit_log(self, entry: AuditLogRecord) -> None:
        self.audit_logs.append(entry)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., the platform's
    Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_profile(self, row: "ProfileRow") -> ProfileRecord:
        return ProfileRecord(
            id=row.id,
            username=row.username,
            full_name=row.full_name,
            avatar_url=row.avatar_url,
            created_at=row.created_at,
        )

    def _to_poll(self, row: "PollRow") -> PollRecord:
        return PollRecord(
            id=row.id,
            title=row.title,
            description=row.description,
            options=list(row.options or []),
            creator_id=row.creator_id,
            is_public=row.is_public,
            allows_multiple_votes=row.allows_multiple_votes,
            expires_at=row.expires_at,
            qr_code_path=row.qr_code_path,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_vote(self, row: "VoteRow") -> VoteRecord:
        return VoteRecord(
            id=row.id,
            poll_id=row.poll_id,
            user_id=row.user_id,
            option_ids=list(row.option_ids or []),
            created_at=row.created_at,
        )

    def _to_comment(self, row: "CommentRow") -> CommentRecord:
        return CommentRecord(
            id=row.id,
            poll_id=row.poll_id,
            user_id=row.user_id,
            content=row.content,
            created_at=row.created_at,
        )

    def _to_magic_link(self, row: "MagicLinkRow") -> MagicLinkRecord:
        return MagicLinkRecord(
            token=row.token,
            email=row.email,
            expires_at=row.expires_at,
            used_at=row.used_at,
            created_at=row.created_at,
        )

    def create_profile(self, profile: ProfileRecord) -> ProfileRecord:
        with self.Session() as session:
            row = session.get(ProfileRow, profile.id)
            if row:
                row.username = profile.username
                row.full_name = profile.full_name
                row.avatar_url = profile.avatar_url
            else:
                row = ProfileRow(
                    id=profile.id,
                    username=profile.username,
                    full_name=profile.full_name,
                    avatar_url=profile.avatar_url,
                    created_at=profile.created_at,
                )
                session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_profile(row)

    def get_profile(self, user_id: str) -> Optional[ProfileRecord]:
        with self.Session() as session:
            row = session.get(ProfileRow, user_id)
            return self._to_profile(row) if row else None

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, ProfileRecord]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        with self.Session() as session:
            rows = session.execute(
                select(ProfileRow).where(ProfileRow.id.in_(ids))
            ).scalars()
            return {row.id: self._to_profile(row) for row in rows}

    def update_profile(self, user_id: str, updates: dict) -> Optional[ProfileRecord]:
        with self.Session() as session:
            row = session.get(ProfileRow, user_id)
            if not row:
                return None
            for key, value in updates.items():
                setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return self._to_profile(row)

    def create_poll(
        self,
        *,
        title: str,
        description: Optional[str],
        options: list[dict],
        creator_id: str,
        is_public: bool = True,
        allows_multiple_votes: bool = False,
        expires_at: Optional[float] = None,
    ) -> PollRecord:
        now = time.time()
        with self.Session() as session:
            row = PollRow(
                id=str(uuid.uuid4()),
                title=title,
                description=description,
                options=options,
                creator_id=creator_id,
                is_public=is_public,
                allows_multiple_votes=allows_multiple_votes,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_poll(row)

    def get_poll(self, poll_id: str) -> Optional[PollRecord]:
        with self.Session() as session:
            row = session.get(PollRow, poll_id)
            return self._to_poll(row) if row else None

    def update_poll(self, poll_id: str, updates: dict) -> Optional[PollRecord]:
        with self.Session() as session:
            row = session.get(PollRow, poll_id)
            if not row:
                return None
            for key, value in updates.items():
                setattr(row, key, value)
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_poll(row)

    def delete_poll(self, poll_id: str) -> bool:
        with self.Session() as session:
            row = session.get(PollRow, poll_id)
            if not row:
                return False
            session.execute(delete(VoteRow).where(VoteRow.poll_id == poll_id))
            session.execute(delete(CommentRow).where(CommentRow.poll_id == poll_id))
            session.execute(
                delete(AnalyticsEventRow).where(AnalyticsEventRow.poll_id == poll_id)
            )
            session.delete(row)
            session.commit()
            return True

    def list_polls(self, query: PollQuery) -> tuple[list[PollRecord], int]:
        conditions = []
        if query.viewer_id:
            conditions.append(
                or_(PollRow.is_public.is_(True), PollRow.creator_id == query.viewer_id)
            )
        else:
            conditions.append(PollRow.is_public.is_(True))
        if query.is_public is not None:
            conditions.append(PollRow.is_public.is_(query.is_public))
        if query.creator_id:
            conditions.append(PollRow.creator_id == query.creator_id)
        if query.search:
            conditions.append(
                func.lower(PollRow.title).contains(
                    query.search.lower(), autoescape=True
                )
            )
        if query.status == "active":
            conditions.append(
                or_(PollRow.expires_at.is_(None), PollRow.expires_at > query.now)
            )
        elif query.status == "expired":
            conditions.append(
                and_(PollRow.expires_at.is_not(None), PollRow.expires_at <= query.now)
            )

        vote_counts = (
            select(VoteRow.poll_id, func.count(VoteRow.id).label("votes_count"))
            .group_by(VoteRow.poll_id)
            .subquery()
        )
        if query.sort_by == "title":
            sort_column = func.lower(PollRow.title)
        elif query.sort_by == "votes_count":
            sort_column = func.coalesce(vote_counts.c.votes_count, 0)
        else:
            sort_column = PollRow.created_at
        if query.sort_order == "desc":
            ordering = [sort_column.desc(), PollRow.created_at.desc()]
        else:
            ordering = [sort_column.asc(), PollRow.created_at.asc()]

        with self.Session() as session:
            total = session.scalar(
                select(func.count()).select_from(PollRow).where(*conditions)
            )
            stmt = (
                select(PollRow)
                .outerjoin(vote_counts, vote_counts.c.poll_id == PollRow.id)
                .where(*conditions)
                .order_by(*ordering)
                .offset(query.offset)
                .limit(query.limit)
            )
            rows = session.execute(stmt).scalars().all()
            return [self._to_poll(row) for row in rows], total or 0

    def list_polls_by_creator(self, creator_id: str) -> list[PollRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(PollRow)
                .where(PollRow.creator_id == creator_id)
                .order_by(PollRow.created_at.desc())
            ).scalars()
            return [self._to_poll(row) for row in rows]

    def create_vote(
        self,
        poll_id: str,
        user_id: str,
        option_ids: list[int],
        *,
        allow_repeat: bool = True,
    ) -> VoteRecord:
        with self.Session() as session:
            if not allow_repeat:
                # Serialises ballots per poll until commit.
                session.execute(
                    select(PollRow.id).where(PollRow.id == poll_id).with_for_update()
                )
                existing = session.execute(
                    select(VoteRow.id)
                    .where(VoteRow.poll_id == poll_id, VoteRow.user_id == user_id)
                    .limit(1)
                ).first()
                if existing is not None:
                    raise DuplicateVoteError(poll_id)
            row = VoteRow(
                id=str(uuid.uuid4()),
                poll_id=poll_id,
                user_id=user_id,
                option_ids=list(option_ids),
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_vote(row)

    def has_user_voted(self, poll_id: str, user_id: str) -> bool:
        with self.Session() as session:
            row = session.execute(
                select(VoteRow.id)
                .where(VoteRow.poll_id == poll_id, VoteRow.user_id == user_id)
                .limit(1)
            ).first()
            return row is not None

    def list_votes(self, poll_id: str) -> list[VoteRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(VoteRow)
                .where(VoteRow.poll_id == poll_id)
                .order_by(VoteRow.created_at.asc())
            ).scalars()
            return [self._to_vote(row) for row in rows]

    def count_votes(self, poll_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(set(poll_ids))
        if not ids:
            return {}
        with self.Session() as session:
            rows = session.execute(
                select(VoteRow.poll_id, func.count(VoteRow.id))
                .where(VoteRow.poll_id.in_(ids))
                .group_by(VoteRow.poll_id)
            ).all()
            return {poll_id: count for poll_id, count in rows}

    def count_votes_by_user(self, user_id: str) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count(VoteRow.id)).where(VoteRow.user_id == user_id)
            ) or 0

    def create_comment(self, poll_id: str, user_id: str, content: str) -> CommentRecord:
        with self.Session() as session:
            row = CommentRow(
                id=str(uuid.uuid4()),
                poll_id=poll_id,
                user_id=user_id,
                content=content,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_comment(row)

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        with self.Session() as session:
            row = session.get(CommentRow, comment_id)
            return self._to_comment(row) if row else None

    def list_comments(self, poll_id: str) -> list[CommentRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(CommentRow)
                .where(CommentRow.poll_id == poll_id)
                .order_by(CommentRow.created_at.asc())
            ).scalars()
            return [self._to_comment(row) for row in rows]

    def delete_comment(self, comment_id: str) -> bool:
        with self.Session() as session:
            row = session.get(CommentRow, comment_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def create_magic_link(
        self, email: str, token: str, expires_at: float
    ) -> MagicLinkRecord:
        with self.Session() as session:
            row = MagicLinkRow(
                token=token,
                email=email,
                expires_at=expires_at,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_magic_link(row)

    def find_active_magic_link(
        self, token: str, now: Optional[float] = None
    ) -> Optional[MagicLinkRecord]:
        now = time.time() if now is None else now
        with self.Session() as session:
            row = session.execute(
                select(MagicLinkRow).where(
                    MagicLinkRow.token == token,
                    MagicLinkRow.used_at.is_(None),
                    MagicLinkRow.expires_at > now,
                )
            ).scalar_one_or_none()
            return self._to_magic_link(row) if row else None

    def mark_magic_link_used(self, token: str, used_at: Optional[float] = None) -> bool:
        with self.Session() as session:
            result = session.execute(
                update(MagicLinkRow)
                .where(MagicLinkRow.token == token)
                .values(used_at=time.time() if used_at is None else used_at)
            )
            session.commit()
            return bool(result.rowcount)

    def purge_magic_links(self, before: float) -> int:
        with self.Session() as session:
            result = session.execute(
                delete(MagicLinkRow).where(
                    or_(
                        MagicLinkRow.expires_at < before,
                        and_(
                            MagicLinkRow.used_at.is_not(None),
                            MagicLinkRow.used_at < before,
                        ),
                    )
                )
            )
            session.commit()
            return result.rowcount or 0

    def record_event(self, event: AnalyticsEventRecord) -> None:
        with self.Session() as session:
            session.add(
                AnalyticsEventRow(
                    id=str(uuid.uuid4()),
                    poll_id=event.poll_id,
                    event_type=event.event_type,
                    user_id=event.user_id,
                    data=event.metadata,
                    created_at=event.created_at,
                )
            )
            session.commit()

    def save_audit_log(self, entry: AuditLogRecord) -> None:
        with self.Session() as session:
            session.add(
                AuditLogRow(
                    id=str(uuid.uuid4()),
                    user_id=entry.user_id,
                    action=entry.action,
                    resource_id=entry.resource_id,
                    ip=entry.ip,
                    user_agent=entry.user_agent,
                    timestamp=entry.timestamp,
                    data=entry.metadata,
                )
            )
            session.commit()


Base = declarative_base()


class ProfileRow(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class PollRow(Base):
    __tablename__ = "polls"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    options = Column(JSON, nullable=False)
    creator_id = Column(String, nullable=False, index=True)
    is_public = Column(Boolean, nullable=False, default=True)
    allows_multiple_votes = Column(Boolean, nullable=False, default=False)
    expires_at = Column(Float, nullable=True, index=True)
    qr_code_path = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class VoteRow(Base):
    __tablename__ = "votes"

    id = Column(String, primary_key=True)
    poll_id = Column(String, ForeignKey("polls.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    option_ids = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)


class CommentRow(Base):
    __tablename__ = "poll_comments"

    id = Column(String, primary_key=True)
    poll_id = Column(String, ForeignKey("polls.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    content = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class MagicLinkRow(Base):
    __tablename__ = "magic_links"

    token = Column(String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    expires_at = Column(Float, nullable=False)
    used_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class AnalyticsEventRow(Base):
    __tablename__ = "poll_analytics"

    id = Column(String, primary_key=True)
    poll_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    data = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)


class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    resource_id = Column(String, nullable=True)
    ip = Column(String, nullable=False)
    user_agent = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)
    data = Column("metadata", JSON, nullable=True)
