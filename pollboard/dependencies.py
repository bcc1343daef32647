"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from pollboard.auth import AuthClient, HostedAuthClient, InMemoryAuthClient
from pollboard.config import get_settings
from pollboard.db import DbClient, InMemoryDbClient, PostgresDbClient
from pollboard.ratelimit import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from pollboard.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_auth_client: AuthClient | None = None
_storage_client: StorageClient | None = None
_rate_limit_store: RateLimitStore | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so in-memory state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_auth_client() -> AuthClient:
    global _auth_client
    if _auth_client:
        return _auth_client

    settings = get_settings()
    if settings.use_in_memory_backends or not (
        settings.auth_url and settings.auth_api_key
    ):
        _auth_client = InMemoryAuthClient()
    else:
        _auth_client = HostedAuthClient(
            settings.auth_url,
            settings.auth_api_key,
            timeout=settings.auth_timeout_seconds,
        )
    return _auth_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint,
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_rate_limit_store() -> RateLimitStore:
    """
    Return a singleton counter store; Redis when configured so limits are shared
    between workers.
    """
    global _rate_limit_store
    if _rate_limit_store:
        return _rate_limit_store

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _rate_limit_store = RedisRateLimitStore(
            url=settings.redis_url,
            key_prefix=settings.rate_limit_key_prefix,
        )
    else:
        _rate_limit_store = InMemoryRateLimitStore()
    return _rate_limit_store
