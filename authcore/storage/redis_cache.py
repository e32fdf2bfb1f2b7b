from __future__ import annotations

import json
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.storage.errors import StoreUnavailableError
from authcore.storage.models import SessionInfo, utcnow

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


def session_key(user_id: int, session_id: str) -> str:
    return f"session:{user_id}:{session_id}"


def user_sessions_key(user_id: int) -> str:
    return f"user_sessions:{user_id}"


def blacklist_key(token_hash: str) -> str:
    return f"blacklist:{token_hash}"


@contextmanager
def _redis_call(operation: str) -> Iterator[None]:
    """Re-raise client errors and timeouts as StoreUnavailableError."""
    try:
        yield
    except RedisError as exc:
        logger.error("redis_operation_failed", operation=operation, error=str(exc))
        raise StoreUnavailableError(operation, exc) from exc
    except TimeoutError as exc:
        logger.error("redis_operation_timeout", operation=operation)
        raise StoreUnavailableError(operation, exc) from exc


class RedisCache:
    """Session store and token blacklist backed by Redis.

    ``session:{user}:{session}`` holds the one token valid for that session,
    ``user_sessions:{user}`` is a hash of session id to ``SessionInfo`` JSON,
    and ``blacklist:{sha256}`` marks a revoked token until its own expiry.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 3.0,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        client=None,
    ):
        self.redis_url = redis_url
        self.session_ttl_seconds = session_ttl_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the service starts accepting traffic."""
        from redis import Redis

        # A short-lived synchronous client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with _redis_call("ping"):
            return bool(await self.client.ping())

    async def store_session(self, user_id: int, session_id: str, token: str) -> SessionInfo:
        now = utcnow()
        info = SessionInfo(
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_ttl_seconds),
        )
        index_key = user_sessions_key(user_id)
        with _redis_call("store_session"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(session_key(user_id, session_id), token, ex=self.session_ttl_seconds)
            pipe.hset(index_key, session_id, json.dumps(info.to_dict()))
            pipe.expire(index_key, self.session_ttl_seconds)
            await pipe.execute()
        return info

    async def get_session_token(self, user_id: int, session_id: str) -> Optional[str]:
        with _redis_call("get_session"):
            return await self.client.get(session_key(user_id, session_id))

    async def validate_session(self, user_id: int, session_id: str, token: str) -> bool:
        stored = await self.get_session_token(user_id, session_id)
        return stored is not None and stored == token

    async def delete_session(self, user_id: int, session_id: str) -> None:
        with _redis_call("delete_session"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(session_key(user_id, session_id))
            pipe.hdel(user_sessions_key(user_id), session_id)
            await pipe.execute()

    async def delete_all_sessions(self, user_id: int) -> int:
        index_key = user_sessions_key(user_id)
        with _redis_call("delete_all_sessions"):
            session_ids = await self.client.hkeys(index_key)
            pipe = self.client.pipeline(transaction=True)
            for session_id in session_ids:
                pipe.delete(session_key(user_id, session_id))
            pipe.delete(index_key)
            await pipe.execute()
        return len(session_ids)

    async def list_sessions(self, user_id: int) -> List[SessionInfo]:
        with _redis_call("list_sessions"):
            raw = await self.client.hgetall(user_sessions_key(user_id))
        sessions: List[SessionInfo] = []
        for session_id, payload in raw.items():
            try:
                sessions.append(SessionInfo.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError):
                logger.warning("session_index_entry_invalid", session_id=session_id)
        sessions.sort(key=lambda info: info.created_at)
        return sessions

    async def add_revoked_token(self, token_hash: str, expires_at: int) -> bool:
        """Blacklist a token hash until ``expires_at`` (unix seconds).

        Returns False without writing when the token has already expired.
        """
        ttl = int(expires_at - time.time())
        if ttl <= 0:
            return False
        with _redis_call("add_revoked_token"):
            await self.client.set(blacklist_key(token_hash), str(expires_at), ex=ttl)
        return True

    async def is_token_revoked(self, token_hash: str) -> bool:
        with _redis_call("is_token_revoked"):
            return bool(await self.client.exists(blacklist_key(token_hash)))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
