from __future__ import annotations

import itertools
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ProfileUpdate,
    SessionInfo,
    TokenType,
    User,
    VerificationToken,
    utcnow,
)
from authcore.storage.redis_cache import DEFAULT_SESSION_TTL_SECONDS


class MemoryStore:
    """In-process user and verification-token storage.

    Mirrors the Postgres store's contract: lookups return ``None`` when
    nothing matches, and expired verification tokens are invisible.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.tokens: Dict[str, VerificationToken] = {}
        self._user_ids = itertools.count(1)
        self._token_ids = itertools.count(1)
        self._data_lock = threading.RLock()

    # users

    def _find_by_email(self, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            if user is None or not user.is_verified:
                return None
            return replace(user)

    def get_user_by_email_including_unverified(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "Customer",
        is_verified: bool = False,
        name: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=next(self._user_ids),
                email=email,
                password_hash=password_hash,
                role=role,
                is_verified=is_verified,
                name=name,
            )
            self.users[user.id] = user
            self.logger.info("user_created", user_id=user.id)
            return replace(user)

    def _mutate_user(self, user_id: int, **changes) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            self.users[user_id] = replace(user, updated_at=utcnow(), **changes)
            return True

    def update_verification_status(self, user_id: int, is_verified: bool) -> bool:
        return self._mutate_user(user_id, is_verified=is_verified)

    def update_password(self, user_id: int, password_hash: str) -> bool:
        return self._mutate_user(user_id, password_hash=password_hash)

    def update_user_role(self, user_id: int, role: str) -> bool:
        return self._mutate_user(user_id, role=role)

    def update_email(self, user_id: int, email: str) -> bool:
        with self._data_lock:
            owner = self._find_by_email(email)
            if owner is not None and owner.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            return self._mutate_user(user_id, email=email)

    def update_profile(self, user_id: int, profile: ProfileUpdate) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            if profile.email and profile.email != user.email:
                owner = self._find_by_email(profile.email)
                if owner is not None:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user_id] = replace(
                user,
                name=profile.name,
                email=profile.email or user.email,
                phone=profile.phone,
                address=profile.address,
                lat=profile.lat,
                lng=profile.lng,
                photo_url=profile.photo_url,
                updated_at=utcnow(),
            )
            return replace(self.users[user_id])

    # verification tokens

    def create_verification_token(
        self,
        user_id: int,
        token: str,
        token_type: TokenType,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> VerificationToken:
        with self._data_lock:
            if token in self.tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            record = VerificationToken(
                id=next(self._token_ids),
                user_id=user_id,
                token=token,
                token_type=TokenType(token_type),
                expires_at=expires_at,
                new_email=new_email,
            )
            self.tokens[token] = record
            return replace(record)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            record = self.tokens.get(token)
            if record is None or record.is_expired():
                return None
            return replace(record)

    def delete_verification_token(self, token: str) -> bool:
        with self._data_lock:
            return self.tokens.pop(token, None) is not None

    def ping(self) -> bool:
        return True


class MemoryCache:
    """Process-local stand-in for RedisCache with the same async contract.

    Entries carry an absolute deadline and are dropped lazily on access.
    """

    def __init__(self, *, session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS) -> None:
        self.session_ttl_seconds = session_ttl_seconds
        self._sessions: Dict[Tuple[int, str], Tuple[str, float]] = {}
        self._index: Dict[int, Dict[str, SessionInfo]] = {}
        self._index_deadline: Dict[int, float] = {}
        self._blacklist: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _alive(deadline: float) -> bool:
        return deadline > time.time()

    def _index_for(self, user_id: int, *, create: bool = False) -> Dict[str, SessionInfo]:
        deadline = self._index_deadline.get(user_id)
        if deadline is not None and not self._alive(deadline):
            self._index.pop(user_id, None)
            self._index_deadline.pop(user_id, None)
        if create:
            return self._index.setdefault(user_id, {})
        return self._index.get(user_id, {})

    async def ping(self) -> bool:
        return True

    async def store_session(self, user_id: int, session_id: str, token: str) -> SessionInfo:
        now = utcnow()
        info = SessionInfo(
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_ttl_seconds),
        )
        deadline = time.time() + self.session_ttl_seconds
        with self._lock:
            self._sessions[(user_id, session_id)] = (token, deadline)
            self._index_for(user_id, create=True)[session_id] = info
            self._index_deadline[user_id] = deadline
        return info

    async def get_session_token(self, user_id: int, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._sessions.get((user_id, session_id))
            if entry is None:
                return None
            token, deadline = entry
            if not self._alive(deadline):
                del self._sessions[(user_id, session_id)]
                return None
            return token

    async def validate_session(self, user_id: int, session_id: str, token: str) -> bool:
        stored = await self.get_session_token(user_id, session_id)
        return stored is not None and stored == token

    async def delete_session(self, user_id: int, session_id: str) -> None:
        with self._lock:
            self._sessions.pop((user_id, session_id), None)
            index = self._index_for(user_id)
            index.pop(session_id, None)
            # Redis drops a hash once its last field is removed.
            if not index:
                self._index.pop(user_id, None)
                self._index_deadline.pop(user_id, None)

    async def delete_all_sessions(self, user_id: int) -> int:
        with self._lock:
            session_ids = list(self._index_for(user_id))
            for session_id in session_ids:
                self._sessions.pop((user_id, session_id), None)
            self._index.pop(user_id, None)
            self._index_deadline.pop(user_id, None)
        return len(session_ids)

    async def list_sessions(self, user_id: int) -> List[SessionInfo]:
        with self._lock:
            sessions = list(self._index_for(user_id).values())
        return sorted(sessions, key=lambda info: info.created_at)

    async def add_revoked_token(self, token_hash: str, expires_at: int) -> bool:
        if expires_at <= time.time():
            return False
        with self._lock:
            self._blacklist[token_hash] = float(expires_at)
        return True

    async def is_token_revoked(self, token_hash: str) -> bool:
        with self._lock:
            deadline = self._blacklist.get(token_hash)
            if deadline is None:
                return False
            if not self._alive(deadline):
                del self._blacklist[token_hash]
                return False
            return True

    async def close(self) -> None:
        return None
