from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.credentials import CredentialCodec, hash_token
from authcore.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailableError
from authcore.storage.models import (
    ProfileUpdate,
    SessionInfo,
    TokenType,
    User,
    VerificationToken,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

MIN_PASSWORD_LENGTH = 8
VERIFICATION_TOKEN_BYTES = 32


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_email_including_unverified(self, email: str) -> Optional[User]: ...

    def get_user_by_id(self, user_id: int) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "Customer",
        is_verified: bool = False,
        name: Optional[str] = None,
    ) -> User: ...

    def update_verification_status(self, user_id: int, is_verified: bool) -> bool: ...

    def update_password(self, user_id: int, password_hash: str) -> bool: ...

    def update_email(self, user_id: int, email: str) -> bool: ...

    def update_profile(self, user_id: int, profile: ProfileUpdate) -> Optional[User]: ...


class VerificationTokenStore(Protocol):
    def create_verification_token(
        self,
        user_id: int,
        token: str,
        token_type: TokenType,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> VerificationToken: ...

    def get_verification_token(self, token: str) -> Optional[VerificationToken]: ...

    def delete_verification_token(self, token: str) -> bool: ...


class SessionStore(Protocol):
    async def store_session(self, user_id: int, session_id: str, token: str) -> SessionInfo: ...

    async def get_session_token(self, user_id: int, session_id: str) -> Optional[str]: ...

    async def validate_session(self, user_id: int, session_id: str, token: str) -> bool: ...

    async def delete_session(self, user_id: int, session_id: str) -> None: ...

    async def delete_all_sessions(self, user_id: int) -> int: ...

    async def list_sessions(self, user_id: int) -> List[SessionInfo]: ...


class RevocationStore(Protocol):
    async def add_revoked_token(self, token_hash: str, expires_at: int) -> bool: ...

    async def is_token_revoked(self, token_hash: str) -> bool: ...


class EmailSender(Protocol):
    def send_verification_email(self, to_email: str, token: str) -> bool: ...

    def send_password_reset_email(self, to_email: str, token: str) -> bool: ...

    def send_email_change_verification_email(self, to_email: str, token: str) -> bool: ...


@dataclass
class SignInResult:
    token: str
    session_id: str
    expires_at: int
    user: User


@dataclass
class ProfileUpdateResult:
    user: User
    pending_email: Optional[str] = None


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> None:
    if not email or "@" not in email or "." not in email.split("@")[-1]:
        raise ValidationError("invalid email format")


def validate_password(password: Optional[str], confirm_password: Optional[str]) -> None:
    if not password:
        raise ValidationError("password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if password != confirm_password:
        raise ValidationError("password confirmation does not match")


def generate_verification_token() -> str:
    return secrets.token_hex(VERIFICATION_TOKEN_BYTES)


def new_session_id() -> str:
    # Unique per sign-in; secrecy comes from the signed token, not this value.
    return f"sess_{time.time_ns()}_{secrets.token_hex(4)}"


class AuthService:
    """Sign-in, sign-up, logout and the single-use token workflows.

    Holds no per-request state; everything shared lives in the injected
    stores. Dependent-system failures are logged with their cause and
    surfaced as ``ServerError`` carrying a generic message.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: VerificationTokenStore,
        sessions: SessionStore,
        revocations: RevocationStore,
        email: EmailSender,
        codec: CredentialCodec,
        *,
        default_role: str = "Customer",
        verification_ttl: timedelta = timedelta(hours=24),
        password_reset_ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.revocations = revocations
        self.email = email
        self.codec = codec
        self.default_role = default_role
        self.verification_ttl = verification_ttl
        self.password_reset_ttl = password_reset_ttl
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # helpers

    def _server_error(self, message: str, event: str, exc: BaseException, **context: Any) -> ServerError:
        retryable = isinstance(exc, StoreUnavailableError)
        self.logger.error(
            event,
            error=str(exc),
            error_type=type(exc).__name__,
            retryable=retryable,
            **context,
        )
        return ServerError(message, detail={"retryable": retryable})

    def _call(self, message: str, event: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except ConstraintViolation:
            raise
        except Exception as exc:
            raise self._server_error(message, event, exc) from exc

    async def _await(self, message: str, event: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except Exception as exc:
            raise self._server_error(message, event, exc) from exc

    async def _dispatch_email(
        self, send: Callable[[str, str], bool], to_email: str, token: str, kind: str
    ) -> bool:
        """Best-effort delivery: failures are logged and reported, never raised."""
        try:
            sent = await asyncio.to_thread(send, to_email, token)
        except Exception as exc:
            self.logger.warning("email_dispatch_failed", kind=kind, error=str(exc))
            return False
        if not sent:
            self.logger.warning("email_dispatch_failed", kind=kind)
        return bool(sent)

    def hash_password(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except Exception as exc:
            raise self._server_error("failed to process password", "password_hash_failed", exc) from exc

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _issue_verification_token(
        self,
        user_id: int,
        token_type: TokenType,
        ttl: timedelta,
        *,
        new_email: Optional[str] = None,
        failure_message: str,
    ) -> str:
        token = generate_verification_token()
        try:
            self._call(
                failure_message,
                "verification_token_create_failed",
                self.tokens.create_verification_token,
                user_id,
                token,
                token_type,
                utcnow() + ttl,
                new_email=new_email,
            )
        except ConstraintViolation as exc:
            raise self._server_error(failure_message, "verification_token_create_failed", exc) from exc
        return token

    def _redeem(
        self, token: str, expected: TokenType, *, missing_message: str, lookup_message: str
    ) -> VerificationToken:
        if not token:
            raise BadRequestError(missing_message)
        record = self._call(
            lookup_message,
            "verification_token_lookup_failed",
            self.tokens.get_verification_token,
            token,
        )
        if record is None:
            raise BadRequestError(missing_message)
        if record.token_type != expected:
            self.logger.info(
                "verification_token_type_mismatch",
                expected=expected.value,
                actual=record.token_type.value,
            )
            raise BadRequestError("invalid token type")
        return record

    def _consume(self, token: str, failure_message: str) -> None:
        self._call(
            failure_message,
            "verification_token_delete_failed",
            self.tokens.delete_verification_token,
            token,
        )

    # sign-in / sign-up

    async def sign_in(self, email: str, password: str) -> SignInResult:
        email = normalize_email(email)
        validate_email(email)
        if not password:
            raise ValidationError("password is required")

        user = self._call("failed to sign in", "sign_in_lookup_failed", self.users.get_user_by_email, email)
        if user is None:
            raise NotFoundError("user not found")
        if not self.verify_password(user, password):
            self.logger.info("sign_in_rejected", user_id=user.id, reason="password")
            raise AuthenticationError("incorrect password")

        session_id = new_session_id()
        try:
            token, claims = self.codec.issue(user.id, user.email, user.role, session_id)
        except Exception as exc:
            raise self._server_error("failed to generate token", "token_issue_failed", exc, user_id=user.id) from exc

        # The token is only returned once its session record exists.
        await self._await(
            "failed to create session",
            "session_create_failed",
            self.sessions.store_session(user.id, session_id, token),
        )
        self.logger.info("sign_in_succeeded", user_id=user.id, session_id=session_id)
        return SignInResult(token=token, session_id=session_id, expires_at=claims.expires_at, user=user)

    async def sign_up(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        name: Optional[str] = None,
    ) -> User:
        email = normalize_email(email)
        validate_email(email)
        validate_password(password, confirm_password)

        existing = self._call(
            "failed to create account",
            "sign_up_lookup_failed",
            self.users.get_user_by_email_including_unverified,
            email,
        )
        if existing is not None:
            raise ConflictError("email already exists")

        password_hash = self.hash_password(password)
        try:
            user = self._call(
                "failed to create account",
                "user_create_failed",
                self.users.create_user,
                email,
                password_hash,
                role=self.default_role,
                is_verified=False,
                name=name.strip() if name else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists") from exc

        token = self._issue_verification_token(
            user.id,
            TokenType.EMAIL_VERIFICATION,
            self.verification_ttl,
            failure_message="failed to create verification token",
        )
        # The account stays even when the email cannot be delivered.
        await self._dispatch_email(self.email.send_verification_email, user.email, token, "verification")
        self.logger.info("sign_up_succeeded", user_id=user.id)
        return user

    async def verify_account(self, token: str) -> User:
        record = self._redeem(
            token,
            TokenType.EMAIL_VERIFICATION,
            missing_message="invalid or expired verification token",
            lookup_message="failed to verify token",
        )
        updated = self._call(
            "failed to verify account",
            "verification_update_failed",
            self.users.update_verification_status,
            record.user_id,
            True,
        )
        if not updated:
            raise NotFoundError("user not found")
        self._consume(token, "failed to verify account")
        user = self._call("failed to verify account", "user_lookup_failed", self.users.get_user_by_id, record.user_id)
        if user is None:
            raise NotFoundError("user not found")
        self.logger.info("account_verified", user_id=record.user_id)
        return user

    # password reset

    async def forgot_password(self, email: str) -> None:
        """Start a password reset; silently does nothing for unknown or unverified accounts."""
        email = normalize_email(email)
        validate_email(email)
        user = self._call(
            "failed to process request",
            "forgot_password_lookup_failed",
            self.users.get_user_by_email,
            email,
        )
        if user is None:
            self.logger.info("forgot_password_ignored")
            return
        token = self._issue_verification_token(
            user.id,
            TokenType.PASSWORD_RESET,
            self.password_reset_ttl,
            failure_message="failed to create reset token",
        )
        await self._dispatch_email(self.email.send_password_reset_email, user.email, token, "password_reset")
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, password: str, confirm_password: str) -> None:
        validate_password(password, confirm_password)
        record = self._redeem(
            token,
            TokenType.PASSWORD_RESET,
            missing_message="invalid or expired reset token",
            lookup_message="failed to validate token",
        )
        password_hash = self.hash_password(password)
        updated = self._call(
            "failed to update password",
            "password_update_failed",
            self.users.update_password,
            record.user_id,
            password_hash,
        )
        if not updated:
            raise NotFoundError("user not found")
        self._consume(token, "failed to update password")
        self.logger.info("password_reset_completed", user_id=record.user_id)

    # sessions

    async def logout(self, user_id: int, session_id: str, token: str = "", expires_at: int = 0) -> None:
        """Delete the session, then blacklist the token on a best-effort basis."""
        await self._await(
            "failed to logout",
            "session_delete_failed",
            self.sessions.delete_session(user_id, session_id),
        )
        await self._revoke_quietly(user_id, token, expires_at)
        self.logger.info("logout_succeeded", user_id=user_id, session_id=session_id)

    async def logout_all(self, user_id: int, token: str = "", expires_at: int = 0) -> int:
        removed = await self._await(
            "failed to logout",
            "session_delete_all_failed",
            self.sessions.delete_all_sessions(user_id),
        )
        await self._revoke_quietly(user_id, token, expires_at)
        self.logger.info("logout_all_succeeded", user_id=user_id, sessions=removed)
        return removed

    async def _revoke_quietly(self, user_id: int, token: str, expires_at: int) -> None:
        if not token or expires_at <= 0:
            return
        try:
            await self.revocations.add_revoked_token(hash_token(token), expires_at)
        except Exception as exc:
            self.logger.error("blacklist_insert_failed", user_id=user_id, error=str(exc))

    async def list_sessions(self, user_id: int) -> List[SessionInfo]:
        return await self._await(
            "failed to list sessions",
            "session_list_failed",
            self.sessions.list_sessions(user_id),
        )

    # profile

    async def get_profile(self, user_id: int) -> User:
        user = self._call("failed to load profile", "user_lookup_failed", self.users.get_user_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def update_profile(self, user_id: int, profile: ProfileUpdate) -> ProfileUpdateResult:
        """Apply profile fields; a changed email is staged until the new address is confirmed."""
        requested_email = normalize_email(profile.email) or None
        if requested_email:
            validate_email(requested_email)
        user = await self.get_profile(user_id)
        cleaned = ProfileUpdate(
            name=profile.name.strip() if profile.name else profile.name,
            email=requested_email,
            phone=profile.phone.strip() if profile.phone else profile.phone,
            address=profile.address.strip() if profile.address else profile.address,
            lat=profile.lat,
            lng=profile.lng,
            photo_url=profile.photo_url.strip() if profile.photo_url else profile.photo_url,
        )
        pending_email: Optional[str] = None
        if cleaned.email and cleaned.email != user.email:
            await self._stage_email_change(user, cleaned.email)
            pending_email = cleaned.email

        try:
            updated = self._call(
                "failed to update profile",
                "profile_update_failed",
                self.users.update_profile,
                user_id,
                replace(cleaned, email=user.email),
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists") from exc
        if updated is None:
            raise NotFoundError("user not found")
        self.logger.info("profile_updated", user_id=user_id, email_change_pending=pending_email is not None)
        return ProfileUpdateResult(user=updated, pending_email=pending_email)

    async def _stage_email_change(self, user: User, new_email: str) -> None:
        owner = self._call(
            "failed to validate email",
            "email_owner_lookup_failed",
            self.users.get_user_by_email_including_unverified,
            new_email,
        )
        if owner is not None:
            raise ConflictError("email already exists")
        token = self._issue_verification_token(
            user.id,
            TokenType.EMAIL_CHANGE,
            self.verification_ttl,
            new_email=new_email,
            failure_message="failed to create verification token",
        )
        await self._dispatch_email(
            self.email.send_email_change_verification_email, new_email, token, "email_change"
        )
        self._call(
            "failed to update profile",
            "verification_update_failed",
            self.users.update_verification_status,
            user.id,
            False,
        )

    async def verify_email_change(self, token: str) -> User:
        record = self._redeem(
            token,
            TokenType.EMAIL_CHANGE,
            missing_message="invalid or expired verification token",
            lookup_message="failed to verify token",
        )
        new_email = normalize_email(record.new_email)
        if not new_email:
            raise BadRequestError("invalid token data")
        try:
            updated = self._call(
                "failed to update email",
                "email_update_failed",
                self.users.update_email,
                record.user_id,
                new_email,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists") from exc
        if not updated:
            raise NotFoundError("user not found")
        self._call(
            "failed to verify account",
            "verification_update_failed",
            self.users.update_verification_status,
            record.user_id,
            True,
        )
        self._consume(token, "failed to verify account")
        self.logger.info("email_change_verified", user_id=record.user_id)
        return await self.get_profile(record.user_id)
