from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authcore.logging import get_logger
from authcore.service.auth import RevocationStore, SessionStore
from authcore.service.credentials import CredentialCodec, InvalidCredentialError, hash_token
from authcore.service.errors import AuthenticationError, ForbiddenError, ServerError, ServiceError
from authcore.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

MISSING_HEADER = "Authorization header required"
MALFORMED_HEADER = "Invalid authorization header format. Use: Bearer <token>"
INVALID_TOKEN = "Invalid or expired token"
REVOKED_TOKEN = "Token has been revoked"
INVALID_SESSION = "Session expired or invalid"
ACCESS_DENIED = "Access denied"


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to a request after the guard accepts it."""

    user_id: int
    email: str
    role: str
    session_id: str
    expires_at: int
    token: str


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError(MISSING_HEADER)
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise AuthenticationError(MALFORMED_HEADER)
    return parts[1]


class RequestGuard:
    """Per-request validation chain.

    Steps run in order and stop at the first failure: header, signature,
    blacklist, then session match. A store that cannot answer fails the
    request with a retryable ``ServerError``.
    """

    def __init__(
        self,
        codec: CredentialCodec,
        sessions: SessionStore,
        revocations: RevocationStore,
        *,
        allow_sessionless: bool = True,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations
        self.allow_sessionless = allow_sessionless

    @staticmethod
    def _unavailable(step: str, exc: Exception) -> ServerError:
        retryable = isinstance(exc, StoreUnavailableError)
        logger.error("auth_guard_store_failed", step=step, error=str(exc), retryable=retryable)
        return ServerError("failed to validate session", detail={"retryable": retryable})

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer_token(authorization)

        try:
            claims = self.codec.validate(token)
        except InvalidCredentialError:
            raise AuthenticationError(INVALID_TOKEN)

        try:
            revoked = await self.revocations.is_token_revoked(hash_token(token))
        except Exception as exc:
            raise self._unavailable("revocation", exc) from exc
        if revoked:
            logger.info("auth_guard_revoked_token", user_id=claims.user_id)
            raise AuthenticationError(REVOKED_TOKEN)

        if claims.session_id:
            try:
                valid = await self.sessions.validate_session(claims.user_id, claims.session_id, token)
            except Exception as exc:
                raise self._unavailable("session", exc) from exc
            if not valid:
                raise AuthenticationError(INVALID_SESSION)
        elif self.allow_sessionless:
            logger.warning("auth_guard_sessionless_token", user_id=claims.user_id)
        else:
            raise AuthenticationError(INVALID_SESSION)

        return AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
            token=token,
        )

    async def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Run the full chain but fall back to anonymous instead of rejecting."""
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization)
        except ServiceError as exc:
            logger.debug("auth_guard_optional_anonymous", reason=exc.message)
            return None


def require_role(context: AuthContext, role: str) -> AuthContext:
    if context.role != role:
        logger.info("auth_guard_role_denied", user_id=context.user_id, role=context.role)
        raise ForbiddenError(ACCESS_DENIED)
    return context
