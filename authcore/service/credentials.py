from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Optional

from authcore.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 24 * 60 * 60


class InvalidCredentialError(Exception):
    """The bearer token is malformed, forged, or expired.

    The reason is logged but never carried on the exception so that callers
    cannot tell the cases apart.
    """

    def __init__(self) -> None:
        super().__init__("invalid credential")


@dataclass(frozen=True)
class Claims:
    user_id: int
    email: str
    role: str
    session_id: str
    issuer: str
    subject: str
    issued_at: int
    expires_at: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "session_id": self.session_id,
            "iss": self.issuer,
            "sub": self.subject,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        return cls(
            user_id=int(payload["user_id"]),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
            session_id=str(payload.get("session_id") or ""),
            issuer=str(payload.get("iss") or ""),
            subject=str(payload.get("sub") or ""),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
        )


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the blacklist key for a raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CredentialCodec:
    """HS256 bearer token codec.

    The signing secret is fixed at construction. ``validate`` checks the
    header algorithm, signature, issuer and expiry only; it never consults
    session or blacklist state.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "authcore",
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        user_id: int,
        email: str,
        role: str,
        session_id: str,
        *,
        now: Optional[float] = None,
    ) -> tuple[str, Claims]:
        issued_at = int(now if now is not None else time.time())
        claims = Claims(
            user_id=user_id,
            email=email,
            role=role,
            session_id=session_id,
            issuer=self.issuer,
            subject=str(user_id),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl_seconds,
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", claims

    def validate(self, token: str, *, now: Optional[float] = None) -> Claims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidCredentialError()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidCredentialError()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidCredentialError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        # Header values may carry arbitrary latin-1 text; compare as bytes.
        if not hmac.compare_digest(expected_sig, sig_b64.encode("utf-8", "surrogateescape")):
            logger.info("jwt_signature_mismatch")
            raise InvalidCredentialError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
            claims = Claims.from_payload(payload)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidCredentialError()

        if claims.issuer != self.issuer:
            logger.info("jwt_issuer_mismatch", issuer=claims.issuer)
            raise InvalidCredentialError()
        current = now if now is not None else time.time()
        if claims.expires_at <= current:
            raise InvalidCredentialError()
        return claims
