"""Tests for the request guard validation chain."""

import pytest

from authcore.service.credentials import hash_token
from authcore.service.errors import AuthenticationError, ForbiddenError, ServerError
from authcore.service.guard import (
    AuthContext,
    RequestGuard,
    extract_bearer_token,
    require_role,
)
from authcore.storage.errors import StoreUnavailableError
from authcore.storage.memory import MemoryCache


async def _signed_in(auth_service):
    return await auth_service.sign_in("john@example.com", "password123")


class TestHeaderParsing:
    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, header):
        with pytest.raises(AuthenticationError) as excinfo:
            extract_bearer_token(header)
        assert excinfo.value.message == "Authorization header required"

    @pytest.mark.parametrize("header", ["Token abc", "Bearer", "bearer abc", "Bearer a b", "abc"])
    def test_malformed_header(self, header):
        with pytest.raises(AuthenticationError) as excinfo:
            extract_bearer_token(header)
        assert excinfo.value.message == "Invalid authorization header format. Use: Bearer <token>"

    def test_token_extracted(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"


class TestAuthenticate:
    async def test_valid_token_yields_context(self, guard, auth_service, verified_user):
        result = await _signed_in(auth_service)

        ctx = await guard.authenticate(f"Bearer {result.token}")

        assert ctx == AuthContext(
            user_id=verified_user.id,
            email="john@example.com",
            role="Customer",
            session_id=result.session_id,
            expires_at=result.expires_at,
            token=result.token,
        )

    async def test_garbage_token(self, guard):
        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate("Bearer not.a.token")
        assert excinfo.value.message == "Invalid or expired token"

    async def test_non_ascii_signature_is_invalid_token(self, guard, auth_service, verified_user):
        result = await _signed_in(auth_service)
        header, payload, _ = result.token.split(".")
        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {header}.{payload}.ééé")
        assert excinfo.value.message == "Invalid or expired token"

    async def test_logged_out_token_is_revoked(self, guard, auth_service, verified_user):
        result = await _signed_in(auth_service)
        await auth_service.logout(verified_user.id, result.session_id, result.token, result.expires_at)

        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {result.token}")
        assert excinfo.value.message == "Token has been revoked"

    async def test_revocation_checked_before_session(self, guard, auth_service, memory_cache, verified_user):
        result = await _signed_in(auth_service)
        await memory_cache.add_revoked_token(hash_token(result.token), result.expires_at)

        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {result.token}")
        assert excinfo.value.message == "Token has been revoked"

    async def test_deleted_session_rejected(self, guard, auth_service, memory_cache, verified_user):
        result = await _signed_in(auth_service)
        await memory_cache.delete_session(verified_user.id, result.session_id)

        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {result.token}")
        assert excinfo.value.message == "Session expired or invalid"

    async def test_superseded_token_rejected(self, guard, codec, memory_cache):
        old_token, _ = codec.issue(9, "a@b.co", "Customer", "sess_9")
        new_token, _ = codec.issue(9, "a@b.co", "Super Admin", "sess_9")
        await memory_cache.store_session(9, "sess_9", new_token)

        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {old_token}")
        assert excinfo.value.message == "Session expired or invalid"

    async def test_sessions_are_namespaced_per_user(self, guard, codec, memory_cache):
        token, _ = codec.issue(1, "a@b.co", "Customer", "sess_shared")
        await memory_cache.store_session(2, "sess_shared", token)

        with pytest.raises(AuthenticationError):
            await guard.authenticate(f"Bearer {token}")

    async def test_sessionless_token_accepted_when_allowed(self, guard, codec):
        token, claims = codec.issue(4, "a@b.co", "Customer", "")
        ctx = await guard.authenticate(f"Bearer {token}")
        assert ctx.user_id == 4
        assert ctx.session_id == ""
        assert ctx.expires_at == claims.expires_at

    async def test_sessionless_token_rejected_when_disabled(self, codec, memory_cache):
        strict = RequestGuard(codec, memory_cache, memory_cache, allow_sessionless=False)
        token, _ = codec.issue(4, "a@b.co", "Customer", "")
        with pytest.raises(AuthenticationError) as excinfo:
            await strict.authenticate(f"Bearer {token}")
        assert excinfo.value.message == "Session expired or invalid"

    async def test_sessionless_revoked_token_still_rejected(self, guard, codec, memory_cache):
        token, claims = codec.issue(4, "a@b.co", "Customer", "")
        await memory_cache.add_revoked_token(hash_token(token), claims.expires_at)
        with pytest.raises(AuthenticationError) as excinfo:
            await guard.authenticate(f"Bearer {token}")
        assert excinfo.value.message == "Token has been revoked"

    async def test_store_outage_is_retryable_server_error(self, codec):
        class DownCache(MemoryCache):
            async def is_token_revoked(self, token_hash):
                raise StoreUnavailableError("is_token_revoked", TimeoutError())

        cache = DownCache()
        down = RequestGuard(codec, cache, cache)
        token, _ = codec.issue(1, "a@b.co", "Customer", "sess_1")

        with pytest.raises(ServerError) as excinfo:
            await down.authenticate(f"Bearer {token}")
        assert excinfo.value.detail == {"retryable": True}


class TestOptionalAuthentication:
    async def test_no_header_is_anonymous(self, guard):
        assert await guard.authenticate_optional(None) is None

    async def test_bad_token_is_anonymous(self, guard):
        assert await guard.authenticate_optional("Bearer nope") is None

    async def test_malformed_header_is_anonymous(self, guard):
        assert await guard.authenticate_optional("Basic dXNlcjpwYXNz") is None

    async def test_non_ascii_signature_is_anonymous(self, guard, auth_service, verified_user):
        result = await _signed_in(auth_service)
        header, payload, _ = result.token.split(".")
        assert await guard.authenticate_optional(f"Bearer {header}.{payload}.ééé") is None

    async def test_valid_token_is_identified(self, guard, auth_service, verified_user):
        result = await _signed_in(auth_service)
        ctx = await guard.authenticate_optional(f"Bearer {result.token}")
        assert ctx is not None
        assert ctx.user_id == verified_user.id


class TestRequireRole:
    def _ctx(self, role):
        return AuthContext(user_id=1, email="a@b.co", role=role, session_id="s", expires_at=0, token="t")

    def test_matching_role_passes(self):
        ctx = self._ctx("Super Admin")
        assert require_role(ctx, "Super Admin") is ctx

    def test_other_role_is_denied(self):
        with pytest.raises(ForbiddenError) as excinfo:
            require_role(self._ctx("Customer"), "Super Admin")
        assert excinfo.value.message == "Access denied"
        assert excinfo.value.status_code == 403
