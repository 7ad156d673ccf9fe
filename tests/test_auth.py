"""Tests for admin identification."""

import httpx
import pytest

from voting_api.auth import AuthClient, AuthError, resolve_admin

AUTH_URL = "https://auth.example.test/auth/v1"


def make_client(handler) -> AuthClient:
    return AuthClient(
        base_url=AUTH_URL,
        api_key="anon-key",
        timeout=1.0,
        transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
class TestResolveAdmin:
    """Tests for resolve_admin."""

    async def test_admin_token_resolves_admin_row(self, fake_db):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["authorization"] = request.headers["authorization"]
            seen["apikey"] = request.headers["apikey"]
            return httpx.Response(200, json={"id": "user-1", "email": "admin@school.test"})

        fake_db.admins["user-1"] = {"id": "user-1", "role": "admin"}

        admin = await resolve_admin(make_client(handler), fake_db, "Bearer token-123")

        assert admin == {"id": "user-1", "role": "admin"}
        assert seen == {
            "path": "/auth/v1/user",
            "authorization": "Bearer token-123",
            "apikey": "anon-key",
        }

    async def test_user_without_admin_row(self, fake_db):
        client = make_client(lambda request: httpx.Response(200, json={"id": "voter-9"}))

        assert await resolve_admin(client, fake_db, "Bearer token-123") is None

    async def test_missing_header_makes_no_call(self, fake_db):
        def handler(request):
            raise AssertionError("auth service must not be called")

        assert await resolve_admin(make_client(handler), fake_db, None) is None
        assert await resolve_admin(make_client(handler), fake_db, "Basic abc") is None

    async def test_rejected_token(self, fake_db):
        client = make_client(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

        with pytest.raises(AuthError):
            await resolve_admin(client, fake_db, "Bearer expired")

    async def test_unreachable_auth_service(self, fake_db):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AuthError, match="unavailable"):
            await resolve_admin(make_client(handler), fake_db, "Bearer token-123")
