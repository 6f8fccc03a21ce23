import time
from types import SimpleNamespace

import jwt
import pytest

from checkout_backend.core import auth
from checkout_backend.core.auth import (
    HttpSessionProvider,
    JwtSessionProvider,
    build_session_provider,
    extract_bearer_token,
    resolve_identity,
)

from mocks import FakeAsyncClient, FakeSessionProvider

SECRET = "jwt-test-secret"


def _token(**claims):
    payload = {"sub": "auth-1", "email": "ana@example.com", "exp": int(time.time()) + 300}
    payload.update(claims)
    return jwt.encode(payload, SECRET, algorithm="HS256")


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("BEARER abc", "abc"),
        ("Bearer ", None),
        ("Bearer", None),
        ("Bearerabc", None),
        ("Basic dXNlcjpwYXNz", None),
        ("Token abc", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_build_session_provider_prefers_local_jwt():
    assert isinstance(build_session_provider(SimpleNamespace(AUTH_JWT_SECRET="s", AUTH_URL="https://a")), JwtSessionProvider)
    assert isinstance(build_session_provider(SimpleNamespace(AUTH_JWT_SECRET=None, AUTH_URL="https://a", AUTH_ANON_KEY="k")), HttpSessionProvider)
    assert build_session_provider(SimpleNamespace(AUTH_JWT_SECRET=None, AUTH_URL=None)) is None


@pytest.mark.asyncio
async def test_jwt_provider_reads_claims():
    session = await JwtSessionProvider(SECRET).exchange(_token(user_metadata={"full_name": "Ana Perez"}))
    assert session.auth_id == "auth-1"
    assert session.full_name == "Ana Perez"


@pytest.mark.asyncio
async def test_jwt_provider_rejects_expired_and_forged_tokens():
    provider = JwtSessionProvider(SECRET)
    assert await provider.exchange(_token(exp=int(time.time()) - 10)) is None
    forged = jwt.encode({"sub": "auth-1"}, "other-secret", algorithm="HS256")
    assert await provider.exchange(forged) is None


@pytest.mark.asyncio
async def test_http_provider_exchanges_token(monkeypatch):
    calls = []
    monkeypatch.setattr(auth.httpx, "AsyncClient", FakeAsyncClient([(200, {"id": "auth-9", "email": "x@example.com"})], calls))
    session = await HttpSessionProvider("https://auth.example.com/", api_key="anon").exchange("tok")
    assert session.auth_id == "auth-9"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["<html>gateway</html>", [], ["auth-9"], "null", {"id": "auth-9", "user_metadata": "x"}])
async def test_http_provider_treats_unexpected_replies_as_no_session(monkeypatch, body):
    monkeypatch.setattr(auth.httpx, "AsyncClient", FakeAsyncClient([(200, body)], []))
    session = await HttpSessionProvider("https://auth.example.com").exchange("tok")
    if isinstance(body, dict):
        assert session.auth_id == "auth-9"
        assert session.full_name is None
    else:
        assert session is None


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["<html>gateway</html>", []])
async def test_garbled_identity_reply_is_401(monkeypatch, seed, body):
    seed.user()
    monkeypatch.setattr(auth.httpx, "AsyncClient", FakeAsyncClient([(200, body)], []))
    result = await resolve_identity("Bearer tok", HttpSessionProvider("https://auth.example.com"))
    assert not result.ok
    assert result.error.status_code == 401


@pytest.mark.asyncio
async def test_other_auth_schemes_never_reach_the_provider(monkeypatch):
    calls = []
    monkeypatch.setattr(auth.httpx, "AsyncClient", FakeAsyncClient([], calls))
    result = await resolve_identity("Basic dXNlcjpwYXNz", HttpSessionProvider("https://auth.example.com"))
    assert result.error.code == "unauthenticated"
    assert calls == []


@pytest.mark.asyncio
async def test_resolve_identity_maps_to_public_user(seed):
    seed.user("user-1", auth_id="auth-1", full_name="Ana Perez")
    result = await resolve_identity("Bearer good-token", FakeSessionProvider())
    assert result.ok
    assert result.value.user_id == "user-1"
    assert result.value.full_name == "Ana Perez"


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [None, "Bearer ", "Bearer bad-token"])
async def test_resolve_identity_failures_are_401(seed, header):
    seed.user()
    result = await resolve_identity(header, FakeSessionProvider())
    assert not result.ok
    assert result.error.status_code == 401


@pytest.mark.asyncio
async def test_unknown_user_is_unauthenticated():
    result = await resolve_identity("Bearer good-token", FakeSessionProvider())
    assert result.error.code == "unauthenticated"
