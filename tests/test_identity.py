from datetime import datetime, timedelta, timezone

import httpx
import pytest

from flowgate.service.identity import (
    IdentityLookupError,
    OIDCUserInfoClient,
    UserContextResolver,
    bearer_token,
    chat_id_from,
)
from flowgate.service.oauth_config import OAuthConfigStore, build_auth_payload
from flowgate.service.errors import OAuthNotConfiguredError
from flowgate.storage.models import OAuthMode, UserInfo
from flowgate.storage.session_cache import SessionCache

from conftest import AUTHORITY, make_token, tenant_specs

USERINFO_URL = f"{AUTHORITY}/oidc/userinfo"
CLAIMS = {"sub": "u-1", "email": "alice@acme.example", "name": "Alice", "preferred_username": "alice"}


class FakeIdentityProvider:
    def __init__(self) -> None:
        self.discovery_calls = 0
        self.userinfo_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/openid-configuration":
            self.discovery_calls += 1
            return httpx.Response(200, json={"userinfo_endpoint": USERINFO_URL})
        if str(request.url) == USERINFO_URL:
            self.userinfo_calls += 1
            token = request.headers.get("authorization", "").partition(" ")[2]
            if token.startswith("bad"):
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=CLAIMS)
        return httpx.Response(404)


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def oauth_configs():
    return OAuthConfigStore("https://gateway.example/oauth-callback.html").register(tenant_specs())


@pytest.fixture
def sessions():
    return SessionCache()


@pytest.fixture
def resolver(provider, oauth_configs, sessions):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    return UserContextResolver(oauth_configs, sessions, OIDCUserInfoClient(client, timeout=1))


def test_oauth_defaults_applied(oauth_configs):
    config = oauth_configs.lookup("ACME")
    assert config.mode is OAuthMode.OPTIONAL
    assert config.scope == "openid profile email"
    assert config.response_type == "code"
    assert config.prompt == "select_account"
    assert config.redirect_uri == "https://gateway.example/oauth-callback.html"
    with pytest.raises(OAuthNotConfiguredError):
        oauth_configs.lookup("demo")


def test_auth_payload_shape(oauth_configs):
    payload = build_auth_payload(oauth_configs.lookup("acme"))
    assert payload["mode"] == "optional"
    assert payload["oauth"]["clientId"] == "acme-client"
    assert payload["oauth"]["authority"] == AUTHORITY
    assert payload["tokenStorageKey"] == "flowise_tokens_acme"
    assert payload["autoRefresh"] is True
    assert payload["refreshThreshold"] == 300
    assert payload["promptConfig"]["skipButtonText"] == "Continue as Guest"


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


def test_chat_id_from_body_or_query():
    assert chat_id_from(b'{"chatId": "c-1"}', "q-1") == "c-1"
    assert chat_id_from(b'{"question": "hi"}', "q-1") == "q-1"
    assert chat_id_from(b"not json", None) is None
    assert chat_id_from(None, "") is None


async def test_token_resolves_identity_and_creates_session(resolver, sessions, provider):
    token = make_token({"sub": "u-1", "exp": 4102444800})
    context = await resolver.resolve(
        path="/api/v1/prediction/acme",
        method="POST",
        authorization=f"Bearer {token}",
        chat_id="chat-1",
    )
    assert context.authenticated
    assert context.source == "token"
    assert context.user == UserInfo.from_claims(CLAIMS)
    session = sessions.get("chat-1")
    assert session.identifier == "acme"
    assert session.expires_at.year == 2100

    # Discovery document is cached per authority.
    await resolver.resolve(
        path="/api/v1/prediction/acme", method="GET", authorization=f"Bearer {token}", chat_id=None
    )
    assert provider.discovery_calls == 1
    assert provider.userinfo_calls == 2


async def test_get_with_token_does_not_create_session(resolver, sessions):
    await resolver.resolve(
        path="/api/v1/chatmessage/acme", method="GET", authorization="Bearer good", chat_id="chat-1"
    )
    assert "chat-1" not in sessions


async def test_session_reused_without_token(resolver, sessions):
    sessions.upsert("chat-1", UserInfo(subject="u-1"), "acme")
    context = await resolver.resolve(
        path="/api/v1/prediction/acme", method="POST", authorization=None, chat_id="chat-1"
    )
    assert context.source == "session"
    assert context.user.subject == "u-1"


async def test_expired_session_is_dropped_without_token(provider, oauth_configs):
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    sessions = SessionCache(default_ttl=timedelta(hours=1), clock=lambda: now[0])
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    resolver = UserContextResolver(oauth_configs, sessions, OIDCUserInfoClient(client, timeout=1))
    sessions.upsert("chat-1", UserInfo(subject="u-1"), "acme")
    now[0] += timedelta(hours=2)

    context = await resolver.resolve(
        path="/api/v1/prediction/acme", method="POST", authorization=None, chat_id="chat-1"
    )
    assert not context.authenticated
    assert "chat-1" not in sessions
    assert provider.userinfo_calls == 0


async def test_out_of_range_token_expiry_still_creates_session(resolver, sessions):
    token = make_token({"sub": "u-1", "exp": 1e18})
    context = await resolver.resolve(
        path="/api/v1/prediction/acme",
        method="POST",
        authorization=f"Bearer {token}",
        chat_id="chat-1",
    )
    assert context.authenticated
    assert sessions.get("chat-1").user_info.subject == "u-1"


async def test_session_from_other_tenant_is_not_reused(resolver, sessions):
    before = sessions.upsert("chat-1", UserInfo(subject="u-1"), "other")
    last_accessed = before.last_accessed
    context = await resolver.resolve(
        path="/api/v1/prediction/acme", method="POST", authorization=None, chat_id="chat-1"
    )
    assert not context.authenticated
    assert sessions.get("chat-1").last_accessed == last_accessed


async def test_rejected_token_downgrades_to_anonymous(resolver, sessions):
    context = await resolver.resolve(
        path="/api/v1/prediction/acme", method="POST", authorization="Bearer bad", chat_id="chat-1"
    )
    assert context is not None
    assert not context.authenticated
    assert "chat-1" not in sessions


async def test_tenant_without_oauth_is_skipped(resolver):
    assert (
        await resolver.resolve(
            path="/api/v1/prediction/demo", method="POST", authorization="Bearer good", chat_id=None
        )
        is None
    )


async def test_userinfo_errors_raise_lookup_error(oauth_configs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    with pytest.raises(IdentityLookupError):
        await OIDCUserInfoClient(client).userinfo(oauth_configs.lookup("acme"), "good")
