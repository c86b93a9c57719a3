import pytest

from flowgate.config import ChatflowSpec
from flowgate.service.domains import ensure_origin_allowed, is_allowed, is_tenant_allowed
from flowgate.service.errors import ConfigurationError, DomainDeniedError, TenantNotFoundError
from flowgate.service.registry import ChatflowRegistry, looks_like_uuid

from conftest import ACME_ID, ACME_ORIGIN, DEMO_ID, tenant_specs


def _registry(*specs, default_origins=()):
    return ChatflowRegistry().register(specs or tenant_specs(), default_origins=default_origins)


def test_lookup_is_case_insensitive():
    registry = _registry()
    assert registry.lookup("acme").chatflow_id == ACME_ID
    assert registry.lookup("ACME").chatflow_id == ACME_ID
    assert registry.find("Demo").chatflow_id == DEMO_ID


def test_lookup_unknown_identifier_raises_not_found():
    registry = _registry()
    with pytest.raises(TenantNotFoundError) as excinfo:
        registry.lookup("nope")
    assert excinfo.value.status_code == 404
    assert "nope" in excinfo.value.message


def test_entries_missing_fields_are_skipped():
    registry = _registry(
        ChatflowSpec(identifier="acme", chatflow_id=ACME_ID, allowed_domains=[ACME_ORIGIN]),
        ChatflowSpec(identifier="broken"),
        ChatflowSpec(chatflow_id=DEMO_ID),
    )
    assert len(registry) == 1
    assert registry.find("broken") is None


def test_no_servable_tenants_is_fatal():
    with pytest.raises(ConfigurationError):
        ChatflowRegistry().register([])
    with pytest.raises(ConfigurationError):
        _registry(ChatflowSpec(identifier="open", chatflow_id=ACME_ID, allowed_domains=["*"]))


def test_wildcard_tenant_is_unreachable():
    registry = _registry(
        ChatflowSpec(identifier="acme", chatflow_id=ACME_ID, allowed_domains=[ACME_ORIGIN]),
        ChatflowSpec(identifier="open", chatflow_id=DEMO_ID, allowed_domains=["*"]),
    )
    entry = registry.lookup("open", include_unreachable=True)
    assert entry.unreachable
    with pytest.raises(TenantNotFoundError):
        registry.lookup("open")
    assert [t.identifier for t in registry.servable()] == ["acme"]
    assert not is_tenant_allowed(None, entry)
    assert not is_tenant_allowed("https://anything.example", entry)
    assert "*" not in registry.all_allowed_origins()


def test_duplicate_identifier_unions_origins():
    registry = _registry(
        ChatflowSpec(identifier="acme", chatflow_id=ACME_ID, allowed_domains=[ACME_ORIGIN]),
        ChatflowSpec(identifier="acme", chatflow_id=DEMO_ID, allowed_domains="https://b.example"),
    )
    entry = registry.lookup("acme")
    assert entry.chatflow_id == ACME_ID
    assert entry.allowed_origins == {ACME_ORIGIN, "https://b.example"}


def test_duplicate_identifier_differing_in_case_is_one_tenant():
    registry = _registry(
        ChatflowSpec(identifier="acme", chatflow_id=ACME_ID, allowed_domains=[ACME_ORIGIN]),
        ChatflowSpec(identifier="ACME", chatflow_id=DEMO_ID, allowed_domains=["https://b.example"]),
    )
    assert len(registry) == 1
    for spelling in ("acme", "ACME", "Acme"):
        entry = registry.lookup(spelling)
        assert entry.identifier == "acme"
        assert entry.chatflow_id == ACME_ID
    assert entry.allowed_origins == {ACME_ORIGIN, "https://b.example"}


def test_default_origins_are_added_to_every_tenant():
    registry = _registry(default_origins=["http://localhost:5678"])
    for entry in registry:
        assert "http://localhost:5678" in entry.allowed_origins


def test_find_by_chatflow_id():
    registry = _registry()
    assert registry.find_by_chatflow_id(DEMO_ID).identifier == "demo"
    assert registry.find_by_chatflow_id("missing") is None


def test_looks_like_uuid():
    assert looks_like_uuid(ACME_ID)
    assert looks_like_uuid(ACME_ID.upper())
    assert not looks_like_uuid("acme")
    assert not looks_like_uuid(None)


def test_is_allowed_rules():
    allowed = frozenset({ACME_ORIGIN})
    assert is_allowed(ACME_ORIGIN, allowed)
    assert is_allowed(None, allowed)
    assert not is_allowed("https://evil.example", allowed)
    assert not is_allowed(ACME_ORIGIN, frozenset({ACME_ORIGIN, "*"}))


def test_ensure_origin_allowed_raises_forbidden():
    tenant = _registry().lookup("acme")
    ensure_origin_allowed(ACME_ORIGIN, tenant)
    with pytest.raises(DomainDeniedError) as excinfo:
        ensure_origin_allowed("https://evil.example", tenant)
    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "Access Denied"
