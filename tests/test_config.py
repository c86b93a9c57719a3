import json

from flowgate.config import (
    DEFAULT_OAUTH_REDIRECT_URI,
    DEV_DEFAULT_ORIGIN,
    Environment,
    GatewayFile,
    Settings,
    build_gateway_config,
    load_gateway_file,
    parse_env_tenants,
)


def _write(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("UPSTREAM_URL", "https://flowise.internal")
    monkeypatch.setenv("DEBUG_MODE", "true")
    monkeypatch.setenv("APP_ENV", "Production")
    monkeypatch.setenv("TENANT_MAX_IN_FLIGHT", "4")
    settings = Settings.from_env()
    assert settings.upstream_url == "https://flowise.internal"
    assert settings.debug_mode is True
    assert settings.environment is Environment.PRODUCTION
    assert settings.is_production
    assert settings.tenant_max_in_flight == 4
    assert settings.json_body_limit_bytes == 50 * 1024 * 1024


def test_load_gateway_file_prefers_prod_config(tmp_path):
    _write(tmp_path / "config.json", {"apiHost": "https://plain.example", "chatflows": []})
    _write(tmp_path / "prod.config.json", {"apiHost": "https://prod.example", "chatflows": []})
    parsed, source = load_gateway_file(tmp_path)
    assert parsed.api_host == "https://prod.example"
    assert source.endswith("prod.config.json")


def test_load_gateway_file_skips_unparseable(tmp_path):
    (tmp_path / "local.config.json").write_text("{not json", encoding="utf-8")
    _write(
        tmp_path / "config.json",
        {
            "apiHost": "https://plain.example",
            "chatflows": [
                {
                    "identifier": "acme",
                    "chatflowId": "abc",
                    "allowedDomains": ["https://acme.example"],
                    "oauth": {"clientId": "cid", "authority": "https://login.example"},
                }
            ],
        },
    )
    parsed, source = load_gateway_file(tmp_path)
    assert source.endswith("config.json")
    spec = parsed.chatflows[0]
    assert spec.chatflow_id == "abc"
    assert spec.oauth.client_id == "cid"


def test_gateway_file_ignores_listen_settings():
    parsed = GatewayFile.model_validate({"apiHost": "https://flowise.internal", "port": 9, "host": "x"})
    assert parsed.api_host == "https://flowise.internal"
    assert "port" not in parsed.model_dump()
    assert "host" not in parsed.model_dump()


def test_load_gateway_file_missing(tmp_path):
    assert load_gateway_file(tmp_path) == (None, None)


def test_parse_env_tenants():
    specs = parse_env_tenants(
        {
            "CHATFLOW_support": "abc-123, https://a.example ,https://b.example",
            "CHATFLOW_": "ignored",
            "OTHER": "x",
        }
    )
    assert len(specs) == 1
    assert specs[0].identifier == "support"
    assert specs[0].chatflow_id == "abc-123"
    assert specs[0].allowed_domains == ["https://a.example", "https://b.example"]


def test_environment_wins_over_file_globals():
    settings = Settings(upstream_url="https://env.example", dev_api_key=None)
    file_config = GatewayFile.model_validate(
        {
            "apiHost": "https://file.example",
            "flowiseApiKey": "file-key",
            "oauthApiKey": "dev-key",
            "chatflows": [{"identifier": "acme", "chatflowId": "abc"}],
        }
    )
    config = build_gateway_config(
        settings, file_config=file_config, environ={"CHATFLOW_extra": "def"}
    )
    assert config.upstream_url == "https://env.example"
    assert config.upstream_api_key == "file-key"
    assert config.dev_api_key == "dev-key"
    assert config.oauth_redirect_uri == DEFAULT_OAUTH_REDIRECT_URI
    assert [spec.identifier for spec in config.chatflows] == ["acme", "extra"]
    assert config.default_origins == [DEV_DEFAULT_ORIGIN]


def test_production_adds_no_default_origin():
    settings = Settings(environment="production")
    config = build_gateway_config(settings, environ={})
    assert config.default_origins == []
