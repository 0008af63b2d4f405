"""
Unit tests for API configuration, the registry and outbound auth headers.
"""

import base64
import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from service_core.app.gateway.auth import build_auth_headers, build_headers
from service_core.app.gateway.models import APIConfig, APIRequest, AuthType, UpstreamRateLimitInfo
from service_core.app.gateway.registry import APIConfigRegistry
from shared.errors import ConfigNotFoundError, ValidationError
from shared.test_helpers import TestDataFactory


class TestAPIConfig:
    """Test cases for APIConfig and APIRequest."""

    def test_defaults(self):
        config = APIConfig(name="plain", base_url="https://plain.example.com")

        assert config.auth_type == AuthType.NONE
        assert config.retries == 1
        assert config.timeout_ms == 10000
        assert config.cache_ttl_seconds is None

    def test_negative_retries_rejected(self):
        with pytest.raises(PydanticValidationError):
            APIConfig(name="x", base_url="https://x.example.com", retries=-1)

    def test_credential_from_environment(self, monkeypatch):
        monkeypatch.setenv("CORE_TEST_API_KEY", "from-env")
        config = APIConfig(name="x", base_url="https://x.example.com", auth_type="api_key", api_key_env="CORE_TEST_API_KEY")

        assert config.credential() == "from-env"
        assert config.public_view()["has_credential"] is True

    def test_public_view_hides_secrets(self):
        config = APIConfig(
            name="x",
            base_url="https://x.example.com",
            auth_type="bearer",
            api_key="secret",
            headers={"X-Secret": "1"},
        )

        view = config.public_view()

        assert "api_key" not in view
        assert "headers" not in view
        assert view["auth_type"] == "bearer"

    def test_request_method_is_normalized(self):
        assert APIRequest(method="patch").method == "PATCH"
        with pytest.raises(PydanticValidationError):
            APIRequest(method="CONNECT")

    def test_upstream_rate_limit_headers(self):
        assert UpstreamRateLimitInfo.from_headers({"x-rate-limit-remaining": "5", "x-rate-limit-reset": "10", "x-rate-limit-limit": "50"}).remaining == 5
        assert UpstreamRateLimitInfo.from_headers({"x-ratelimit-remaining": "5"}) is None
        assert UpstreamRateLimitInfo.from_headers({"x-ratelimit-remaining": "a", "x-ratelimit-reset": "1", "x-ratelimit-limit": "1"}) is None


class TestAuthHeaders:
    """Test cases for auth header construction."""

    def make_config(self, auth_type, api_key="cred"):
        return APIConfig(name="x", base_url="https://x.example.com", auth_type=auth_type, api_key=api_key)

    def test_schemes(self):
        assert build_auth_headers(self.make_config("none")) == {}
        assert build_auth_headers(self.make_config("api_key")) == {"X-API-Key": "cred"}
        assert build_auth_headers(self.make_config("bearer")) == {"Authorization": "Bearer cred"}
        assert build_auth_headers(self.make_config("oauth2")) == {"Authorization": "Bearer cred"}

        basic = build_auth_headers(self.make_config("basic", "user:pass"))
        assert basic["Authorization"] == "Basic " + base64.b64encode(b"user:pass").decode("ascii")

    def test_missing_credential_sends_no_auth(self):
        assert build_auth_headers(self.make_config("bearer", api_key=None)) == {}

    def test_header_precedence(self):
        config = APIConfig(
            name="x",
            base_url="https://x.example.com",
            auth_type="api_key",
            api_key="cred",
            headers={"Accept": "application/xml", "X-Team": "core"},
        )

        headers = build_headers(config, {"Accept": "text/csv", "X-API-Key": "spoofed"}, user_agent="Agent/2")

        assert headers["Accept"] == "text/csv"
        assert headers["X-Team"] == "core"
        assert headers["X-API-Key"] == "cred"
        assert headers["User-Agent"] == "Agent/2"
        assert headers["Content-Type"] == "application/json"


class TestAPIConfigRegistry:
    """Test cases for APIConfigRegistry."""

    @pytest.fixture
    def registry(self):
        registry = APIConfigRegistry()
        for entry in TestDataFactory.create_api_config_dicts():
            registry.register(APIConfig.model_validate(entry))
        return registry

    def test_resolve_prefers_tenant_then_default(self, registry):
        assert registry.resolve("acme", "market").base_url == "https://acme-market.example.com/api"
        assert registry.resolve("globex", "market").base_url == "https://market.example.com/api"
        assert registry.resolve("acme", "missing") is None

    def test_require_raises_config_not_found(self, registry):
        with pytest.raises(ConfigNotFoundError) as exc_info:
            registry.require("acme", "missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.details == {"api_name": "missing", "tenant_id": "acme"}

    def test_list_applies_tenant_overrides(self, registry):
        acme = {config.name: config for config in registry.list("acme")}
        globex = {config.name: config for config in registry.list("globex")}

        assert sorted(acme) == ["market", "weather"]
        assert acme["market"].tenant == "acme"
        assert globex["market"].tenant is None

    def test_unregister(self, registry):
        assert registry.unregister("market", "acme") is True
        assert registry.unregister("market", "acme") is False
        assert registry.resolve("acme", "market").tenant is None

    def test_load_file(self, tmp_path):
        entries = TestDataFactory.create_api_config_dicts() + [{"name": "broken"}]
        path = tmp_path / "apis.json"
        path.write_text(json.dumps({"apis": entries}), encoding="utf-8")
        registry = APIConfigRegistry()

        assert registry.load_file(path) == 3
        assert registry.resolve("acme", "weather").rate_limit.requests == 3

    def test_load_file_accepts_plain_list(self, tmp_path):
        path = tmp_path / "apis.json"
        path.write_text(json.dumps(TestDataFactory.create_api_config_dicts()[:1]), encoding="utf-8")

        assert APIConfigRegistry().load_file(path) == 1

    def test_load_missing_file(self, tmp_path):
        assert APIConfigRegistry().load_file(tmp_path / "nope.json") == 0

    def test_load_malformed_file(self, tmp_path):
        bad_json = tmp_path / "bad.json"
        bad_json.write_text("{not json", encoding="utf-8")
        not_a_list = tmp_path / "dict.json"
        not_a_list.write_text(json.dumps({"apis": {"name": "x"}}), encoding="utf-8")

        with pytest.raises(ValidationError):
            APIConfigRegistry().load_file(bad_json)
        with pytest.raises(ValidationError):
            APIConfigRegistry().load_file(not_a_list)

    def test_with_defaults(self):
        registry = APIConfigRegistry.with_defaults()

        names = [config.name for config in registry.list()]
        assert names == ["clubpro", "google_maps", "sendgrid", "weather"]
        assert registry.resolve("acme", "sendgrid").cache_ttl_seconds is None
        assert registry.resolve("acme", "clubpro").auth_type == AuthType.OAUTH2
