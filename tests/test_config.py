"""
Tests for loading and validating identity configuration.
"""

import pytest

from gatehouse.config import (
    GatehouseSettings,
    OAuthClientConfig,
    OAuthConfig,
    TokenConfig,
    load_settings,
    parse_settings,
    require_signing_keys,
    resolve_config_path,
    substitute_env_vars,
)
from gatehouse.exceptions import ConfigurationError

SAMPLE_CONFIG = """
name: my-app
identity:
  environment: staging
  tokens:
    access_secret: ${GATEHOUSE_TEST_SECRET}
    access_token_ttl: 900
    issuer: gatehouse
  oauth:
    google:
      client_id: google-client
      client_secret: ${GATEHOUSE_TEST_GOOGLE_SECRET:-fallback-secret}
  magic_link:
    frontend_url: https://app.example.com
  api_keys:
    max_keys_per_owner: 3
"""


class TestLoadSettings:
    """Reading the identity section from YAML."""

    def test_load_from_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GATEHOUSE_TEST_SECRET", "from-env")
        monkeypatch.delenv("GATEHOUSE_TEST_GOOGLE_SECRET", raising=False)
        config_file = tmp_path / "gatehouse.yaml"
        config_file.write_text(SAMPLE_CONFIG)

        settings = load_settings(config_file)

        assert settings.environment == "staging"
        assert settings.tokens.access_secret == "from-env"
        assert settings.tokens.access_token_ttl == 900
        assert settings.tokens.issuer == "gatehouse"
        assert settings.oauth.google.client_secret == "fallback-secret"
        assert settings.oauth.google.is_configured
        assert not settings.oauth.microsoft.is_configured
        assert settings.magic_link.frontend_url == "https://app.example.com"
        assert settings.api_keys.max_keys_per_owner == 3

    def test_defaults(self):
        settings = GatehouseSettings()

        assert settings.tokens.algorithm == "HS256"
        assert settings.tokens.access_token_ttl == 3600
        assert settings.tokens.refresh_token_ttl == 7 * 24 * 3600
        assert settings.magic_link.ttl_minutes == 30
        assert settings.api_keys.max_keys_per_owner == 10
        assert settings.server.api_prefix == "/api"
        assert settings.store.backend == "memory"
        assert not settings.is_production

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml")

    def test_missing_section(self, tmp_path):
        config_file = tmp_path / "gatehouse.yaml"
        config_file.write_text("name: my-app\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(config_file)

        assert "identity" in str(exc_info.value)

    def test_empty_file(self, tmp_path):
        config_file = tmp_path / "gatehouse.yaml"
        config_file.write_text("")

        with pytest.raises(ConfigurationError):
            load_settings(config_file)

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "gatehouse.yaml"
        config_file.write_text("identity: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_settings(config_file)


class TestValidation:
    """Schema validation surfaces as ConfigurationError."""

    def test_unsupported_algorithm(self):
        with pytest.raises(ConfigurationError):
            parse_settings({"tokens": {"access_secret": "s", "algorithm": "none"}})

    def test_non_positive_ttl(self):
        with pytest.raises(ConfigurationError):
            parse_settings({"tokens": {"access_token_ttl": 0}})

    def test_retry_bounds(self):
        with pytest.raises(ConfigurationError):
            parse_settings({"oauth": {"max_retries": 9}})

    def test_log_level_is_normalized(self):
        settings = parse_settings({"logging": {"level": "debug"}})

        assert settings.logging.level == "DEBUG"

    def test_refresh_secret_defaults_to_access_secret(self):
        assert TokenConfig(access_secret="a").effective_refresh_secret == "a"
        assert TokenConfig(access_secret="a", refresh_secret="r").effective_refresh_secret == "r"

    def test_require_signing_keys(self):
        with pytest.raises(ConfigurationError):
            require_signing_keys(GatehouseSettings())

        require_signing_keys(parse_settings({"tokens": {"access_secret": "secret"}}))


class TestOAuthProviders:
    """Client registrations for built-in and registered providers."""

    def test_extra_provider_sections(self):
        settings = parse_settings(
            {
                "oauth": {
                    "google": {"client_id": "g", "client_secret": "gs"},
                    "github": {"client_id": "id", "client_secret": "secret"},
                    "providers": {"gitlab": {"client_id": "gl"}},
                    "max_retries": 1,
                }
            }
        )

        assert settings.oauth.client("github").client_id == "id"
        assert settings.oauth.client("gitlab").client_id == "gl"
        assert settings.oauth.max_retries == 1
        assert settings.oauth.configured_providers() == ["google", "github"]

    def test_non_provider_attributes_are_not_clients(self):
        oauth = OAuthConfig()

        assert oauth.client("max_retries") == OAuthClientConfig()
        assert oauth.client("providers") == OAuthClientConfig()
        assert oauth.configured_providers() == []


class TestEnvSubstitution:
    """${VAR} expansion in configuration values."""

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("GATEHOUSE_TEST_HOST", "db.internal")

        result = substitute_env_vars(
            {"store": {"hosts": ["${GATEHOUSE_TEST_HOST}", "static"]}, "port": 5432}
        )

        assert result == {"store": {"hosts": ["db.internal", "static"]}, "port": 5432}

    def test_embedded_in_string(self, monkeypatch):
        monkeypatch.setenv("GATEHOUSE_TEST_HOST", "db.internal")

        assert substitute_env_vars("sqlite://${GATEHOUSE_TEST_HOST}/auth") == (
            "sqlite://db.internal/auth"
        )

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("GATEHOUSE_TEST_UNSET", raising=False)

        assert substitute_env_vars("${GATEHOUSE_TEST_UNSET:-fallback}") == "fallback"

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("GATEHOUSE_TEST_UNSET", raising=False)

        with pytest.raises(ConfigurationError):
            substitute_env_vars("${GATEHOUSE_TEST_UNSET}")

    def test_required_variable_message(self, monkeypatch):
        monkeypatch.delenv("GATEHOUSE_TEST_UNSET", raising=False)

        with pytest.raises(ConfigurationError) as exc_info:
            substitute_env_vars("${GATEHOUSE_TEST_UNSET:?signing secret required}")

        assert "signing secret required" in str(exc_info.value)


class TestResolveConfigPath:
    def test_explicit_path(self, tmp_path):
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("identity: {}\n")

        assert resolve_config_path(config_file) == config_file

    def test_env_variable(self, tmp_path, monkeypatch):
        config_file = tmp_path / "from-env.yaml"
        config_file.write_text("identity: {}\n")
        monkeypatch.setenv("GATEHOUSE_CONFIG", str(config_file))

        assert resolve_config_path() == config_file

    def test_working_directory_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GATEHOUSE_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / "gatehouse.yaml").write_text("identity: {}\n")

        assert resolve_config_path() == tmp_path / "gatehouse.yaml"

    def test_directory_is_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            resolve_config_path(tmp_path)
