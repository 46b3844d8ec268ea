"""Tests for configuration loading from environment variables and files."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from cloakroute.core.config import (
    EdgeConfig,
    PlatformConfig,
    ProvisionerConfig,
    ReconcileConfig,
    ServerConfig,
    StorageConfig,
    TimeoutConfig,
    clear_config,
    get_config,
    load_config_from_file,
)


class TestEdgeConfig:
    """Test EdgeConfig settings."""

    def test_default_values(self) -> None:
        config = EdgeConfig()
        assert config.edge_origin == "edge.cloakroute.net"
        assert config.alias_zone is None
        assert config.internal_hosts == []
        assert config.health_path == "/__edge-check"

    def test_env_override_edge_origin(self) -> None:
        """Test CLOAKROUTE_EDGE_ORIGIN env var."""
        with patch.dict(os.environ, {"CLOAKROUTE_EDGE_ORIGIN": "edge.example.net"}):
            assert EdgeConfig().edge_origin == "edge.example.net"

    def test_env_override_internal_hosts(self) -> None:
        """List settings are read as JSON."""
        with patch.dict(
            os.environ, {"CLOAKROUTE_INTERNAL_HOSTS": '["app.example.net", "api.example.net"]'}
        ):
            assert EdgeConfig().internal_hosts == ["app.example.net", "api.example.net"]


class TestServerConfig:
    def test_default_values(self) -> None:
        config = ServerConfig()
        assert config.control_bind == "0.0.0.0:8080"
        assert config.edge_bind == "0.0.0.0:8000"
        assert config.api_token is None

    def test_env_override_api_token(self) -> None:
        with patch.dict(os.environ, {"CLOAKROUTE_API_TOKEN": "tok"}):
            config = ServerConfig()
            assert config.api_token == "tok"
            assert "tok" not in repr(config)


class TestProvisionerConfig:
    """Test ProvisionerConfig settings."""

    def test_default_backend(self) -> None:
        assert ProvisionerConfig().backend == "none"

    def test_env_override_backend(self) -> None:
        env = {
            "CLOAKROUTE_PROVISIONER_BACKEND": "cloudflare",
            "CLOAKROUTE_PROVISIONER_CLOUDFLARE_ZONE_ID": "zone-1",
            "CLOAKROUTE_PROVISIONER_CLOUDFLARE_VALIDATION": "http",
        }
        with patch.dict(os.environ, env):
            config = ProvisionerConfig()
            assert config.backend == "cloudflare"
            assert config.cloudflare_zone_id == "zone-1"
            assert config.cloudflare_validation == "http"

    def test_unknown_backend_rejected(self) -> None:
        with patch.dict(os.environ, {"CLOAKROUTE_PROVISIONER_BACKEND": "route53"}):
            with pytest.raises(Exception):
                ProvisionerConfig()


class TestTimeoutConfig:
    """Test TimeoutConfig settings."""

    def test_default_values(self) -> None:
        config = TimeoutConfig()
        assert config.dns_timeout == 3.0
        assert config.provisioner_timeout == 15.0
        assert config.health_timeout == 4.0
        assert config.reconcile_timeout == 60.0

    def test_health_timeout_is_bounded(self) -> None:
        with patch.dict(os.environ, {"CLOAKROUTE_HEALTH_TIMEOUT": "30"}):
            with pytest.raises(Exception):
                TimeoutConfig()

    def test_pass_budget_covers_steps(self) -> None:
        """4 DNS queries, 2 certificate calls and one probe fit in one pass."""
        config = TimeoutConfig()
        steps = 4 * config.dns_timeout + 2 * config.provisioner_timeout + config.health_timeout
        assert config.reconcile_timeout > steps

    def test_pass_budget_too_small_rejected(self) -> None:
        with patch.dict(os.environ, {"CLOAKROUTE_RECONCILE_TIMEOUT": "45"}):
            with pytest.raises(ValueError, match="reconcile_timeout"):
                TimeoutConfig()

    def test_pass_budget_follows_step_timeouts(self) -> None:
        env = {"CLOAKROUTE_PROVISIONER_TIMEOUT": "5", "CLOAKROUTE_RECONCILE_TIMEOUT": "30"}
        with patch.dict(os.environ, env):
            assert TimeoutConfig().reconcile_timeout == 30.0


class TestReconcileConfig:
    def test_env_override(self) -> None:
        env = {"CLOAKROUTE_SWEEP_ENABLED": "false", "CLOAKROUTE_SWEEP_INTERVAL": "60"}
        with patch.dict(os.environ, env):
            config = ReconcileConfig()
            assert config.sweep_enabled is False
            assert config.sweep_interval == 60.0

    def test_concurrency_must_be_positive(self) -> None:
        with patch.dict(os.environ, {"CLOAKROUTE_SWEEP_CONCURRENCY": "0"}):
            with pytest.raises(Exception):
                ReconcileConfig()


class TestConfigFiles:
    """Test loading configuration files."""

    def test_yaml_file(self, tmp_path) -> None:
        path = tmp_path / "cloakroute.yaml"
        path.write_text(
            "edge:\n  edge_origin: edge.example.net\n"
            "storage:\n  domains_path: /var/lib/cloakroute/domains.json\n"
        )

        config = PlatformConfig.from_file(path)

        assert config.edge.edge_origin == "edge.example.net"
        assert config.storage.domains_path == "/var/lib/cloakroute/domains.json"

    def test_toml_file(self, tmp_path) -> None:
        path = tmp_path / "cloakroute.toml"
        path.write_text('[provisioner]\nbackend = "fly"\nfly_app = "my-edge"\n')

        config = PlatformConfig.from_file(path)

        assert config.provisioner.backend == "fly"
        assert config.provisioner.fly_app == "my-edge"

    def test_empty_yaml(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config_from_file(path) == {}

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config_from_file(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path) -> None:
        path = tmp_path / "config.ini"
        path.write_text("[edge]\n")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config_from_file(path)

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("edge: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_from_file(path)


class TestPlatformConfig:
    """Test PlatformConfig master configuration."""

    def test_to_display_dict_removes_secrets(self) -> None:
        config = PlatformConfig(
            server=ServerConfig(api_token="api-secret"),
            provisioner=ProvisionerConfig(fly_api_token="fly-secret", cloudflare_api_token="cf"),
        )

        display = config.to_display_dict()

        assert "api_token" not in display["server"]
        assert "fly_api_token" not in display["provisioner"]
        assert "cloudflare_api_token" not in display["provisioner"]
        assert display["edge"]["edge_origin"] == "edge.cloakroute.net"

    def test_storage_defaults(self) -> None:
        config = StorageConfig()
        assert config.domains_path == "domains.json"
        assert config.challenges_path is None
        assert config.access_log_path == "access.jsonl"


class TestGetConfig:
    """Test get_config global function."""

    def test_get_config_returns_instance(self) -> None:
        clear_config()
        assert isinstance(get_config(), PlatformConfig)

    def test_get_config_caches_instance(self) -> None:
        clear_config()
        assert get_config() is get_config()

    def test_clear_config_resets_cache(self) -> None:
        clear_config()
        config1 = get_config()
        clear_config()
        assert get_config() is not config1

    def test_get_config_with_env_override(self) -> None:
        """Test get_config respects environment variables."""
        env_vars = {
            "CLOAKROUTE_EDGE_ORIGIN": "edge.example.net",
            "CLOAKROUTE_DNS_TIMEOUT": "1.5",
            "CLOAKROUTE_PROVISIONER_BACKEND": "fly",
        }
        with patch.dict(os.environ, env_vars):
            clear_config()
            config = get_config()

            assert config.edge.edge_origin == "edge.example.net"
            assert config.timeouts.dns_timeout == 1.5
            assert config.provisioner.backend == "fly"

        clear_config()
