"""Configuration types with environment variable support.

All settings can be configured via environment variables with the CLOAKROUTE_ prefix.
Example: CLOAKROUTE_EDGE_ORIGIN=edge.example.net sets the CNAME target tenants point to.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


_SETTINGS = SettingsConfigDict(
    env_prefix="CLOAKROUTE_",
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
)


class ServerConfig(BaseSettings):
    """Bind addresses and API access for the two HTTP planes."""

    model_config = _SETTINGS

    control_bind: str = "0.0.0.0:8080"
    edge_bind: str = "0.0.0.0:8000"
    api_token: str | None = Field(
        default=None,
        repr=False,
        description="Bearer token required on tenant endpoints. None disables the check.",
    )


class EdgeConfig(BaseSettings):
    """Edge routing configuration."""

    model_config = _SETTINGS

    edge_origin: str = Field(
        default="edge.cloakroute.net",
        description="Hostname every customer domain must CNAME to.",
    )
    alias_zone: str | None = Field(
        default=None,
        description="Zone for per-domain aliases (<id>.<alias_zone>). None disables aliases.",
    )
    internal_hosts: list[str] = Field(
        default_factory=list,
        description="Platform hostnames (and their subdomains) that are never cloaked.",
    )
    health_scheme: str = Field(
        default="https",
        description="Scheme used when probing a customer hostname.",
    )
    health_path: str = Field(
        default="/__edge-check",
        description="Path requested when probing a customer hostname.",
    )


class ProvisionerConfig(BaseSettings):
    """Certificate provisioner backend selection and credentials."""

    model_config = SettingsConfigDict(
        env_prefix="CLOAKROUTE_PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: Literal["fly", "cloudflare", "none"] = Field(
        default="none",
        description="'fly' (Fly.io certificates), 'cloudflare' (custom hostnames) or 'none'.",
    )
    fly_api_url: str = "https://api.fly.io/graphql"
    fly_api_token: str | None = Field(default=None, repr=False)
    fly_app: str = Field(
        default="cloakroute-edge",
        description="Fly app that terminates TLS for customer hostnames.",
    )
    cloudflare_api_url: str = "https://api.cloudflare.com/client/v4"
    cloudflare_api_token: str | None = Field(default=None, repr=False)
    cloudflare_zone_id: str | None = Field(
        default=None,
        description="SaaS zone where custom hostnames are created.",
    )
    cloudflare_validation: Literal["http", "txt"] = Field(
        default="txt",
        description="Validation method for new custom hostnames.",
    )
    zone_cache_ttl: float = Field(
        default=3600.0,
        description="TTL in seconds of the apex -> zone id cache.",
    )


class TimeoutConfig(BaseSettings):
    """Timeout configuration.

    All timeouts are in seconds.
    """

    model_config = _SETTINGS

    dns_timeout: float = Field(
        default=3.0,
        description="Timeout of a single DNS query (seconds).",
    )
    provisioner_timeout: float = Field(
        default=15.0,
        description="Timeout of a single certificate API call (seconds).",
    )
    health_timeout: float = Field(
        default=4.0,
        le=9.0,
        description="Total reachability probe budget (seconds).",
    )
    reconcile_timeout: float = Field(
        default=60.0,
        description="Overall budget of one reconciliation pass (seconds).",
    )

    @model_validator(mode="after")
    def _check_pass_budget(self) -> TimeoutConfig:
        # a pass makes up to 4 DNS queries and 2 certificate API calls, then one probe
        steps = 4 * self.dns_timeout + 2 * self.provisioner_timeout + self.health_timeout
        if self.reconcile_timeout <= steps:
            raise ValueError(
                f"reconcile_timeout ({self.reconcile_timeout:g}s) must exceed the sum of "
                f"its step timeouts ({steps:g}s)"
            )
        return self


class ReconcileConfig(BaseSettings):
    """Periodic reconciliation sweep configuration."""

    model_config = _SETTINGS

    sweep_enabled: bool = Field(
        default=True,
        description="Run a background sweep over non-ACTIVE domains.",
    )
    sweep_interval: float = Field(
        default=300.0,
        description="Seconds between sweeps.",
    )
    sweep_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum concurrent passes during a sweep.",
    )


class StorageConfig(BaseSettings):
    """Local persistence paths."""

    model_config = _SETTINGS

    domains_path: str = Field(
        default="domains.json",
        description="Path to the JSON file storing domain records.",
    )
    challenges_path: str | None = Field(
        default=None,
        description="Path to the JSON file storing HTTP-01 tokens. None keeps them in memory.",
    )
    access_log_path: str = Field(
        default="access.jsonl",
        description="JSON lines file receiving raw access log events.",
    )


class PlanConfig(BaseSettings):
    """Plan limits reported alongside resolved domains."""

    model_config = _SETTINGS

    monthly_clicks_limit: int = 10000
    active_domains_limit: int = 5


class PlatformConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.edge.edge_origin)
        print(config.timeouts.health_timeout)
    """

    model_config = _SETTINGS

    server: ServerConfig = Field(default_factory=ServerConfig)
    edge: EdgeConfig = Field(default_factory=EdgeConfig)
    provisioner: ProvisionerConfig = Field(default_factory=ProvisionerConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    plan: PlanConfig = Field(default_factory=PlanConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> PlatformConfig:
        """Build a configuration from a YAML/TOML file.

        Sections present in the file replace the environment-derived groups.
        """
        return cls(**load_config_from_file(path))

    def to_display_dict(self) -> dict[str, Any]:
        """Export the configuration with secrets removed."""
        data = self.model_dump()
        data["server"].pop("api_token", None)
        data["provisioner"].pop("fly_api_token", None)
        data["provisioner"].pop("cloudflare_api_token", None)
        return data


_config: PlatformConfig | None = None


def get_config() -> PlatformConfig:
    """Get the global configuration instance.

    Returns a cached instance of PlatformConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = PlatformConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    Useful for testing.
    """
    global _config
    _config = None
