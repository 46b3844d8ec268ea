"""Core."""

from .config import (
    EdgeConfig,
    PlanConfig,
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

__all__ = [
    "EdgeConfig",
    "PlanConfig",
    "PlatformConfig",
    "ProvisionerConfig",
    "ReconcileConfig",
    "ServerConfig",
    "StorageConfig",
    "TimeoutConfig",
    "clear_config",
    "get_config",
    "load_config_from_file",
]
