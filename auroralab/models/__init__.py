"""Domain models for auroralab."""

from .config import (
    CloudConfig,
    NetworkConfig,
    ScalingConfig,
    DatabaseConfig,
    LoadTestConfig,
    DeploymentConfig,
    InfraModel,
    NetworkSpec,
    ClusterSpec,
    FleetSpec,
    from_deployment_config,
)

__all__ = [
    "CloudConfig",
    "NetworkConfig",
    "ScalingConfig",
    "DatabaseConfig",
    "LoadTestConfig",
    "DeploymentConfig",
    "InfraModel",
    "NetworkSpec",
    "ClusterSpec",
    "FleetSpec",
    "from_deployment_config",
]
