"""Deployment config schema and infrastructure model."""

import ipaddress
from dataclasses import dataclass, field
from itertools import islice
from typing import Dict, Optional, Any

from pydantic import BaseModel, Field, field_validator, model_validator


AURORA_MYSQL_ENGINE = "aurora-mysql"
SERVERLESS_INSTANCE_CLASS = "db.serverless"
MYSQL_PORT = 3306

MONITORING_INTERVALS = (0, 1, 5, 10, 15, 30, 60)

# Subnet numbering inside the VPC: public /24s from 1, private /24s from 10
PUBLIC_SUBNET_OFFSET = 1
PRIVATE_SUBNET_OFFSET = 10
MAX_VPC_PREFIX = 20

DEFAULT_MANAGED_POLICIES = [
    "AmazonSSMManagedInstanceCore",
    "SecretsManagerReadWrite",
]


# Pydantic models for input validation
class CloudConfig(BaseModel):
    """AWS account configuration."""

    region: str
    account_id: str = Field(..., description="AWS account ID")
    role_arn: Optional[str] = Field(None, description="IAM role ARN to assume")
    external_id: Optional[str] = Field(None, description="AWS STS external ID")

    @field_validator("external_id")
    @classmethod
    def validate_external_id(cls, v: Optional[str], info: Any) -> Optional[str]:
        """External ID only makes sense together with a role to assume."""
        if v and not info.data.get("role_arn"):
            raise ValueError("external_id requires role_arn")
        return v


class NetworkConfig(BaseModel):
    """VPC configuration."""

    vpc_cidr: str = "10.0.0.0/16"
    max_azs: int = Field(2, ge=1, le=3)

    @field_validator("vpc_cidr")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        """Subnets are /24s numbered up to 12, so the VPC needs at least a /20."""
        network = ipaddress.ip_network(v)
        if network.version != 4 or network.prefixlen > MAX_VPC_PREFIX:
            raise ValueError(f"vpc_cidr must be an IPv4 network of /{MAX_VPC_PREFIX} or larger")
        return str(network)


class ScalingConfig(BaseModel):
    """Serverless v2 capacity bounds, in Aurora capacity units."""

    min_capacity: float = Field(0.5, ge=0.5, le=128)
    max_capacity: float = Field(16, ge=0.5, le=128)

    @field_validator("min_capacity", "max_capacity")
    @classmethod
    def validate_step(cls, v: float) -> float:
        """Capacity is set in half-ACU increments."""
        if (v * 2) != int(v * 2):
            raise ValueError("capacity must be a multiple of 0.5")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "ScalingConfig":
        if self.min_capacity > self.max_capacity:
            raise ValueError("min_capacity must not exceed max_capacity")
        return self


class DatabaseConfig(BaseModel):
    """Aurora MySQL cluster configuration."""

    engine_version: str = "8.0.mysql_aurora.3.02.0"
    instance_count: int = Field(1, ge=1, le=15)
    instance_class: str = "db.t3.medium"
    monitoring_interval: int = 10
    performance_insights: bool = True
    port: int = MYSQL_PORT
    master_username: str = "admin"
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)

    @field_validator("monitoring_interval")
    @classmethod
    def validate_monitoring_interval(cls, v: int) -> int:
        if v not in MONITORING_INTERVALS:
            raise ValueError(f"monitoring_interval must be one of {MONITORING_INTERVALS}")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """The load-test access grant is declared for the MySQL port only."""
        if v != MYSQL_PORT:
            raise ValueError(f"port must be {MYSQL_PORT}")
        return v


class LoadTestConfig(BaseModel):
    """Load-generating auto-scaling group configuration."""

    enabled: bool = True
    instance_type: str = "c6a.large"
    min_capacity: int = Field(1, ge=0)
    desired_capacity: int = Field(2, ge=0)
    max_capacity: Optional[int] = None  # Defaults to max(min, desired)
    volume_size_gb: int = Field(16, ge=8)
    managed_policies: list[str] = Field(default_factory=lambda: list(DEFAULT_MANAGED_POLICIES))

    @model_validator(mode="after")
    def validate_sizes(self) -> "LoadTestConfig":
        if self.desired_capacity < self.min_capacity:
            raise ValueError("desired_capacity must not be below min_capacity")
        if self.max_capacity is not None and self.max_capacity < self.desired_capacity:
            raise ValueError("max_capacity must not be below desired_capacity")
        return self


class DeploymentConfig(BaseModel):
    """Top-level deployment configuration, usually loaded from YAML."""

    name: str = Field(..., min_length=1, max_length=32, pattern=r"^[a-z][a-z0-9-]*$")
    cloud: CloudConfig
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    load_test: LoadTestConfig = Field(default_factory=LoadTestConfig)


# Internal infrastructure model (converted from DeploymentConfig)
@dataclass
class NetworkSpec:
    """Network specification."""

    vpc_cidr: str
    availability_zones: list[str]
    public_subnets: list[str]
    private_subnets: list[str]


@dataclass
class ClusterSpec:
    """Aurora cluster specification."""

    identifier: str
    engine_version: str
    instance_count: int
    instance_class: str
    monitoring_interval: int
    performance_insights: bool
    master_username: str
    min_capacity: float
    max_capacity: float
    engine: str = AURORA_MYSQL_ENGINE
    port: int = MYSQL_PORT


@dataclass
class FleetSpec:
    """Load-test fleet specification."""

    name: str
    instance_type: str
    min_size: int
    max_size: int
    desired_size: int
    volume_size_gb: int
    managed_policies: list[str] = field(default_factory=list)


@dataclass
class InfraModel:
    """
    Internal infrastructure model.

    This is the normalized model the deployment graph is built from.
    Converted from the user's DeploymentConfig.
    """

    # Identity
    deployment_name: str
    name_prefix: str

    # Cloud
    region: str
    account_id: str
    role_arn: Optional[str] = None
    external_id: Optional[str] = None

    network: NetworkSpec = field(default_factory=lambda: NetworkSpec(
        vpc_cidr="10.0.0.0/16",
        availability_zones=[],
        public_subnets=[],
        private_subnets=[],
    ))
    cluster: Optional[ClusterSpec] = None
    load_test: Optional[FleetSpec] = None

    # State backend
    state_backend_bucket: str = ""
    state_backend_key: str = ""
    state_backend_region: str = ""

    # Tags
    tags: Dict[str, str] = field(default_factory=dict)


def from_deployment_config(
    config: DeploymentConfig,
    state_bucket: Optional[str] = None,
    include_load_test: Optional[bool] = None,
) -> InfraModel:
    """
    Convert a deployment config into the internal InfraModel.

    Args:
        config: User's deployment configuration
        state_bucket: Optional override for the state bucket (defaults to auto-generated)
        include_load_test: Optional override for ``config.load_test.enabled``

    Returns:
        InfraModel ready for the deployment graph
    """
    name_prefix = f"auroralab-{config.name}"

    network = _build_network_spec(config.cloud.region, config.network)
    cluster = _build_cluster_spec(name_prefix, config.database)

    if include_load_test is None:
        include_load_test = config.load_test.enabled

    load_test = _build_fleet_spec(name_prefix, config.load_test) if include_load_test else None

    if not state_bucket:
        state_bucket = f"auroralab-tf-state-{config.cloud.account_id}-{config.cloud.region}"

    state_key = f"deployments/{config.name}/terraform.tfstate"

    tags = {
        "Deployment": config.name,
        "ManagedBy": "auroralab",
    }

    return InfraModel(
        deployment_name=config.name,
        name_prefix=name_prefix,
        region=config.cloud.region,
        account_id=config.cloud.account_id,
        role_arn=config.cloud.role_arn,
        external_id=config.cloud.external_id,
        network=network,
        cluster=cluster,
        load_test=load_test,
        state_backend_bucket=state_bucket,
        state_backend_key=state_key,
        state_backend_region=config.cloud.region,
        tags=tags,
    )


def _build_network_spec(region: str, network: NetworkConfig) -> NetworkSpec:
    """Spread subnets over the first ``max_azs`` zones of the region."""
    azs = [f"{region}{suffix}" for suffix in "abc"][: network.max_azs]

    # First /24s of the VPC, enough to index every private subnet
    subnets = ipaddress.ip_network(network.vpc_cidr).subnets(new_prefix=24)
    blocks = list(islice(subnets, PRIVATE_SUBNET_OFFSET + len(azs)))

    return NetworkSpec(
        vpc_cidr=network.vpc_cidr,
        availability_zones=azs,
        public_subnets=[str(blocks[PUBLIC_SUBNET_OFFSET + i]) for i in range(len(azs))],
        private_subnets=[str(blocks[PRIVATE_SUBNET_OFFSET + i]) for i in range(len(azs))],
    )


def _build_cluster_spec(name_prefix: str, database: DatabaseConfig) -> ClusterSpec:
    return ClusterSpec(
        identifier=f"{name_prefix}-aurora",
        engine_version=database.engine_version,
        instance_count=database.instance_count,
        instance_class=database.instance_class,
        monitoring_interval=database.monitoring_interval,
        performance_insights=database.performance_insights,
        port=database.port,
        master_username=database.master_username,
        min_capacity=database.scaling.min_capacity,
        max_capacity=database.scaling.max_capacity,
    )


def _build_fleet_spec(name_prefix: str, load_test: LoadTestConfig) -> FleetSpec:
    max_size = load_test.max_capacity
    if max_size is None:
        max_size = max(load_test.min_capacity, load_test.desired_capacity)

    return FleetSpec(
        name=f"{name_prefix}-loadtest",
        instance_type=load_test.instance_type,
        min_size=load_test.min_capacity,
        max_size=max_size,
        desired_size=load_test.desired_capacity,
        volume_size_gb=load_test.volume_size_gb,
        managed_policies=list(load_test.managed_policies),
    )
