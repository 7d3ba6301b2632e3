"""Shared fixtures."""

import pytest

from auroralab.models.config import DeploymentConfig, from_deployment_config


@pytest.fixture
def deployment_config():
    """Deployment config matching the stock lab: one writer, 0.5-16 ACU, two load generators."""
    return DeploymentConfig(
        name="sysbench",
        cloud={
            "region": "us-east-1",
            "account_id": "123456789012",
            "role_arn": "arn:aws:iam::123456789012:role/AuroraLab",
        },
        database={
            "instance_count": 1,
            "scaling": {"min_capacity": 0.5, "max_capacity": 16},
        },
        load_test={"desired_capacity": 2},
    )


@pytest.fixture
def infra(deployment_config):
    return from_deployment_config(deployment_config)


@pytest.fixture
def infra_without_load_test(deployment_config):
    return from_deployment_config(deployment_config, include_load_test=False)
