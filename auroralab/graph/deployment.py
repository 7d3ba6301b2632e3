"""The Aurora Serverless v2 load-test deployment graph."""

from typing import Optional

import structlog

from auroralab.models.userdata import render_user_data
from auroralab.models.config import (
    InfraModel,
    MYSQL_PORT,
    SERVERLESS_INSTANCE_CLASS,
)
from .builder import ResourceGraph, ResourceKind


logger = structlog.get_logger()

# Logical ids
NETWORK_ID = "Vpc"
CLUSTER_ID = "AuroraServerlessv2"
SCALING_PATCH_ID = "DbScalingConfigure"
SERVERLESS_INSTANCE_ID = "ServerlessInstance"
FLEET_ID = "ASG"
ACCESS_GRANT_ID = "AsgToClusterAccess"

AMAZON_LINUX_2_AMI = {
    "owners": ["amazon"],
    "name_pattern": "amzn2-ami-hvm-*-x86_64-gp2",
}


def cluster_instance_id(index: int) -> str:
    """Logical id of the ``index``-th (1-based) provisioned cluster member."""
    return f"Instance{index}"


def build_deployment_graph(
    infra: InfraModel, include_load_test: Optional[bool] = None
) -> ResourceGraph:
    """
    Declare the deployment's resources and their ordering.

    Creation order that must hold::

        Vpc -> cluster -> Instance1 -> scaling patch -> serverless instance
        Vpc -> ASG -> access grant <- cluster

    The serverless member is validated against the cluster's scaling
    configuration when it is created, so it has to wait for the patch, and the
    patch needs an addressable first member.

    Args:
        infra: Infrastructure model
        include_load_test: Whether to declare the load-test fleet and its
            access grant; defaults to whether ``infra`` carries a fleet spec

    Returns:
        The populated graph
    """
    if infra.cluster is None:
        raise ValueError("InfraModel has no cluster specification")

    if include_load_test is None:
        include_load_test = infra.load_test is not None
    elif include_load_test and infra.load_test is None:
        raise ValueError("Load-test fleet requested but InfraModel has no fleet specification")

    cluster = infra.cluster
    graph = ResourceGraph(name=infra.name_prefix)

    network = graph.declare(
        NETWORK_ID,
        ResourceKind.NETWORK,
        {
            "name": f"{infra.name_prefix}-vpc",
            "vpc_cidr": infra.network.vpc_cidr,
            "availability_zones": infra.network.availability_zones,
            "public_subnets": infra.network.public_subnets,
            "private_subnets": infra.network.private_subnets,
        },
    )

    db_cluster = graph.declare(
        CLUSTER_ID,
        ResourceKind.DATABASE_CLUSTER,
        {
            "identifier": cluster.identifier,
            "network": NETWORK_ID,
            "engine": cluster.engine,
            "engine_version": cluster.engine_version,
            "instance_count": cluster.instance_count,
            "instance_class": cluster.instance_class,
            "monitoring_interval": cluster.monitoring_interval,
            "port": cluster.port,
            "master_username": cluster.master_username,
        },
    )
    graph.add_dependency(db_cluster, network)

    members = []
    for index in range(1, cluster.instance_count + 1):
        member = graph.declare(
            cluster_instance_id(index),
            ResourceKind.CLUSTER_INSTANCE,
            {
                "identifier": f"{cluster.identifier}-instance{index}",
                "cluster": CLUSTER_ID,
                "member_index": index,
                "instance_class": cluster.instance_class,
                "monitoring_interval": cluster.monitoring_interval,
            },
        )
        graph.add_dependency(member, db_cluster)
        members.append(member)

    scaling_patch = graph.declare(
        SCALING_PATCH_ID,
        ResourceKind.SCALING_PATCH,
        {
            "cluster": CLUSTER_ID,
            "min_capacity": cluster.min_capacity,
            "max_capacity": cluster.max_capacity,
        },
    )
    graph.add_dependency(scaling_patch, db_cluster)
    graph.add_dependency(scaling_patch, members[0])

    serverless = graph.declare(
        SERVERLESS_INSTANCE_ID,
        ResourceKind.SERVERLESS_INSTANCE,
        {
            "identifier": f"{cluster.identifier}-serverless",
            "cluster": CLUSTER_ID,
            "instance_class": SERVERLESS_INSTANCE_CLASS,
            "engine": cluster.engine,
            "engine_version": cluster.engine_version,
            "monitoring_interval": cluster.monitoring_interval,
            "performance_insights": cluster.performance_insights,
        },
    )
    graph.add_dependency(serverless, db_cluster)
    graph.add_dependency(serverless, scaling_patch)

    if include_load_test:
        fleet_spec = infra.load_test

        fleet = graph.declare(
            FLEET_ID,
            ResourceKind.COMPUTE_FLEET,
            {
                "name": fleet_spec.name,
                "network": NETWORK_ID,
                "instance_type": fleet_spec.instance_type,
                "machine_image": AMAZON_LINUX_2_AMI,
                "user_data": render_user_data(),
                "min_size": fleet_spec.min_size,
                "desired_size": fleet_spec.desired_size,
                "max_size": fleet_spec.max_size,
                "block_device": {
                    "device_name": "/dev/xvda",
                    "volume_size": fleet_spec.volume_size_gb,
                    "volume_type": "gp3",
                },
                "managed_policies": fleet_spec.managed_policies,
            },
        )
        graph.add_dependency(fleet, network)

        grant = graph.declare(
            ACCESS_GRANT_ID,
            ResourceKind.ACCESS_GRANT,
            {
                "source": FLEET_ID,
                "target": CLUSTER_ID,
                "protocol": "tcp",
                "port": MYSQL_PORT,
            },
        )
        graph.add_dependency(grant, fleet)
        graph.add_dependency(grant, db_cluster)

    logger.info(
        "Deployment graph built",
        graph=graph.name,
        nodes=len(graph),
        edges=len(graph.edges),
        include_load_test=include_load_test,
    )

    return graph
