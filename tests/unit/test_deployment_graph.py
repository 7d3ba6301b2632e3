"""Unit tests for the deployment graph."""

import pytest

from auroralab.graph.builder import ResourceKind
from auroralab.graph.deployment import (
    ACCESS_GRANT_ID,
    CLUSTER_ID,
    FLEET_ID,
    NETWORK_ID,
    SCALING_PATCH_ID,
    SERVERLESS_INSTANCE_ID,
    build_deployment_graph,
    cluster_instance_id,
)
from auroralab.models.config import DeploymentConfig, from_deployment_config


def positions(graph):
    return {node.logical_id: i for i, node in enumerate(graph.topological_order())}


class TestDeploymentGraph:
    """Test the full lab graph with the load-test fleet."""

    def test_nodes(self, infra):
        graph = build_deployment_graph(infra)

        assert [node.logical_id for node in graph.nodes] == [
            NETWORK_ID,
            CLUSTER_ID,
            "Instance1",
            SCALING_PATCH_ID,
            SERVERLESS_INSTANCE_ID,
            FLEET_ID,
            ACCESS_GRANT_ID,
        ]

    def test_required_edges(self, infra):
        graph = build_deployment_graph(infra)

        assert graph.edges == {
            (NETWORK_ID, CLUSTER_ID),
            (CLUSTER_ID, "Instance1"),
            (CLUSTER_ID, SCALING_PATCH_ID),
            ("Instance1", SCALING_PATCH_ID),
            (CLUSTER_ID, SERVERLESS_INSTANCE_ID),
            (SCALING_PATCH_ID, SERVERLESS_INSTANCE_ID),
            (NETWORK_ID, FLEET_ID),
            (FLEET_ID, ACCESS_GRANT_ID),
            (CLUSTER_ID, ACCESS_GRANT_ID),
        }

    def test_topological_order_satisfies_creation_order(self, infra):
        graph = build_deployment_graph(infra)
        pos = positions(graph)

        assert pos[NETWORK_ID] < pos[CLUSTER_ID]
        assert pos[NETWORK_ID] < pos[FLEET_ID]
        assert pos[CLUSTER_ID] < pos["Instance1"] < pos[SCALING_PATCH_ID]
        assert pos[SCALING_PATCH_ID] < pos[SERVERLESS_INSTANCE_ID]
        assert pos[FLEET_ID] < pos[ACCESS_GRANT_ID]
        assert pos[CLUSTER_ID] < pos[ACCESS_GRANT_ID]

    def test_every_edge_respected(self, infra):
        graph = build_deployment_graph(infra)
        pos = positions(graph)

        for dependency, dependent in graph.edges:
            assert pos[dependency] < pos[dependent]

    def test_single_access_grant_on_mysql_port(self, infra):
        graph = build_deployment_graph(infra)

        grants = graph.nodes_of_kind(ResourceKind.ACCESS_GRANT)

        assert len(grants) == 1
        grant = grants[0]
        assert grant.config["port"] == 3306
        assert grant.config["protocol"] == "tcp"
        assert grant.config["source"] == FLEET_ID
        assert grant.config["target"] == CLUSTER_ID
        assert graph.dependencies_of(grant) == {FLEET_ID, CLUSTER_ID}

    def test_access_grant_port_does_not_follow_cluster_port(self, infra):
        infra.cluster.port = 3307

        graph = build_deployment_graph(infra)

        (grant,) = graph.nodes_of_kind(ResourceKind.ACCESS_GRANT)
        assert grant.config["port"] == 3306

    def test_scaling_patch_payload(self, infra):
        graph = build_deployment_graph(infra)

        patch = graph.get(SCALING_PATCH_ID)

        assert patch.kind == ResourceKind.SCALING_PATCH
        assert patch.config["min_capacity"] == 0.5
        assert patch.config["max_capacity"] == 16

    def test_serverless_instance_payload(self, infra):
        graph = build_deployment_graph(infra)

        serverless = graph.get(SERVERLESS_INSTANCE_ID)

        assert serverless.config["instance_class"] == "db.serverless"
        assert serverless.config["engine"] == "aurora-mysql"
        assert serverless.config["engine_version"] == "8.0.mysql_aurora.3.02.0"
        assert serverless.config["performance_insights"] is True

    def test_fleet_payload(self, infra):
        graph = build_deployment_graph(infra)

        fleet = graph.get(FLEET_ID)

        assert fleet.config["instance_type"] == "c6a.large"
        assert fleet.config["desired_size"] == 2
        assert fleet.config["block_device"] == {
            "device_name": "/dev/xvda",
            "volume_size": 16,
            "volume_type": "gp3",
        }
        assert fleet.config["user_data"].startswith("#!/bin/env bash\n")
        assert "sysbench --version" in fleet.config["user_data"]
        assert fleet.config["managed_policies"] == [
            "AmazonSSMManagedInstanceCore",
            "SecretsManagerReadWrite",
        ]

    def test_graph_validates(self, infra):
        build_deployment_graph(infra).validate()


class TestLoadTestFlag:
    """Test the graph with and without the load-test fleet."""

    def test_without_load_test(self, infra_without_load_test):
        graph = build_deployment_graph(infra_without_load_test)

        assert FLEET_ID not in graph
        assert ACCESS_GRANT_ID not in graph
        assert len(graph) == 5
        assert (SCALING_PATCH_ID, SERVERLESS_INSTANCE_ID) in graph.edges

    def test_flag_overrides_infra(self, infra):
        graph = build_deployment_graph(infra, include_load_test=False)

        assert graph.nodes_of_kind(ResourceKind.COMPUTE_FLEET) == []
        assert graph.nodes_of_kind(ResourceKind.ACCESS_GRANT) == []

    def test_flag_without_fleet_spec_fails(self, infra_without_load_test):
        with pytest.raises(ValueError):
            build_deployment_graph(infra_without_load_test, include_load_test=True)

    def test_database_part_identical_with_and_without_fleet(self, infra, infra_without_load_test):
        with_fleet = build_deployment_graph(infra)
        without_fleet = build_deployment_graph(infra_without_load_test)

        for node in without_fleet:
            assert with_fleet.get(node.logical_id).config == node.config
            assert with_fleet.dependencies_of(node) == without_fleet.dependencies_of(node)


class TestMultipleMembers:
    """Test clusters with more than one provisioned member."""

    def test_patch_waits_for_first_member(self, deployment_config):
        config = deployment_config.model_copy(
            update={"database": deployment_config.database.model_copy(update={"instance_count": 3})}
        )
        graph = build_deployment_graph(from_deployment_config(config))

        members = graph.nodes_of_kind(ResourceKind.CLUSTER_INSTANCE)

        assert [m.logical_id for m in members] == [cluster_instance_id(i) for i in (1, 2, 3)]
        assert graph.dependencies_of(SCALING_PATCH_ID) == {CLUSTER_ID, "Instance1"}
        for member in members:
            assert graph.dependencies_of(member) == {CLUSTER_ID}


class TestEndToEnd:
    """Declare the whole lab by hand-tuned config and check the resulting order."""

    def test_scenario(self):
        config = DeploymentConfig(
            name="e2e",
            cloud={"region": "eu-west-1", "account_id": "123456789012"},
            database={"instance_count": 1, "scaling": {"min_capacity": 0.5, "max_capacity": 16}},
            load_test={"desired_capacity": 2},
        )
        graph = build_deployment_graph(from_deployment_config(config))
        pos = positions(graph)

        assert graph.get(CLUSTER_ID).config["instance_count"] == 1
        assert graph.get(FLEET_ID).config["desired_size"] == 2

        # The five required orderings
        assert pos[NETWORK_ID] < pos[CLUSTER_ID]
        assert pos["Instance1"] < pos[SCALING_PATCH_ID]
        assert pos[SCALING_PATCH_ID] < pos[SERVERLESS_INSTANCE_ID]
        assert pos[NETWORK_ID] < pos[FLEET_ID]
        assert max(pos[FLEET_ID], pos[CLUSTER_ID]) < pos[ACCESS_GRANT_ID]

        ports = {grant.config["port"] for grant in graph.nodes_of_kind(ResourceKind.ACCESS_GRANT)}
        assert ports == {3306}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
