"""AWS infrastructure stack using CDKTF."""

import base64
import json
from typing import Dict, Any, List

from cdktf import (
    LocalExecProvisioner,
    S3Backend,
    TerraformOutput,
    TerraformResourceLifecycle,
    TerraformStack,
)
from constructs import Construct

# AWS Provider imports
from cdktf_cdktf_provider_aws.provider import AwsProvider, AwsProviderAssumeRole
from cdktf_cdktf_provider_aws.vpc import Vpc
from cdktf_cdktf_provider_aws.subnet import Subnet
from cdktf_cdktf_provider_aws.internet_gateway import InternetGateway
from cdktf_cdktf_provider_aws.nat_gateway import NatGateway
from cdktf_cdktf_provider_aws.eip import Eip
from cdktf_cdktf_provider_aws.route_table import RouteTable, RouteTableRoute
from cdktf_cdktf_provider_aws.route_table_association import RouteTableAssociation
from cdktf_cdktf_provider_aws.security_group import SecurityGroup
from cdktf_cdktf_provider_aws.security_group_rule import SecurityGroupRule
from cdktf_cdktf_provider_aws.db_subnet_group import DbSubnetGroup
from cdktf_cdktf_provider_aws.rds_cluster import RdsCluster
from cdktf_cdktf_provider_aws.rds_cluster_instance import RdsClusterInstance
from cdktf_cdktf_provider_aws.iam_role import IamRole
from cdktf_cdktf_provider_aws.iam_role_policy_attachment import IamRolePolicyAttachment
from cdktf_cdktf_provider_aws.iam_instance_profile import IamInstanceProfile
from cdktf_cdktf_provider_aws.data_aws_ami import DataAwsAmi, DataAwsAmiFilter
from cdktf_cdktf_provider_aws.launch_template import (
    LaunchTemplate,
    LaunchTemplateBlockDeviceMappings,
    LaunchTemplateBlockDeviceMappingsEbs,
    LaunchTemplateIamInstanceProfile,
)
from cdktf_cdktf_provider_aws.autoscaling_group import (
    AutoscalingGroup,
    AutoscalingGroupInstanceRefresh,
    AutoscalingGroupLaunchTemplate,
    AutoscalingGroupTag,
)
from cdktf_cdktf_provider_null.provider import NullProvider
from cdktf_cdktf_provider_null.resource import Resource as NullResource

from auroralab.graph.builder import ResourceGraph, ResourceKind, ResourceNode
from auroralab.models.config import InfraModel
from .scaling import scaling_patch_command
from .state import configure_backend


def _assume_role_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


class AuroraServerlessV2Stack(TerraformStack):
    """
    Realizes a deployment graph as Terraform resources.

    Nodes are created in the graph's topological order. The top-level
    resources of a node (the ones that do not already reference another
    resource of the same node) list every resource of the node's graph
    dependencies in their ``depends_on``. Ordering between nodes comes from
    the graph's edges and nothing else.
    """

    def __init__(self, scope: Construct, id: str, infra: InfraModel, graph: ResourceGraph):
        """
        Initialize AWS stack.

        Args:
            scope: CDKTF construct scope
            id: Stack identifier
            infra: Infrastructure model
            graph: Validated deployment graph
        """
        super().__init__(scope, id)

        self.infra = infra
        self.graph = graph
        self.realized: Dict[str, Dict[str, Any]] = {}

        # Configure AWS provider with assumed role
        AwsProvider(
            self,
            "aws",
            region=infra.region,
            assume_role=[
                AwsProviderAssumeRole(
                    role_arn=infra.role_arn,
                    external_id=infra.external_id,
                    session_name=f"auroralab-{infra.deployment_name}",
                )
            ] if infra.role_arn else None,
            default_tags=[{"tags": infra.tags}],
        )
        NullProvider(self, "null")

        # Configure S3 backend for state
        S3Backend(self, **configure_backend(infra))

        realizers = {
            ResourceKind.NETWORK: self._create_network,
            ResourceKind.DATABASE_CLUSTER: self._create_database_cluster,
            ResourceKind.CLUSTER_INSTANCE: self._create_cluster_instance,
            ResourceKind.SCALING_PATCH: self._create_scaling_patch,
            ResourceKind.SERVERLESS_INSTANCE: self._create_serverless_instance,
            ResourceKind.COMPUTE_FLEET: self._create_compute_fleet,
            ResourceKind.ACCESS_GRANT: self._create_access_grant,
        }

        for node in graph.topological_order():
            depends_on = [
                resource
                for dependency in sorted(graph.dependencies_of(node))
                for resource in self.dependables(dependency)
            ]
            self.realized[node.logical_id] = realizers[node.kind](node, depends_on)

        # Define outputs
        self._create_outputs()

    def dependables(self, logical_id: str) -> List[Any]:
        """All Terraform resources realized for a graph node."""
        resources: List[Any] = []
        for value in self.realized[logical_id].values():
            if isinstance(value, list):
                resources.extend(value)
            else:
                resources.append(value)
        return resources

    def _name(self, suffix: str) -> str:
        return f"{self.infra.name_prefix}-{suffix}"

    # Network

    def _create_network(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Create VPC, subnets, gateways and route tables."""
        cfg = node.config

        vpc = Vpc(
            self,
            "vpc",
            cidr_block=cfg["vpc_cidr"],
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags={"Name": cfg["name"]},
            depends_on=depends_on,
        )

        public_subnets = [
            Subnet(
                self,
                f"public_subnet_{i}",
                vpc_id=vpc.id,
                cidr_block=cidr,
                availability_zone=az,
                map_public_ip_on_launch=True,
                tags={"Name": self._name(f"public-{az}")},
            )
            for i, (cidr, az) in enumerate(zip(cfg["public_subnets"], cfg["availability_zones"]))
        ]

        private_subnets = [
            Subnet(
                self,
                f"private_subnet_{i}",
                vpc_id=vpc.id,
                cidr_block=cidr,
                availability_zone=az,
                map_public_ip_on_launch=False,
                tags={"Name": self._name(f"private-{az}")},
            )
            for i, (cidr, az) in enumerate(zip(cfg["private_subnets"], cfg["availability_zones"]))
        ]

        igw = InternetGateway(
            self,
            "igw",
            vpc_id=vpc.id,
            tags={"Name": self._name("igw")},
        )

        # One NAT gateway per AZ
        nat_gateways = []
        for i, public_subnet in enumerate(public_subnets):
            eip = Eip(
                self,
                f"nat_eip_{i}",
                domain="vpc",
                tags={"Name": self._name(f"nat-eip-{i}")},
            )

            nat_gateways.append(
                NatGateway(
                    self,
                    f"nat_gateway_{i}",
                    allocation_id=eip.id,
                    subnet_id=public_subnet.id,
                    tags={"Name": self._name(f"nat-{i}")},
                )
            )

        public_rt = RouteTable(
            self,
            "public_rt",
            vpc_id=vpc.id,
            route=[RouteTableRoute(cidr_block="0.0.0.0/0", gateway_id=igw.id)],
            tags={"Name": self._name("public-rt")},
        )

        for i, subnet in enumerate(public_subnets):
            RouteTableAssociation(
                self,
                f"public_rta_{i}",
                subnet_id=subnet.id,
                route_table_id=public_rt.id,
            )

        for i, (subnet, nat) in enumerate(zip(private_subnets, nat_gateways)):
            private_rt = RouteTable(
                self,
                f"private_rt_{i}",
                vpc_id=vpc.id,
                route=[RouteTableRoute(cidr_block="0.0.0.0/0", nat_gateway_id=nat.id)],
                tags={"Name": self._name(f"private-rt-{i}")},
            )

            RouteTableAssociation(
                self,
                f"private_rta_{i}",
                subnet_id=subnet.id,
                route_table_id=private_rt.id,
            )

        return {
            "vpc": vpc,
            "public_subnets": public_subnets,
            "private_subnets": private_subnets,
            "internet_gateway": igw,
            "nat_gateways": nat_gateways,
        }

    # Database

    def _create_database_cluster(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Create the Aurora MySQL cluster with its subnet group, security group and monitoring role."""
        cfg = node.config
        network = self.realized[cfg["network"]]

        subnet_group = DbSubnetGroup(
            self,
            "rds_subnet_group",
            name=self._name("rds-subnet"),
            subnet_ids=[s.id for s in network["private_subnets"]],
            tags={"Name": self._name("rds-subnet")},
            depends_on=depends_on,
        )

        # Rules are separate resources so the access grant can add to them
        security_group = SecurityGroup(
            self,
            "rds_sg",
            name=self._name("rds-sg"),
            description="Security group for Aurora MySQL cluster",
            vpc_id=network["vpc"].id,
            tags={"Name": self._name("rds-sg")},
            depends_on=depends_on,
        )

        egress = SecurityGroupRule(
            self,
            "rds_sg_egress",
            type="egress",
            from_port=0,
            to_port=0,
            protocol="-1",
            cidr_blocks=["0.0.0.0/0"],
            security_group_id=security_group.id,
            description="Allow all outbound",
        )

        monitoring_role = IamRole(
            self,
            "rds_monitoring_role",
            name=self._name("rds-monitoring"),
            assume_role_policy=_assume_role_policy("monitoring.rds.amazonaws.com"),
            depends_on=depends_on,
        )

        monitoring_policy = IamRolePolicyAttachment(
            self,
            "rds_monitoring_policy",
            role=monitoring_role.name,
            policy_arn="arn:aws:iam::aws:policy/service-role/AmazonRDSEnhancedMonitoringRole",
        )

        cluster = RdsCluster(
            self,
            "aurora_cluster",
            cluster_identifier=cfg["identifier"],
            engine=cfg["engine"],
            engine_mode="provisioned",
            engine_version=cfg["engine_version"],
            master_username=cfg["master_username"],
            manage_master_user_password=True,  # AWS manages password in Secrets Manager
            port=cfg["port"],
            db_subnet_group_name=subnet_group.name,
            vpc_security_group_ids=[security_group.id],
            storage_encrypted=True,
            skip_final_snapshot=False,
            final_snapshot_identifier=f"{cfg['identifier']}-final",
            # Applied out-of-band by the scaling patch
            lifecycle=TerraformResourceLifecycle(
                ignore_changes=["serverlessv2_scaling_configuration"],
            ),
            tags={"Name": cfg["identifier"]},
            depends_on=depends_on,
        )

        return {
            "cluster": cluster,
            "subnet_group": subnet_group,
            "security_group": security_group,
            "security_group_egress": egress,
            "monitoring_role": monitoring_role,
            "monitoring_policy": monitoring_policy,
        }

    def _cluster_member(
        self,
        construct_id: str,
        cfg: Dict[str, Any],
        depends_on: List[Any],
        **extra: Any,
    ) -> RdsClusterInstance:
        parent = self.realized[cfg["cluster"]]
        cluster = parent["cluster"]

        monitoring: Dict[str, Any] = {"monitoring_interval": cfg["monitoring_interval"]}
        if cfg["monitoring_interval"]:
            monitoring["monitoring_role_arn"] = parent["monitoring_role"].arn

        return RdsClusterInstance(
            self,
            construct_id,
            identifier=cfg["identifier"],
            cluster_identifier=cluster.id,
            instance_class=cfg["instance_class"],
            engine=cluster.engine,
            engine_version=cluster.engine_version,
            db_subnet_group_name=parent["subnet_group"].name,
            tags={"Name": cfg["identifier"]},
            depends_on=depends_on,
            **monitoring,
            **extra,
        )

    def _create_cluster_instance(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Create a provisioned cluster member."""
        instance = self._cluster_member(
            f"cluster_instance_{node.config['member_index']}",
            node.config,
            depends_on,
        )
        return {"instance": instance}

    def _create_scaling_patch(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """
        Apply the Serverless v2 scaling configuration to the running cluster.

        Runs ``aws rds modify-db-cluster`` from Terraform, under the provider's
        assumed role when one is configured, and waits for the cluster to
        become available again. Changing the capacity bounds re-runs the
        patch.
        """
        cfg = node.config
        cluster = self.realized[cfg["cluster"]]["cluster"]

        command = scaling_patch_command(
            region=self.infra.region,
            cluster_identifier=cluster.cluster_identifier,
            min_capacity=cfg["min_capacity"],
            max_capacity=cfg["max_capacity"],
            role_arn=self.infra.role_arn,
            external_id=self.infra.external_id,
            session_name=f"auroralab-{self.infra.deployment_name}-scaling",
        )

        patch = NullResource(
            self,
            "db_scaling_configure",
            triggers={
                "cluster_identifier": cluster.cluster_identifier,
                "min_capacity": str(cfg["min_capacity"]),
                "max_capacity": str(cfg["max_capacity"]),
            },
            provisioners=[
                LocalExecProvisioner(
                    type="local-exec",
                    command=command,
                    interpreter=["/bin/bash", "-c"],
                )
            ],
            depends_on=depends_on,
        )

        return {"patch": patch}

    def _create_serverless_instance(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Create the db.serverless cluster member."""
        instance = self._cluster_member(
            "serverless_instance",
            node.config,
            depends_on,
            performance_insights_enabled=node.config["performance_insights"],
        )
        return {"instance": instance}

    # Load test

    def _create_compute_fleet(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Create the load-test auto-scaling group and its instance role."""
        cfg = node.config
        network = self.realized[cfg["network"]]

        role = IamRole(
            self,
            "fleet_role",
            name=f"{cfg['name']}-role",
            assume_role_policy=_assume_role_policy("ec2.amazonaws.com"),
            depends_on=depends_on,
        )

        policy_attachments = [
            IamRolePolicyAttachment(
                self,
                f"fleet_{policy.lower()}",
                role=role.name,
                policy_arn=f"arn:aws:iam::aws:policy/{policy}",
            )
            for policy in cfg["managed_policies"]
        ]

        instance_profile = IamInstanceProfile(
            self,
            "fleet_instance_profile",
            name=f"{cfg['name']}-profile",
            role=role.name,
        )

        security_group = SecurityGroup(
            self,
            "fleet_sg",
            name=f"{cfg['name']}-sg",
            description="Security group for load-test instances",
            vpc_id=network["vpc"].id,
            tags={"Name": f"{cfg['name']}-sg"},
            depends_on=depends_on,
        )

        egress = SecurityGroupRule(
            self,
            "fleet_sg_egress",
            type="egress",
            from_port=0,
            to_port=0,
            protocol="-1",
            cidr_blocks=["0.0.0.0/0"],
            security_group_id=security_group.id,
            description="Allow all outbound",
        )

        image = DataAwsAmi(
            self,
            "fleet_ami",
            most_recent=True,
            owners=cfg["machine_image"]["owners"],
            filter=[
                DataAwsAmiFilter(name="name", values=[cfg["machine_image"]["name_pattern"]]),
                DataAwsAmiFilter(name="virtualization-type", values=["hvm"]),
            ],
        )

        block_device = cfg["block_device"]
        launch_template = LaunchTemplate(
            self,
            "fleet_launch_template",
            name_prefix=f"{cfg['name']}-",
            image_id=image.id,
            instance_type=cfg["instance_type"],
            user_data=base64.b64encode(cfg["user_data"].encode()).decode(),
            iam_instance_profile=LaunchTemplateIamInstanceProfile(arn=instance_profile.arn),
            vpc_security_group_ids=[security_group.id],
            block_device_mappings=[
                LaunchTemplateBlockDeviceMappings(
                    device_name=block_device["device_name"],
                    ebs=LaunchTemplateBlockDeviceMappingsEbs(
                        volume_size=block_device["volume_size"],
                        volume_type=block_device["volume_type"],
                    ),
                )
            ],
            depends_on=depends_on,
        )

        asg = AutoscalingGroup(
            self,
            "fleet_asg",
            name=cfg["name"],
            min_size=cfg["min_size"],
            max_size=cfg["max_size"],
            desired_capacity=cfg["desired_size"],
            vpc_zone_identifier=[s.id for s in network["private_subnets"]],
            launch_template=AutoscalingGroupLaunchTemplate(
                id=launch_template.id,
                version="$Latest",
            ),
            instance_refresh=AutoscalingGroupInstanceRefresh(strategy="Rolling"),
            tag=[
                AutoscalingGroupTag(key="Name", value=cfg["name"], propagate_at_launch=True),
            ],
            depends_on=depends_on,
        )

        return {
            "role": role,
            "policy_attachments": policy_attachments,
            "instance_profile": instance_profile,
            "security_group": security_group,
            "security_group_egress": egress,
            "launch_template": launch_template,
            "asg": asg,
        }

    def _create_access_grant(self, node: ResourceNode, depends_on: List[Any]) -> Dict[str, Any]:
        """Allow the source's security group to reach the target's on one port."""
        cfg = node.config
        source = self.realized[cfg["source"]]["security_group"]
        target = self.realized[cfg["target"]]["security_group"]

        rule = SecurityGroupRule(
            self,
            "access_grant",
            type="ingress",
            from_port=cfg["port"],
            to_port=cfg["port"],
            protocol=cfg["protocol"],
            security_group_id=target.id,
            source_security_group_id=source.id,
            description=f"Allow {cfg['source']} to reach {cfg['target']}",
            depends_on=depends_on,
        )

        return {"rule": rule}

    def _create_outputs(self) -> None:
        """Define Terraform outputs."""
        network = self.graph.nodes_of_kind(ResourceKind.NETWORK)[0]
        cluster_node = self.graph.nodes_of_kind(ResourceKind.DATABASE_CLUSTER)[0]
        cluster = self.realized[cluster_node.logical_id]["cluster"]

        TerraformOutput(
            self,
            "vpc_id",
            value=self.realized[network.logical_id]["vpc"].id,
            description="VPC ID",
        )

        TerraformOutput(
            self,
            "cluster_identifier",
            value=cluster.cluster_identifier,
            description="Aurora cluster identifier",
        )

        TerraformOutput(
            self,
            "cluster_endpoint",
            value=cluster.endpoint,
            description="Aurora writer endpoint",
        )

        TerraformOutput(
            self,
            "cluster_reader_endpoint",
            value=cluster.reader_endpoint,
            description="Aurora reader endpoint",
        )

        TerraformOutput(
            self,
            "rds_master_user_secret_arn",
            value=cluster.master_user_secret.get(0).secret_arn,
            description="Aurora master user secret ARN in AWS Secrets Manager",
            sensitive=True,
        )

        for fleet in self.graph.nodes_of_kind(ResourceKind.COMPUTE_FLEET):
            TerraformOutput(
                self,
                "load_test_asg_name",
                value=self.realized[fleet.logical_id]["asg"].name,
                description="Load-test auto-scaling group name",
            )
