"""Shell command behind the Serverless v2 scaling patch."""

import shlex
from typing import List, Optional


CREDENTIALS_QUERY = "Credentials.[AccessKeyId,SecretAccessKey,SessionToken]"


def scaling_patch_command(
    region: str,
    cluster_identifier: str,
    min_capacity: float,
    max_capacity: float,
    role_arn: Optional[str] = None,
    external_id: Optional[str] = None,
    session_name: str = "auroralab-scaling-patch",
) -> str:
    """
    Build the bash script that sets the cluster's Serverless v2 capacity range.

    The script runs on the machine executing Terraform. When ``role_arn`` is
    given it first assumes that role, the same one the AWS provider uses, so
    the RDS calls reach the account the cluster was created in.

    Args:
        region: AWS region of the cluster
        cluster_identifier: Cluster identifier (may be a Terraform token)
        min_capacity: Minimum ACUs
        max_capacity: Maximum ACUs
        role_arn: Role to assume before calling RDS
        external_id: STS external ID for ``role_arn``
        session_name: STS role session name

    Returns:
        Script for a ``local-exec`` provisioner with a bash interpreter
    """
    lines: List[str] = ["set -euo pipefail"]

    if role_arn:
        assume = [
            "aws", "sts", "assume-role",
            "--region", region,
            "--role-arn", role_arn,
            "--role-session-name", session_name,
        ]
        if external_id:
            assume += ["--external-id", external_id]
        assume += ["--query", CREDENTIALS_QUERY, "--output", "text"]

        lines += [
            f'creds="$({shlex.join(assume)})"',
            'read -r AWS_ACCESS_KEY_ID AWS_SECRET_ACCESS_KEY AWS_SESSION_TOKEN <<< "$creds"',
            "export AWS_ACCESS_KEY_ID AWS_SECRET_ACCESS_KEY AWS_SESSION_TOKEN",
        ]

    scaling = f"MinCapacity={min_capacity:g},MaxCapacity={max_capacity:g}"
    lines += [
        f"aws rds modify-db-cluster --region {region} "
        f"--db-cluster-identifier {cluster_identifier} "
        f"--serverless-v2-scaling-configuration {scaling} --apply-immediately",
        f"aws rds wait db-cluster-available --region {region} "
        f"--db-cluster-identifier {cluster_identifier}",
    ]

    return "\n".join(lines)
