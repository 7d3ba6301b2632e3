"""Terraform state backend configuration."""

import boto3
import structlog
from botocore.exceptions import ClientError

from auroralab.models.config import InfraModel


logger = structlog.get_logger()


def get_session(infra: InfraModel, session_name: str) -> boto3.Session:
    """
    Build a boto3 session for the target account.

    Assumes ``infra.role_arn`` when one is configured, otherwise uses the
    ambient credentials.

    Args:
        infra: Infrastructure model
        session_name: STS role session name

    Returns:
        boto3 Session bound to the deployment region
    """
    if not infra.role_arn:
        return boto3.Session(region_name=infra.region)

    sts = boto3.client("sts")
    assume_kwargs = {
        "RoleArn": infra.role_arn,
        "RoleSessionName": session_name,
    }
    if infra.external_id:
        assume_kwargs["ExternalId"] = infra.external_id

    credentials = sts.assume_role(**assume_kwargs)["Credentials"]

    return boto3.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=infra.region,
    )


def ensure_state_backend(infra: InfraModel) -> None:
    """
    Make sure the S3 state bucket and the DynamoDB lock table exist.

    Both steps tolerate resources left behind by an earlier run. The bucket's
    versioning, encryption and public access block are (re)applied either way.

    Args:
        infra: Infrastructure model

    Raises:
        ClientError: If backend resources cannot be created
    """
    session = get_session(infra, f"auroralab-state-setup-{infra.deployment_name}")

    _ensure_bucket(session.client("s3"), infra.state_backend_bucket, infra.state_backend_region)
    _ensure_lock_table(session.client("dynamodb"), lock_table_name(infra), infra.tags)


def _ensure_bucket(s3, bucket: str, region: str) -> None:
    create_kwargs = {"Bucket": bucket}
    # us-east-1 rejects an explicit LocationConstraint
    if region != "us-east-1":
        create_kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}

    try:
        s3.create_bucket(**create_kwargs)
        logger.info("State bucket created", bucket=bucket)
    except ClientError as e:
        if e.response["Error"]["Code"] != "BucketAlreadyOwnedByYou":
            raise
        logger.info("State bucket already exists", bucket=bucket)

    _harden_bucket(s3, bucket)


def _harden_bucket(s3, bucket: str) -> None:
    """Versioning, default encryption and no public access."""
    s3.put_bucket_versioning(
        Bucket=bucket,
        VersioningConfiguration={"Status": "Enabled"},
    )
    s3.put_bucket_encryption(
        Bucket=bucket,
        ServerSideEncryptionConfiguration={
            "Rules": [
                {
                    "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
                    "BucketKeyEnabled": True,
                }
            ]
        },
    )
    s3.put_public_access_block(
        Bucket=bucket,
        PublicAccessBlockConfiguration={
            "BlockPublicAcls": True,
            "IgnorePublicAcls": True,
            "BlockPublicPolicy": True,
            "RestrictPublicBuckets": True,
        },
    )


def _ensure_lock_table(dynamodb, table: str, tags: dict) -> None:
    try:
        dynamodb.create_table(
            TableName=table,
            KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
            Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ResourceInUseException":
            raise
        logger.info("State lock table already exists", table=table)
        return

    dynamodb.get_waiter("table_exists").wait(
        TableName=table, WaiterConfig={"Delay": 2, "MaxAttempts": 30}
    )
    logger.info("State lock table created", table=table)


def lock_table_name(infra: InfraModel) -> str:
    return f"{infra.state_backend_bucket}-lock"


def configure_backend(infra: InfraModel) -> dict:
    """
    Generate S3 backend configuration for Terraform.

    Args:
        infra: Infrastructure model

    Returns:
        Keyword arguments for ``cdktf.S3Backend``
    """
    config = {
        "bucket": infra.state_backend_bucket,
        "key": infra.state_backend_key,
        "region": infra.state_backend_region,
        "encrypt": True,
        "dynamodb_table": lock_table_name(infra),
    }

    if infra.role_arn:
        config["role_arn"] = infra.role_arn
        if infra.external_id:
            config["external_id"] = infra.external_id

    return config
