from __future__ import annotations

from typing import Any

import boto3
import pytest
from botocore.exceptions import ClientError

from environment_broker.config import SecureConnectionMetadata
from environment_broker.models import (
    ConfigParam,
    Environment,
    EnvironmentStatus,
    EnvironmentTypeConfig,
    Project,
)

REGION = "eu-west-2"
LISTENER_ARN = (
    "arn:aws:elasticloadbalancing:eu-west-2:111111111111:listener/app/swb-alb/abc/def"
)
ROLE_ARN = "arn:aws:iam::222222222222:role/swb-env-mgmt"


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mocked AWS Credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)


@pytest.fixture
def secure_connection() -> SecureConnectionMetadata:
    return SecureConnectionMetadata(
        alb_security_group_id="sg-0123456789",
        listener_arn=LISTENER_ARN,
        partner_domain="example.com",
        hosted_zone_id="Z0123456789",
        alb_dns_name="swb-alb-123.eu-west-2.elb.amazonaws.com",
    )


def make_environment(
    env_id: str = "env-42",
    env_type: str = "ec2Rstudio",
    *,
    status: EnvironmentStatus = EnvironmentStatus.PENDING,
    params: dict[str, str] | None = None,
    provisioned_product_id: str | None = None,
    instance_id: str | None = None,
    external_id: str = "workbench",
) -> Environment:
    if params is None:
        params = {"CIDR": "10.0.0.0/16", "InstanceType": "t3.medium", "KeyName": "swb-key"}
    return Environment(
        env_id=env_id,
        env_type=env_type,
        status=status,
        project=Project(
            project_id="proj-1",
            vpc_id="vpc-123",
            subnet_id="subnet-456",
            encryption_key_arn="arn:aws:kms:eu-west-2:222222222222:key/abc",
            env_mgmt_role_arn=ROLE_ARN,
            external_id=external_id,
            environment_instance_files="s3://swb-artifacts/environment-files",
        ),
        type_config=EnvironmentTypeConfig(
            product_id="prod-abc",
            provisioning_artifact_id="pa-def",
            params=tuple(ConfigParam(key=k, value=v) for k, v in params.items()),
        ),
        provisioned_product_id=provisioned_product_id,
        instance_id=instance_id,
    )


def client_error(code: str, operation: str = "Operation", message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def create_single_table(table_name: str, *, resource: Any = None) -> Any:
    ddb = resource or boto3.resource("dynamodb", region_name=REGION)
    return ddb.create_table(
        TableName=table_name,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
