"""
environment_broker.provisioning — Collaborators the lifecycle service drives.

SsmAutomationProvisioner submits Launch/Terminate requests by starting the
environment type's SSM Automation document in the hosting account. The
document drives Service Catalog; the resulting status changes come back
out of band through the status reconciler, never as a blocking wait here.

InfrastructureOutputs and DatasetMounts stand in for the main stack's
CloudFormation outputs and the dataset mounting helper. The defaults in
this module cover deployments without datasets.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.access import CrossAccountAccessGateway
from environment_broker.config import BrokerSettings
from environment_broker.exceptions import translate_client_error
from environment_broker.models import Environment, LifecycleOperation

logger = Logger(service="provisioning")


@dataclass(frozen=True)
class ProvisioningRequest:
    """One outbound provisioning call.

    parameters is the flat SSM parameter bag: every value is a one-element
    list of strings.
    """

    operation: LifecycleOperation
    env_type: str
    env_id: str
    parameters: Mapping[str, list[str]]
    env_mgmt_role_arn: str
    external_id: str


class Provisioner(Protocol):
    def submit(self, request: ProvisioningRequest) -> str: ...


class SsmAutomationProvisioner:
    """Starts {STACK_NAME}-{envType}{Operation} in the hosting account."""

    def __init__(self, settings: BrokerSettings, gateway: CrossAccountAccessGateway) -> None:
        self._settings = settings
        self._gateway = gateway

    def submit(self, request: ProvisioningRequest) -> str:
        document_name = self._settings.ssm_document_name(request.env_type, request.operation)
        clients = self._gateway.assume(
            request.env_mgmt_role_arn,
            request.external_id,
            f"{request.operation}-{request.env_type}",
        )
        try:
            response = clients.ssm.start_automation_execution(
                DocumentName=document_name,
                Parameters={key: list(value) for key, value in request.parameters.items()},
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(
                exc, service="ssm", operation="StartAutomationExecution"
            ) from exc
        execution_id = str(response.get("AutomationExecutionId", ""))
        logger.info(
            "Submitted provisioning request",
            extra={
                "env_id": request.env_id,
                "env_type": request.env_type,
                "operation": str(request.operation),
                "document_name": document_name,
                "automation_execution_id": execution_id,
            },
        )
        return execution_id


# ---------------------------------------------------------------------------
# Shared infrastructure outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InfrastructureValues:
    datasets_bucket_arn: str
    main_account_region: str
    main_account_id: str
    main_account_key_arn: str


class InfrastructureOutputs(Protocol):
    def get_outputs(self) -> InfrastructureValues: ...


class StaticInfrastructureOutputs:
    """Main stack outputs taken from BrokerSettings."""

    def __init__(self, settings: BrokerSettings) -> None:
        self._values = InfrastructureValues(
            datasets_bucket_arn=settings.datasets_bucket_arn,
            main_account_region=settings.region,
            main_account_id=settings.main_account_id,
            main_account_key_arn=settings.main_account_key_arn,
        )

    def get_outputs(self) -> InfrastructureValues:
        return self._values


# ---------------------------------------------------------------------------
# Dataset mounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatasetMountGrant:
    """Serialised S3 mount list and IAM policy document for the instance."""

    s3_mounts: str = "[]"
    iam_policy_document: str = '{"Version":"2012-10-17","Statement":[]}'
    access_point_arns: tuple[str, ...] = field(default_factory=tuple)


class DatasetMounts(Protocol):
    def resolve(
        self, dataset_ids: Sequence[str], environment: Environment, key_arn: str
    ) -> DatasetMountGrant: ...

    def remove_access_points(self, environment: Environment) -> None: ...


class NoDatasetMounts:
    def resolve(
        self, dataset_ids: Sequence[str], environment: Environment, key_arn: str
    ) -> DatasetMountGrant:
        if dataset_ids:
            logger.warning(
                "Dataset mounting is not configured; ignoring datasets",
                extra={"env_id": environment.env_id, "dataset_count": len(dataset_ids)},
            )
        return DatasetMountGrant()

    def remove_access_points(self, environment: Environment) -> None:
        return None


def flatten(parameters: Mapping[str, Any]) -> dict[str, list[str]]:
    """Turn {key: value} into the SSM bag {key: [str(value)]}; None becomes ""."""
    return {key: ["" if value is None else str(value)] for key, value in parameters.items()}
