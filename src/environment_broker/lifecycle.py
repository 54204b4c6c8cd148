"""
environment_broker.lifecycle — Launch / terminate / start / stop for one environment type.

This service only issues the outbound calls that trigger a transition and
records the optimistic intermediate status:

    launch     -> PENDING
    start      -> STARTING
    stop       -> STOPPING
    terminate  -> TERMINATING  (TERMINATED when nothing was ever provisioned)

RUNNING / STOPPED / TERMINATED / FAILED are written later by the status
reconciler once the provisioning side confirms them.

Each call is a single attempt. The status write is always the last step, so
a failed call leaves the stored status as it was. There is no compensation:
a DNS record published by a launch whose provisioning call then fails stays
in place.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.access import CrossAccountAccessGateway
from environment_broker.config import SecureConnectionMetadata, require_secure_connection
from environment_broker.dns import DnsLifecycleManager, application_hostname
from environment_broker.exceptions import (
    EnvironmentBrokerError,
    NotFound,
    ValidationError,
    translate_client_error,
)
from environment_broker.models import (
    Environment,
    EnvironmentPage,
    EnvironmentStatus,
    LifecycleOperation,
    LifecycleResult,
)
from environment_broker.priority import PriorityReservations, RulePriorityAllocator
from environment_broker.provisioning import (
    DatasetMounts,
    InfrastructureOutputs,
    Provisioner,
    ProvisioningRequest,
    flatten,
)

logger = Logger(service="environment-lifecycle")

DEFAULT_REQUIRED_PARAMS = ("CIDR", "InstanceType", "KeyName")


class EnvironmentStore(Protocol):
    def get_environment(self, env_id: str, consistent_read: bool = True) -> Environment: ...

    def update_environment(self, env_id: str, fields: dict[str, Any]) -> Environment: ...

    def list_environments(self, status: EnvironmentStatus | None = None) -> EnvironmentPage: ...

    def count_environments(self, status: EnvironmentStatus) -> int: ...


@dataclass(frozen=True)
class EnvironmentTypeProfile:
    """What differs between environment types at launch time.

    passthrough_params are copied from the environment's ETC params into
    the provisioning bag unchanged (e.g. AmiId) and are required as well.
    """

    env_type: str
    instance_name_prefix: str
    required_params: tuple[str, ...] = DEFAULT_REQUIRED_PARAMS
    passthrough_params: tuple[str, ...] = ()

    @property
    def all_required(self) -> tuple[str, ...]:
        return self.required_params + tuple(
            p for p in self.passthrough_params if p not in self.required_params
        )


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class EnvironmentLifecycleService:
    def __init__(
        self,
        profile: EnvironmentTypeProfile,
        *,
        environments: EnvironmentStore,
        gateway: CrossAccountAccessGateway,
        allocator: RulePriorityAllocator,
        dns: DnsLifecycleManager,
        provisioner: Provisioner,
        infrastructure: InfrastructureOutputs,
        datasets: DatasetMounts,
        secure_connection: SecureConnectionMetadata | None,
        reservations: PriorityReservations | None = None,
        secret_parameters: Callable[[str], list[str]] | None = None,
        clock: Callable[[], int] = _epoch_millis,
        token_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.profile = profile
        self._environments = environments
        self._gateway = gateway
        self._allocator = allocator
        self._dns = dns
        self._provisioner = provisioner
        self._infrastructure = infrastructure
        self._datasets = datasets
        self._secure_connection = secure_connection
        self._reservations = reservations
        self._secret_parameters = secret_parameters
        self._clock = clock
        self._token_factory = token_factory

    @property
    def env_type(self) -> str:
        return self.profile.env_type

    def _load(self, env_id: str, environment: Environment | None) -> Environment:
        # Callers that already hold a consistent read pass it in.
        if environment is not None and environment.env_id == env_id:
            return environment
        return self._environments.get_environment(env_id, True)

    # -----------------------------------------------------------------------
    # launch
    # -----------------------------------------------------------------------

    def launch(self, environment: Environment) -> Environment:
        """Allocate a rule priority, publish DNS and submit the Launch request.

        Raises ValidationError before any AWS call when a required launch
        parameter is missing.
        """
        params = environment.type_config
        missing = params.missing(self.profile.all_required)
        if missing:
            raise ValidationError(
                f"Missing required launch parameter(s) for {environment.env_id}: "
                f"{', '.join(missing)}"
            )
        metadata = require_secure_connection(self._secure_connection)
        project = environment.project

        infra = self._infrastructure.get_outputs()
        grant = self._datasets.resolve(
            environment.dataset_ids, environment, infra.main_account_key_arn
        )

        clients = self._gateway.assume(
            project.env_mgmt_role_arn,
            project.external_id,
            f"RulePriority-{self.env_type}",
        )
        pending = self._environments.count_environments(EnvironmentStatus.PENDING)
        priority = self._allocator.allocate(clients.elbv2, pending)
        if self._reservations is not None:
            priority = self._reservations.claim(metadata.listener_arn, priority, environment.env_id)

        application_url = application_hostname(
            self.env_type, environment.env_id, metadata.partner_domain
        )
        self._dns.publish(application_url, metadata.hosted_zone_id, metadata.alb_dns_name)

        now = self._clock()
        bag: dict[str, Any] = {
            "InstanceName": f"{self.profile.instance_name_prefix}-{now}",
            "VPC": project.vpc_id,
            "Subnet": project.subnet_id,
            "ProvisioningArtifactId": params.provisioning_artifact_id,
            "ProductId": params.product_id,
            "Namespace": f"{self.env_type}-{now}",
            "EncryptionKeyArn": project.encryption_key_arn,
            "CIDR": params.param("CIDR"),
            "InstanceType": params.param("InstanceType"),
            "DatasetsBucketArn": infra.datasets_bucket_arn,
            "EnvId": environment.env_id,
            "EnvironmentInstanceFiles": project.environment_instance_files,
            "IamPolicyDocument": grant.iam_policy_document,
            "S3Mounts": grant.s3_mounts,
            "KeyName": params.param("KeyName"),
            "ALBSecurityGroup": metadata.alb_security_group_id,
            "ListenerArn": metadata.listener_arn,
            "ListenerRulePriority": priority,
            "ApplicationUrl": application_url,
            "MainAccountKeyArn": infra.main_account_key_arn,
            "MainAccountRegion": infra.main_account_region,
            "MainAccountId": infra.main_account_id,
        }
        for key in self.profile.passthrough_params:
            bag[key] = params.param(key)

        self._provisioner.submit(
            ProvisioningRequest(
                operation=LifecycleOperation.LAUNCH,
                env_type=self.env_type,
                env_id=environment.env_id,
                parameters=flatten(bag),
                env_mgmt_role_arn=project.env_mgmt_role_arn,
                external_id=project.external_id,
            )
        )

        self._environments.update_environment(
            environment.env_id, {"status": EnvironmentStatus.PENDING}
        )
        logger.info(
            "Environment launch submitted",
            extra={
                "env_id": environment.env_id,
                "env_type": self.env_type,
                "listener_rule_priority": priority,
            },
        )
        return environment.with_status(EnvironmentStatus.PENDING)

    # -----------------------------------------------------------------------
    # terminate
    # -----------------------------------------------------------------------

    def terminate(
        self, env_id: str, *, environment: Environment | None = None
    ) -> LifecycleResult:
        """Retract DNS, submit Terminate and mark the environment TERMINATING.

        DNS retraction, reservation release and secret clean-up are best
        effort; their failures are returned as warnings. They run even when
        the environment never got a provisioned product (a failed launch), in
        which case nothing is submitted and the environment goes straight to
        TERMINATED since no confirmation will ever arrive for it.
        """
        environment = self._load(env_id, environment)
        metadata = require_secure_connection(self._secure_connection)
        project = environment.project
        warnings: list[str] = []

        application_url = application_hostname(self.env_type, env_id, metadata.partner_domain)
        outcome = self._dns.retract(application_url, metadata.hosted_zone_id, metadata.alb_dns_name)
        if outcome.warning:
            warnings.append(outcome.warning)
        warnings.extend(self._release_priority(metadata.listener_arn, env_id))

        status = EnvironmentStatus.TERMINATING
        if environment.provisioned_product_id:
            self._provisioner.submit(
                ProvisioningRequest(
                    operation=LifecycleOperation.TERMINATE,
                    env_type=self.env_type,
                    env_id=env_id,
                    parameters=flatten(
                        {
                            "ProvisionedProductId": environment.provisioned_product_id,
                            "TerminateToken": self._token_factory(),
                            "EnvId": env_id,
                        }
                    ),
                    env_mgmt_role_arn=project.env_mgmt_role_arn,
                    external_id=project.external_id,
                )
            )
        else:
            status = EnvironmentStatus.TERMINATED
            logger.warning(
                "Environment has no provisioned product, skipping Terminate",
                extra={"env_id": env_id, "env_type": self.env_type},
            )
            warnings.append(
                f"Environment {env_id} has no provisioned product; no termination was submitted"
            )

        self._datasets.remove_access_points(environment)
        warnings.extend(self._delete_secret_parameters(environment))

        self._environments.update_environment(env_id, {"status": status})
        logger.info(
            "Environment termination submitted",
            extra={
                "env_id": env_id,
                "env_type": self.env_type,
                "status": str(status),
                "warning_count": len(warnings),
            },
        )
        return LifecycleResult(env_id=env_id, status=status, warnings=tuple(warnings))

    def _release_priority(self, listener_arn: str, env_id: str) -> list[str]:
        if self._reservations is None:
            return []
        try:
            self._reservations.release(listener_arn, env_id)
        except EnvironmentBrokerError as exc:
            logger.exception(
                "Failed to release rule priority reservation", extra={"env_id": env_id}
            )
            return [f"Rule priority reservation for {env_id} was not released: {exc}"]
        return []

    def _delete_secret_parameters(self, environment: Environment) -> list[str]:
        if self._secret_parameters is None or not environment.instance_id:
            return []
        names = self._secret_parameters(environment.instance_id)
        if not names:
            return []
        warnings: list[str] = []
        try:
            clients = self._gateway.assume(
                environment.project.env_mgmt_role_arn,
                environment.project.external_id,
                "Delete-SSM-Parameter",
            )
        except EnvironmentBrokerError as exc:
            logger.exception(
                "An error occurred while deleting SSM parameter",
                extra={"env_id": environment.env_id},
            )
            return [f"Connection parameters for {environment.env_id} were not deleted: {exc}"]
        for name in names:
            try:
                clients.ssm.delete_parameter(Name=name)
            except (ClientError, BotoCoreError) as exc:
                logger.exception(
                    "An error occurred while deleting SSM parameter",
                    extra={"env_id": environment.env_id, "parameter": name},
                )
                warnings.append(f"SSM parameter {name} was not deleted: {exc}")
        return warnings

    # -----------------------------------------------------------------------
    # start / stop
    # -----------------------------------------------------------------------

    def start(self, env_id: str, *, environment: Environment | None = None) -> LifecycleResult:
        return self._power(
            env_id, LifecycleOperation.START, EnvironmentStatus.STARTING, environment
        )

    def stop(self, env_id: str, *, environment: Environment | None = None) -> LifecycleResult:
        return self._power(
            env_id, LifecycleOperation.STOP, EnvironmentStatus.STOPPING, environment
        )

    def _power(
        self,
        env_id: str,
        operation: LifecycleOperation,
        status: EnvironmentStatus,
        environment: Environment | None,
    ) -> LifecycleResult:
        environment = self._load(env_id, environment)
        instance_id = environment.instance_id
        if not instance_id:
            raise NotFound(resource="Instance for environment", identifier=env_id)

        clients = self._gateway.assume(
            environment.project.env_mgmt_role_arn,
            environment.project.external_id,
            f"{operation}-{self.env_type}",
        )
        try:
            if operation is LifecycleOperation.START:
                clients.ec2.start_instances(InstanceIds=[instance_id])
            else:
                clients.ec2.stop_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(
                exc, service="ec2", operation=f"{operation}Instances"
            ) from exc

        self._environments.update_environment(env_id, {"status": status})
        logger.info(
            "Environment power state change submitted",
            extra={"env_id": env_id, "instance_id": instance_id, "operation": str(operation)},
        )
        return LifecycleResult(env_id=env_id, status=status)
