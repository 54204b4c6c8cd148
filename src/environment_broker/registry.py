"""
environment_broker.registry — Environment type tag -> lifecycle + connection broker.

The set of environment types is closed and wired here once per process.
Adding a type means adding one entry to _TYPE_DEFINITIONS.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger

from environment_broker.access import CrossAccountAccessGateway
from environment_broker.config import BrokerSettings
from environment_broker.connection import (
    ChallengeResponseConnectionService,
    DirectIntrospectionConnectionService,
    DirectLinkConnectionService,
    EnvironmentConnectionService,
    SessionTokenLookupConnectionService,
    TokenLookupConnectionService,
)
from environment_broker.dns import DnsLifecycleManager
from environment_broker.exceptions import UnknownEnvironmentType
from environment_broker.lifecycle import (
    EnvironmentLifecycleService,
    EnvironmentStore,
    EnvironmentTypeProfile,
)
from environment_broker.priority import PriorityReservations, RulePriorityAllocator
from environment_broker.provisioning import (
    DatasetMounts,
    InfrastructureOutputs,
    NoDatasetMounts,
    Provisioner,
    SsmAutomationProvisioner,
    StaticInfrastructureOutputs,
)
from environment_broker.store import EnvironmentService

logger = Logger(service="environment-registry")


@dataclass(frozen=True)
class EnvironmentType:
    lifecycle: EnvironmentLifecycleService
    connection: EnvironmentConnectionService

    @property
    def env_type(self) -> str:
        return self.lifecycle.env_type


class EnvironmentTypeRegistry:
    def __init__(self, types: Mapping[str, EnvironmentType]) -> None:
        self._types = dict(types)

    def get(self, env_type: str) -> EnvironmentType:
        try:
            return self._types[env_type]
        except KeyError:
            raise UnknownEnvironmentType(env_type) from None

    def __contains__(self, env_type: object) -> bool:
        return env_type in self._types

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._types))

    def __len__(self) -> int:
        return len(self._types)


# ---------------------------------------------------------------------------
# Type definitions
# ---------------------------------------------------------------------------

ConnectionFactory = Callable[..., EnvironmentConnectionService]


@dataclass(frozen=True)
class _TypeDefinition:
    profile: EnvironmentTypeProfile
    connection: ConnectionFactory
    display_name: str
    link_text: str
    connection_kwargs: Mapping[str, Any]


def _challenge_response(
    env_type: str, *, settings: BrokerSettings, **kwargs: Any
) -> EnvironmentConnectionService:
    return ChallengeResponseConnectionService(
        env_type, shared_secret=settings.connection_shared_secret, **kwargs
    )


def _without_settings(cls: type[EnvironmentConnectionService]) -> ConnectionFactory:
    def factory(
        env_type: str, *, settings: BrokerSettings, **kwargs: Any
    ) -> EnvironmentConnectionService:
        return cls(env_type, **kwargs)

    return factory


_TYPE_DEFINITIONS: tuple[_TypeDefinition, ...] = (
    _TypeDefinition(
        profile=EnvironmentTypeProfile("ec2Rstudio", instance_name_prefix="rstudio"),
        connection=_challenge_response,
        display_name="RStudio",
        link_text="Rstudio URL",
        connection_kwargs={"product": "rstudio"},
    ),
    _TypeDefinition(
        profile=EnvironmentTypeProfile("ec2JupyterLab350", instance_name_prefix="jupyterlab"),
        connection=_without_settings(TokenLookupConnectionService),
        display_name="Jupyter Lab",
        link_text="Jupyter Lab URL",
        connection_kwargs={"product": "jupyterlab", "path": "/lab"},
    ),
    _TypeDefinition(
        profile=EnvironmentTypeProfile("ec2Spyder", instance_name_prefix="spyder"),
        connection=_without_settings(DirectIntrospectionConnectionService),
        display_name="Spyder IDE",
        link_text="Spyder IDE URL",
        connection_kwargs={},
    ),
    _TypeDefinition(
        profile=EnvironmentTypeProfile("ec2Stata", instance_name_prefix="stata"),
        connection=_without_settings(SessionTokenLookupConnectionService),
        display_name="Stata",
        link_text="Stata URL",
        connection_kwargs={"product": "stata"},
    ),
    _TypeDefinition(
        profile=EnvironmentTypeProfile("ec2VSCode", instance_name_prefix="vscode"),
        connection=_without_settings(DirectLinkConnectionService),
        display_name="VS Code",
        link_text="Vscode URL",
        connection_kwargs={},
    ),
    _TypeDefinition(
        profile=EnvironmentTypeProfile(
            "ec2VSCode1710",
            instance_name_prefix="vscode",
            passthrough_params=("AmiId",),
        ),
        connection=_without_settings(DirectLinkConnectionService),
        display_name="VS Code",
        link_text="Vscode URL",
        connection_kwargs={},
    ),
)

ENVIRONMENT_TYPES = tuple(d.profile.env_type for d in _TYPE_DEFINITIONS)


def build_registry(
    settings: BrokerSettings,
    *,
    environments: EnvironmentStore | None = None,
    gateway: CrossAccountAccessGateway | None = None,
    dns: DnsLifecycleManager | None = None,
    provisioner: Provisioner | None = None,
    infrastructure: InfrastructureOutputs | None = None,
    datasets: DatasetMounts | None = None,
    reservations: PriorityReservations | None = None,
    route53_client: Any = None,
    dynamodb_client: Any = None,
) -> EnvironmentTypeRegistry:
    """Wire every environment type against one shared set of collaborators.

    Anything not passed in is built from settings with default boto3 clients.
    """
    environments = environments or EnvironmentService(
        settings.environments_table, region=settings.region
    )
    gateway = gateway or CrossAccountAccessGateway(region=settings.region)
    dns = dns or DnsLifecycleManager(
        route53_client or boto3.client("route53", region_name=settings.region)
    )
    provisioner = provisioner or SsmAutomationProvisioner(settings, gateway)
    infrastructure = infrastructure or StaticInfrastructureOutputs(settings)
    datasets = datasets or NoDatasetMounts()
    if reservations is None and settings.priority_reservations_table:
        reservations = PriorityReservations(
            dynamodb_client or boto3.client("dynamodb", region_name=settings.region),
            table_name=settings.priority_reservations_table,
        )
    allocator = RulePriorityAllocator(settings.secure_connection)

    types: dict[str, EnvironmentType] = {}
    for definition in _TYPE_DEFINITIONS:
        env_type = definition.profile.env_type
        connection = definition.connection(
            env_type,
            settings=settings,
            gateway=gateway,
            display_name=definition.display_name,
            link_text=definition.link_text,
            secure_connection=settings.secure_connection,
            **definition.connection_kwargs,
        )
        lifecycle = EnvironmentLifecycleService(
            definition.profile,
            environments=environments,
            gateway=gateway,
            allocator=allocator,
            dns=dns,
            provisioner=provisioner,
            infrastructure=infrastructure,
            datasets=datasets,
            secure_connection=settings.secure_connection,
            reservations=reservations,
            secret_parameters=connection.secret_parameter_names,
        )
        types[env_type] = EnvironmentType(lifecycle=lifecycle, connection=connection)

    logger.debug(
        "Built environment type registry",
        extra={"env_types": sorted(types), "reservations": reservations is not None},
    )
    return EnvironmentTypeRegistry(types)
