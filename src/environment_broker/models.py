"""
environment_broker.models — Environment metadata as Python dataclasses.

Environments live in the stack's single DynamoDB table:

    PK: ENV#{envId}   SK: METADATA

Attribute names follow the existing workbench item layout (camelCase, with
the owning project under ``PROJ`` and the environment-type configuration
under ``ETC``) so the broker can read rows written by the rest of the
platform.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from environment_broker.exceptions import ValidationError

ENVIRONMENT_PK_PREFIX = "ENV#"
ENVIRONMENT_SK = "METADATA"

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EnvironmentStatus(StrEnum):
    PENDING = "PENDING"
    STARTING = "STARTING"
    STOPPING = "STOPPING"
    TERMINATING = "TERMINATING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    TERMINATED = "TERMINATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_confirmation(self) -> bool:
        """True for states only the external status reconciler may write."""
        return self in _CONFIRMED_STATUSES


_TERMINAL_STATUSES = frozenset({EnvironmentStatus.TERMINATED, EnvironmentStatus.FAILED})
_CONFIRMED_STATUSES = frozenset(
    {
        EnvironmentStatus.RUNNING,
        EnvironmentStatus.STOPPED,
        EnvironmentStatus.TERMINATED,
        EnvironmentStatus.FAILED,
    }
)


class LifecycleOperation(StrEnum):
    LAUNCH = "Launch"
    TERMINATE = "Terminate"
    START = "Start"
    STOP = "Stop"


# ---------------------------------------------------------------------------
# Owning project (PROJ)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Project:
    """Hosting-account details of the project that owns an environment.

    env_mgmt_role_arn + external_id are what the access gateway exchanges
    for short-lived credentials in the hosting account.
    """

    project_id: str
    vpc_id: str
    subnet_id: str
    encryption_key_arn: str
    env_mgmt_role_arn: str
    external_id: str
    environment_instance_files: str = ""

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> Project:
        return cls(
            project_id=_text(item.get("id")),
            vpc_id=_text(item.get("vpcId")),
            subnet_id=_text(item.get("subnetId")),
            encryption_key_arn=_text(item.get("encryptionKeyArn")),
            env_mgmt_role_arn=_text(item.get("envMgmtRoleArn")),
            external_id=_text(item.get("externalId")),
            environment_instance_files=_text(item.get("environmentInstanceFiles")),
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "id": self.project_id,
            "vpcId": self.vpc_id,
            "subnetId": self.subnet_id,
            "encryptionKeyArn": self.encryption_key_arn,
            "envMgmtRoleArn": self.env_mgmt_role_arn,
            "externalId": self.external_id,
            "environmentInstanceFiles": self.environment_instance_files,
        }


# ---------------------------------------------------------------------------
# Environment-type configuration (ETC)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigParam:
    key: str
    value: str


@dataclass(frozen=True)
class EnvironmentTypeConfig:
    """Product/artifact ids plus the launch parameters chosen by the user."""

    product_id: str
    provisioning_artifact_id: str
    params: tuple[ConfigParam, ...] = ()

    def param(self, key: str) -> str | None:
        """Value of the first parameter named ``key``, or None if absent or blank."""
        for item in self.params:
            if item.key == key:
                value = item.value.strip()
                return value or None
        return None

    def missing(self, keys: Iterable[str]) -> list[str]:
        return [key for key in keys if self.param(key) is None]

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> EnvironmentTypeConfig:
        raw_params = item.get("params") or []
        params = tuple(
            ConfigParam(key=_text(p.get("key")), value=_text(p.get("value")))
            for p in raw_params
            if isinstance(p, Mapping) and p.get("key")
        )
        return cls(
            product_id=_text(item.get("productId")),
            provisioning_artifact_id=_text(item.get("provisioningArtifactId")),
            params=params,
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "provisioningArtifactId": self.provisioning_artifact_id,
            "params": [{"key": p.key, "value": p.value} for p in self.params],
        }


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Environment:
    """One notebook/IDE environment.

    provisioned_product_id and instance_id are filled in by the status
    reconciler once the provisioning system has created the product and the
    EC2 instance; both are None straight after launch.
    """

    env_id: str
    env_type: str
    status: EnvironmentStatus
    project: Project
    type_config: EnvironmentTypeConfig
    provisioned_product_id: str | None = None
    instance_id: str | None = None
    dataset_ids: tuple[str, ...] = ()
    name: str = ""
    owner: str = ""
    created_at: str | None = None  # ISO 8601 UTC
    updated_at: str | None = None  # ISO 8601 UTC

    @property
    def pk(self) -> str:
        return f"{ENVIRONMENT_PK_PREFIX}{self.env_id}"

    @property
    def sk(self) -> str:
        return ENVIRONMENT_SK

    def with_status(self, status: EnvironmentStatus) -> Environment:
        return replace(self, status=status)

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> Environment:
        return cls(
            env_id=_text(item.get("id")),
            env_type=_text(item.get("envType") or item.get("type")),
            status=_status(item.get("status"), item.get("id")),
            project=Project.from_item(item.get("PROJ") or {}),
            type_config=EnvironmentTypeConfig.from_item(item.get("ETC") or {}),
            provisioned_product_id=_text_or_none(item.get("provisionedProductId")),
            instance_id=_text_or_none(item.get("instanceId")),
            dataset_ids=tuple(_text(d) for d in item.get("datasetIds") or ()),
            name=_text(item.get("name")),
            owner=_text(item.get("owner")),
            created_at=_text_or_none(item.get("createdAt")),
            updated_at=_text_or_none(item.get("updatedAt")),
        )

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "id": self.env_id,
            "envType": self.env_type,
            "status": self.status.value,
            "PROJ": self.project.to_item(),
            "ETC": self.type_config.to_item(),
            "datasetIds": list(self.dataset_ids),
            "name": self.name,
            "owner": self.owner,
        }
        optional = {
            "provisionedProductId": self.provisioned_product_id,
            "instanceId": self.instance_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item


@dataclass(frozen=True)
class EnvironmentPage:
    data: list[Environment] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Per-request values (never persisted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionContext:
    """Everything a credential strategy needs besides the instance id."""

    env_id: str
    role_arn: str
    external_id: str

    @classmethod
    def for_environment(cls, environment: Environment) -> ConnectionContext:
        return cls(
            env_id=environment.env_id,
            role_arn=environment.project.env_mgmt_role_arn,
            external_id=environment.project.external_id,
        )


@dataclass(frozen=True)
class ListenerRule:
    """A single entry of a listener-rule snapshot."""

    priority: int
    is_default: bool = False


@dataclass(frozen=True)
class LifecycleResult:
    """Outcome of a lifecycle call.

    warnings carries best-effort steps that failed without failing the call
    (e.g. a DNS record that could not be retracted).
    """

    env_id: str
    status: EnvironmentStatus
    warnings: tuple[str, ...] = ()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _text_or_none(value: Any) -> str | None:
    text = _text(value)
    return text or None


def _status(value: Any, env_id: Any) -> EnvironmentStatus:
    # Rows written before launch carry no status yet; launch marks them PENDING.
    text = _text(value).upper()
    if not text:
        return EnvironmentStatus.PENDING
    try:
        return EnvironmentStatus(text)
    except ValueError as exc:
        raise ValidationError(
            f"Environment {_text(env_id)} has unrecognised status {text!r}"
        ) from exc
