"""
environment_broker.reconcile — Record externally confirmed environment states.

The lifecycle service only ever writes the optimistic in-progress statuses.
RUNNING / STOPPED / TERMINATED / FAILED arrive here from the provisioning
side (SSM automation completion, EC2 state-change events).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from aws_lambda_powertools import Logger

from environment_broker.exceptions import ValidationError
from environment_broker.lifecycle import EnvironmentStore
from environment_broker.models import Environment, EnvironmentStatus

logger = Logger(service="status-reconciler")


@dataclass(frozen=True)
class StatusChange:
    env_id: str
    status: EnvironmentStatus
    provisioned_product_id: str | None = None
    instance_id: str | None = None

    @classmethod
    def from_detail(cls, detail: Mapping[str, Any]) -> StatusChange:
        """Parse an event detail: {envId, status, provisionedProductId?, instanceId?}."""
        env_id = str(detail.get("envId") or "").strip()
        if not env_id:
            raise ValidationError("Status change is missing envId")
        raw_status = str(detail.get("status") or "").strip().upper()
        try:
            status = EnvironmentStatus(raw_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown environment status {raw_status!r}") from exc
        return cls(
            env_id=env_id,
            status=status,
            provisioned_product_id=_optional(detail.get("provisionedProductId")),
            instance_id=_optional(detail.get("instanceId")),
        )


def _optional(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


class StatusReconciler:
    def __init__(self, environments: EnvironmentStore) -> None:
        self._environments = environments

    def apply(self, change: StatusChange) -> Environment | None:
        """Write a confirmed status. Returns None when the change was ignored."""
        if not change.status.is_confirmation:
            raise ValidationError(
                f"Status {change.status.value} is not an externally confirmed state"
            )
        current = self._environments.get_environment(change.env_id, True)
        if current.status.is_terminal:
            logger.warning(
                "Ignoring status change for environment in terminal state",
                extra={
                    "env_id": change.env_id,
                    "current_status": current.status.value,
                    "requested_status": change.status.value,
                },
            )
            return None

        fields: dict[str, Any] = {"status": change.status}
        if change.provisioned_product_id:
            fields["provisionedProductId"] = change.provisioned_product_id
        if change.instance_id:
            fields["instanceId"] = change.instance_id
        updated = self._environments.update_environment(change.env_id, fields)
        logger.info(
            "Recorded confirmed environment status",
            extra={
                "env_id": change.env_id,
                "previous_status": current.status.value,
                "status": change.status.value,
            },
        )
        return updated
