"""
environment_broker.store — EnvironmentService backed by the stack's DynamoDB table.

The broker only reads environments and updates the status-related fields it
is responsible for. Updates are last-write-wins: no version token is used,
the only guard is that the item must already exist.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.exceptions import NotFound, client_error_code, translate_client_error
from environment_broker.models import (
    ENVIRONMENT_PK_PREFIX,
    ENVIRONMENT_SK,
    Environment,
    EnvironmentPage,
    EnvironmentStatus,
)

logger = Logger(service="environment-store")


def _now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _environment_key(env_id: str) -> dict[str, str]:
    return {"PK": f"{ENVIRONMENT_PK_PREFIX}{env_id}", "SK": ENVIRONMENT_SK}


def _ddb_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, EnvironmentStatus):
        return value.value
    return value


def build_update_expression(
    attributes: Mapping[str, Any],
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Return (UpdateExpression, names, values) that SETs every attribute."""
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []
    for idx, (field, raw_value) in enumerate(attributes.items(), start=1):
        name_key = f"#n{idx}"
        value_key = f":v{idx}"
        names[name_key] = field
        values[value_key] = _ddb_value(raw_value)
        set_parts.append(f"{name_key} = {value_key}")
    return "SET " + ", ".join(set_parts), names, values


class EnvironmentService:
    """Key-value access to environment rows.

    Items use PK=ENV#{envId}, SK=METADATA. list/count scan the table; the
    environment table is small enough that this is acceptable for the
    pending-count lookup done on every launch.
    """

    def __init__(
        self,
        table_name: str,
        *,
        region: str | None = None,
        dynamodb_resource: Any = None,
        clock: Callable[[], str] = _now_iso,
    ) -> None:
        self._table_name = table_name
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)
        self._clock = clock

    @property
    def _table(self) -> Any:
        return self._dynamodb.Table(self._table_name)

    def get_environment(self, env_id: str, consistent_read: bool = True) -> Environment:
        try:
            response = self._table.get_item(
                Key=_environment_key(env_id), ConsistentRead=consistent_read
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, service="dynamodb", operation="GetItem") from exc
        item = response.get("Item")
        if item is None:
            raise NotFound(resource="Environment", identifier=env_id)
        return Environment.from_item(item)

    def put_environment(self, environment: Environment) -> Environment:
        now = self._clock()
        item = environment.to_item()
        item.setdefault("createdAt", now)
        item["updatedAt"] = now
        try:
            self._table.put_item(Item=item)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, service="dynamodb", operation="PutItem") from exc
        return Environment.from_item(item)

    def update_environment(self, env_id: str, fields: Mapping[str, Any]) -> Environment:
        """SET the given attributes on an existing environment.

        Raises NotFound when no row exists for env_id.
        """
        attributes = dict(fields)
        attributes["updatedAt"] = self._clock()
        update_expression, names, values = build_update_expression(attributes)
        try:
            response = self._table.update_item(
                Key=_environment_key(env_id),
                UpdateExpression=update_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ConditionExpression="attribute_exists(PK)",
                ReturnValues="ALL_NEW",
            )
        except (ClientError, BotoCoreError) as exc:
            if client_error_code(exc) == "ConditionalCheckFailedException":
                raise NotFound(resource="Environment", identifier=env_id) from exc
            raise translate_client_error(exc, service="dynamodb", operation="UpdateItem") from exc
        logger.info(
            "Environment updated",
            extra={"env_id": env_id, "fields": sorted(k for k in fields)},
        )
        return Environment.from_item(response.get("Attributes", {}))

    def list_environments(self, status: EnvironmentStatus | None = None) -> EnvironmentPage:
        """Return every environment, optionally filtered by status.

        Follows LastEvaluatedKey until the scan is exhausted.
        """
        scan_kwargs: dict[str, Any] = {
            "FilterExpression": "begins_with(#pk, :pk)",
            "ExpressionAttributeNames": {"#pk": "PK"},
            "ExpressionAttributeValues": {":pk": ENVIRONMENT_PK_PREFIX},
        }
        if status is not None:
            scan_kwargs["FilterExpression"] += " AND #s = :s"
            scan_kwargs["ExpressionAttributeNames"]["#s"] = "status"
            scan_kwargs["ExpressionAttributeValues"][":s"] = EnvironmentStatus(status).value

        environments: list[Environment] = []
        while True:
            try:
                response = self._table.scan(**scan_kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise translate_client_error(exc, service="dynamodb", operation="Scan") from exc
            environments.extend(Environment.from_item(item) for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
        return EnvironmentPage(data=environments)

    def count_environments(self, status: EnvironmentStatus) -> int:
        return len(self.list_environments(status).data)
