"""
environment_broker.priority — ALB listener-rule priority allocation.

Every environment gets its own host-header rule on the shared HTTPS
listener, and ALB requires rule priorities to be unique positive integers.

allocate() reads the live rule snapshot and returns

    max(0, existing priorities) + 1 + pending_count

where pending_count is the number of environments still in PENDING (their
rules may not exist yet). This is a best-effort buffer, not a guarantee:
two launches that read the same snapshot can still collide. allocate() is
read-only against the load balancer, so retrying it is always safe.

PriorityReservations closes that gap when enabled: a priority is only used
after a conditional DynamoDB put has claimed it.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.config import SecureConnectionMetadata, require_secure_connection
from environment_broker.exceptions import (
    PriorityReservationConflict,
    ValidationError,
    client_error_code,
    translate_client_error,
)
from environment_broker.models import ListenerRule

logger = Logger(service="rule-priority")

DEFAULT_RESERVATION_ATTEMPTS = 10


def rules_from_response(rules: Iterable[dict[str, Any]]) -> list[ListenerRule]:
    """Map ELBv2 DescribeRules entries to ListenerRule, default rule as priority 0."""
    snapshot: list[ListenerRule] = []
    for rule in rules:
        if rule.get("IsDefault"):
            snapshot.append(ListenerRule(priority=0, is_default=True))
        else:
            snapshot.append(ListenerRule(priority=int(rule["Priority"])))
    return snapshot


def compute_rule_priority(rules: Iterable[ListenerRule], pending_count: int) -> int:
    if pending_count < 0:
        raise ValidationError(f"pending_count must be >= 0, got {pending_count}")
    highest = max((0 if rule.is_default else rule.priority for rule in rules), default=0)
    return max(highest, 0) + 1 + pending_count


class RulePriorityAllocator:
    def __init__(self, secure_connection: SecureConnectionMetadata | None) -> None:
        self._secure_connection = secure_connection

    def snapshot(self, elbv2: Any, listener_arn: str) -> list[ListenerRule]:
        """Read every rule on the listener, following NextMarker."""
        kwargs: dict[str, Any] = {"ListenerArn": listener_arn}
        rules: list[ListenerRule] = []
        while True:
            try:
                response = elbv2.describe_rules(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise translate_client_error(
                    exc, service="elbv2", operation="DescribeRules"
                ) from exc
            rules.extend(rules_from_response(response.get("Rules", [])))
            marker = response.get("NextMarker")
            if not marker:
                return rules
            kwargs["Marker"] = marker

    def allocate(self, elbv2: Any, pending_count: int, *, listener_arn: str | None = None) -> int:
        """Return a priority above every rule currently on the listener.

        Raises ConfigurationError when secure-connection metadata is absent.
        """
        metadata = require_secure_connection(self._secure_connection)
        target = listener_arn or metadata.listener_arn
        rules = self.snapshot(elbv2, target)
        priority = compute_rule_priority(rules, pending_count)
        logger.info(
            "Allocated listener rule priority",
            extra={
                "listener_arn": target,
                "rule_count": len(rules),
                "pending_count": pending_count,
                "priority": priority,
            },
        )
        return priority


class PriorityReservations:
    """Claim listener-rule priorities with DynamoDB conditional writes.

    Reservation record:
      PK: PRIORITY#{listenerArn}   SK: PRIORITY#{priority:05d}
      envId, claimedAt

    A put with attribute_not_exists(PK) succeeds for exactly one caller per
    (listener, priority), so two concurrent launches can no longer end up
    with the same value.
    """

    def __init__(
        self,
        ddb_client: Any,
        *,
        table_name: str,
        attempts: int = DEFAULT_RESERVATION_ATTEMPTS,
    ) -> None:
        self._ddb = ddb_client
        self._table_name = table_name
        self._attempts = attempts

    @staticmethod
    def _pk(listener_arn: str) -> str:
        return f"PRIORITY#{listener_arn}"

    @staticmethod
    def _sk(priority: int) -> str:
        return f"PRIORITY#{priority:05d}"

    def claim(self, listener_arn: str, first_priority: int, env_id: str) -> int:
        """Claim the lowest free priority >= first_priority for env_id.

        Raises PriorityReservationConflict after `attempts` taken values.
        """
        claimed_at = datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        for candidate in range(first_priority, first_priority + self._attempts):
            try:
                self._ddb.put_item(
                    TableName=self._table_name,
                    Item={
                        "PK": {"S": self._pk(listener_arn)},
                        "SK": {"S": self._sk(candidate)},
                        "priority": {"N": str(candidate)},
                        "envId": {"S": env_id},
                        "claimedAt": {"S": claimed_at},
                    },
                    ConditionExpression="attribute_not_exists(PK)",
                )
            except (ClientError, BotoCoreError) as exc:
                if client_error_code(exc) == "ConditionalCheckFailedException":
                    logger.info(
                        "Rule priority already reserved",
                        extra={"listener_arn": listener_arn, "priority": candidate},
                    )
                    continue
                raise translate_client_error(exc, service="dynamodb", operation="PutItem") from exc
            return candidate
        raise PriorityReservationConflict(
            listener_arn=listener_arn, first=first_priority, attempts=self._attempts
        )

    def release(self, listener_arn: str, env_id: str) -> int:
        """Delete every reservation env_id holds on the listener. Returns the count."""
        try:
            response = self._ddb.query(
                TableName=self._table_name,
                KeyConditionExpression="PK = :pk",
                FilterExpression="envId = :env",
                ExpressionAttributeValues={
                    ":pk": {"S": self._pk(listener_arn)},
                    ":env": {"S": env_id},
                },
            )
            released = 0
            for item in response.get("Items", []):
                self._ddb.delete_item(
                    TableName=self._table_name,
                    Key={"PK": item["PK"], "SK": item["SK"]},
                    ConditionExpression="envId = :env",
                    ExpressionAttributeValues={":env": {"S": env_id}},
                )
                released += 1
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, service="dynamodb", operation="Release") from exc
        return released
