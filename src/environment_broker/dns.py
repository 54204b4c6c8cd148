"""
environment_broker.dns — Route 53 CNAME lifecycle for environment hostnames.

Each provisioned environment has exactly one record in the central hosted
zone:

    {envType}-{envId}.{partnerDomain}  CNAME  {albDnsName}  TTL 300

publish() runs at launch, before the provisioning system starts resolving
the hostname. retract() runs at terminate and is best effort: a failure is
logged and returned as a warning so termination can still proceed. A
leftover CNAME pointing at the shared ALB does not route anywhere once the
environment's listener rule is gone.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.exceptions import translate_client_error

logger = Logger(service="dns-lifecycle")

RECORD_TYPE = "CNAME"
RECORD_TTL_SECONDS = 300


class DnsAction(StrEnum):
    CREATE = "CREATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class DnsChangeOutcome:
    action: DnsAction
    hostname: str
    applied: bool
    warning: str | None = None


def application_hostname(env_type: str, env_id: str, partner_domain: str) -> str:
    return f"{env_type}-{env_id}.{partner_domain}"


def change_batch(action: DnsAction, hostname: str, target: str) -> dict[str, Any]:
    return {
        "Changes": [
            {
                "Action": action.value,
                "ResourceRecordSet": {
                    "Name": hostname,
                    "Type": RECORD_TYPE,
                    "TTL": RECORD_TTL_SECONDS,
                    "ResourceRecords": [{"Value": target}],
                },
            }
        ]
    }


class DnsLifecycleManager:
    """Creates and deletes environment CNAMEs in the central account zone."""

    def __init__(self, route53_client: Any) -> None:
        self._route53 = route53_client

    def _change(self, action: DnsAction, hostname: str, zone_id: str, target: str) -> None:
        self._route53.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch=change_batch(action, hostname, target),
        )

    def publish(self, hostname: str, zone_id: str, target: str) -> DnsChangeOutcome:
        """Create the CNAME. Failures raise TransientAwsError."""
        try:
            self._change(DnsAction.CREATE, hostname, zone_id, target)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(
                exc, service="route53", operation="ChangeResourceRecordSets"
            ) from exc
        logger.info("Created Route53 record", extra={"hostname": hostname, "zone_id": zone_id})
        return DnsChangeOutcome(action=DnsAction.CREATE, hostname=hostname, applied=True)

    def retract(self, hostname: str, zone_id: str, target: str) -> DnsChangeOutcome:
        """Delete the CNAME. Never raises for AWS failures; see the returned warning."""
        try:
            self._change(DnsAction.DELETE, hostname, zone_id, target)
        except (ClientError, BotoCoreError) as exc:
            logger.exception(
                "An error occurred while deleting Route53 record",
                extra={"hostname": hostname, "zone_id": zone_id},
            )
            return DnsChangeOutcome(
                action=DnsAction.DELETE,
                hostname=hostname,
                applied=False,
                warning=f"DNS record {hostname} was not deleted: {exc}",
            )
        logger.info("Deleted Route53 record", extra={"hostname": hostname, "zone_id": zone_id})
        return DnsChangeOutcome(action=DnsAction.DELETE, hostname=hostname, applied=True)
