from __future__ import annotations

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from conftest import REGION, client_error
from moto import mock_aws

from environment_broker.dns import (
    DnsAction,
    DnsLifecycleManager,
    application_hostname,
    change_batch,
)
from environment_broker.exceptions import TransientAwsError

_ALB = "swb-alb-123.eu-west-2.elb.amazonaws.com"


def test_application_hostname() -> None:
    assert application_hostname("ec2Rstudio", "env-42", "example.com") == (
        "ec2Rstudio-env-42.example.com"
    )


def test_change_batch_shape() -> None:
    assert change_batch(DnsAction.CREATE, "h.example.com", _ALB) == {
        "Changes": [
            {
                "Action": "CREATE",
                "ResourceRecordSet": {
                    "Name": "h.example.com",
                    "Type": "CNAME",
                    "TTL": 300,
                    "ResourceRecords": [{"Value": _ALB}],
                },
            }
        ]
    }


class TestDnsLifecycleManager:
    def test_publish_then_retract_differ_only_in_action(self) -> None:
        route53 = MagicMock()
        manager = DnsLifecycleManager(route53)
        hostname = "ec2Rstudio-env-42.example.com"

        published = manager.publish(hostname, "Z1", _ALB)
        retracted = manager.retract(hostname, "Z1", _ALB)

        assert published.applied and retracted.applied
        assert route53.change_resource_record_sets.call_count == 2
        create_call, delete_call = (
            c.kwargs for c in route53.change_resource_record_sets.call_args_list
        )
        assert create_call["ChangeBatch"]["Changes"][0]["Action"] == "CREATE"
        assert delete_call["ChangeBatch"]["Changes"][0]["Action"] == "DELETE"
        create_call["ChangeBatch"]["Changes"][0]["Action"] = "DELETE"
        assert create_call == delete_call

    def test_publish_failure_raises(self) -> None:
        route53 = MagicMock()
        route53.change_resource_record_sets.side_effect = client_error(
            "InvalidChangeBatch", "ChangeResourceRecordSets"
        )

        with pytest.raises(TransientAwsError) as exc_info:
            DnsLifecycleManager(route53).publish("h.example.com", "Z1", _ALB)

        assert exc_info.value.service == "route53"
        assert exc_info.value.code == "InvalidChangeBatch"

    def test_publish_connection_failure_raises_transient(self) -> None:
        route53 = MagicMock()
        route53.change_resource_record_sets.side_effect = EndpointConnectionError(
            endpoint_url="https://route53.amazonaws.com"
        )

        with pytest.raises(TransientAwsError) as exc_info:
            DnsLifecycleManager(route53).publish("h.example.com", "Z1", _ALB)

        assert exc_info.value.code == "EndpointConnectionError"

    def test_retract_failure_is_reported_not_raised(self) -> None:
        route53 = MagicMock()
        route53.change_resource_record_sets.side_effect = client_error(
            "InvalidChangeBatch", "ChangeResourceRecordSets"
        )

        outcome = DnsLifecycleManager(route53).retract("h.example.com", "Z1", _ALB)

        assert outcome.action is DnsAction.DELETE
        assert not outcome.applied
        assert outcome.warning is not None
        assert "h.example.com" in outcome.warning


@mock_aws
def test_publish_and_retract_against_moto_route53(aws_credentials: None) -> None:
    route53 = boto3.client("route53", region_name=REGION)
    zone_id = route53.create_hosted_zone(Name="example.com", CallerReference="ref-1")[
        "HostedZone"
    ]["Id"]
    manager = DnsLifecycleManager(route53)
    hostname = "ec2Spyder-env-1.example.com"

    manager.publish(hostname, zone_id, _ALB)
    records = route53.list_resource_record_sets(HostedZoneId=zone_id)["ResourceRecordSets"]
    cname = [r for r in records if r["Type"] == "CNAME"]
    assert len(cname) == 1
    assert cname[0]["Name"].rstrip(".") == hostname
    assert cname[0]["TTL"] == 300

    outcome = manager.retract(hostname, zone_id, _ALB)
    records = route53.list_resource_record_sets(HostedZoneId=zone_id)["ResourceRecordSets"]
    assert outcome.applied
    assert [r for r in records if r["Type"] == "CNAME"] == []
