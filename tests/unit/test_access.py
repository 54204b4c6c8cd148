from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
from conftest import REGION, ROLE_ARN, client_error
from moto import mock_aws

from environment_broker.access import CrossAccountAccessGateway, session_name
from environment_broker.exceptions import AccessDenied, TransientAwsError

_CREDENTIALS = {
    "Credentials": {
        "AccessKeyId": "AKIAEXAMPLE",
        "SecretAccessKey": "secret",  # pragma: allowlist secret
        "SessionToken": "token",
    }
}


class FakeSession:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.clients: list[str] = []

    def client(self, service: str) -> str:
        self.clients.append(service)
        return f"{service}-client"


class TestSessionName:
    def test_hint_and_timestamp(self) -> None:
        assert session_name("RulePriority-ec2Rstudio", 1700000000000) == (
            "RulePriority-ec2Rstudio-1700000000000"
        )

    def test_invalid_characters_removed(self) -> None:
        assert session_name("Start ec2/Spyder!", 1) == "Startec2Spyder-1"

    def test_truncated_to_sts_limit(self) -> None:
        name = session_name("x" * 100, 1700000000000)
        assert len(name) == 64
        assert name.endswith("-1700000000000")


class TestAssume:
    def _gateway(self, sts: Any, sessions: list[FakeSession]) -> CrossAccountAccessGateway:
        def factory(**kwargs: Any) -> FakeSession:
            session = FakeSession(**kwargs)
            sessions.append(session)
            return session

        return CrossAccountAccessGateway(
            region=REGION, sts_client=sts, session_factory=factory, clock=lambda: 42
        )

    def test_passes_external_id_and_builds_scoped_clients(self) -> None:
        sts = MagicMock()
        sts.assume_role.return_value = _CREDENTIALS
        sessions: list[FakeSession] = []

        clients = self._gateway(sts, sessions).assume(ROLE_ARN, "workbench", "Start-ec2Spyder")

        sts.assume_role.assert_called_once_with(
            RoleArn=ROLE_ARN,
            RoleSessionName="Start-ec2Spyder-42",
            DurationSeconds=900,
            ExternalId="workbench",
        )
        assert clients.session_name == "Start-ec2Spyder-42"
        assert (clients.ec2, clients.ssm, clients.elbv2) == (
            "ec2-client",
            "ssm-client",
            "elbv2-client",
        )
        assert sessions[0].kwargs == {
            "aws_access_key_id": "AKIAEXAMPLE",
            "aws_secret_access_key": "secret",  # pragma: allowlist secret
            "aws_session_token": "token",
            "region_name": REGION,
        }

    def test_empty_external_id_is_omitted(self) -> None:
        sts = MagicMock()
        sts.assume_role.return_value = _CREDENTIALS

        self._gateway(sts, []).assume(ROLE_ARN, "", "hint")

        assert "ExternalId" not in sts.assume_role.call_args.kwargs

    def test_every_call_assumes_again(self) -> None:
        sts = MagicMock()
        sts.assume_role.return_value = _CREDENTIALS
        gateway = self._gateway(sts, [])

        gateway.assume(ROLE_ARN, "workbench", "a")
        gateway.assume(ROLE_ARN, "workbench", "b")

        assert sts.assume_role.call_count == 2

    def test_access_denied(self) -> None:
        sts = MagicMock()
        sts.assume_role.side_effect = client_error("AccessDenied", "AssumeRole")

        with pytest.raises(AccessDenied) as exc_info:
            self._gateway(sts, []).assume(ROLE_ARN, "wrong", "hint")

        assert exc_info.value.role_arn == ROLE_ARN

    def test_other_sts_failure_is_transient(self) -> None:
        sts = MagicMock()
        sts.assume_role.side_effect = client_error("Throttling", "AssumeRole")

        with pytest.raises(TransientAwsError) as exc_info:
            self._gateway(sts, []).assume(ROLE_ARN, "workbench", "hint")

        assert exc_info.value.service == "sts"
        assert exc_info.value.code == "Throttling"


@mock_aws
def test_assume_against_moto_sts(aws_credentials: None) -> None:
    gateway = CrossAccountAccessGateway(region=REGION)

    clients = gateway.assume(ROLE_ARN, "workbench", "ec2RstudioConnect")

    assert clients.session_name.startswith("ec2RstudioConnect-")
    assert clients.ssm.meta.region_name == REGION
    assert clients.ec2.meta.service_model.service_name == "ec2"
