"""
environment_broker.access — Cross-account access gateway.

Exchanges a hosting account's environment-management role ARN + external id
for short-lived credentials and hands back boto3 clients bound to them.

Credentials are never cached: every assume() call is a fresh STS round trip
with its own session name, so concurrent requests for different
environments never share a session and CloudTrail entries stay
distinguishable.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from environment_broker.exceptions import (
    AccessDenied,
    client_error_code,
    translate_client_error,
)

logger = Logger(service="access-gateway")

_SESSION_NAME_MAX = 64
_SESSION_NAME_INVALID = re.compile(r"[^a-zA-Z0-9+=,.@_-]")
_ACCESS_DENIED_CODES = frozenset({"AccessDenied", "AccessDeniedException"})
DEFAULT_SESSION_SECONDS = 900


@dataclass(frozen=True)
class ScopedClients:
    """boto3 clients for one hosting account, bound to one STS session."""

    session_name: str
    ec2: Any
    ssm: Any
    elbv2: Any


def session_name(hint: str, now_millis: int) -> str:
    """Build an STS RoleSessionName from a hint and a timestamp.

    RoleSessionName is limited to 64 chars of [\\w+=,.@-]; the timestamp is
    kept intact and the hint is truncated to fit.
    """
    suffix = f"-{now_millis}"
    cleaned = _SESSION_NAME_INVALID.sub("", hint) or "session"
    return cleaned[: _SESSION_NAME_MAX - len(suffix)] + suffix


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class CrossAccountAccessGateway:
    def __init__(
        self,
        *,
        region: str,
        sts_client: Any = None,
        session_factory: Callable[..., Any] = boto3.session.Session,
        clock: Callable[[], int] = _epoch_millis,
        duration_seconds: int = DEFAULT_SESSION_SECONDS,
    ) -> None:
        self._region = region
        self._sts: Any = sts_client or boto3.client("sts", region_name=region)
        self._session_factory = session_factory
        self._clock = clock
        self._duration_seconds = duration_seconds

    def assume(self, role_arn: str, external_id: str, session_name_hint: str) -> ScopedClients:
        """Assume role_arn in the hosting account and return scoped clients.

        Raises AccessDenied when STS refuses the role (bad trust policy or
        external id) and TransientAwsError for any other STS failure.
        """
        name = session_name(session_name_hint, self._clock())
        assume_kwargs: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": name,
            "DurationSeconds": self._duration_seconds,
        }
        if external_id:
            assume_kwargs["ExternalId"] = external_id

        try:
            response = self._sts.assume_role(**assume_kwargs)
        except (ClientError, BotoCoreError) as exc:
            code = client_error_code(exc)
            logger.error(
                "Failed to assume hosting account role",
                extra={"role_arn": role_arn, "session_name": name, "error_code": code},
            )
            if code in _ACCESS_DENIED_CODES:
                raise AccessDenied(role_arn=role_arn, reason=code) from exc
            raise translate_client_error(exc, service="sts", operation="AssumeRole") from exc

        credentials = response.get("Credentials")
        if not credentials:
            raise AccessDenied(role_arn=role_arn, reason="no credentials returned")

        session = self._session_factory(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self._region,
        )
        logger.debug(
            "Assumed hosting account role",
            extra={"role_arn": role_arn, "session_name": name},
        )
        return ScopedClients(
            session_name=name,
            ec2=session.client("ec2"),
            ssm=session.client("ssm"),
            elbv2=session.client("elbv2"),
        )
