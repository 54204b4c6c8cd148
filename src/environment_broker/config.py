"""
environment_broker.config — Process-wide settings, read once at cold start.

load_settings() is the only place that touches os.environ. The resulting
BrokerSettings is immutable and passed into every component constructor, so
nothing reads ambient state in the middle of a request.

SECURE_CONNECTION_METADATA is the JSON document describing the shared ALB
and Route 53 zone in the central account:

    {"albSecurityGroupId": ..., "listenerArn": ..., "partnerDomain": ...,
     "hostedZoneId": ..., "albDnsName": ...}
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from environment_broker.exceptions import ConfigurationError

_REGION_ENV = "AWS_REGION"
_STACK_NAME_ENV = "STACK_NAME"
_TABLE_NAME_ENV = "ENVIRONMENTS_TABLE_NAME"
_SECURE_CONNECTION_ENV = "SECURE_CONNECTION_METADATA"
_SHARED_SECRET_ENVS = ("CONNECTION_SHARED_SECRET", "JWT_SECRET")  # pragma: allowlist secret
_RESERVATIONS_TABLE_ENV = "PRIORITY_RESERVATIONS_TABLE_NAME"
_DATASETS_BUCKET_ENV = "DATASETS_BUCKET_ARN"
_MAIN_ACCOUNT_ID_ENV = "MAIN_ACCOUNT_ID"
_MAIN_ACCOUNT_KEY_ENV = "MAIN_ACCOUNT_KEY_ARN"

DEFAULT_STACK_NAME = "swb"

_SECURE_CONNECTION_FIELDS = {
    "albSecurityGroupId": "alb_security_group_id",
    "listenerArn": "listener_arn",
    "partnerDomain": "partner_domain",
    "hostedZoneId": "hosted_zone_id",
    "albDnsName": "alb_dns_name",
}

_MISSING_METADATA_MESSAGE = (
    "Secure connection metadata not found. Please contact the administrator"
)


@dataclass(frozen=True)
class SecureConnectionMetadata:
    alb_security_group_id: str
    listener_arn: str
    partner_domain: str
    hosted_zone_id: str
    alb_dns_name: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SecureConnectionMetadata:
        missing = [key for key in _SECURE_CONNECTION_FIELDS if not str(data.get(key) or "").strip()]
        if missing:
            raise ConfigurationError(
                f"Secure connection metadata is missing field(s): {', '.join(missing)}"
            )
        return cls(
            **{attr: str(data[key]).strip() for key, attr in _SECURE_CONNECTION_FIELDS.items()}
        )

    @classmethod
    def from_json(cls, raw: str) -> SecureConnectionMetadata:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError("Secure connection metadata is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ConfigurationError("Secure connection metadata must be a JSON object")
        return cls.from_mapping(data)


@dataclass(frozen=True)
class BrokerSettings:
    region: str
    stack_name: str = DEFAULT_STACK_NAME
    environments_table: str = DEFAULT_STACK_NAME
    secure_connection: SecureConnectionMetadata | None = None
    connection_shared_secret: str | None = None
    priority_reservations_table: str | None = None
    datasets_bucket_arn: str = ""
    main_account_id: str = ""
    main_account_key_arn: str = ""

    def require_secure_connection(self) -> SecureConnectionMetadata:
        """Return the ALB/DNS metadata or fail; every DNS and rule operation needs it."""
        return require_secure_connection(self.secure_connection)

    def ssm_document_name(self, env_type: str, operation: str) -> str:
        return f"{self.stack_name}-{env_type}{operation}"


def require_secure_connection(
    metadata: SecureConnectionMetadata | None,
) -> SecureConnectionMetadata:
    if metadata is None:
        raise ConfigurationError(_MISSING_METADATA_MESSAGE)
    return metadata


def _env_text(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


def load_settings(environ: Mapping[str, str] | None = None) -> BrokerSettings:
    """Build BrokerSettings from environment variables.

    A missing SECURE_CONNECTION_METADATA is allowed here (connect-only
    deployments do not need it); a present but malformed one is not.
    """
    env = os.environ if environ is None else environ

    region = _env_text(env, _REGION_ENV)
    if region is None:
        raise ConfigurationError("AWS_REGION environment variable not set")

    stack_name = _env_text(env, _STACK_NAME_ENV) or DEFAULT_STACK_NAME

    raw_metadata = _env_text(env, _SECURE_CONNECTION_ENV)
    secure_connection = (
        SecureConnectionMetadata.from_json(raw_metadata) if raw_metadata is not None else None
    )

    shared_secret = None
    for name in _SHARED_SECRET_ENVS:
        shared_secret = _env_text(env, name)
        if shared_secret is not None:
            break

    return BrokerSettings(
        region=region,
        stack_name=stack_name,
        environments_table=_env_text(env, _TABLE_NAME_ENV) or stack_name,
        secure_connection=secure_connection,
        connection_shared_secret=shared_secret,
        priority_reservations_table=_env_text(env, _RESERVATIONS_TABLE_ENV),
        datasets_bucket_arn=_env_text(env, _DATASETS_BUCKET_ENV) or "",
        main_account_id=_env_text(env, _MAIN_ACCOUNT_ID_ENV) or "",
        main_account_key_arn=_env_text(env, _MAIN_ACCOUNT_KEY_ENV) or "",
    )
