from __future__ import annotations

import json

import pytest

from environment_broker.config import (
    BrokerSettings,
    SecureConnectionMetadata,
    load_settings,
    require_secure_connection,
)
from environment_broker.exceptions import ConfigurationError

_METADATA = {
    "albSecurityGroupId": "sg-1",
    "listenerArn": "arn:listener",
    "partnerDomain": "example.com",
    "hostedZoneId": "Z1",
    "albDnsName": "alb.example.com",
}


class TestLoadSettings:
    def test_defaults(self) -> None:
        settings = load_settings({"AWS_REGION": "eu-west-2"})

        assert settings.region == "eu-west-2"
        assert settings.stack_name == "swb"
        assert settings.environments_table == "swb"
        assert settings.secure_connection is None
        assert settings.connection_shared_secret is None
        assert settings.priority_reservations_table is None

    def test_table_name_follows_stack_name(self) -> None:
        settings = load_settings({"AWS_REGION": "eu-west-2", "STACK_NAME": "swb-dev"})
        assert settings.environments_table == "swb-dev"

    def test_full_configuration(self) -> None:
        settings = load_settings(
            {
                "AWS_REGION": "eu-west-2",
                "STACK_NAME": "swb-prod",
                "ENVIRONMENTS_TABLE_NAME": "swb-prod-envs",
                "SECURE_CONNECTION_METADATA": json.dumps(_METADATA),
                "CONNECTION_SHARED_SECRET": "s3cret",  # pragma: allowlist secret
                "PRIORITY_RESERVATIONS_TABLE_NAME": "swb-prod-reservations",
                "MAIN_ACCOUNT_ID": "111111111111",
            }
        )

        assert settings.environments_table == "swb-prod-envs"
        assert settings.secure_connection == SecureConnectionMetadata.from_mapping(_METADATA)
        assert settings.connection_shared_secret == "s3cret"  # pragma: allowlist secret
        assert settings.priority_reservations_table == "swb-prod-reservations"
        assert settings.main_account_id == "111111111111"

    def test_shared_secret_falls_back_to_jwt_secret(self) -> None:
        settings = load_settings(
            {"AWS_REGION": "eu-west-2", "JWT_SECRET": "legacy"}  # pragma: allowlist secret
        )
        assert settings.connection_shared_secret == "legacy"  # pragma: allowlist secret

    def test_missing_region(self) -> None:
        with pytest.raises(ConfigurationError, match="AWS_REGION"):
            load_settings({})

    def test_malformed_metadata_json(self) -> None:
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            load_settings({"AWS_REGION": "eu-west-2", "SECURE_CONNECTION_METADATA": "{nope"})

    def test_metadata_missing_field(self) -> None:
        partial = dict(_METADATA)
        del partial["hostedZoneId"]
        with pytest.raises(ConfigurationError, match="hostedZoneId"):
            load_settings(
                {"AWS_REGION": "eu-west-2", "SECURE_CONNECTION_METADATA": json.dumps(partial)}
            )


class TestBrokerSettings:
    def test_ssm_document_name(self) -> None:
        settings = BrokerSettings(region="eu-west-2", stack_name="swb-dev")
        assert settings.ssm_document_name("ec2Rstudio", "Launch") == "swb-dev-ec2RstudioLaunch"

    def test_require_secure_connection_without_metadata(self) -> None:
        settings = BrokerSettings(region="eu-west-2")
        with pytest.raises(ConfigurationError, match="Secure connection metadata not found"):
            settings.require_secure_connection()


def test_require_secure_connection_passes_metadata_through() -> None:
    metadata = SecureConnectionMetadata.from_mapping(_METADATA)
    assert require_secure_connection(metadata) is metadata
