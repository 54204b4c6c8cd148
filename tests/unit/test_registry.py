from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from environment_broker.config import BrokerSettings, SecureConnectionMetadata
from environment_broker.connection import (
    ChallengeResponseConnectionService,
    DirectIntrospectionConnectionService,
    DirectLinkConnectionService,
    SessionTokenLookupConnectionService,
    TokenLookupConnectionService,
)
from environment_broker.exceptions import UnknownEnvironmentType, ValidationError
from environment_broker.registry import ENVIRONMENT_TYPES, build_registry


@pytest.fixture
def registry(secure_connection: SecureConnectionMetadata):
    settings = BrokerSettings(
        region="eu-west-2",
        secure_connection=secure_connection,
        connection_shared_secret="s3cret",  # pragma: allowlist secret
    )
    return build_registry(
        settings,
        environments=MagicMock(),
        gateway=MagicMock(),
        dns=MagicMock(),
        provisioner=MagicMock(),
    )


def test_every_type_is_registered(registry) -> None:
    assert list(registry) == sorted(ENVIRONMENT_TYPES)
    assert len(registry) == 6
    assert "ec2VSCode1710" in registry


@pytest.mark.parametrize(
    ("env_type", "connection_cls"),
    [
        ("ec2Rstudio", ChallengeResponseConnectionService),
        ("ec2JupyterLab350", TokenLookupConnectionService),
        ("ec2Spyder", DirectIntrospectionConnectionService),
        ("ec2Stata", SessionTokenLookupConnectionService),
        ("ec2VSCode", DirectLinkConnectionService),
        ("ec2VSCode1710", DirectLinkConnectionService),
    ],
)
def test_connection_strategy_per_type(registry, env_type: str, connection_cls: type) -> None:
    environment_type = registry.get(env_type)
    assert type(environment_type.connection) is connection_cls
    assert environment_type.env_type == env_type


def test_link_labels(registry) -> None:
    rstudio = registry.get("ec2Rstudio").connection.get_connection_instructions()
    spyder = registry.get("ec2Spyder").connection.get_connection_instructions()
    assert rstudio.startswith("To access RStudio, open #")
    assert '"text":"Rstudio URL"' in rstudio
    assert '"text":"Spyder IDE URL"' in spyder


def test_vscode_1710_requires_ami(registry) -> None:
    profile = registry.get("ec2VSCode1710").lifecycle.profile
    assert profile.passthrough_params == ("AmiId",)
    assert "AmiId" in profile.all_required


def test_unknown_type(registry) -> None:
    with pytest.raises(UnknownEnvironmentType) as exc_info:
        registry.get("ec2Matlab")
    assert isinstance(exc_info.value, ValidationError)
    assert exc_info.value.env_type == "ec2Matlab"


def test_reservations_built_when_table_configured() -> None:
    settings = BrokerSettings(region="eu-west-2", priority_reservations_table="swb-reservations")
    ddb = MagicMock()

    registry = build_registry(
        settings,
        environments=MagicMock(),
        gateway=MagicMock(),
        dns=MagicMock(),
        provisioner=MagicMock(),
        dynamodb_client=ddb,
    )

    lifecycle = registry.get("ec2Rstudio").lifecycle
    assert lifecycle._reservations is not None
