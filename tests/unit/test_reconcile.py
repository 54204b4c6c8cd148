from __future__ import annotations

from typing import Any

import pytest
from conftest import make_environment

from environment_broker.exceptions import ValidationError
from environment_broker.models import Environment, EnvironmentStatus
from environment_broker.reconcile import StatusChange, StatusReconciler


class FakeEnvironments:
    def __init__(self, environment: Environment) -> None:
        self.environment = environment
        self.updates: list[dict[str, Any]] = []

    def get_environment(self, env_id: str, consistent_read: bool = True) -> Environment:
        return self.environment

    def update_environment(self, env_id: str, fields: dict[str, Any]) -> Environment:
        self.updates.append(dict(fields))
        self.environment = self.environment.with_status(EnvironmentStatus(fields["status"]))
        return self.environment


class TestStatusChange:
    def test_from_detail(self) -> None:
        change = StatusChange.from_detail(
            {"envId": "env-1", "status": "running", "instanceId": "i-0abc"}
        )
        assert change == StatusChange(
            env_id="env-1", status=EnvironmentStatus.RUNNING, instance_id="i-0abc"
        )

    @pytest.mark.parametrize(
        "detail",
        [{"status": "RUNNING"}, {"envId": "env-1", "status": "EXPLODED"}, {"envId": "env-1"}],
    )
    def test_invalid_detail(self, detail: dict[str, Any]) -> None:
        with pytest.raises(ValidationError):
            StatusChange.from_detail(detail)


class TestStatusReconciler:
    def test_records_confirmation_with_ids(self) -> None:
        store = FakeEnvironments(make_environment())

        updated = StatusReconciler(store).apply(
            StatusChange(
                env_id="env-42",
                status=EnvironmentStatus.RUNNING,
                provisioned_product_id="pp-1",
                instance_id="i-0abc",
            )
        )

        assert updated is not None
        assert updated.status is EnvironmentStatus.RUNNING
        assert store.updates == [
            {
                "status": EnvironmentStatus.RUNNING,
                "provisionedProductId": "pp-1",
                "instanceId": "i-0abc",
            }
        ]

    def test_rejects_in_progress_status(self) -> None:
        store = FakeEnvironments(make_environment())

        with pytest.raises(ValidationError):
            StatusReconciler(store).apply(
                StatusChange(env_id="env-42", status=EnvironmentStatus.STOPPING)
            )

        assert store.updates == []

    def test_ignores_terminal_environment(self) -> None:
        store = FakeEnvironments(make_environment(status=EnvironmentStatus.TERMINATED))

        result = StatusReconciler(store).apply(
            StatusChange(env_id="env-42", status=EnvironmentStatus.RUNNING)
        )

        assert result is None
        assert store.updates == []
