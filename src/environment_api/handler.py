"""
environment_api.handler — Environment lifecycle REST API and status-event Lambdas.

Routes (API Gateway proxy integration):

    POST   /v1/environments/{envId}/launch       -> 202
    PUT    /v1/environments/{envId}/start        -> 202
    PUT    /v1/environments/{envId}/stop         -> 202
    DELETE /v1/environments/{envId}              -> 202
    GET    /v1/environments/{envId}/connections  -> 200

status_handler consumes EventBridge events whose detail is
{envId, status, provisionedProductId?, instanceId?}.

Settings and the environment type registry are built on first use and
reused for the lifetime of the container.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext

from environment_broker.config import load_settings
from environment_broker.exceptions import (
    AccessDenied,
    ConfigurationError,
    NotFound,
    PriorityReservationConflict,
    TransientAwsError,
    ValidationError,
)
from environment_broker.lifecycle import EnvironmentStore
from environment_broker.models import ConnectionContext, Environment
from environment_broker.reconcile import StatusChange, StatusReconciler
from environment_broker.registry import EnvironmentTypeRegistry, build_registry
from environment_broker.store import EnvironmentService

logger = Logger(service="environment-api")
tracer = Tracer()

_ROUTE = re.compile(
    r"^/v1/environments/(?P<env_id>[^/]+)(?:/(?P<action>launch|start|stop|connections))?/?$"
)


@dataclass(frozen=True)
class EnvironmentApiDependencies:
    environments: EnvironmentStore
    registry: EnvironmentTypeRegistry
    reconciler: StatusReconciler


_DEPENDENCIES: EnvironmentApiDependencies | None = None


def _dependencies() -> EnvironmentApiDependencies:
    global _DEPENDENCIES
    if _DEPENDENCIES is None:
        settings = load_settings()
        environments = EnvironmentService(settings.environments_table, region=settings.region)
        _DEPENDENCIES = EnvironmentApiDependencies(
            environments=environments,
            registry=build_registry(settings, environments=environments),
            reconciler=StatusReconciler(environments),
        )
    return _DEPENDENCIES


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=_json_default),
    }


def _error(status_code: int, code: str, message: str) -> dict[str, Any]:
    return _response(status_code, {"error": {"code": code, "message": message}})


def _http_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "").upper()


def _request_path(event: dict[str, Any]) -> str:
    return str(event.get("path") or event.get("rawPath") or "")


def _environment_body(environment: Environment) -> dict[str, Any]:
    return {
        "envId": environment.env_id,
        "envType": environment.env_type,
        "status": environment.status.value,
    }


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_launch(deps: EnvironmentApiDependencies, env_id: str) -> dict[str, Any]:
    environment = deps.environments.get_environment(env_id, True)
    lifecycle = deps.registry.get(environment.env_type).lifecycle
    launched = lifecycle.launch(environment)
    return _response(202, _environment_body(launched))


def _handle_power(deps: EnvironmentApiDependencies, env_id: str, action: str) -> dict[str, Any]:
    environment = deps.environments.get_environment(env_id, True)
    lifecycle = deps.registry.get(environment.env_type).lifecycle
    power = lifecycle.start if action == "start" else lifecycle.stop
    result = power(env_id, environment=environment)
    return _response(202, {"envId": result.env_id, "status": result.status.value})


def _handle_terminate(deps: EnvironmentApiDependencies, env_id: str) -> dict[str, Any]:
    environment = deps.environments.get_environment(env_id, True)
    lifecycle = deps.registry.get(environment.env_type).lifecycle
    result = lifecycle.terminate(env_id, environment=environment)
    return _response(
        202,
        {"envId": result.env_id, "status": result.status.value, "warnings": list(result.warnings)},
    )


def _handle_connections(deps: EnvironmentApiDependencies, env_id: str) -> dict[str, Any]:
    environment = deps.environments.get_environment(env_id, True)
    if not environment.instance_id:
        raise NotFound(resource="Instance for environment", identifier=env_id)
    connection = deps.registry.get(environment.env_type).connection
    credentials = connection.get_auth_credentials(
        environment.instance_id, ConnectionContext.for_environment(environment)
    )
    return _response(
        200,
        {
            "authCredResponse": credentials,
            "instructionResponse": connection.get_connection_instructions(),
        },
    )


def _route(deps: EnvironmentApiDependencies, method: str, path: str) -> dict[str, Any]:
    match = _ROUTE.match(path)
    if match is None:
        return _error(404, "NOT_FOUND", "Unsupported environment API route")
    env_id = match.group("env_id")
    action = match.group("action")

    if action == "launch" and method == "POST":
        return _handle_launch(deps, env_id)
    if action in {"start", "stop"} and method == "PUT":
        return _handle_power(deps, env_id, action)
    if action == "connections" and method == "GET":
        return _handle_connections(deps, env_id)
    if action is None and method == "DELETE":
        return _handle_terminate(deps, env_id)
    return _error(405, "METHOD_NOT_ALLOWED", "Unsupported environment API route")


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    method = _http_method(event)
    path = _request_path(event)
    logger.append_keys(http_method=method, path=path)

    try:
        return _route(_dependencies(), method, path)
    except ValidationError as exc:
        return _error(400, "BAD_REQUEST", str(exc))
    except AccessDenied as exc:
        logger.warning("Hosting account role assumption denied", extra={"role_arn": exc.role_arn})
        return _error(403, "FORBIDDEN", str(exc))
    except NotFound as exc:
        return _error(404, "NOT_FOUND", str(exc))
    except PriorityReservationConflict as exc:
        logger.warning("No listener rule priority could be reserved", extra={"error": str(exc)})
        return _error(409, "CONFLICT", str(exc))
    except ConfigurationError as exc:
        logger.exception("Environment API is misconfigured")
        return _error(500, "CONFIGURATION_ERROR", str(exc))
    except TransientAwsError as exc:
        logger.exception(
            "AWS call failed in environment API handler",
            extra={"service": exc.service, "operation": exc.operation, "error_code": exc.code},
        )
        return _error(502, "AWS_CLIENT_ERROR", exc.code)
    except Exception:
        logger.exception("Unhandled environment API handler error")
        return _error(500, "INTERNAL_ERROR", "Internal server error")


@logger.inject_lambda_context(clear_state=True, log_event=False)
@tracer.capture_lambda_handler
def status_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Apply a confirmed status from an EventBridge event.

    Malformed events and unknown environments are logged and dropped, since
    redelivery cannot fix them. AWS failures propagate so EventBridge retries.
    """
    detail = event.get("detail") or {}
    try:
        change = StatusChange.from_detail(detail)
        updated = _dependencies().reconciler.apply(change)
    except (ValidationError, NotFound) as exc:
        logger.warning("Dropping environment status event", extra={"error": str(exc)})
        return {"applied": False, "error": str(exc)}
    return {
        "applied": updated is not None,
        "envId": change.env_id,
        "status": change.status.value,
    }
