"""
environment_broker.exceptions — Error taxonomy for lifecycle and connection calls.

Every failure that leaves the broker is one of these types. botocore
ClientErrors and BotoCoreErrors are translated at the component boundary
(``raise ... from exc``) so callers never need to inspect raw AWS error codes.

    EnvironmentBrokerError
      ├── ConfigurationError          missing/invalid process configuration
      ├── ValidationError             bad caller input, raised before any AWS call
      │     └── UnknownEnvironmentType
      ├── AccessDenied                hosting-account role could not be assumed
      ├── NotFound                    environment, instance or parameter absent
      ├── TransientAwsError           ELBv2 / Route 53 / SSM / EC2 call failed
      └── PriorityReservationConflict no free listener-rule priority could be claimed
"""

from __future__ import annotations

from typing import Any


class EnvironmentBrokerError(Exception):
    """Base class for all broker errors."""


class ConfigurationError(EnvironmentBrokerError):
    """Raised when process configuration is missing or malformed.

    Fatal: nothing a caller can retry will fix it.
    """


class ValidationError(EnvironmentBrokerError):
    """Raised when caller-supplied input is invalid or incomplete."""


class UnknownEnvironmentType(ValidationError):
    def __init__(self, env_type: str) -> None:
        self.env_type = env_type
        super().__init__(f"Unknown environment type {env_type!r}")


class AccessDenied(EnvironmentBrokerError):
    """Raised when STS refuses to assume the hosting-account role.

    Usually a missing trust policy or a wrong external id. Not retried.
    """

    def __init__(self, *, role_arn: str, reason: str = "") -> None:
        self.role_arn = role_arn
        self.reason = reason
        message = f"Unable to assume role {role_arn!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotFound(EnvironmentBrokerError):
    def __init__(self, *, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier!r} not found")


class TransientAwsError(EnvironmentBrokerError):
    """Raised when an AWS API call fails for a reason other than the above.

    Not retried inside the broker. Retrying the whole operation is safe for
    rule-priority allocation; launch/terminate retries rely on downstream
    idempotency tokens.
    """

    def __init__(self, *, service: str, operation: str, code: str, message: str = "") -> None:
        self.service = service
        self.operation = operation
        self.code = code
        detail = f"{service}.{operation} failed with {code}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)


class PriorityReservationConflict(EnvironmentBrokerError):
    def __init__(self, *, listener_arn: str, first: int, attempts: int) -> None:
        self.listener_arn = listener_arn
        self.first = first
        self.attempts = attempts
        super().__init__(
            f"No free rule priority on {listener_arn!r} in [{first}, {first + attempts})"
        )


def client_error_code(error: Any) -> str:
    """Return the AWS error code carried by a botocore ClientError."""
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", "Unknown"))


def translate_client_error(error: Any, *, service: str, operation: str) -> TransientAwsError:
    """Wrap a ClientError, or a BotoCoreError such as EndpointConnectionError."""
    response = getattr(error, "response", None)
    if response is None:
        return TransientAwsError(
            service=service,
            operation=operation,
            code=type(error).__name__,
            message=str(error),
        )
    return TransientAwsError(
        service=service,
        operation=operation,
        code=client_error_code(error),
        message=str(response.get("Error", {}).get("Message", "")),
    )
