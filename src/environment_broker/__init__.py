"""
environment_broker — Lifecycle and connection broker for workbench environments.

Launches, starts, stops and terminates notebook/IDE environments in hosting
accounts, keeps their ALB listener-rule priority and Route 53 hostname in
step, and hands out pre-authorised connection URLs.
"""

from environment_broker.config import BrokerSettings, SecureConnectionMetadata, load_settings
from environment_broker.exceptions import (
    AccessDenied,
    ConfigurationError,
    EnvironmentBrokerError,
    NotFound,
    PriorityReservationConflict,
    TransientAwsError,
    UnknownEnvironmentType,
    ValidationError,
)
from environment_broker.models import Environment, EnvironmentStatus, LifecycleResult
from environment_broker.reconcile import StatusChange, StatusReconciler
from environment_broker.registry import EnvironmentTypeRegistry, build_registry

__all__ = [
    "AccessDenied",
    "BrokerSettings",
    "ConfigurationError",
    "Environment",
    "EnvironmentBrokerError",
    "EnvironmentStatus",
    "EnvironmentTypeRegistry",
    "LifecycleResult",
    "NotFound",
    "PriorityReservationConflict",
    "SecureConnectionMetadata",
    "StatusChange",
    "StatusReconciler",
    "TransientAwsError",
    "UnknownEnvironmentType",
    "ValidationError",
    "build_registry",
    "load_settings",
]
