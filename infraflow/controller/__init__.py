"""Actuator and concurrent runner."""

from infraflow.controller.actuator import Actuator, SecretResolver, compute_status
from infraflow.controller.runner import ReconcileRunner

__all__ = ["Actuator", "ReconcileRunner", "SecretResolver", "compute_status"]
