"""Reconciliation flow: backend selection, steps and the engine."""

from infraflow.flow.context import (
    DeadlineExceededError,
    DesiredInfrastructure,
    FlowConfig,
    FlowOptions,
    ReconcileContext,
)
from infraflow.flow.engine import Direction, FlowEngine, FlowPhase, FlowResult
from infraflow.flow.selector import BackendSelection, select_backends
from infraflow.flow.steps import CREATE_STEPS, DELETE_STEPS, Step, desired_rules

__all__ = [
    "BackendSelection",
    "CREATE_STEPS",
    "DELETE_STEPS",
    "DeadlineExceededError",
    "DesiredInfrastructure",
    "Direction",
    "FlowConfig",
    "FlowEngine",
    "FlowOptions",
    "FlowPhase",
    "FlowResult",
    "ReconcileContext",
    "Step",
    "desired_rules",
    "select_backends",
]
