"""Flow engine: runs the step list for one direction.

Phases::

    Pending -> InProgress -> Succeeded
                          -> Failed

For each step the engine decides whether it is already satisfied (create:
the kind is recorded, or not requested at all; delete: the kind is absent),
checks cancellation and the deadline, routes it to a backend client and
runs it under ``min(step_timeout, remaining)``.  State is handed to the
persist callback after every step, whether it succeeded or not.

By default the pass stops at the first failing step.  With
``continue_on_independent_failure`` steps that do not depend on a failed
kind still run, and the first failure is reported at the end.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Set

from infraflow.errors import (
    FlowCancelledError,
    InfraFlowError,
    StepError,
    determine_error_codes,
)
from infraflow.flow.context import FlowConfig, ReconcileContext
from infraflow.flow.steps import CREATE_STEPS, DELETE_STEPS, Step
from infraflow.state.models import Backend, InfrastructureState, ResourceKind

logger = logging.getLogger(__name__)


class FlowPhase(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class Direction(str, Enum):
    CREATE = "create"
    DELETE = "delete"


@dataclass
class FlowResult:
    """Outcome of one pass.

    Attributes:
        direction: Create or delete.
        phase: Final phase.
        state: State after the pass; always safe to persist.
        error: First step error, or the cancellation.
        executed: Kinds whose step ran and succeeded.
        skipped: Kinds already satisfied or not requested.
        failed: Kinds whose step failed.
        blocked: Kinds not attempted because a dependency failed.
        recovered: Kinds adopted by orphan recovery (delete only).
    """

    direction: Direction
    phase: FlowPhase
    state: InfrastructureState
    error: Optional[InfraFlowError] = None
    executed: List[ResourceKind] = field(default_factory=list)
    skipped: List[ResourceKind] = field(default_factory=list)
    failed: List[ResourceKind] = field(default_factory=list)
    blocked: List[ResourceKind] = field(default_factory=list)
    recovered: List[ResourceKind] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.phase is FlowPhase.SUCCEEDED


class FlowEngine:
    """Drives :class:`Step` lists against the configured clients."""

    def __init__(
        self,
        config: FlowConfig,
        *,
        create_steps: Optional[Sequence[Step]] = None,
        delete_steps: Optional[Sequence[Step]] = None,
    ) -> None:
        self.config = config
        self.create_steps = list(create_steps if create_steps is not None else CREATE_STEPS)
        self.delete_steps = list(delete_steps if delete_steps is not None else DELETE_STEPS)
        self.phase = FlowPhase.PENDING

    def reconcile(self, ctx: ReconcileContext, state: InfrastructureState) -> FlowResult:
        return self.run(ctx, state, Direction.CREATE)

    def delete(self, ctx: ReconcileContext, state: InfrastructureState) -> FlowResult:
        return self.run(ctx, state, Direction.DELETE)

    # -- internals ------------------------------------------------------------

    def _persist(self, state: InfrastructureState) -> None:
        if self.config.persist is not None:
            self.config.persist(state)

    def _backend_for(self, step: Step, state: InfrastructureState, direction: Direction) -> Backend:
        if direction is Direction.DELETE:
            recorded = state.backend_for(step.kind)
            if recorded is not None:
                return recorded
        backend = self.config.routes.get(step.kind)
        if backend is None:
            raise StepError(
                step.kind.value, "none",
                InfraFlowError(f"no backend available for {step.kind.value}"),
            )
        return backend

    def _pending(self, step: Step, state: InfrastructureState, direction: Direction) -> bool:
        desired = self.config.desired
        if direction is Direction.CREATE:
            return step.kind in desired.requested_kinds() and not state.has(step.kind)
        if state.has(step.kind):
            return True
        if step.run_when_absent is not None and step.kind in self.config.routes:
            return step.run_when_absent(desired)
        return False

    def _run_step(
        self,
        ctx: ReconcileContext,
        step: Step,
        state: InfrastructureState,
        direction: Direction,
    ) -> InfrastructureState:
        backend = self._backend_for(step, state, direction)
        client = self.config.client_for(backend)
        timeout = ctx.step_timeout(self.config.options.step_timeout)
        logger.info("%s (%s)", step.name, backend.value)
        started = time.monotonic()
        try:
            with client.call_timeout(timeout):
                new_state = step.run(self.config.desired, state, client)
        except (FlowCancelledError, StepError):
            raise
        except Exception as exc:
            raise StepError(step.kind.value, backend.value, exc) from exc
        logger.debug("%s done in %.2fs", step.name, time.monotonic() - started)
        return new_state

    def _recover(
        self,
        ctx: ReconcileContext,
        state: InfrastructureState,
        result: FlowResult,
    ) -> InfrastructureState:
        """Adopt unrecorded resources that belong to the cluster, parents first."""
        for step in reversed(self.delete_steps):
            if step.recover is None or state.has(step.kind):
                continue
            backend = self.config.routes.get(step.kind)
            if backend is None:
                logger.debug("Skipping %s recovery: no backend available", step.kind.value)
                continue
            ctx.check()
            client = self.config.client_for(backend)
            try:
                with client.call_timeout(ctx.step_timeout(self.config.options.step_timeout)):
                    rec = step.recover(self.config.desired, state, client)
            except Exception as exc:
                raise StepError(step.kind.value, backend.value, exc) from exc
            if rec is not None:
                logger.warning(
                    "Recovered unrecorded %s %s on %s; scheduling deletion",
                    step.kind.value, rec.external_id, backend.value,
                )
                state = state.model_copy(deep=True)
                state.record(step.kind, rec)
                result.recovered.append(step.kind)
        return state

    # -- run ------------------------------------------------------------------

    def run(
        self,
        ctx: ReconcileContext,
        state: InfrastructureState,
        direction: Direction,
    ) -> FlowResult:
        """Run one pass.  Never raises for step failures; see ``result.error``."""
        state = state.model_copy(deep=True)
        steps = self.create_steps if direction is Direction.CREATE else self.delete_steps
        result = FlowResult(direction=direction, phase=FlowPhase.PENDING, state=state)
        failed: Set[ResourceKind] = set()
        first_error: Optional[InfraFlowError] = None

        self.phase = FlowPhase.IN_PROGRESS
        logger.info("Flow %s started (%d steps)", direction.value, len(steps))
        try:
            if direction is Direction.DELETE and self.config.options.recover_orphans_on_delete:
                try:
                    state = self._recover(ctx, state, result)
                except StepError as exc:
                    state.set_error(ResourceKind(exc.kind), _backend_or_none(exc.backend), str(exc.cause),
                                    [c.value for c in exc.codes])
                    self._persist(state)
                    result.failed.append(ResourceKind(exc.kind))
                    first_error = exc
                    steps = []

            for step in steps:
                if first_error is not None and not self.config.options.continue_on_independent_failure:
                    break
                if not self._pending(step, state, direction):
                    result.skipped.append(step.kind)
                    continue
                blocked_by = [d for d in step.depends_on if d in failed]
                if blocked_by:
                    logger.warning(
                        "%s blocked by failed %s",
                        step.name, ", ".join(d.value for d in blocked_by),
                    )
                    result.blocked.append(step.kind)
                    failed.add(step.kind)
                    continue

                ctx.check()
                try:
                    state = self._run_step(ctx, step, state, direction)
                except StepError as exc:
                    logger.warning("%s failed: %s", step.name, exc)
                    state = state.model_copy(deep=True)
                    state.set_error(step.kind, _backend_or_none(exc.backend), str(exc.cause),
                                    [c.value for c in exc.codes])
                    failed.add(step.kind)
                    result.failed.append(step.kind)
                    first_error = first_error or exc
                else:
                    state.clear_error(step.kind)
                    result.executed.append(step.kind)
                self._persist(state)
        except FlowCancelledError as exc:
            logger.warning("Flow %s stopped: %s", direction.value, exc)
            result.state = state
            result.error = exc
            result.phase = self.phase = FlowPhase.FAILED
            return result

        result.state = state
        if first_error is not None:
            result.error = first_error
            result.phase = self.phase = FlowPhase.FAILED
            logger.warning(
                "Flow %s failed: %s (codes: %s)",
                direction.value, first_error,
                ", ".join(c.value for c in determine_error_codes(first_error)) or "none",
            )
        else:
            state.clear_error()
            result.phase = self.phase = FlowPhase.SUCCEEDED
            logger.info("Flow %s succeeded", direction.value)
        return result


def _backend_or_none(value: str) -> Optional[Backend]:
    try:
        return Backend(value)
    except ValueError:
        return None
