"""Actuator: the entry points the hosting framework calls.

Each call runs exactly one pass:

1. decode the state blob from ``infra.status.state``
2. resolve credentials for both backends from the cluster secret
3. route every resource kind to a backend
4. build one client per backend in use
5. run the flow engine
6. persist the state blob and a computed status, even on failure

Errors are classified with :func:`determine_error` and raised unchanged
otherwise; retrying is left to the host.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from infraflow.api.models import (
    Cluster,
    Infrastructure,
    InfrastructureStatus,
    SecretReference,
    validate_deletion,
    validate_infrastructure,
)
from infraflow.cloud.credentials import CredentialSet, resolve_credentials
from infraflow.cloud.facade import InfraClient
from infraflow.cloud.factory import ClientFactory
from infraflow.config.models import OperatorConfig
from infraflow.errors import InfraFlowError, determine_error, determine_error_codes
from infraflow.flow.context import DesiredInfrastructure, FlowConfig, FlowOptions, ReconcileContext
from infraflow.flow.engine import Direction, FlowEngine, FlowPhase, FlowResult
from infraflow.flow.selector import select_backends
from infraflow.state.models import Backend, InfrastructureState, ResourceKind
from infraflow.state.store import OwnerStore, decode_state, encode_state

logger = logging.getLogger(__name__)

#: Secret lookup: returns the secret's data, or ``{}`` if it does not exist.
SecretResolver = Callable[[SecretReference], Mapping[str, str]]

MAX_ERROR_LENGTH = 256


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def _bounded(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    message = " ".join(message.split())
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def compute_status(
    state: InfrastructureState,
    phase: str,
    error: Optional[BaseException] = None,
) -> InfrastructureStatus:
    """Summarise *state* for humans."""
    status = InfrastructureStatus(
        phase=phase,
        backends=[b.value for b in state.backends_used],
        observed_at=datetime.now(timezone.utc),
    )
    network = state.get(ResourceKind.NETWORK)
    if network is not None:
        status.network_id = network.external_id
        status.network_name = network.name
        egress = network.attributes.get("egress_ip")
        if egress:
            status.egress_ips = [egress]
    status.subnet_id = state.external_id(ResourceKind.SUBNET)
    group = state.get(ResourceKind.SECURITY_GROUP)
    if group is not None:
        status.security_group_id = group.external_id
        status.security_group_name = group.name
    status.keypair_name = state.external_id(ResourceKind.KEYPAIR)
    status.load_balancer_id = state.external_id(ResourceKind.LOAD_BALANCER)
    if error is not None:
        status.last_error = _bounded(str(error))
        status.error_codes = [c.value for c in determine_error_codes(error)]
    elif state.last_step_error is not None:
        err = state.last_step_error
        status.last_error = _bounded(f"{err.kind.value}: {err.message}")
        status.error_codes = list(err.codes)
    return status


# ---------------------------------------------------------------------------
# Actuator
# ---------------------------------------------------------------------------


class Actuator:
    """Runs reconcile/delete passes for :class:`Infrastructure` owners."""

    def __init__(
        self,
        config: OperatorConfig,
        store: OwnerStore,
        secrets: SecretResolver,
        *,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.secrets = secrets
        self.client_factory = client_factory or ClientFactory(config)

    # -- public entry points --------------------------------------------------

    def reconcile(
        self, ctx: ReconcileContext, infra: Infrastructure, cluster: Cluster,
    ) -> FlowResult:
        """Create or complete the infrastructure.  Raises on failure."""
        return self._run(ctx, infra, cluster, Direction.CREATE)

    def delete(
        self, ctx: ReconcileContext, infra: Infrastructure, cluster: Cluster,
    ) -> FlowResult:
        """Tear the infrastructure down.  Raises on failure."""
        return self._run(ctx, infra, cluster, Direction.DELETE)

    def force_delete(
        self, ctx: ReconcileContext, infra: Infrastructure, cluster: Cluster,
    ) -> Optional[FlowResult]:
        """Best-effort delete; failures are logged, never raised."""
        try:
            return self.delete(ctx, infra, cluster)
        except InfraFlowError as exc:
            logger.warning(
                "Force delete of %s left resources behind: %s", infra.key, exc,
            )
            return None

    def migrate(
        self, ctx: ReconcileContext, infra: Infrastructure, cluster: Cluster,
    ) -> None:
        """Nothing to do: the cloud resources stay, the state moves with the owner."""
        logger.info("Migrate %s: no infrastructure changes required", infra.key)

    def restore(
        self, ctx: ReconcileContext, infra: Infrastructure, cluster: Cluster,
    ) -> FlowResult:
        """Reconcile from the restored state blob."""
        logger.info("Restore %s: reconciling from restored state", infra.key)
        return self.reconcile(ctx, infra, cluster)

    # -- internals ------------------------------------------------------------

    def _credentials(self, infra: Infrastructure) -> CredentialSet:
        return resolve_credentials(self.secrets(infra.spec.secret_ref))

    def _clients(
        self, backends: List[Backend], credentials: CredentialSet, region: str,
    ) -> Dict[Backend, InfraClient]:
        return {b: self.client_factory.create(b, credentials, region) for b in backends}

    def _persist(
        self,
        infra: Infrastructure,
        state: Optional[InfrastructureState],
        status: Optional[InfrastructureStatus] = None,
    ) -> None:
        blob = encode_state(state) if state is not None else None
        self.store.persist(infra, blob, status)

    def _run(
        self,
        ctx: ReconcileContext,
        infra: Infrastructure,
        cluster: Cluster,
        direction: Direction,
    ) -> FlowResult:
        logger.info("%s %s (cluster %s)", direction.value.capitalize(), infra.key, cluster.technical_id)
        try:
            state = decode_state(infra.status.state)
        except InfraFlowError as exc:
            err = determine_error(exc)
            self._persist_status_only(infra, FlowPhase.FAILED, err)
            raise err

        try:
            if direction is Direction.CREATE:
                validate_infrastructure(infra, cluster)
            else:
                validate_deletion(infra, cluster)
            desired = DesiredInfrastructure.from_resources(infra, cluster, self.config)
            credentials = self._credentials(infra)
            selection = select_backends(
                cluster,
                self.config.feature_gates,
                credentials,
                state,
                strict=direction is Direction.CREATE,
                required=desired.requested_kinds(),
            )
            clients = self._clients(selection.backends, credentials, desired.region)
        except InfraFlowError as exc:
            err = determine_error(exc)
            self._persist(infra, state, compute_status(state, FlowPhase.FAILED.value, err))
            raise err

        flow = FlowEngine(FlowConfig(
            desired=desired,
            routes=selection.routes,
            clients=clients,
            options=FlowOptions.from_config(self.config),
            persist=lambda s: self._persist(infra, s),
        ))
        result = flow.run(ctx, state, direction)

        if result.error is not None:
            err = determine_error(result.error)
            self._persist(infra, result.state, compute_status(result.state, result.phase.value, err))
            logger.error("%s %s failed: %s", direction.value.capitalize(), infra.key, err)
            raise err

        if direction is Direction.DELETE and result.state.is_empty:
            self._persist(infra, None, compute_status(result.state, result.phase.value))
            logger.info("Delete %s finished; state cleared", infra.key)
        else:
            self._persist(infra, result.state, compute_status(result.state, result.phase.value))
            logger.info("%s %s finished", direction.value.capitalize(), infra.key)
        return result

    def _persist_status_only(
        self, infra: Infrastructure, phase: FlowPhase, error: BaseException,
    ) -> None:
        status = InfrastructureStatus(
            phase=phase.value,
            last_error=_bounded(str(error)),
            error_codes=[c.value for c in determine_error_codes(error)],
            observed_at=datetime.now(timezone.utc),
        )
        self.store.persist(infra, infra.status.state, status)
