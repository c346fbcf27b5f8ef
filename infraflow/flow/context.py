"""Per-pass inputs of the flow.

:class:`ReconcileContext` carries cancellation and the overall deadline.
:class:`DesiredInfrastructure` is the resolved desired spec the steps work
from, and :class:`FlowConfig` bundles everything a single pass needs.  No
step reads process-wide state; whatever a step needs is in here.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from infraflow.api.models import Cluster, Infrastructure
from infraflow.cloud.facade import InfraClient
from infraflow.cloud.labels import build_labels
from infraflow.config.models import OperatorConfig
from infraflow.errors import ConfigurationError, FlowCancelledError
from infraflow.state.models import Backend, CREATION_ORDER, InfrastructureState, ResourceKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ReconcileContext
# ---------------------------------------------------------------------------


class DeadlineExceededError(FlowCancelledError):
    """The pass ran out of time before the next step could start."""


class ReconcileContext:
    """Cancellation signal plus an optional overall deadline.

    Args:
        timeout: Seconds the whole pass may take; ``None`` for no limit.
        cancel_event: Shared event; setting it cancels the pass.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._event = cancel_event or threading.Event()
        self.deadline: Optional[float] = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or ``None`` without one."""
        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)

    def check(self) -> None:
        """Raise if the pass must not start another step."""
        if self.cancelled:
            raise FlowCancelledError("reconciliation cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceededError("reconciliation deadline exceeded")

    def step_timeout(self, default: float) -> float:
        """Deadline for the next step: ``min(default, remaining)``."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)


# ---------------------------------------------------------------------------
# Desired infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DesiredInfrastructure:
    """Resolved desired spec for one cluster.

    Every created resource is named after ``technical_id``; the load
    balancer name carries a suffix since it shares a namespace with the
    ones the cluster creates for its own services.
    """

    technical_id: str
    region: str
    worker_cidr: str
    network_id: Optional[str] = None
    dns_servers: List[str] = field(default_factory=list)
    ssh_public_key: str = ""
    pods_cidr: Optional[str] = None
    load_balancer_enabled: bool = True
    cleanup_labelled_load_balancers: bool = True
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def network_name(self) -> str:
        return self.technical_id

    @property
    def subnet_name(self) -> str:
        return self.technical_id

    @property
    def security_group_name(self) -> str:
        return self.technical_id

    @property
    def keypair_name(self) -> str:
        return self.technical_id

    @property
    def load_balancer_name(self) -> str:
        return f"{self.technical_id}-internal"

    def requested_kinds(self) -> List[ResourceKind]:
        """Kinds the create direction provisions, in creation order."""
        kinds = []
        for kind in CREATION_ORDER:
            if kind is ResourceKind.KEYPAIR and not self.ssh_public_key:
                continue
            if kind is ResourceKind.LOAD_BALANCER and not self.load_balancer_enabled:
                continue
            kinds.append(kind)
        return kinds

    @classmethod
    def from_resources(
        cls,
        infra: Infrastructure,
        cluster: Cluster,
        config: OperatorConfig,
    ) -> "DesiredInfrastructure":
        networks = infra.spec.provider_config.networks
        dns = networks.dns_servers if networks.dns_servers is not None else config.default_dns_servers
        return cls(
            technical_id=cluster.technical_id,
            region=infra.spec.region or cluster.region,
            worker_cidr=networks.workers,
            network_id=networks.id,
            dns_servers=list(dns),
            ssh_public_key=infra.spec.ssh_public_key.strip(),
            pods_cidr=cluster.pods_cidr,
            load_balancer_enabled=infra.spec.provider_config.load_balancer.enabled,
            cleanup_labelled_load_balancers=config.feature_gates.ensure_load_balancer_deletion,
            labels=build_labels(config.custom_label_domain, cluster.technical_id),
        )


# ---------------------------------------------------------------------------
# Flow configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlowOptions:
    step_timeout: float = 90.0
    continue_on_independent_failure: bool = False
    recover_orphans_on_delete: bool = True

    @classmethod
    def from_config(cls, config: OperatorConfig) -> "FlowOptions":
        return cls(
            step_timeout=config.step_timeout_seconds,
            continue_on_independent_failure=config.continue_on_independent_failure,
            recover_orphans_on_delete=config.recover_orphans_on_delete,
        )


PersistFn = Callable[[InfrastructureState], None]


@dataclass
class FlowConfig:
    """Everything a single pass needs.

    Attributes:
        desired: Desired spec.
        routes: Backend per resource kind (see :mod:`infraflow.flow.selector`).
        clients: One client per backend in use.
        options: Engine behaviour switches.
        persist: Called with the state after every step.
    """

    desired: DesiredInfrastructure
    routes: Mapping[ResourceKind, Backend]
    clients: Mapping[Backend, InfraClient]
    options: FlowOptions = field(default_factory=FlowOptions)
    persist: Optional[PersistFn] = None

    def client_for(self, backend: Backend) -> InfraClient:
        client = self.clients.get(backend)
        if client is None:
            raise ConfigurationError(f"no client available for the {backend.value} backend")
        return client
