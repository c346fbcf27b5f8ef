"""Backend selection per resource kind.

Rules, applied to every kind:

1. A kind already recorded in state stays on the backend that created it.
2. A kind whose parent was routed by rule 1 (or inherited from it) follows
   the parent, so a subnet is never created in a different API than its
   network.
3. Otherwise the cluster annotation ``infraflow.io/use-native-infrastructure``
   decides (invalid values are ignored), then the ``UseNativeInfrastructure``
   gate.  A gate choice of native falls back to compatibility when only
   compatibility credentials exist.

Missing credentials for a routed backend are a :class:`ConfigurationError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from infraflow.api.models import Cluster
from infraflow.cloud.credentials import CredentialSet
from infraflow.config.models import ANNOTATION_USE_NATIVE_INFRASTRUCTURE, FeatureGates, parse_bool
from infraflow.errors import ConfigurationError
from infraflow.state.models import Backend, CREATION_ORDER, InfrastructureState, ResourceKind

logger = logging.getLogger(__name__)

#: Kinds that must live in the same backend as their parent.
PARENTS: Dict[ResourceKind, ResourceKind] = {
    ResourceKind.SUBNET: ResourceKind.NETWORK,
    ResourceKind.SECURITY_GROUP: ResourceKind.NETWORK,
    ResourceKind.LOAD_BALANCER: ResourceKind.SUBNET,
}

SOURCE_STATE = "state"
SOURCE_PARENT = "parent"
SOURCE_ANNOTATION = "annotation"
SOURCE_GATE = "feature-gate"
SOURCE_FALLBACK = "credentials-fallback"


@dataclass(frozen=True)
class BackendSelection:
    """Outcome of :func:`select_backends`.

    Attributes:
        default: Backend for kinds with no prior history.
        routes: Backend per routable kind.
        sources: Which rule produced each route.
        unroutable: Kinds left without a route (delete direction only).
    """

    default: Backend
    routes: Dict[ResourceKind, Backend] = field(default_factory=dict)
    sources: Dict[ResourceKind, str] = field(default_factory=dict)
    unroutable: List[ResourceKind] = field(default_factory=list)

    def backend_for(self, kind: ResourceKind) -> Backend:
        backend = self.routes.get(kind)
        if backend is None:
            raise ConfigurationError(f"no backend available for {kind.value}")
        return backend

    @property
    def backends(self) -> List[Backend]:
        """Backends the pass needs a client for, sorted."""
        return sorted(set(self.routes.values()), key=lambda b: b.value)


def annotation_override(cluster: Cluster) -> Optional[bool]:
    raw = cluster.annotations.get(ANNOTATION_USE_NATIVE_INFRASTRUCTURE)
    if raw is None:
        return None
    value = parse_bool(raw)
    if value is None:
        logger.warning(
            "Ignoring invalid %s=%r on cluster %s",
            ANNOTATION_USE_NATIVE_INFRASTRUCTURE, raw, cluster.technical_id,
        )
    return value


def default_backend(
    cluster: Cluster,
    gates: FeatureGates,
    credentials: CredentialSet,
) -> Tuple[Backend, str]:
    """Return the backend for kinds without history, and the rule that chose it."""
    override = annotation_override(cluster)
    if override is not None:
        return (Backend.NATIVE if override else Backend.COMPATIBILITY), SOURCE_ANNOTATION
    if not gates.use_native_infrastructure:
        return Backend.COMPATIBILITY, SOURCE_GATE
    if not credentials.available(Backend.NATIVE) and credentials.available(Backend.COMPATIBILITY):
        return Backend.COMPATIBILITY, SOURCE_FALLBACK
    return Backend.NATIVE, SOURCE_GATE


def select_backends(
    cluster: Cluster,
    gates: FeatureGates,
    credentials: CredentialSet,
    state: InfrastructureState,
    *,
    strict: bool = True,
    required: Optional[List[ResourceKind]] = None,
) -> BackendSelection:
    """Route every resource kind to a backend.

    *required* limits strict checking to the kinds the pass will actually
    create; other kinds are routed best-effort.  With ``strict=False``
    (deletion) kinds without history whose backend has no credentials are
    reported as unroutable instead of failing; there is nothing to delete
    for them unless orphan recovery finds something.
    """
    default, default_source = default_backend(cluster, gates, credentials)
    routes: Dict[ResourceKind, Backend] = {}
    sources: Dict[ResourceKind, str] = {}
    unroutable: List[ResourceKind] = []

    for kind in CREATION_ORDER:
        pinned = state.backend_for(kind)
        parent = PARENTS.get(kind)
        if pinned is not None:
            if not credentials.available(pinned):
                raise ConfigurationError(
                    f"{kind.value} was created with the {pinned.value} backend "
                    "but its credentials are not available"
                )
            routes[kind], sources[kind] = pinned, SOURCE_STATE
            continue
        if parent is not None and sources.get(parent) in (SOURCE_STATE, SOURCE_PARENT):
            routes[kind], sources[kind] = routes[parent], SOURCE_PARENT
            continue
        if credentials.available(default):
            routes[kind], sources[kind] = default, default_source
            continue
        if strict and (required is None or kind in required):
            raise ConfigurationError(
                f"{default.value} backend selected by {default_source} "
                "but its credentials are not available"
            )
        unroutable.append(kind)

    logger.debug(
        "Backend routes for %s: %s",
        cluster.technical_id,
        {k.value: f"{b.value} ({sources[k]})" for k, b in routes.items()},
    )
    return BackendSelection(default=default, routes=routes, sources=sources, unroutable=unroutable)
