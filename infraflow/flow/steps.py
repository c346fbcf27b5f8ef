"""Ensure/delete steps for each resource kind.

Every step is a function ``(desired, state, client) -> state``: it takes a
copy of the current state, talks to exactly one backend client and returns
the new state.  A step only records a resource after the remote call
confirmed it, and only forgets one after its deletion (or absence) was
confirmed, so re-running any step converges.

Creation order::

    network -> subnet -> security-group -> keypair -> load-balancer

Deletion walks the same list backwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from infraflow.cloud.facade import (
    ANY_IPV4,
    EGRESS,
    INGRESS,
    InfraClient,
    LoadBalancerSpec,
    NetworkSpec,
    SecurityGroupRule,
    SecurityGroupSpec,
    SubnetSpec,
)
from infraflow.cloud.labels import LabelSelector
from infraflow.errors import ConfigurationError, ErrorCode, InfraFlowError
from infraflow.flow.context import DesiredInfrastructure
from infraflow.state.models import InfrastructureState, ResourceKind, ResourceRecord

logger = logging.getLogger(__name__)

StepFn = Callable[[DesiredInfrastructure, InfrastructureState, InfraClient], InfrastructureState]
RecoverFn = Callable[[DesiredInfrastructure, InfrastructureState, InfraClient], Optional[ResourceRecord]]

NODE_PORT_MIN = 30000
NODE_PORT_MAX = 32767


@dataclass(frozen=True)
class Step:
    """One unit of work in the flow.

    Attributes:
        kind: Resource kind the step manages.
        name: Human-readable name for logs and CLI output.
        run: The step function.
        depends_on: Kinds whose failure in the same pass blocks this step.
        recover: Delete direction only; finds an unrecorded resource that
            belongs to the cluster so it can be deleted.
        run_when_absent: Delete direction only; run even when the kind is
            not recorded if this returns true.
    """

    kind: ResourceKind
    name: str
    run: StepFn
    depends_on: Tuple[ResourceKind, ...] = ()
    recover: Optional[RecoverFn] = None
    run_when_absent: Optional[Callable[[DesiredInfrastructure], bool]] = None


def _require(state: InfrastructureState, kind: ResourceKind) -> str:
    external_id = state.external_id(kind)
    if not external_id:
        raise InfraFlowError(
            f"{kind.value} is not recorded yet",
            codes=(ErrorCode.RETRYABLE_INFRA_DEPENDENCIES,),
        )
    return external_id


def _user_network(state: InfrastructureState) -> bool:
    rec = state.get(ResourceKind.NETWORK)
    return rec is not None and not rec.managed


# ---------------------------------------------------------------------------
# Security group rules
# ---------------------------------------------------------------------------


def desired_rules(
    desired: DesiredInfrastructure,
    group_id: str,
    nodes_cidr: str = ANY_IPV4,
) -> List[SecurityGroupRule]:
    """Rules every cluster security group must carry.

    Node ports are open to ``nodes_cidr``; for a user-supplied network this
    is the network's own CIDR since other tenants may share it.
    """
    rules = [
        SecurityGroupRule(
            direction=INGRESS,
            remote_group_id=group_id,
            description="IPv4: allow all incoming traffic within the same security group",
        ),
        SecurityGroupRule(
            direction=EGRESS,
            description="IPv4: allow all outgoing traffic",
        ),
    ]
    for protocol in ("tcp", "udp"):
        rules.append(SecurityGroupRule(
            direction=INGRESS,
            protocol=protocol,
            port_min=NODE_PORT_MIN,
            port_max=NODE_PORT_MAX,
            ip_range=nodes_cidr,
            description=(
                f"IPv4: allow all incoming {protocol} traffic with port range "
                f"{NODE_PORT_MIN}-{NODE_PORT_MAX}"
            ),
        ))
    if desired.pods_cidr:
        rules.append(SecurityGroupRule(
            direction=INGRESS,
            ip_range=desired.pods_cidr,
            description="IPv4: allow all incoming traffic from cluster pod CIDR",
        ))
    return rules


# ---------------------------------------------------------------------------
# Ensure steps
# ---------------------------------------------------------------------------


def ensure_network(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    if desired.network_id:
        network = client.get_network(desired.network_id)
        if network is None:
            raise ConfigurationError(
                f"network {desired.network_id!r} does not exist",
                codes=(ErrorCode.INFRA_DEPENDENCIES,),
            )
        managed = False
    else:
        network = client.ensure_network(NetworkSpec(
            name=desired.network_name,
            cidr=desired.worker_cidr,
            nameservers=list(desired.dns_servers),
            labels=dict(desired.labels),
        ))
        managed = True

    attributes = {"cidr": network.cidr or desired.worker_cidr}
    if network.egress_ip:
        attributes["egress_ip"] = network.egress_ip
    state.record(ResourceKind.NETWORK, ResourceRecord(
        external_id=network.id,
        backend=client.backend,
        name=network.name or desired.network_name,
        managed=managed,
        attributes=attributes,
    ))
    return state


def ensure_subnet(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    network_id = _require(state, ResourceKind.NETWORK)
    managed = True
    subnet = None
    if _user_network(state):
        existing = client.list_subnets(network_id)
        if existing:
            subnet, managed = existing[0], False
    if subnet is None:
        subnet = client.ensure_subnet(SubnetSpec(
            name=desired.subnet_name,
            network_id=network_id,
            cidr=desired.worker_cidr,
            nameservers=list(desired.dns_servers),
            labels=dict(desired.labels),
        ))
    state.record(ResourceKind.SUBNET, ResourceRecord(
        external_id=subnet.id,
        backend=client.backend,
        name=subnet.name or desired.subnet_name,
        managed=managed,
        attributes={"network_id": network_id, "cidr": subnet.cidr or desired.worker_cidr},
    ))
    return state


def ensure_security_group(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    network_id = _require(state, ResourceKind.NETWORK)
    group = client.ensure_security_group(SecurityGroupSpec(
        name=desired.security_group_name,
        network_id=network_id,
        description="Cluster Nodes",
        labels=dict(desired.labels),
    ))
    nodes_cidr = ANY_IPV4
    if _user_network(state):
        nodes_cidr = state.resources[ResourceKind.NETWORK].attributes.get("cidr") or desired.worker_cidr
    client.ensure_security_group_rules(group, desired_rules(desired, group.id, nodes_cidr))
    state.record(ResourceKind.SECURITY_GROUP, ResourceRecord(
        external_id=group.id,
        backend=client.backend,
        name=group.name or desired.security_group_name,
    ))
    return state


def ensure_keypair(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    keypair = client.ensure_keypair(desired.keypair_name, desired.ssh_public_key, dict(desired.labels))
    attributes = {"fingerprint": keypair.fingerprint} if keypair.fingerprint else {}
    state.record(ResourceKind.KEYPAIR, ResourceRecord(
        external_id=keypair.name,
        backend=client.backend,
        name=keypair.name,
        attributes=attributes,
    ))
    return state


def ensure_load_balancer(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    lb = client.ensure_load_balancer(LoadBalancerSpec(
        name=desired.load_balancer_name,
        network_id=_require(state, ResourceKind.NETWORK),
        subnet_id=_require(state, ResourceKind.SUBNET),
        security_group_id=_require(state, ResourceKind.SECURITY_GROUP),
        labels=dict(desired.labels),
    ))
    state.record(ResourceKind.LOAD_BALANCER, ResourceRecord(
        external_id=lb.id,
        backend=client.backend,
        name=lb.name or desired.load_balancer_name,
    ))
    return state


# ---------------------------------------------------------------------------
# Delete steps
# ---------------------------------------------------------------------------


def _delete_recorded(
    kind: ResourceKind,
    state: InfrastructureState,
    delete: Callable[[str], bool],
) -> InfrastructureState:
    state = state.model_copy(deep=True)
    rec = state.get(kind)
    if rec is None:
        return state
    if rec.managed:
        delete(rec.external_id)
    else:
        logger.info("Leaving user-supplied %s %s in place", kind.value, rec.external_id)
    state.remove(kind)
    return state


def delete_load_balancer(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    state = _delete_recorded(ResourceKind.LOAD_BALANCER, state, client.delete_load_balancer)
    if desired.cleanup_labelled_load_balancers:
        selector = LabelSelector(desired.labels)
        for lb in client.list_load_balancers(selector=selector):
            logger.info("Deleting dangling load balancer %s labelled for %s", lb.name, desired.technical_id)
            client.delete_load_balancer(lb.id)
    return state


def delete_keypair(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    return _delete_recorded(ResourceKind.KEYPAIR, state, client.delete_keypair)


def delete_security_group(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    return _delete_recorded(ResourceKind.SECURITY_GROUP, state, client.delete_security_group)


def delete_subnet(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    return _delete_recorded(ResourceKind.SUBNET, state, client.delete_subnet)


def delete_network(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> InfrastructureState:
    return _delete_recorded(ResourceKind.NETWORK, state, client.delete_network)


# ---------------------------------------------------------------------------
# Orphan recovery
# ---------------------------------------------------------------------------


def recover_network(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> Optional[ResourceRecord]:
    if desired.network_id:
        return None
    network = client.find_network(desired.network_name)
    if network is None:
        return None
    return ResourceRecord(external_id=network.id, backend=client.backend, name=network.name)


def recover_subnet(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> Optional[ResourceRecord]:
    network_id = state.external_id(ResourceKind.NETWORK)
    if not network_id or _user_network(state):
        return None
    subnet = client.find_subnet(network_id, desired.subnet_name)
    if subnet is None:
        return None
    return ResourceRecord(external_id=subnet.id, backend=client.backend, name=subnet.name)


def recover_security_group(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> Optional[ResourceRecord]:
    group = client.find_security_group(
        desired.security_group_name, state.external_id(ResourceKind.NETWORK),
    )
    if group is None:
        return None
    return ResourceRecord(external_id=group.id, backend=client.backend, name=group.name)


def recover_keypair(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> Optional[ResourceRecord]:
    keypair = client.find_keypair(desired.keypair_name)
    if keypair is None:
        return None
    return ResourceRecord(external_id=keypair.name, backend=client.backend, name=keypair.name)


def recover_load_balancer(
    desired: DesiredInfrastructure, state: InfrastructureState, client: InfraClient,
) -> Optional[ResourceRecord]:
    lb = client.find_load_balancer(desired.load_balancer_name)
    if lb is None:
        return None
    return ResourceRecord(external_id=lb.id, backend=client.backend, name=lb.name)


# ---------------------------------------------------------------------------
# Step lists
# ---------------------------------------------------------------------------


CREATE_STEPS: List[Step] = [
    Step(ResourceKind.NETWORK, "ensure network", ensure_network),
    Step(ResourceKind.SUBNET, "ensure subnet", ensure_subnet, (ResourceKind.NETWORK,)),
    Step(ResourceKind.SECURITY_GROUP, "ensure security group", ensure_security_group,
         (ResourceKind.NETWORK,)),
    Step(ResourceKind.KEYPAIR, "ensure keypair", ensure_keypair),
    Step(ResourceKind.LOAD_BALANCER, "ensure load balancer", ensure_load_balancer,
         (ResourceKind.SUBNET, ResourceKind.SECURITY_GROUP)),
]

DELETE_STEPS: List[Step] = [
    Step(ResourceKind.LOAD_BALANCER, "delete load balancer", delete_load_balancer,
         recover=recover_load_balancer,
         run_when_absent=lambda desired: desired.cleanup_labelled_load_balancers),
    Step(ResourceKind.KEYPAIR, "delete keypair", delete_keypair, recover=recover_keypair),
    Step(ResourceKind.SECURITY_GROUP, "delete security group", delete_security_group,
         (ResourceKind.LOAD_BALANCER,), recover=recover_security_group),
    Step(ResourceKind.SUBNET, "delete subnet", delete_subnet,
         (ResourceKind.LOAD_BALANCER,), recover=recover_subnet),
    Step(ResourceKind.NETWORK, "delete network", delete_network,
         (ResourceKind.SUBNET, ResourceKind.SECURITY_GROUP), recover=recover_network),
]
