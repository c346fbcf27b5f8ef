"""Shared fixtures: an in-memory InfraClient and desired-spec builders."""

from __future__ import annotations

import copy
import itertools
from typing import Dict, List, Optional

import pytest

from infraflow.cloud.facade import (
    InfraClient,
    Keypair,
    LoadBalancer,
    LoadBalancerSpec,
    Network,
    NetworkSpec,
    SecurityGroup,
    SecurityGroupRule,
    SecurityGroupSpec,
    Subnet,
    SubnetSpec,
)
from infraflow.cloud.labels import LabelSelector, build_labels
from infraflow.errors import CloudAPIError
from infraflow.flow.context import DesiredInfrastructure, FlowConfig, FlowOptions
from infraflow.state.models import Backend, CREATION_ORDER

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFakeKeyMaterial user@host"
TECHNICAL_ID = "shoot--dev--alpha"


def _not_found(what: str) -> CloudAPIError:
    return CloudAPIError(f"{what} not found", status_code=404)


class FakeInfraClient(InfraClient):
    """In-memory cloud.

    ``fail(op, exc)`` queues an exception for the next call of *op*
    (e.g. ``"create security group"``).  Every remote call is appended to
    ``calls`` and the timeout in effect to ``timeouts``.
    """

    _ids = itertools.count(1)

    def __init__(self, backend: Backend = Backend.NATIVE) -> None:
        super().__init__(default_timeout=90.0)
        self.backend = backend
        self.networks: Dict[str, Network] = {}
        self.subnets: Dict[str, Subnet] = {}
        self.groups: Dict[str, SecurityGroup] = {}
        self.keypairs: Dict[str, Keypair] = {}
        self.lbs: Dict[str, LoadBalancer] = {}
        self.lb_refs: Dict[str, tuple] = {}
        self.calls: List[str] = []
        self.timeouts: List[float] = []
        self._failures: Dict[str, List[Exception]] = {}

    # -- test helpers ---------------------------------------------------------

    def fail(self, op: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([exc] * times)

    def creates(self) -> List[str]:
        return [c for c in self.calls if c.startswith("create")]

    def deletes(self) -> List[str]:
        return [c for c in self.calls if c.startswith("delete")]

    def _hit(self, op: str) -> None:
        self.calls.append(op)
        self.timeouts.append(self.timeout)
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # -- network --------------------------------------------------------------

    def get_network(self, network_id: str) -> Optional[Network]:
        self._hit("get network")
        return copy.deepcopy(self.networks.get(network_id))

    def list_networks(self, name: str) -> List[Network]:
        self._hit("list networks")
        return [copy.deepcopy(n) for n in self.networks.values() if n.name == name]

    def _create_network(self, spec: NetworkSpec) -> Network:
        self._hit("create network")
        net = Network(
            id=self._new_id("net"), name=spec.name, cidr=spec.cidr,
            nameservers=list(spec.nameservers), egress_ip="198.51.100.7",
            labels=dict(spec.labels),
        )
        self.networks[net.id] = net
        return copy.deepcopy(net)

    def _delete_network(self, network_id: str) -> None:
        self._hit("delete network")
        if network_id not in self.networks:
            raise _not_found("network")
        if any(s.network_id == network_id for s in self.subnets.values()):
            raise CloudAPIError("network still has subnets", status_code=409)
        del self.networks[network_id]

    # -- subnet ---------------------------------------------------------------

    def get_subnet(self, subnet_id: str) -> Optional[Subnet]:
        self._hit("get subnet")
        return copy.deepcopy(self.subnets.get(subnet_id))

    def list_subnets(self, network_id: str, name: Optional[str] = None) -> List[Subnet]:
        self._hit("list subnets")
        return [
            copy.deepcopy(s) for s in self.subnets.values()
            if s.network_id == network_id and (name is None or s.name == name)
        ]

    def _create_subnet(self, spec: SubnetSpec) -> Subnet:
        self._hit("create subnet")
        subnet = Subnet(id=self._new_id("subnet"), name=spec.name, network_id=spec.network_id, cidr=spec.cidr)
        self.subnets[subnet.id] = subnet
        return copy.deepcopy(subnet)

    def _delete_subnet(self, subnet_id: str) -> None:
        self._hit("delete subnet")
        if subnet_id not in self.subnets:
            raise _not_found("subnet")
        if any(refs[0] == subnet_id for refs in self.lb_refs.values()):
            raise CloudAPIError("subnet in use by load balancer", status_code=409)
        del self.subnets[subnet_id]

    # -- security group -------------------------------------------------------

    def get_security_group(self, group_id: str) -> Optional[SecurityGroup]:
        self._hit("get security group")
        return copy.deepcopy(self.groups.get(group_id))

    def list_security_groups(self, name: str, network_id: str = "") -> List[SecurityGroup]:
        self._hit("list security groups")
        return [
            copy.deepcopy(g) for g in self.groups.values()
            if g.name == name and (not network_id or g.network_id == network_id)
        ]

    def _create_security_group(self, spec: SecurityGroupSpec) -> SecurityGroup:
        self._hit("create security group")
        group = SecurityGroup(id=self._new_id("sg"), name=spec.name, network_id=spec.network_id)
        self.groups[group.id] = group
        return copy.deepcopy(group)

    def _create_security_group_rule(self, group: SecurityGroup, rule: SecurityGroupRule) -> None:
        self._hit("create security group rule")
        self.groups[group.id].rules.append(copy.deepcopy(rule))

    def _delete_security_group(self, group_id: str) -> None:
        self._hit("delete security group")
        if group_id not in self.groups:
            raise _not_found("security group")
        if any(refs[1] == group_id for refs in self.lb_refs.values()):
            raise CloudAPIError("security group in use", status_code=409)
        del self.groups[group_id]

    # -- keypair --------------------------------------------------------------

    def get_keypair(self, name: str) -> Optional[Keypair]:
        self._hit("get keypair")
        return copy.deepcopy(self.keypairs.get(name))

    def _create_keypair(self, name: str, public_key: str, labels: Dict[str, str]) -> Keypair:
        self._hit("create keypair")
        if name in self.keypairs:
            raise CloudAPIError("keypair exists", status_code=409)
        self.keypairs[name] = Keypair(name=name, public_key=public_key, fingerprint="fp")
        return copy.deepcopy(self.keypairs[name])

    def _delete_keypair(self, name: str) -> None:
        self._hit("delete keypair")
        if name not in self.keypairs:
            raise _not_found("keypair")
        del self.keypairs[name]

    # -- load balancer --------------------------------------------------------

    def get_load_balancer(self, lb_id: str) -> Optional[LoadBalancer]:
        self._hit("get load balancer")
        return copy.deepcopy(self.lbs.get(lb_id))

    def list_load_balancers(
        self,
        name: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
    ) -> List[LoadBalancer]:
        self._hit("list load balancers")
        return [
            copy.deepcopy(lb) for lb in self.lbs.values()
            if (name is None or lb.name == name) and (not selector or selector.matches(lb.labels))
        ]

    def _create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer:
        self._hit("create load balancer")
        lb = LoadBalancer(id=self._new_id("lb"), name=spec.name, status="READY", labels=dict(spec.labels))
        self.lbs[lb.id] = lb
        self.lb_refs[lb.id] = (spec.subnet_id, spec.security_group_id)
        return copy.deepcopy(lb)

    def _delete_load_balancer(self, lb_id: str) -> None:
        self._hit("delete load balancer")
        if lb_id not in self.lbs:
            raise _not_found("load balancer")
        del self.lbs[lb_id]
        self.lb_refs.pop(lb_id, None)

    def add_load_balancer(self, name: str, labels: Dict[str, str]) -> LoadBalancer:
        """Seed a load balancer created outside the flow."""
        lb = LoadBalancer(id=self._new_id("lb"), name=name, labels=dict(labels))
        self.lbs[lb.id] = lb
        return lb


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_desired(**overrides) -> DesiredInfrastructure:
    values = dict(
        technical_id=TECHNICAL_ID,
        region="eu01",
        worker_cidr="10.250.0.0/16",
        dns_servers=["1.1.1.1"],
        ssh_public_key=SSH_KEY,
        pods_cidr="100.96.0.0/11",
        labels=build_labels("infraflow.io", TECHNICAL_ID),
    )
    values.update(overrides)
    return DesiredInfrastructure(**values)


@pytest.fixture
def desired() -> DesiredInfrastructure:
    return make_desired()


@pytest.fixture
def native() -> FakeInfraClient:
    return FakeInfraClient(Backend.NATIVE)


@pytest.fixture
def compat() -> FakeInfraClient:
    return FakeInfraClient(Backend.COMPATIBILITY)


@pytest.fixture
def flow_config(desired, native, compat):
    """Build a FlowConfig; every kind routes to native unless overridden."""

    def _build(routes=None, options=None, persisted=None, **desired_overrides):
        d = make_desired(**desired_overrides) if desired_overrides else desired
        return FlowConfig(
            desired=d,
            routes=routes or {k: Backend.NATIVE for k in CREATION_ORDER},
            clients={Backend.NATIVE: native, Backend.COMPATIBILITY: compat},
            options=options or FlowOptions(),
            persist=(persisted.append if persisted is not None else None),
        )

    return _build
