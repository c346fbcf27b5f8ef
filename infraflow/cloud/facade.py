"""Backend-agnostic client facade.

:class:`InfraClient` declares the primitives a backend must implement
(get/list/create/delete per resource kind) and builds the capability set
the steps use on top of them:

* ``find_*``    id lookup first, then name lookup; more than one name match
                is a :class:`MultipleMatchesError`.
* ``ensure_*``  find-or-create.  A conflict on create means someone else
                created it first, so the resource is looked up again.
* ``delete_*``  idempotent; a resource that is already gone is success.

Both backends go through the same templates, so the steps never see which
one they are talking to.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from infraflow.cloud.labels import LabelSelector
from infraflow.errors import CloudAPIError, MultipleMatchesError
from infraflow.state.models import Backend

logger = logging.getLogger(__name__)

T = TypeVar("T")

INGRESS = "ingress"
EGRESS = "egress"
ANY_IPV4 = "0.0.0.0/0"


# ---------------------------------------------------------------------------
# Resource views
# ---------------------------------------------------------------------------


@dataclass
class Network:
    id: str
    name: str = ""
    cidr: str = ""
    nameservers: List[str] = field(default_factory=list)
    egress_ip: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Subnet:
    id: str
    name: str = ""
    network_id: str = ""
    cidr: str = ""


@dataclass
class SecurityGroupRule:
    """A single rule.  ``protocol=None`` means all protocols."""

    direction: str
    ethertype: str = "IPv4"
    protocol: Optional[str] = None
    port_min: Optional[int] = None
    port_max: Optional[int] = None
    ip_range: Optional[str] = None
    remote_group_id: Optional[str] = None
    description: str = ""

    def key(self) -> tuple:
        """Identity used to match desired against existing rules."""
        ip_range = self.ip_range
        if ip_range is None and self.remote_group_id is None:
            ip_range = ANY_IPV4
        return (
            self.direction,
            self.ethertype,
            (self.protocol or "").lower() or None,
            self.port_min,
            self.port_max,
            ip_range,
            self.remote_group_id,
        )


@dataclass
class SecurityGroup:
    id: str
    name: str = ""
    network_id: str = ""
    rules: List[SecurityGroupRule] = field(default_factory=list)


@dataclass
class Keypair:
    name: str
    public_key: str = ""
    fingerprint: str = ""


@dataclass
class LoadBalancer:
    id: str
    name: str = ""
    status: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Create requests
# ---------------------------------------------------------------------------


@dataclass
class NetworkSpec:
    name: str
    cidr: str
    nameservers: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class SubnetSpec:
    name: str
    network_id: str
    cidr: str
    nameservers: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class SecurityGroupSpec:
    name: str
    network_id: str = ""
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoadBalancerSpec:
    name: str
    network_id: str
    subnet_id: str
    security_group_id: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def find_existing(
    kind: str,
    id_hint: Optional[str],
    name: str,
    get_by_id: Callable[[str], Optional[T]],
    list_by_name: Callable[[str], List[T]],
) -> Optional[T]:
    """Look a resource up by id, then by name.

    Returns ``None`` when nothing matches.  Raises
    :class:`MultipleMatchesError` when the name is ambiguous.
    """
    if id_hint:
        found = get_by_id(id_hint)
        if found is not None:
            return found
    if not name:
        return None
    matches = list_by_name(name)
    if len(matches) > 1:
        raise MultipleMatchesError(f"found {len(matches)} {kind}s named {name!r}")
    return matches[0] if matches else None


def same_public_key(a: str, b: str) -> bool:
    """Compare OpenSSH public keys by type and key material, ignoring comments."""
    return a.split()[:2] == b.split()[:2]


# ---------------------------------------------------------------------------
# InfraClient
# ---------------------------------------------------------------------------


class InfraClient(ABC):
    """One backend's view of the cloud."""

    backend: Backend

    def __init__(self, default_timeout: float = 90.0) -> None:
        self.default_timeout = default_timeout
        self._timeout: Optional[float] = None

    @property
    def timeout(self) -> float:
        """Timeout applied to the next remote call."""
        return self._timeout if self._timeout is not None else self.default_timeout

    @contextmanager
    def call_timeout(self, seconds: Optional[float]) -> Iterator[None]:
        """Bound every remote call made inside the block by *seconds*."""
        previous = self._timeout
        if seconds is not None:
            self._timeout = max(seconds, 0.001)
        try:
            yield
        finally:
            self._timeout = previous

    # -- primitives -----------------------------------------------------------

    @abstractmethod
    def get_network(self, network_id: str) -> Optional[Network]: ...

    @abstractmethod
    def list_networks(self, name: str) -> List[Network]: ...

    @abstractmethod
    def _create_network(self, spec: NetworkSpec) -> Network: ...

    @abstractmethod
    def _delete_network(self, network_id: str) -> None: ...

    @abstractmethod
    def get_subnet(self, subnet_id: str) -> Optional[Subnet]: ...

    @abstractmethod
    def list_subnets(self, network_id: str, name: Optional[str] = None) -> List[Subnet]: ...

    @abstractmethod
    def _create_subnet(self, spec: SubnetSpec) -> Subnet: ...

    @abstractmethod
    def _delete_subnet(self, subnet_id: str) -> None: ...

    @abstractmethod
    def get_security_group(self, group_id: str) -> Optional[SecurityGroup]: ...

    @abstractmethod
    def list_security_groups(self, name: str, network_id: str = "") -> List[SecurityGroup]: ...

    @abstractmethod
    def _create_security_group(self, spec: SecurityGroupSpec) -> SecurityGroup: ...

    @abstractmethod
    def _create_security_group_rule(self, group: SecurityGroup, rule: SecurityGroupRule) -> None: ...

    @abstractmethod
    def _delete_security_group(self, group_id: str) -> None: ...

    @abstractmethod
    def get_keypair(self, name: str) -> Optional[Keypair]: ...

    @abstractmethod
    def _create_keypair(self, name: str, public_key: str, labels: Dict[str, str]) -> Keypair: ...

    @abstractmethod
    def _delete_keypair(self, name: str) -> None: ...

    @abstractmethod
    def get_load_balancer(self, lb_id: str) -> Optional[LoadBalancer]: ...

    @abstractmethod
    def list_load_balancers(
        self,
        name: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
    ) -> List[LoadBalancer]: ...

    @abstractmethod
    def _create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer: ...

    @abstractmethod
    def _delete_load_balancer(self, lb_id: str) -> None: ...

    # -- shared templates -----------------------------------------------------

    def _ensure(
        self,
        kind: str,
        find: Callable[[], Optional[T]],
        create: Callable[[], T],
    ) -> T:
        existing = find()
        if existing is not None:
            logger.debug("%s %s: found existing", self.backend.value, kind)
            return existing
        try:
            created = create()
        except CloudAPIError as exc:
            if not exc.conflict:
                raise
            existing = find()
            if existing is None:
                raise
            logger.info("%s %s: created concurrently, adopting", self.backend.value, kind)
            return existing
        logger.info("%s %s: created", self.backend.value, kind)
        return created

    def _delete(self, kind: str, external_id: str, delete: Callable[[str], None]) -> bool:
        """Run *delete*; returns ``False`` if the resource was already gone."""
        try:
            delete(external_id)
        except CloudAPIError as exc:
            if exc.not_found:
                logger.debug("%s %s %s already deleted", self.backend.value, kind, external_id)
                return False
            raise
        logger.info("%s %s %s deleted", self.backend.value, kind, external_id)
        return True

    # -- network --------------------------------------------------------------

    def find_network(self, name: str, id_hint: Optional[str] = None) -> Optional[Network]:
        return find_existing("network", id_hint, name, self.get_network, self.list_networks)

    def ensure_network(self, spec: NetworkSpec) -> Network:
        return self._ensure(
            "network",
            lambda: self.find_network(spec.name),
            lambda: self._create_network(spec),
        )

    def delete_network(self, network_id: str) -> bool:
        return self._delete("network", network_id, self._delete_network)

    # -- subnet ---------------------------------------------------------------

    def find_subnet(
        self, network_id: str, name: str, id_hint: Optional[str] = None,
    ) -> Optional[Subnet]:
        return find_existing(
            "subnet", id_hint, name, self.get_subnet,
            lambda n: self.list_subnets(network_id, n),
        )

    def ensure_subnet(self, spec: SubnetSpec) -> Subnet:
        return self._ensure(
            "subnet",
            lambda: self.find_subnet(spec.network_id, spec.name),
            lambda: self._create_subnet(spec),
        )

    def delete_subnet(self, subnet_id: str) -> bool:
        return self._delete("subnet", subnet_id, self._delete_subnet)

    # -- security group -------------------------------------------------------

    def find_security_group(
        self, name: str, network_id: str = "", id_hint: Optional[str] = None,
    ) -> Optional[SecurityGroup]:
        return find_existing(
            "security group", id_hint, name, self.get_security_group,
            lambda n: self.list_security_groups(n, network_id),
        )

    def ensure_security_group(self, spec: SecurityGroupSpec) -> SecurityGroup:
        return self._ensure(
            "security group",
            lambda: self.find_security_group(spec.name, spec.network_id),
            lambda: self._create_security_group(spec),
        )

    def ensure_security_group_rules(
        self, group: SecurityGroup, rules: List[SecurityGroupRule],
    ) -> int:
        """Add every desired rule that *group* lacks.  Returns the number added.

        Existing rules that are not desired are left in place.
        """
        existing = {r.key() for r in group.rules}
        added = 0
        for rule in rules:
            if rule.key() in existing:
                continue
            try:
                self._create_security_group_rule(group, rule)
            except CloudAPIError as exc:
                if not exc.conflict:
                    raise
                logger.debug("rule %s already present on %s", rule.description, group.id)
                continue
            existing.add(rule.key())
            group.rules.append(rule)
            added += 1
        if added:
            logger.info("%s security group %s: added %d rule(s)", self.backend.value, group.id, added)
        return added

    def delete_security_group(self, group_id: str) -> bool:
        return self._delete("security group", group_id, self._delete_security_group)

    # -- keypair --------------------------------------------------------------

    def find_keypair(self, name: str) -> Optional[Keypair]:
        return self.get_keypair(name)

    def ensure_keypair(
        self, name: str, public_key: str, labels: Optional[Dict[str, str]] = None,
    ) -> Keypair:
        """Find-or-create a keypair; a keypair with a different key is replaced."""
        existing = self.get_keypair(name)
        if existing is not None:
            if not existing.public_key or same_public_key(existing.public_key, public_key):
                return existing
            logger.info("%s keypair %s: public key changed, replacing", self.backend.value, name)
            self.delete_keypair(name)
        return self._ensure(
            "keypair",
            lambda: self.get_keypair(name),
            lambda: self._create_keypair(name, public_key, dict(labels or {})),
        )

    def delete_keypair(self, name: str) -> bool:
        return self._delete("keypair", name, self._delete_keypair)

    # -- load balancer --------------------------------------------------------

    def find_load_balancer(self, name: str, id_hint: Optional[str] = None) -> Optional[LoadBalancer]:
        return find_existing(
            "load balancer", id_hint, name, self.get_load_balancer,
            lambda n: self.list_load_balancers(name=n),
        )

    def ensure_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer:
        return self._ensure(
            "load balancer",
            lambda: self.find_load_balancer(spec.name),
            lambda: self._create_load_balancer(spec),
        )

    def delete_load_balancer(self, lb_id: str) -> bool:
        return self._delete("load balancer", lb_id, self._delete_load_balancer)
