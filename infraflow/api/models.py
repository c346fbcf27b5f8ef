"""Owner resource and cluster models.

The hosting framework persists an :class:`Infrastructure` per cluster; the
flow reads its spec, keeps its progress blob in ``status.state`` and reports
a human-facing :class:`InfrastructureStatus` next to it.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from infraflow.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Desired configuration (provider config of the Infrastructure)
# ---------------------------------------------------------------------------


class NetworksConfig(BaseModel):
    """Network layout requested for the cluster.

    Attributes:
        workers: CIDR for the worker nodes' subnet.
        id: Pre-existing network to use instead of creating one.  Such a
            network is never deleted.
        dns_servers: Overrides the operator-wide default nameservers.
    """

    workers: str = "10.250.0.0/16"
    id: Optional[str] = None
    dns_servers: Optional[List[str]] = None


class LoadBalancerConfig(BaseModel):
    """Whether an internal load balancer is provisioned for the cluster."""

    enabled: bool = True


class InfrastructureConfig(BaseModel):
    networks: NetworksConfig = Field(default_factory=NetworksConfig)
    load_balancer: LoadBalancerConfig = Field(default_factory=LoadBalancerConfig)


class SecretReference(BaseModel):
    name: str
    namespace: str = "default"


class InfrastructureSpec(BaseModel):
    region: str = ""
    secret_ref: SecretReference
    ssh_public_key: str = ""
    provider_config: InfrastructureConfig = Field(default_factory=InfrastructureConfig)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class InfrastructureStatus(BaseModel):
    """Human-facing summary of the provisioned infrastructure."""

    phase: str = "Pending"
    network_id: str = ""
    network_name: str = ""
    subnet_id: str = ""
    security_group_id: str = ""
    security_group_name: str = ""
    keypair_name: str = ""
    load_balancer_id: str = ""
    egress_ips: List[str] = Field(default_factory=list)
    backends: List[str] = Field(default_factory=list)
    last_error: str = ""
    error_codes: List[str] = Field(default_factory=list)
    observed_at: Optional[datetime] = None


class OwnerStatus(BaseModel):
    state: Optional[Dict[str, Any]] = None
    provider_status: Optional[InfrastructureStatus] = None


class Infrastructure(BaseModel):
    """The owner resource of one cluster's infrastructure."""

    name: str
    namespace: str = "default"
    spec: InfrastructureSpec
    status: OwnerStatus = Field(default_factory=OwnerStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


class Cluster(BaseModel):
    """The slice of the cluster resource the flow needs.

    Attributes:
        technical_id: Stable, unique cluster id.  Used as the deterministic
            name of every created resource.
        annotations: Cluster annotations (per-cluster backend override).
        region: Cloud region; the Infrastructure spec's region wins if set.
        pods_cidr: Pod network, opened in the security group when set.
    """

    technical_id: str
    annotations: Dict[str, str] = Field(default_factory=dict)
    region: str = ""
    pods_cidr: Optional[str] = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_cidr(value: str, field: str) -> None:
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as exc:
        raise ConfigurationError(f"{field}: invalid CIDR {value!r}: {exc}") from exc


def validate_deletion(infra: Infrastructure, cluster: Cluster) -> None:
    """Check only what a delete pass needs to route and build clients."""
    if not cluster.technical_id:
        raise ConfigurationError("cluster technical id must not be empty")
    if not (infra.spec.region or cluster.region):
        raise ConfigurationError("region must be set on the infrastructure or the cluster")


def validate_infrastructure(infra: Infrastructure, cluster: Cluster) -> None:
    """Reject desired specs that can never reconcile.

    Raises :class:`ConfigurationError`.
    """
    validate_deletion(infra, cluster)

    networks = infra.spec.provider_config.networks
    if networks.id is None:
        _check_cidr(networks.workers, "networks.workers")
    elif not networks.id.strip():
        raise ConfigurationError("networks.id must not be blank")
    if cluster.pods_cidr:
        _check_cidr(cluster.pods_cidr, "cluster.pods_cidr")
    if networks.dns_servers is not None:
        for server in networks.dns_servers:
            try:
                ipaddress.ip_address(server)
            except ValueError as exc:
                raise ConfigurationError(
                    f"networks.dns_servers: invalid address {server!r}"
                ) from exc
