"""Cloud client facade and its two backends."""

from infraflow.cloud.compat import CompatClient, CompatContext
from infraflow.cloud.credentials import (
    CompatCredentials,
    CredentialSet,
    NativeCredentials,
    resolve_credentials,
)
from infraflow.cloud.facade import (
    EGRESS,
    INGRESS,
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
    find_existing,
)
from infraflow.cloud.factory import ClientFactory
from infraflow.cloud.labels import LabelSelector, build_labels, cluster_label_key
from infraflow.cloud.native import NativeClient

__all__ = [
    "ClientFactory",
    "CompatClient",
    "CompatContext",
    "CompatCredentials",
    "CredentialSet",
    "EGRESS",
    "INGRESS",
    "InfraClient",
    "Keypair",
    "LabelSelector",
    "LoadBalancer",
    "LoadBalancerSpec",
    "NativeClient",
    "NativeCredentials",
    "Network",
    "NetworkSpec",
    "SecurityGroup",
    "SecurityGroupRule",
    "SecurityGroupSpec",
    "Subnet",
    "SubnetSpec",
    "build_labels",
    "cluster_label_key",
    "find_existing",
    "resolve_credentials",
]
