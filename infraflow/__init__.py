"""Cluster infrastructure reconciliation flow.

Provisions and tears down the cloud networking resources a managed
Kubernetes cluster needs (network, subnet, security group, keypair, load
balancer) through a resumable, idempotent state machine that can drive two
backends side by side: the provider's native API and a legacy
EC2-compatible API.
"""

try:
    from importlib.metadata import version

    __version__ = version("cluster-infraflow")
except Exception:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]
