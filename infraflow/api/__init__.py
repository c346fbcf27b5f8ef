"""Owner resource and cluster models."""

from infraflow.api.models import (
    Cluster,
    Infrastructure,
    InfrastructureConfig,
    InfrastructureSpec,
    InfrastructureStatus,
    LoadBalancerConfig,
    NetworksConfig,
    OwnerStatus,
    SecretReference,
    validate_deletion,
    validate_infrastructure,
)

__all__ = [
    "Cluster",
    "Infrastructure",
    "InfrastructureConfig",
    "InfrastructureSpec",
    "InfrastructureStatus",
    "LoadBalancerConfig",
    "NetworksConfig",
    "OwnerStatus",
    "SecretReference",
    "validate_deletion",
    "validate_infrastructure",
]
