"""Persisted reconciliation state."""

from infraflow.state.models import (
    CREATION_ORDER,
    DELETION_ORDER,
    Backend,
    InfrastructureState,
    ResourceKind,
    ResourceRecord,
    StepErrorRecord,
)
from infraflow.state.store import (
    FileOwnerStore,
    MemoryOwnerStore,
    OwnerStore,
    config_dir,
    decode_state,
    encode_state,
)

__all__ = [
    "Backend",
    "CREATION_ORDER",
    "DELETION_ORDER",
    "FileOwnerStore",
    "InfrastructureState",
    "MemoryOwnerStore",
    "OwnerStore",
    "ResourceKind",
    "ResourceRecord",
    "StepErrorRecord",
    "config_dir",
    "decode_state",
    "encode_state",
]
