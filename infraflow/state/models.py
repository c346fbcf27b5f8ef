"""Persisted reconciliation progress.

Serialised as a JSON-compatible blob on the owner resource's status::

    {
      "backends_used": ["compatibility", "native"],
      "resources": {
        "network": {
          "external_id": "...",
          "backend": "native",
          "created_at": "2026-01-01T12:00:00Z",
          "name": "shoot--dev--alpha",
          "managed": true,
          "attributes": {"cidr": "10.250.0.0/16"}
        }
      },
      "last_step_error": null
    }

Presence of a ``resources`` entry is the only signal that a resource exists
and is owned by this reconciliation.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Backend(str, Enum):
    """Client implementation used to manage a resource."""

    NATIVE = "native"
    COMPATIBILITY = "compatibility"


class ResourceKind(str, Enum):
    """Logical resource categories, declared in creation order."""

    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_GROUP = "security-group"
    KEYPAIR = "keypair"
    LOAD_BALANCER = "load-balancer"


#: Creation order.  Deletion walks this list backwards.
CREATION_ORDER: List[ResourceKind] = list(ResourceKind)
DELETION_ORDER: List[ResourceKind] = list(reversed(CREATION_ORDER))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sorted_backends(values: List[Backend]) -> List[Backend]:
    return sorted(set(values), key=lambda b: b.value)


def _in_creation_order(
    resources: Dict[ResourceKind, ResourceRecord],
) -> Dict[ResourceKind, ResourceRecord]:
    return {k: resources[k] for k in CREATION_ORDER if k in resources}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class ResourceRecord(BaseModel):
    """An owned cloud resource.

    Attributes:
        external_id: Provider id (network id, security group id, keypair
            name, load balancer name/ARN).
        backend: Backend the resource was created with.  Deletion always
            routes here.
        created_at: When the create was confirmed.
        name: Deterministic name used for find-or-create.
        managed: ``False`` for user-supplied resources that must never be
            deleted remotely.
        attributes: Extra string facts (CIDR, egress IP, parent ids).
    """

    external_id: str
    backend: Backend
    created_at: datetime = Field(default_factory=_utcnow)
    name: str = ""
    managed: bool = True
    attributes: Dict[str, str] = Field(default_factory=dict)


class StepErrorRecord(BaseModel):
    """The most recent step failure, kept for status reporting."""

    kind: ResourceKind
    backend: Optional[Backend] = None
    message: str = ""
    codes: List[str] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# InfrastructureState
# ---------------------------------------------------------------------------


class InfrastructureState(BaseModel):
    """Reconciliation progress for one cluster."""

    backends_used: List[Backend] = Field(default_factory=list)
    resources: Dict[ResourceKind, ResourceRecord] = Field(default_factory=dict)
    last_step_error: Optional[StepErrorRecord] = None

    @field_validator("backends_used")
    @classmethod
    def _dedupe_backends(cls, value: List[Backend]) -> List[Backend]:
        return _sorted_backends(value)

    @field_validator("resources")
    @classmethod
    def _order_resources(
        cls, value: Dict[ResourceKind, ResourceRecord],
    ) -> Dict[ResourceKind, ResourceRecord]:
        return _in_creation_order(value)

    # -- queries --------------------------------------------------------------

    def has(self, kind: ResourceKind) -> bool:
        return kind in self.resources

    def get(self, kind: ResourceKind) -> Optional[ResourceRecord]:
        return self.resources.get(kind)

    def backend_for(self, kind: ResourceKind) -> Optional[Backend]:
        rec = self.resources.get(kind)
        return rec.backend if rec else None

    def external_id(self, kind: ResourceKind) -> str:
        rec = self.resources.get(kind)
        return rec.external_id if rec else ""

    @property
    def is_empty(self) -> bool:
        return not self.resources

    # -- mutations ------------------------------------------------------------

    def record(self, kind: ResourceKind, rec: ResourceRecord) -> None:
        """Register a confirmed resource.  ``backends_used`` only grows."""
        resources = dict(self.resources)
        resources[kind] = rec
        self.resources = _in_creation_order(resources)
        if rec.backend not in self.backends_used:
            self.backends_used = _sorted_backends([*self.backends_used, rec.backend])

    def remove(self, kind: ResourceKind) -> None:
        """Forget a resource whose deletion (or absence) was confirmed."""
        self.resources.pop(kind, None)

    def set_error(
        self,
        kind: ResourceKind,
        backend: Optional[Backend],
        message: str,
        codes: Optional[List[str]] = None,
    ) -> None:
        self.last_step_error = StepErrorRecord(
            kind=kind, backend=backend, message=message, codes=list(codes or []),
        )

    def clear_error(self, kind: Optional[ResourceKind] = None) -> None:
        """Clear the recorded error (only if it belongs to *kind*, when given)."""
        if self.last_step_error is None:
            return
        if kind is None or self.last_step_error.kind == kind:
            self.last_step_error = None

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(
            self.model_dump(mode="json"),
            indent=indent,
            sort_keys=True,
        )
