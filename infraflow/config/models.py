"""Pydantic models for the operator configuration.

Structure of the YAML file::

    feature_gates:
      use_native_infrastructure: true
      ensure_load_balancer_deletion: true
    custom_label_domain: infraflow.io
    max_concurrent_reconciles: 10
    step_timeout_seconds: 90
    continue_on_independent_failure: false
    recover_orphans_on_delete: true
    default_dns_servers: ["1.1.1.1"]
    native_endpoint: https://iaas.api.example.cloud
    compat_endpoint: https://ec2.api.example.cloud

Feature gates are plain values handed to the flow for each pass; nothing
reads them from process-wide state.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

#: Annotation that overrides ``use_native_infrastructure`` for one cluster.
ANNOTATION_USE_NATIVE_INFRASTRUCTURE = "infraflow.io/use-native-infrastructure"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def parse_bool(value: str) -> Optional[bool]:
    """Parse a boolean the way annotations are parsed; ``None`` if invalid."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


class FeatureGates(BaseModel):
    """Operator-wide feature switches.

    Attributes:
        use_native_infrastructure: Default backend for resource kinds that
            have not been created yet.  ``True`` selects the native API.
        ensure_load_balancer_deletion: On delete, also remove load balancers
            labelled with the cluster id that are not recorded in state.
    """

    use_native_infrastructure: bool = True
    ensure_load_balancer_deletion: bool = True


class OperatorConfig(BaseModel):
    feature_gates: FeatureGates = Field(default_factory=FeatureGates)
    custom_label_domain: str = "infraflow.io"
    max_concurrent_reconciles: int = 10
    step_timeout_seconds: float = 90.0
    continue_on_independent_failure: bool = False
    recover_orphans_on_delete: bool = True
    default_dns_servers: List[str] = Field(default_factory=list)
    native_endpoint: str = ""
    compat_endpoint: str = ""

    @field_validator("max_concurrent_reconciles")
    @classmethod
    def _positive_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrent_reconciles must be >= 1")
        return value

    @field_validator("step_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("step_timeout_seconds must be > 0")
        return value

    @field_validator("custom_label_domain")
    @classmethod
    def _strip_domain(cls, value: str) -> str:
        value = value.strip().strip("/")
        if not value:
            raise ValueError("custom_label_domain must not be empty")
        return value
