"""Operator configuration loading and models."""

from infraflow.config.loader import (
    ENV_FEATURE_GATES,
    ENV_LABEL_DOMAIN,
    ENV_MAX_CONCURRENT_RECONCILES,
    GATE_NAMES,
    load_config,
    parse_feature_gates,
)
from infraflow.config.models import (
    ANNOTATION_USE_NATIVE_INFRASTRUCTURE,
    FeatureGates,
    OperatorConfig,
    parse_bool,
)

__all__ = [
    "ANNOTATION_USE_NATIVE_INFRASTRUCTURE",
    "ENV_FEATURE_GATES",
    "ENV_LABEL_DOMAIN",
    "ENV_MAX_CONCURRENT_RECONCILES",
    "FeatureGates",
    "GATE_NAMES",
    "OperatorConfig",
    "load_config",
    "parse_bool",
    "parse_feature_gates",
]
