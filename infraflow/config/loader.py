"""Operator configuration loading.

Precedence (highest first):

1. Environment variables
   (``INFRAFLOW_FEATURE_GATES``, ``INFRAFLOW_LABEL_DOMAIN``,
   ``INFRAFLOW_MAX_CONCURRENT_RECONCILES``)
2. YAML file passed to :func:`load_config`
3. Model defaults
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from infraflow.config.models import OperatorConfig, parse_bool
from infraflow.errors import ConfigurationError

ENV_FEATURE_GATES = "INFRAFLOW_FEATURE_GATES"
ENV_LABEL_DOMAIN = "INFRAFLOW_LABEL_DOMAIN"
ENV_MAX_CONCURRENT_RECONCILES = "INFRAFLOW_MAX_CONCURRENT_RECONCILES"

#: Gate names accepted on the command line / environment.
GATE_NAMES: Dict[str, str] = {
    "UseNativeInfrastructure": "use_native_infrastructure",
    "EnsureLoadBalancerDeletion": "ensure_load_balancer_deletion",
}


def parse_feature_gates(spec: str) -> Dict[str, bool]:
    """Parse ``Gate=true,Other=false`` into ``{field_name: bool}``.

    Raises :class:`ConfigurationError` for unknown gates or bad values.
    """
    gates: Dict[str, bool] = {}
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, raw = item.partition("=")
        name = name.strip()
        if not sep or name not in GATE_NAMES:
            raise ConfigurationError(f"unknown or malformed feature gate {item!r}")
        value = parse_bool(raw.strip())
        if value is None:
            raise ConfigurationError(f"invalid value for feature gate {name!r}: {raw!r}")
        gates[GATE_NAMES[name]] = value
    return gates


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    gates = env.get(ENV_FEATURE_GATES, "")
    if gates:
        overrides["feature_gates"] = parse_feature_gates(gates)
    domain = env.get(ENV_LABEL_DOMAIN, "")
    if domain:
        overrides["custom_label_domain"] = domain
    workers = env.get(ENV_MAX_CONCURRENT_RECONCILES, "")
    if workers:
        overrides["max_concurrent_reconciles"] = workers
    return overrides


def load_config(
    path: Optional[str | Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> OperatorConfig:
    """Load the operator configuration.

    A missing *path* (or a file that does not exist) yields the defaults.
    Raises :class:`ConfigurationError` when the file or an override is
    invalid.
    """
    raw: Dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                with open(p, encoding="utf-8") as fh:
                    raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"cannot parse config {p}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ConfigurationError(f"config {p} must be a mapping")

    overrides = _env_overrides(os.environ if env is None else env)
    gate_overrides = overrides.pop("feature_gates", {})
    raw.update(overrides)
    if gate_overrides:
        gates = dict(raw.get("feature_gates") or {})
        gates.update(gate_overrides)
        raw["feature_gates"] = gates

    try:
        return OperatorConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid operator config: {exc}") from exc
