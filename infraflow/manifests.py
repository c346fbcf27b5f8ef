"""YAML manifests and secrets files used by the command line.

A manifest describes one owner::

    infrastructure:
      name: alpha
      namespace: garden-dev
      spec:
        region: eu01
        secret_ref: {name: cloudprovider, namespace: garden-dev}
        ssh_public_key: ssh-ed25519 AAAA... user@host
        provider_config:
          networks: {workers: 10.250.0.0/16}
    cluster:
      technical_id: shoot--dev--alpha
      annotations: {infraflow.io/use-native-infrastructure: "true"}
      pods_cidr: 100.96.0.0/11

A secrets file maps ``namespace/name`` to secret data::

    garden-dev/cloudprovider:
      project-id: 1d3f...
      serviceaccount.json: '{"token": "..."}'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from infraflow.api.models import Cluster, Infrastructure, SecretReference
from infraflow.errors import ConfigurationError


def _read_yaml(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as fh:
            return yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"cannot parse {path}: {exc}") from exc


def load_manifest(path: str | Path) -> Tuple[Infrastructure, Cluster]:
    """Load an ``infrastructure:`` / ``cluster:`` manifest."""
    p = Path(path)
    raw = _read_yaml(p)
    if not isinstance(raw, dict) or "infrastructure" not in raw or "cluster" not in raw:
        raise ConfigurationError(f"{p}: expected 'infrastructure' and 'cluster' sections")
    try:
        infra = Infrastructure.model_validate(raw["infrastructure"])
        cluster = Cluster.model_validate(raw["cluster"])
    except ValidationError as exc:
        raise ConfigurationError(f"{p}: {exc}") from exc
    return infra, cluster


class FileSecretResolver:
    """Resolves :class:`SecretReference` values from a YAML secrets file."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self._secrets: Dict[str, Dict[str, str]] = {}
        if path is not None:
            raw = _read_yaml(Path(path)) or {}
            if not isinstance(raw, dict):
                raise ConfigurationError(f"{path}: secrets file must be a mapping")
            for key, data in raw.items():
                if not isinstance(data, dict):
                    raise ConfigurationError(f"{path}: secret {key!r} must be a mapping")
                self._secrets[str(key)] = {str(k): str(v) for k, v in data.items()}

    def __call__(self, ref: SecretReference) -> Mapping[str, str]:
        return self._secrets.get(f"{ref.namespace}/{ref.name}", {})
