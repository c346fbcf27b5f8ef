"""Encoding of :class:`InfrastructureState` and owner-status persistence.

The state is stored as an opaque JSON-compatible blob in the owner's
``status.state``.  An absent or empty blob decodes to "no progress yet".

:class:`FileOwnerStore` writes owner status to
``$XDG_CONFIG_HOME/infraflow/owners/<namespace>_<name>.json`` with sorted
keys for deterministic, diff-friendly output.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from pydantic import ValidationError

from infraflow.api.models import Infrastructure, InfrastructureStatus, OwnerStatus
from infraflow.errors import ConfigurationError
from infraflow.state.models import InfrastructureState

logger = logging.getLogger(__name__)

_APP_DIR = "infraflow"


# ---------------------------------------------------------------------------
# Blob codec
# ---------------------------------------------------------------------------


def decode_state(blob: Union[None, str, bytes, Dict[str, Any]]) -> InfrastructureState:
    """Decode a persisted blob.  ``None``, ``""`` and ``{}`` mean no progress.

    Raises :class:`ConfigurationError` if the blob cannot be parsed; retrying
    would not make it readable.
    """
    if not blob:
        return InfrastructureState()
    try:
        if isinstance(blob, (str, bytes)):
            return InfrastructureState.model_validate_json(blob)
        return InfrastructureState.model_validate(blob)
    except ValidationError as exc:
        raise ConfigurationError(f"persisted infrastructure state is unreadable: {exc}") from exc


def encode_state(state: InfrastructureState) -> Dict[str, Any]:
    """Return a JSON-compatible dict with sorted keys."""
    return json.loads(state.to_sorted_json())


# ---------------------------------------------------------------------------
# Owner stores
# ---------------------------------------------------------------------------


class OwnerStore(Protocol):
    """Writes an owner's state blob and status back to where it lives."""

    def persist(
        self,
        infra: Infrastructure,
        state: Optional[Dict[str, Any]],
        status: Optional[InfrastructureStatus] = None,
    ) -> None:
        ...


def _apply(
    infra: Infrastructure,
    state: Optional[Dict[str, Any]],
    status: Optional[InfrastructureStatus],
) -> None:
    infra.status.state = state
    if status is not None:
        infra.status.provider_status = status


class MemoryOwnerStore:
    """Keeps owner status in memory, keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status: Dict[str, OwnerStatus] = {}
        self.writes = 0

    def persist(
        self,
        infra: Infrastructure,
        state: Optional[Dict[str, Any]],
        status: Optional[InfrastructureStatus] = None,
    ) -> None:
        _apply(infra, state, status)
        with self._lock:
            self._status[infra.key] = infra.status.model_copy(deep=True)
            self.writes += 1

    def get(self, key: str) -> Optional[OwnerStatus]:
        with self._lock:
            status = self._status.get(key)
            return status.model_copy(deep=True) if status else None


def config_dir() -> Path:
    """Return the XDG config directory for infraflow.

    Uses ``XDG_CONFIG_HOME`` if set, otherwise ``~/.config``.
    Creates the directory if it does not exist.
    """
    base = os.environ.get("XDG_CONFIG_HOME", "")
    if not base:
        base = str(Path.home() / ".config")
    path = Path(base) / _APP_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def _safe_name(name: Optional[str]) -> str:
    """Sanitise a resource name for use in a filename."""
    if not name:
        return "unknown"
    return "".join(c if (c.isalnum() or c in "-_") else "_" for c in name)


class FileOwnerStore:
    """Persists owner status as JSON files under :func:`config_dir`."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        path = self._directory or (config_dir() / "owners")
        path.mkdir(parents=True, exist_ok=True)
        return path

    def path_for(self, infra: Infrastructure) -> Path:
        return self.directory / f"{_safe_name(infra.namespace)}_{_safe_name(infra.name)}.json"

    def persist(
        self,
        infra: Infrastructure,
        state: Optional[Dict[str, Any]],
        status: Optional[InfrastructureStatus] = None,
    ) -> None:
        _apply(infra, state, status)
        dest = self.path_for(infra)
        payload = json.dumps(
            infra.status.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        tmp = dest.with_suffix(".json.tmp")
        tmp.write_text(payload + "\n", encoding="utf-8")
        tmp.replace(dest)
        logger.debug("Owner status for %s written to %s", infra.key, dest)

    def load(self, infra: Infrastructure) -> Infrastructure:
        """Fill *infra.status* from disk, if a file exists."""
        path = self.path_for(infra)
        if path.is_file():
            infra.status = OwnerStatus.model_validate_json(path.read_text(encoding="utf-8"))
        return infra
