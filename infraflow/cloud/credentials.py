"""Backend credentials read from the cluster's cloud-provider secret.

Both credential sets are resolved opportunistically: a secret that only
carries one of them simply leaves the other backend unavailable.  Whether
that matters is decided later by the backend selector.

Native keys::

    project-id            project the resources live in
    serviceaccount.json   service account key; either a JSON document with a
                          "token" field or the bare token
    endpoint              optional API endpoint override

Compatibility keys::

    accessKeyID           EC2-style access key
    secretAccessKey       EC2-style secret key
    compatEndpoint        optional EC2 endpoint override
    compatElbEndpoint     optional ELBv2 endpoint override
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from infraflow.errors import ConfigurationError
from infraflow.state.models import Backend

logger = logging.getLogger(__name__)

NATIVE_PROJECT_ID = "project-id"
NATIVE_SA_KEY_JSON = "serviceaccount.json"
NATIVE_ENDPOINT = "endpoint"

COMPAT_ACCESS_KEY_ID = "accessKeyID"
COMPAT_SECRET_ACCESS_KEY = "secretAccessKey"
COMPAT_ENDPOINT = "compatEndpoint"
COMPAT_ELB_ENDPOINT = "compatElbEndpoint"


@dataclass(frozen=True)
class NativeCredentials:
    project_id: str
    token: str = field(repr=False)
    endpoint: str = ""


@dataclass(frozen=True)
class CompatCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    endpoint: str = ""
    elb_endpoint: str = ""


@dataclass(frozen=True)
class CredentialSet:
    """Whatever credentials the secret provided."""

    native: Optional[NativeCredentials] = None
    compat: Optional[CompatCredentials] = None

    def available(self, backend: Backend) -> bool:
        if backend is Backend.NATIVE:
            return self.native is not None
        return self.compat is not None


def _value(data: Mapping[str, str], key: str, required: bool) -> str:
    value = data.get(key)
    if value:
        return str(value).strip()
    if required:
        raise ConfigurationError(f"missing field in secret: {key}")
    return ""


def _token_from_key(raw: str) -> str:
    try:
        doc = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(doc, dict):
        token = doc.get("token") or doc.get("access_token") or ""
        if not token:
            raise ConfigurationError(f"{NATIVE_SA_KEY_JSON} does not contain a token")
        return str(token)
    return raw


def read_native_credentials(
    data: Mapping[str, str], *, required: bool = False,
) -> Optional[NativeCredentials]:
    """Read native credentials; ``None`` if absent and not *required*."""
    if not required and not data.get(NATIVE_PROJECT_ID) and not data.get(NATIVE_SA_KEY_JSON):
        return None
    return NativeCredentials(
        project_id=_value(data, NATIVE_PROJECT_ID, True),
        token=_token_from_key(_value(data, NATIVE_SA_KEY_JSON, True)),
        endpoint=_value(data, NATIVE_ENDPOINT, False),
    )


def read_compat_credentials(
    data: Mapping[str, str], *, required: bool = False,
) -> Optional[CompatCredentials]:
    """Read compatibility credentials; ``None`` if absent and not *required*."""
    if not required and not data.get(COMPAT_ACCESS_KEY_ID) and not data.get(COMPAT_SECRET_ACCESS_KEY):
        return None
    return CompatCredentials(
        access_key_id=_value(data, COMPAT_ACCESS_KEY_ID, True),
        secret_access_key=_value(data, COMPAT_SECRET_ACCESS_KEY, True),
        endpoint=_value(data, COMPAT_ENDPOINT, False),
        elb_endpoint=_value(data, COMPAT_ELB_ENDPOINT, False),
    )


def resolve_credentials(data: Optional[Mapping[str, str]]) -> CredentialSet:
    """Resolve both credential sets from secret *data*.

    A half-filled set (e.g. a project id without a key) is reported and
    treated as unavailable rather than failing the whole pass.
    """
    data = data or {}
    native: Optional[NativeCredentials] = None
    compat: Optional[CompatCredentials] = None
    try:
        native = read_native_credentials(data)
    except ConfigurationError as exc:
        logger.warning("Native credentials unusable: %s", exc)
    try:
        compat = read_compat_credentials(data)
    except ConfigurationError as exc:
        logger.warning("Compatibility credentials unusable: %s", exc)
    logger.debug(
        "Credentials resolved: native=%s compatibility=%s",
        native is not None, compat is not None,
    )
    return CredentialSet(native=native, compat=compat)
