"""Construct backend clients from resolved credentials."""

from __future__ import annotations

import logging

from infraflow.cloud.compat import CompatClient
from infraflow.cloud.credentials import CredentialSet
from infraflow.cloud.facade import InfraClient
from infraflow.cloud.native import NativeClient
from infraflow.config.models import OperatorConfig
from infraflow.errors import ConfigurationError
from infraflow.state.models import Backend

logger = logging.getLogger(__name__)


class ClientFactory:
    """Builds one :class:`InfraClient` per backend for a reconciliation pass."""

    def __init__(self, config: OperatorConfig) -> None:
        self.config = config

    def create(self, backend: Backend, credentials: CredentialSet, region: str) -> InfraClient:
        timeout = self.config.step_timeout_seconds
        if backend is Backend.NATIVE:
            if credentials.native is None:
                raise ConfigurationError("native backend selected but no native credentials available")
            logger.debug("Creating native client for region %s", region)
            return NativeClient(
                credentials.native,
                region,
                endpoint=credentials.native.endpoint or self.config.native_endpoint,
                default_timeout=timeout,
            )
        if credentials.compat is None:
            raise ConfigurationError(
                "compatibility backend selected but no compatibility credentials available"
            )
        logger.debug("Creating compatibility client for region %s", region)
        return CompatClient.from_credentials(
            credentials.compat,
            region,
            endpoint=self.config.compat_endpoint,
            default_timeout=timeout,
        )
