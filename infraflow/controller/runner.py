"""Concurrent reconciliation of many owners.

Owners are processed on a bounded :class:`ThreadPoolExecutor`.  Two passes
for the same owner key never overlap: a request that arrives while one is
running is queued and run once the current pass finishes.  Several queued
requests for the same key collapse into the most recent one.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_all
from typing import Dict, Iterable, Optional, Tuple

from infraflow.api.models import Cluster, Infrastructure
from infraflow.controller.actuator import Actuator
from infraflow.errors import InfraFlowError
from infraflow.flow.context import ReconcileContext

logger = logging.getLogger(__name__)

OPERATIONS = ("reconcile", "delete", "force_delete", "migrate", "restore")

_Request = Tuple[str, Infrastructure, Cluster, Optional[ReconcileContext]]


class ReconcileRunner:
    """Runs actuator passes concurrently, one at a time per owner."""

    def __init__(self, actuator: Actuator, max_workers: int = 10) -> None:
        self.actuator = actuator
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="infraflow")
        self._lock = threading.Lock()
        self._running: set = set()
        self._queued: Dict[str, _Request] = {}
        self._followups: Dict[str, Future] = {}

    def __enter__(self) -> "ReconcileRunner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # -- submission -----------------------------------------------------------

    def submit(
        self,
        operation: str,
        infra: Infrastructure,
        cluster: Cluster,
        ctx: Optional[ReconcileContext] = None,
    ) -> Future:
        """Schedule *operation* for *infra*.

        The future resolves to ``None`` on success or to the
        :class:`InfraFlowError` the pass ended with.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"unknown operation {operation!r}")
        request: _Request = (operation, infra, cluster, ctx)
        key = infra.key
        with self._lock:
            if key in self._running:
                logger.debug("%s already in progress; queueing %s", key, operation)
                self._queued[key] = request
                return self._followups.setdefault(key, Future())
            self._running.add(key)
        return self._executor.submit(self._work, key, request)

    def run_all(
        self,
        operation: str,
        items: Iterable[Tuple[Infrastructure, Cluster]],
        ctx: Optional[ReconcileContext] = None,
    ) -> Dict[str, Optional[InfraFlowError]]:
        """Run *operation* for every owner and wait.  Returns errors by key."""
        futures = {infra.key: self.submit(operation, infra, cluster, ctx) for infra, cluster in items}
        wait_all(list(futures.values()))
        return {key: fut.result() for key, fut in futures.items()}

    # -- workers --------------------------------------------------------------

    def _call(self, request: _Request) -> Optional[InfraFlowError]:
        operation, infra, cluster, ctx = request
        method = getattr(self.actuator, operation)
        try:
            method(ctx or ReconcileContext(), infra, cluster)
        except InfraFlowError as exc:
            logger.error("%s %s failed: %s", operation, infra.key, exc)
            return exc
        return None

    def _work(self, key: str, request: _Request) -> Optional[InfraFlowError]:
        try:
            result = self._call(request)
        except BaseException:
            self._drain(key)
            raise
        self._drain(key)
        return result

    def _drain(self, key: str) -> None:
        """Run queued follow-ups for *key* until none are left."""
        while True:
            with self._lock:
                request = self._queued.pop(key, None)
                follow = self._followups.pop(key, None)
                if request is None:
                    self._running.discard(key)
                    return
            try:
                follow.set_result(self._call(request))
            except Exception as exc:
                follow.set_exception(exc)
