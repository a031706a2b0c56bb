from __future__ import annotations

import copy
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError

from initializer.src.config import InitializerConfig
from initializer.src.kube import replace_pod
from initializer.src.metrics import METRICS
from initializer.src.sidecar import inject_sidecar
from initializer.src.watch import EventKind, Pod, PodEvent

INITIALIZER_NAME = "initializer.istio.io"


class Outcome(enum.Enum):
    SKIPPED = "skipped"
    INITIALIZED = "initialized"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single reconciliation.

    ``reason`` explains a skip; ``error`` carries the API or transport
    failure when the update did not commit.
    """

    pod: str
    outcome: Outcome
    reason: str = ""
    error: ApiException | HTTPError | None = None


def remove_pending_initializer(body: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *body* with the first pending initializer removed.

    The remaining entries keep their relative order and are copied through
    untouched.  When no entries remain the whole ``metadata.initializers``
    field is dropped, which the API server reads as "no initializers
    outstanding" rather than "pending list present but empty".
    """
    result = copy.deepcopy(body)
    metadata = result["metadata"]
    pending = metadata["initializers"]["pending"]
    if len(pending) <= 1:
        del metadata["initializers"]
    else:
        metadata["initializers"]["pending"] = pending[1:]
    return result


class PodInitializer:
    """Removes this initializer's pending marker and injects the sidecar, exactly once per pod.

    Only the initializer at position 0 of ``metadata.initializers.pending``
    may act.  Nothing on the API server enforces this; it holds because every
    cooperating initializer honours the same convention, so this class never
    reorders the list or touches another initializer's entry.

    The marker removal and the sidecar injection are submitted together as a
    single pod update.  Single-resource update semantics on the API server
    make the combined change atomic; a conflicting concurrent write makes the
    update fail, and the pod stays pending for this initializer until a later
    event (normally the periodic resync) delivers it again.  There is no
    explicit retry, so a pod whose update keeps failing stays unschedulable.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config: InitializerConfig,
        initializer_name: str = INITIALIZER_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.config = config
        self.initializer_name = initializer_name
        self.logger = logger or logging.getLogger(__name__)

        self._failed_pods: set[str] = set()
        self._failed_lock = threading.Lock()
        METRICS.pods_pending_failures.set(0)

    def _track_failure(self, pod_key: str, failed: bool) -> None:
        with self._failed_lock:
            if failed:
                self._failed_pods.add(pod_key)
            else:
                self._failed_pods.discard(pod_key)
            METRICS.pods_pending_failures.set(len(self._failed_pods))

    def forget_unlisted(self, listed_keys: frozenset[str]) -> None:
        """Drop failing pods that a completed resync listing no longer contains."""
        with self._failed_lock:
            self._failed_pods &= listed_keys
            METRICS.pods_pending_failures.set(len(self._failed_pods))

    def _skip(self, pod: Pod, reason: str) -> ReconcileResult:
        METRICS.pods_skipped_total.labels(reason=reason).inc()
        return ReconcileResult(pod=pod.key, outcome=Outcome.SKIPPED, reason=reason)

    def reconcile(self, pod: Pod) -> ReconcileResult:
        """Initialize *pod* if this initializer is first in its pending list.

        Performs at most one update; skips and failures perform none.
        """
        pending = pod.pending_initializers
        if pending is None:
            self._track_failure(pod.key, failed=False)
            return self._skip(pod, "initialized")
        if not pending:
            self._track_failure(pod.key, failed=False)
            return self._skip(pod, "no-pending")
        if pending[0] != self.initializer_name:
            return self._skip(pod, "not-our-turn")

        self.logger.info("Initializing pod %s", pod.key)
        updated = inject_sidecar(remove_pending_initializer(pod.body), self.config)
        # List items arrive without type information.
        updated.setdefault("apiVersion", "v1")
        updated.setdefault("kind", "Pod")

        try:
            replace_pod(self.core_api, updated)
        except (ApiException, HTTPError) as exc:
            METRICS.pods_failed_total.inc()
            self._track_failure(pod.key, failed=True)
            return ReconcileResult(pod=pod.key, outcome=Outcome.FAILED, error=exc)

        METRICS.pods_initialized_total.inc()
        self._track_failure(pod.key, failed=False)
        return ReconcileResult(pod=pod.key, outcome=Outcome.INITIALIZED)

    def handle_event(self, event: PodEvent) -> ReconcileResult | None:
        """Process a single pod watch event.

        Only creation events (including those redelivered by a resync) are
        reconciled.  Update and delete events never trigger a write.  Update failures
        are logged here and nowhere else; they never propagate to the watch
        loop.
        """
        if event.kind is not EventKind.CREATED:
            if event.kind is EventKind.DELETED:
                self._track_failure(event.pod.key, failed=False)
            self.logger.debug("Ignoring %s event for pod %s", event.kind.name, event.pod.key)
            return None

        result = self.reconcile(event.pod)
        if result.outcome is Outcome.FAILED:
            self.logger.error(
                "Failed to initialize pod %s; it stays pending until the next resync: %s",
                result.pod,
                result.error,
            )
        elif result.outcome is Outcome.INITIALIZED:
            self.logger.info("Initialized pod %s", result.pod)
        return result
