from __future__ import annotations

import enum
import logging
import random
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from initializer.src.kube import list_all_pods, list_pods_including_uninitialized
from initializer.src.metrics import METRICS

DEFAULT_RESYNC_PERIOD_SECONDS = 30


class PodDecodeError(ValueError):
    """Raised when a watch payload does not have the shape of a Pod."""


class EventKind(enum.Enum):
    CREATED = "ADDED"
    UPDATED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class Pod:
    """A pod as seen by the initializer.

    ``pending_initializers`` is ``None`` when ``metadata.initializers`` is
    absent (the pod is fully initialized) and a tuple, possibly empty, when
    the field is present.  ``body`` is the complete object as served by the
    API server and is the basis for the update.
    """

    name: str
    namespace: str
    resource_version: str | None
    pending_initializers: tuple[str, ...] | None
    body: dict[str, Any]

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class PodEvent:
    kind: EventKind
    pod: Pod
    resync: bool = False


def _pending_names(metadata: Mapping[str, Any]) -> tuple[str, ...] | None:
    initializers = metadata.get("initializers")
    if initializers is None:
        return None
    if not isinstance(initializers, Mapping):
        raise PodDecodeError("metadata.initializers must be an object")

    pending = initializers.get("pending")
    if pending is None:
        return ()
    if not isinstance(pending, list):
        raise PodDecodeError("metadata.initializers.pending must be a list")

    names: list[str] = []
    for entry in pending:
        name = entry.get("name") if isinstance(entry, Mapping) else None
        if not isinstance(name, str) or not name:
            raise PodDecodeError("pending initializer entries must carry a non-empty name")
        names.append(name)
    return tuple(names)


def decode_pod(raw: Any) -> Pod:
    """Narrow a raw JSON payload to a :class:`Pod`, failing explicitly on bad shapes."""
    if not isinstance(raw, dict):
        raise PodDecodeError(f"expected a pod object, got {type(raw).__name__}")
    kind = raw.get("kind")
    if kind is not None and kind != "Pod":
        raise PodDecodeError(f"expected kind Pod, got {kind!r}")

    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        raise PodDecodeError("pod has no metadata")
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise PodDecodeError("pod has no metadata.name")
    namespace = metadata.get("namespace") or "default"
    if not isinstance(namespace, str):
        raise PodDecodeError(f"pod {name} has a non-string namespace")

    resource_version = metadata.get("resourceVersion")
    return Pod(
        name=name,
        namespace=namespace,
        resource_version=str(resource_version) if resource_version is not None else None,
        pending_initializers=_pending_names(metadata),
        body=raw,
    )


def decode_event(event: Mapping[str, Any]) -> PodEvent:
    event_type = str(event.get("type", ""))
    try:
        kind = EventKind(event_type)
    except ValueError as exc:
        raise PodDecodeError(f"unsupported watch event type {event_type!r}") from exc
    return PodEvent(kind=kind, pod=decode_pod(event.get("object")))


class PodWatchSource:
    """Continuous stream of pod events across all namespaces, uninitialized pods included.

    Behaves like a resyncing informer:

    1. An initial list delivers every existing pod as a ``CREATED`` resync
       event, so pods created while the initializer was down are handled.
    2. A watch is opened from the list's ``resourceVersion`` with a timeout
       equal to the resync period.
    3. When a watch window closes, everything is re-listed and redelivered as
       ``CREATED`` resync events before the watch resumes.  Pods whose update
       failed earlier get another attempt this way.
    4. ``410 Gone`` re-lists immediately; ``401``/``403`` stop the loop
       since retrying cannot fix RBAC; other errors back off exponentially
       with jitter, capped at 30 s.

    When a listing completes, *on_resync* (if given) receives the keys of
    every pod it contained.

    Events are handed to *handler* one at a time in delivery order.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        resync_period_seconds: int = DEFAULT_RESYNC_PERIOD_SECONDS,
        logger: logging.Logger | None = None,
        on_resync: Callable[[frozenset[str]], Any] | None = None,
    ) -> None:
        if resync_period_seconds < 1:
            raise ValueError("resync_period_seconds must be >= 1")
        self.core_api = core_api
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.on_resync = on_resync

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _deliver(self, handler: Callable[[PodEvent], Any], event: PodEvent) -> None:
        try:
            handler(event)
        except Exception:
            self.logger.exception("Event handler failed for pod %s", event.pod.key)

    def _resync(
        self,
        handler: Callable[[PodEvent], Any],
        stop_event: threading.Event,
    ) -> str | None:
        """List every pod, deliver each as a resync event, and return the list resourceVersion."""
        listing = list_all_pods(self.core_api)
        METRICS.resyncs_total.inc()

        metadata = listing.get("metadata") or {}
        resource_version = metadata.get("resourceVersion")
        items: Iterable[Any] = listing.get("items") or []

        listed: set[str] = set()
        delivered = 0
        for raw in items:
            if self._should_stop(stop_event):
                return resource_version
            try:
                pod = decode_pod(raw)
            except PodDecodeError as exc:
                METRICS.decode_errors_total.inc()
                self.logger.error("Dropping undecodable pod from list: %s", exc)
                continue
            listed.add(pod.key)
            self._deliver(handler, PodEvent(kind=EventKind.CREATED, pod=pod, resync=True))
            delivered += 1

        if self.on_resync is not None:
            self.on_resync(frozenset(listed))

        self.logger.debug(
            "Resync delivered %d pod(s) at resourceVersion %s", delivered, resource_version
        )
        return resource_version

    def _resync_with_backoff(
        self,
        handler: Callable[[PodEvent], Any],
        stop_event: threading.Event,
    ) -> tuple[bool, str | None]:
        """Re-list until success.  Returns ``(False, None)`` when the loop must stop."""
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                return True, self._resync(handler, stop_event)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied while listing pods (status=%s). "
                        "Check initializer RBAC and service account permissions.",
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Kubernetes pod list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during pod list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(
        self,
        handler: Callable[[PodEvent], Any],
        shutdown_event: threading.Event | None = None,
    ) -> None:
        """List-then-watch pods and feed every event to *handler* until stopped."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        ok, resource_version = self._resync_with_backoff(handler, stop)
        if not ok:
            self.ready.clear()
            return
        self.ready.set()
        self.logger.info("Starting pod watch from resourceVersion %s", resource_version)

        # Exponential backoff counter (seconds) for transient API errors.
        # Reset to 1 after every watch window that ends cleanly.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            resync_due = False
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_pods_including_uninitialized,
                    self.core_api,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_period_seconds,
                )

                for raw_event in stream:
                    if self._should_stop(stop):
                        break
                    if not isinstance(raw_event, Mapping):
                        METRICS.decode_errors_total.inc()
                        self.logger.error(
                            "Dropping malformed watch event of type %s",
                            type(raw_event).__name__,
                        )
                        continue
                    if str(raw_event.get("type", "")) == "BOOKMARK":
                        continue

                    try:
                        event = decode_event(raw_event)
                    except PodDecodeError as exc:
                        METRICS.decode_errors_total.inc()
                        self.logger.error("Dropping undecodable watch event: %s", exc)
                        continue

                    if event.pod.resource_version:
                        resource_version = event.pod.resource_version
                    self._deliver(handler, event)

                backoff_seconds = 1
                resync_due = True
            except ApiException as exc:
                # 410 Gone means our resourceVersion was compacted away; only
                # a fresh list can resume the watch.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    resync_due = True
                elif exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check initializer RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return
                else:
                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if resync_due and not self._should_stop(stop):
                ok, resource_version = self._resync_with_backoff(handler, stop)
                if not ok:
                    break

        self.ready.clear()
