from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from typing import Any

from initializer.src.watch import PodEvent, PodWatchSource

LOGGER = logging.getLogger(__name__)


class LifecycleSupervisor:
    """Owns the background reconciliation thread and its stop signal.

    The watch loop runs in a daemon thread started by :meth:`start`.  The
    main thread parks in :meth:`wait_for_termination` until SIGINT/SIGTERM
    arrives (or the background thread dies), then calls :meth:`stop`, which
    hands the stop signal to the loop exactly once.
    """

    def __init__(
        self,
        source: PodWatchSource,
        handler: Callable[[PodEvent], Any],
        stop_timeout_seconds: float = 45.0,
    ) -> None:
        self.source = source
        self.handler = handler
        self.stop_timeout_seconds = stop_timeout_seconds

        self.shutdown_event = threading.Event()
        self._loop_stop = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stopped = False
        self.crashed = False

    def _run_loop(self) -> None:
        try:
            self.source.run(self.handler, shutdown_event=self._loop_stop)
            if not self._loop_stop.is_set():
                LOGGER.error("Watch loop exited without a stop signal; terminating process")
                self.crashed = True
        except Exception:
            LOGGER.exception("Watch loop crashed")
            self.crashed = True
        finally:
            # Release the main thread so the process cannot hang with no loop.
            self.shutdown_event.set()

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                raise RuntimeError("supervisor already started")
            self._thread = threading.Thread(
                target=self._run_loop, name="pod-initializer", daemon=True
            )
            self._thread.start()
        LOGGER.info("Started pod initializer loop")

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to the shutdown event.  No other signals are handled."""

        def _handle_signal(signum: int, frame: object) -> None:
            LOGGER.info("Received signal %d, shutting down", signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    def wait_for_termination(self) -> None:
        self.shutdown_event.wait()

    def stop(self) -> bool:
        """Deliver the stop signal to the loop and wait for it to exit.

        Safe to call repeatedly; only the first call signals.  Returns
        ``True`` when the loop thread has exited.
        """
        with self._state_lock:
            if not self._stopped:
                self._stopped = True
                self._loop_stop.set()
                self.source.request_stop()
            thread = self._thread

        if thread is None:
            return True
        thread.join(timeout=self.stop_timeout_seconds)
        if thread.is_alive():
            LOGGER.error(
                "Watch loop did not stop within %ss; exiting anyway",
                self.stop_timeout_seconds,
            )
            return False
        return True
