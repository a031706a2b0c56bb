from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys

from initializer.src.config import (
    BUILD_VERSION,
    CONFIG_MAP_NAME,
    CONFIG_MAP_NAMESPACE,
    env_int,
    fetch_initializer_config,
)
from initializer.src.health import start_health_server
from initializer.src.kube import build_core_client, load_kube_configuration
from initializer.src.lifecycle import LifecycleSupervisor
from initializer.src.metrics import METRICS
from initializer.src.reconciler import INITIALIZER_NAME, PodInitializer
from initializer.src.watch import DEFAULT_RESYNC_PERIOD_SECONDS, PodWatchSource

LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="istio-initializer",
        description="Inject the Istio sidecar into pods that list this initializer as pending.",
    )
    parser.add_argument(
        "--kubeconfig",
        default="",
        help="absolute path to the kubeconfig file (default: in-cluster configuration)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Initializer entrypoint: load config, start the watch loop, and wait for SIGINT/SIGTERM."""
    args = parse_args(argv)
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    version = os.getenv("APP_VERSION", BUILD_VERSION)
    METRICS.build_info.info(
        {
            "version": version,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    resync_period_seconds = env_int(
        "RESYNC_PERIOD_SECONDS", DEFAULT_RESYNC_PERIOD_SECONDS, minimum=1
    )
    config_namespace = os.getenv("INITIALIZER_CONFIG_NAMESPACE", CONFIG_MAP_NAMESPACE)
    config_name = os.getenv("INITIALIZER_CONFIG_NAME", CONFIG_MAP_NAME)

    LOGGER.info("Starting the istio initializer...")
    LOGGER.info("Initializer name set to: %s", INITIALIZER_NAME)

    # No degraded mode: any failure before the watch starts ends the process.
    try:
        load_kube_configuration(args.kubeconfig or None)
        core_api = build_core_client()
        config = fetch_initializer_config(
            core_api,
            namespace=config_namespace,
            name=config_name,
            default_version=version,
        )
    except Exception:
        LOGGER.exception("Initializer startup failed")
        sys.exit(1)

    initializer = PodInitializer(core_api=core_api, config=config)
    source = PodWatchSource(
        core_api=core_api,
        resync_period_seconds=resync_period_seconds,
        on_resync=initializer.forget_unlisted,
    )
    health_server = start_health_server(ready=source.ready, port=health_port)

    supervisor = LifecycleSupervisor(source=source, handler=initializer.handle_event)
    supervisor.install_signal_handlers()
    supervisor.start()
    supervisor.wait_for_termination()

    LOGGER.info("Shutdown signal received, exiting...")
    supervisor.stop()
    health_server.shutdown()

    if supervisor.crashed:
        sys.exit(1)
    LOGGER.info("Initializer stopped")


if __name__ == "__main__":
    main()
