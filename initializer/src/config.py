from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api

LOGGER = logging.getLogger(__name__)

BUILD_VERSION = "0.1.0"

CONFIG_MAP_NAMESPACE = "default"
CONFIG_MAP_NAME = "istio-initializer"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass(frozen=True)
class InitializerConfig:
    """Immutable sidecar injection settings loaded once at startup.

    Attributes:
        enable_core_dump:  Add a privileged init container that enables core dumps.
        hub:               Image registry prefix for the proxy and init images.
        include_ip_ranges: CIDRs whose outbound traffic is redirected to the proxy
                           (empty means all traffic).
        istio_system:      Namespace the control plane runs in.
        mesh_config:       Name of the mesh configuration passed to the proxy.
        sidecar_proxy_uid: UID the proxy runs as; excluded from redirection.
        tag:               Image tag for the proxy and init images.
        verbosity:         Proxy log verbosity.
        version:           Injector version recorded on every injected pod.
    """

    enable_core_dump: bool = False
    hub: str = "docker.io/istio"
    include_ip_ranges: str = ""
    istio_system: str = "default"
    mesh_config: str = "istio"
    sidecar_proxy_uid: int = 1337
    tag: str = "0.1"
    verbosity: int = 2
    version: str = BUILD_VERSION


def parse_bool(value: str) -> bool:
    """Parse a boolean using the strict spellings accepted by Kubernetes tooling.

    Raises ``ValueError`` for anything outside the accepted set, including
    surrounding whitespace.
    """
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def parse_int(value: str, minimum: int = _INT64_MIN, maximum: int = _INT64_MAX) -> int:
    """Parse a signed base-10 integer, rejecting whitespace and digit separators."""
    if not _INTEGER_PATTERN.fullmatch(value):
        raise ValueError(f"invalid integer: {value!r}")
    parsed = int(value)
    if parsed < minimum or parsed > maximum:
        raise ValueError(f"integer out of range: {value!r}")
    return parsed


def _typed_value(data: Mapping[str, Any], key: str, parser: Any, default: Any) -> Any:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        return parser(str(raw))
    except ValueError:
        if raw != "":
            LOGGER.debug("Ignoring malformed value %r for %s; using default %r", raw, key, default)
        return default


def _string_value(data: Mapping[str, Any], key: str, default: str) -> str:
    raw = data.get(key)
    if raw is None or raw == "":
        return default
    return str(raw)


def config_from_data(
    data: Mapping[str, Any] | None,
    default_version: str = BUILD_VERSION,
) -> InitializerConfig:
    """Build an :class:`InitializerConfig` from ConfigMap ``data``.

    Never raises: a missing ``data`` section, missing keys, empty strings and
    unparsable values all resolve to the documented defaults.  ``version``
    falls back to *default_version*, the running build's identifier.
    """
    values: Mapping[str, Any] = data if isinstance(data, Mapping) else {}
    defaults = InitializerConfig()

    return InitializerConfig(
        enable_core_dump=_typed_value(
            values, "enableCoreDump", parse_bool, defaults.enable_core_dump
        ),
        hub=_string_value(values, "hub", defaults.hub),
        include_ip_ranges=_string_value(values, "includeIPRanges", defaults.include_ip_ranges),
        istio_system=_string_value(values, "istioSystem", defaults.istio_system),
        mesh_config=_string_value(values, "meshConfig", defaults.mesh_config),
        sidecar_proxy_uid=_typed_value(
            values, "sidecarProxyUID", parse_int, defaults.sidecar_proxy_uid
        ),
        tag=_string_value(values, "tag", defaults.tag),
        verbosity=_typed_value(values, "verbosity", parse_int, defaults.verbosity),
        version=_string_value(values, "version", default_version),
    )


def fetch_initializer_config(
    core_api: CoreV1Api,
    namespace: str = CONFIG_MAP_NAMESPACE,
    name: str = CONFIG_MAP_NAME,
    default_version: str = BUILD_VERSION,
) -> InitializerConfig:
    """Read the initializer ConfigMap and convert it to an :class:`InitializerConfig`.

    API errors propagate; the caller treats them as fatal startup failures.
    """
    config_map = core_api.read_namespaced_config_map(name=name, namespace=namespace)
    config = config_from_data(getattr(config_map, "data", None), default_version=default_version)
    LOGGER.info("Loaded initializer configuration from ConfigMap %s/%s", namespace, name)
    return config


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value
