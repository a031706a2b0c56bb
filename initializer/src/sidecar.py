from __future__ import annotations

import copy
from typing import Any

from initializer.src.config import InitializerConfig

PROXY_CONTAINER_NAME = "istio-proxy"
INIT_CONTAINER_NAME = "istio-init"
CORE_DUMP_CONTAINER_NAME = "enable-core-dump"
STATUS_ANNOTATION = "sidecar.istio.io/status"

PROXY_PORT = 15001
DISCOVERY_PORT = 8080
CORE_DUMP_IMAGE = "alpine"


def proxy_image(config: InitializerConfig) -> str:
    return f"{config.hub}/proxy_debug:{config.tag}"


def init_image(config: InitializerConfig) -> str:
    return f"{config.hub}/init:{config.tag}"


def _field_ref_env(name: str, field_path: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": field_path}}}


def proxy_container(config: InitializerConfig) -> dict[str, Any]:
    """Return the proxy sidecar container, in API (camelCase) form."""
    return {
        "name": PROXY_CONTAINER_NAME,
        "image": proxy_image(config),
        "imagePullPolicy": "IfNotPresent",
        "args": [
            "proxy",
            "sidecar",
            "-v",
            str(config.verbosity),
            "--discoveryAddress",
            f"istio-pilot.{config.istio_system}:{DISCOVERY_PORT}",
            "--meshConfig",
            config.mesh_config,
        ],
        "env": [
            _field_ref_env("POD_NAME", "metadata.name"),
            _field_ref_env("POD_NAMESPACE", "metadata.namespace"),
            _field_ref_env("POD_IP", "status.podIP"),
        ],
        "securityContext": {"runAsUser": config.sidecar_proxy_uid},
    }


def init_container(config: InitializerConfig) -> dict[str, Any]:
    """Return the init container that redirects pod traffic through the proxy.

    Traffic from ``sidecar_proxy_uid`` is excluded so the proxy's own
    upstream connections are not looped back into it.
    """
    args = ["-p", str(PROXY_PORT), "-u", str(config.sidecar_proxy_uid)]
    if config.include_ip_ranges:
        args.extend(["-i", config.include_ip_ranges])
    return {
        "name": INIT_CONTAINER_NAME,
        "image": init_image(config),
        "imagePullPolicy": "IfNotPresent",
        "args": args,
        "securityContext": {"capabilities": {"add": ["NET_ADMIN"]}},
    }


def core_dump_container() -> dict[str, Any]:
    return {
        "name": CORE_DUMP_CONTAINER_NAME,
        "image": CORE_DUMP_IMAGE,
        "imagePullPolicy": "IfNotPresent",
        "command": ["/bin/sh"],
        "args": [
            "-c",
            "sysctl -w kernel.core_pattern=/tmp/core.%e.%p.%t && ulimit -c unlimited",
        ],
        "securityContext": {"privileged": True},
    }


def has_sidecar(pod_spec: dict[str, Any]) -> bool:
    containers = pod_spec.get("containers") or []
    return any(
        isinstance(container, dict) and container.get("name") == PROXY_CONTAINER_NAME
        for container in containers
    )


def inject_into_pod_spec(
    pod_spec: dict[str, Any],
    metadata: dict[str, Any],
    config: InitializerConfig,
) -> bool:
    """Inject the sidecar into *pod_spec* and annotate *metadata* in place.

    Returns ``False`` without touching anything when the spec already
    carries the proxy container, so repeated injection is a no-op.
    """
    if has_sidecar(pod_spec):
        return False

    init_containers = list(pod_spec.get("initContainers") or [])
    init_containers.append(init_container(config))
    if config.enable_core_dump:
        init_containers.append(core_dump_container())
    pod_spec["initContainers"] = init_containers

    containers = list(pod_spec.get("containers") or [])
    containers.append(proxy_container(config))
    pod_spec["containers"] = containers

    annotations = dict(metadata.get("annotations") or {})
    annotations[STATUS_ANNOTATION] = f"injected-version-{config.version}"
    metadata["annotations"] = annotations
    return True


def inject_sidecar(pod: dict[str, Any], config: InitializerConfig) -> dict[str, Any]:
    """Return a copy of the pod body with the sidecar proxy configuration applied.

    Pure with respect to its inputs: *pod* is never modified.
    """
    result = copy.deepcopy(pod)
    metadata = result.setdefault("metadata", {})
    spec = result.setdefault("spec", {})
    inject_into_pod_spec(spec, metadata, config)
    return result
