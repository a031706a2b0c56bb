from __future__ import annotations

import json
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

PODS_PATH = "/api/v1/pods"

# Query parameters accepted by the pod list endpoint, keyed by client kwarg.
_LIST_QUERY_PARAMS = {
    "resource_version": "resourceVersion",
    "timeout_seconds": "timeoutSeconds",
    "watch": "watch",
    "label_selector": "labelSelector",
    "field_selector": "fieldSelector",
    "allow_watch_bookmarks": "allowWatchBookmarks",
}


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path always wins.  Without one, in-cluster
    config is attempted first (running inside a pod), falling back to the
    local kubeconfig for development.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def list_pods_including_uninitialized(core_api: CoreV1Api, **kwargs: Any) -> Any:
    """List (or watch, with ``watch=True``) pods in all namespaces, uninitialized ones included.

    Pods whose initializers are still pending are hidden from ordinary list
    and watch requests, so every request carries ``includeUninitialized=true``.
    The raw HTTP response is returned undecoded: pod payloads are decoded by
    :func:`initializer.src.watch.decode_pod`, which keeps the
    ``metadata.initializers`` field that generated client models drop.
    Compatible with ``kubernetes.watch.Watch.stream``.
    """
    query_params: list[tuple[str, Any]] = [("includeUninitialized", "true")]
    for kwarg, param in _LIST_QUERY_PARAMS.items():
        value = kwargs.get(kwarg)
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        query_params.append((param, value))

    return core_api.api_client.call_api(
        PODS_PATH,
        "GET",
        path_params={},
        query_params=query_params,
        header_params={"Accept": "application/json"},
        response_type=None,
        auth_settings=["BearerToken"],
        _return_http_data_only=True,
        _preload_content=False,
        _request_timeout=kwargs.get("_request_timeout"),
    )


def list_all_pods(core_api: CoreV1Api) -> dict[str, Any]:
    """Return one full pod listing (uninitialized pods included) as decoded JSON."""
    response = list_pods_including_uninitialized(core_api)
    try:
        payload = json.loads(response.data)
    finally:
        release = getattr(response, "release_conn", None)
        if callable(release):
            release()
    if not isinstance(payload, dict):
        raise ValueError("pod list response is not a JSON object")
    return payload


def replace_pod(core_api: CoreV1Api, body: dict[str, Any]) -> None:
    """Submit the full modified pod as a single update addressed by namespace and name."""
    metadata = body["metadata"]
    core_api.replace_namespaced_pod(
        name=metadata["name"],
        namespace=metadata["namespace"],
        body=body,
    )
