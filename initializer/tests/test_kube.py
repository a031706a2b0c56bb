from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from initializer.src.kube import (
    build_core_client,
    list_all_pods,
    list_pods_including_uninitialized,
    load_kube_configuration,
    replace_pod,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("initializer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("initializer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "initializer.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("initializer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once_with()


def test_load_kube_configuration_explicit_path_skips_in_cluster() -> None:
    with (
        patch("initializer.src.kube.config.load_incluster_config") as mock_incluster,
        patch("initializer.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration("/etc/kube/config")

    mock_incluster.assert_not_called()
    mock_kubeconfig.assert_called_once_with(config_file="/etc/kube/config")


def test_build_core_client() -> None:
    with patch("initializer.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_client()

    assert core.name == "core"


def _query_params(core_api: MagicMock) -> list[tuple[str, Any]]:
    return core_api.api_client.call_api.call_args.kwargs["query_params"]


def test_list_request_always_includes_uninitialized() -> None:
    core_api = MagicMock()

    list_pods_including_uninitialized(core_api)

    args = core_api.api_client.call_api.call_args.args
    assert args == ("/api/v1/pods", "GET")
    assert ("includeUninitialized", "true") in _query_params(core_api)
    assert core_api.api_client.call_api.call_args.kwargs["_preload_content"] is False


def test_watch_request_includes_uninitialized_and_watch_params() -> None:
    core_api = MagicMock()

    list_pods_including_uninitialized(
        core_api,
        watch=True,
        resource_version="42",
        timeout_seconds=30,
        _preload_content=False,
    )

    params = _query_params(core_api)
    assert ("includeUninitialized", "true") in params
    assert ("watch", "true") in params
    assert ("resourceVersion", "42") in params
    assert ("timeoutSeconds", 30) in params


def test_list_all_pods_decodes_json_and_releases_connection() -> None:
    response = MagicMock()
    response.data = json.dumps(
        {"metadata": {"resourceVersion": "7"}, "items": [{"metadata": {"name": "a"}}]}
    ).encode()
    core_api = MagicMock()
    core_api.api_client.call_api.return_value = response

    listing = list_all_pods(core_api)

    assert listing["metadata"]["resourceVersion"] == "7"
    assert listing["items"][0]["metadata"]["name"] == "a"
    response.release_conn.assert_called_once()


def test_list_all_pods_rejects_non_object_payload() -> None:
    core_api = MagicMock()
    core_api.api_client.call_api.return_value = SimpleNamespace(data=b"[]")

    with pytest.raises(ValueError, match="not a JSON object"):
        list_all_pods(core_api)


def test_replace_pod_addresses_pod_by_namespace_and_name() -> None:
    core_api = MagicMock()
    body = {"metadata": {"name": "web-0", "namespace": "shop"}, "spec": {}}

    replace_pod(core_api, body)

    core_api.replace_namespaced_pod.assert_called_once_with(
        name="web-0", namespace="shop", body=body
    )
