"""Apply the initializer's sidecar injection to manifests on disk.

Shows exactly what the initializer would write for a workload, without a
cluster: Pods are injected directly, workload controllers through their pod
template.  Other documents pass through unchanged.
"""
from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

from initializer.src.config import InitializerConfig, config_from_data
from initializer.src.sidecar import inject_into_pod_spec

TEMPLATED_KINDS = {"Deployment", "DaemonSet", "StatefulSet", "ReplicaSet", "Job"}


def load_config_file(path: Path | None) -> InitializerConfig:
    """Read a ConfigMap manifest (or a bare key/value mapping) into an InitializerConfig."""
    if path is None:
        return InitializerConfig()
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        return config_from_data(None)
    if document.get("kind") == "ConfigMap":
        return config_from_data(document.get("data"))
    return config_from_data(document)


def inject_document(document: Any, config: InitializerConfig) -> Any:
    if not isinstance(document, dict):
        return document

    kind = document.get("kind")
    if kind == "Pod":
        metadata = document.setdefault("metadata", {})
        spec = document.setdefault("spec", {})
        inject_into_pod_spec(spec, metadata, config)
    elif kind in TEMPLATED_KINDS:
        template = document.setdefault("spec", {}).setdefault("template", {})
        metadata = template.setdefault("metadata", {})
        spec = template.setdefault("spec", {})
        inject_into_pod_spec(spec, metadata, config)
    elif kind == "CronJob":
        job_template = document.setdefault("spec", {}).setdefault("jobTemplate", {})
        template = job_template.setdefault("spec", {}).setdefault("template", {})
        metadata = template.setdefault("metadata", {})
        spec = template.setdefault("spec", {})
        inject_into_pod_spec(spec, metadata, config)
    elif kind == "List":
        items = document.get("items") or []
        document["items"] = [inject_document(item, config) for item in items]
    return document


def inject_manifests(text: str, config: InitializerConfig) -> str:
    documents: Iterable[Any] = yaml.safe_load_all(text)
    injected = [inject_document(doc, config) for doc in documents if doc is not None]
    return yaml.safe_dump_all(injected, sort_keys=False)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("manifest", type=Path, help="YAML manifest file, or - for stdin")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="istio-initializer ConfigMap manifest (default: built-in defaults)",
    )
    parser.add_argument("--output", type=Path, default=None, help="write here instead of stdout")
    args = parser.parse_args(argv)

    try:
        config = load_config_file(args.config)
        if str(args.manifest) == "-":
            text = sys.stdin.read()
        else:
            text = args.manifest.read_text(encoding="utf-8")
        rendered = inject_manifests(text, config)
    except (OSError, yaml.YAMLError) as exc:
        print(f"ERROR: failed to render manifests: {exc}", file=sys.stderr)
        return 1

    if args.output is None:
        sys.stdout.write(rendered)
    else:
        args.output.write_text(rendered, encoding="utf-8")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
