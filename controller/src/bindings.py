from __future__ import annotations

from collections.abc import Mapping
from hashlib import sha256
from typing import Any

TARGET_WORKLOAD_ANNOTATION = "field.cattle.io/targetWorkloadIds"
DNS_RECORD_ANNOTATION = "field.cattle.io/targetDnsRecordIds"
DNS_ENDPOINT_ANNOTATION = "field.cattle.io/dnsRecordIds"
PROJECT_ID_ANNOTATION = "field.cattle.io/projectId"

WORKLOAD_ID_LABEL_PREFIX = "workloadID"
SYNTHETIC_LABEL_VALUE = "true"

# Kubernetes limit for the name segment of a label key.
_MAX_LABEL_NAME_LENGTH = 63


class AnnotationFormatError(ValueError):
    """Raised when a binding annotation contains a token not shaped ``namespace:name``."""


def binding_key(namespace: str, name: str) -> str:
    """Return the ``namespace:name`` identity used by the workload index."""
    return f"{namespace}:{name}"


def split_binding_key(key: str) -> tuple[str, str]:
    """Split a ``namespace:name`` key, raising :class:`AnnotationFormatError` on bad shape."""
    parts = key.strip().split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise AnnotationFormatError(f"Wrong format for binding key [{key.strip()}]")
    return parts[0], parts[1]


def parse_binding_tokens(value: str | None) -> list[tuple[str, str]]:
    """Parse a comma-separated ``ns1:name1,ns2:name2`` annotation value.

    Whitespace around tokens is trimmed.  Any token that does not contain
    exactly one ``:`` with both sides non-empty fails the whole value, blank
    tokens and an empty value included, so callers never act on half of a
    malformed list.  ``None`` means the annotation is absent.
    """
    if value is None:
        return []
    return [split_binding_key(raw) for raw in value.split(",")]


def synthetic_label_key(service_name: str) -> str:
    """Return the selector label key a service injects into its target pods.

    The key is ``workloadID_<serviceName>``.  Names that would exceed the
    63-character label limit are trimmed and suffixed with a short digest of
    the full service name so the key stays a pure function of the name.
    """
    label_name = f"{WORKLOAD_ID_LABEL_PREFIX}_{service_name}"
    if len(label_name) <= _MAX_LABEL_NAME_LENGTH:
        return label_name

    suffix = sha256(service_name.encode("utf-8")).hexdigest()[:10]
    max_name_length = _MAX_LABEL_NAME_LENGTH - len(f"{WORKLOAD_ID_LABEL_PREFIX}__") - len(suffix)
    trimmed = service_name[:max_name_length].rstrip("-._")
    return f"{WORKLOAD_ID_LABEL_PREFIX}_{trimmed}_{suffix}"


def format_selector(labels: Mapping[str, str]) -> str:
    """Render an equality selector as a ``k=v,k2=v2`` ``label_selector`` string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def selector_matches(selector: Mapping[str, str], labels: Mapping[str, str] | None) -> bool:
    """Return True if *labels* satisfy every key-value pair of *selector*."""
    current = labels or {}
    return all(current.get(k) == v for k, v in selector.items())


def metadata_of(obj: Any) -> Any:
    return getattr(obj, "metadata", None)


def annotations_of(obj: Any) -> dict[str, str]:
    annotations = getattr(metadata_of(obj), "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return annotations


def labels_of(obj: Any) -> dict[str, str]:
    labels = getattr(metadata_of(obj), "labels", None)
    if not isinstance(labels, dict):
        return {}
    return labels


def is_terminating(obj: Any) -> bool:
    """Return True once the API server has stamped a deletion timestamp on *obj*."""
    return getattr(metadata_of(obj), "deletion_timestamp", None) is not None


def deployment_match_labels(deployment: Any) -> dict[str, str]:
    """Extract ``spec.selector.matchLabels`` from a deployment object safely."""
    spec = getattr(deployment, "spec", None)
    selector = getattr(spec, "selector", None)
    match_labels = getattr(selector, "match_labels", None)
    if not isinstance(match_labels, dict):
        return {}
    return match_labels
