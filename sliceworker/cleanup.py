"""Removal of everything a slice leaves behind when it is deleted."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sliceworker.allowed_namespaces import unbind_allowed_namespace
from sliceworker.app_namespaces import unbind_app_namespace
from sliceworker.config import (
    APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY,
    CONTROL_PLANE_NAMESPACE,
    INJECT_SIDECAR_KEY,
)
from sliceworker.kube import MemoryClient, NotFoundError
from sliceworker.router import cleanup_slice_router

logger = logging.getLogger(__name__)


def cleanup_slice_namespaces(client: MemoryClient, slice_obj: Mapping[str, Any]) -> None:
    """Unbind every application and allowed namespace from the slice."""
    slice_name = slice_obj["metadata"]["name"]
    for namespace in client.list(
        "Namespace", labels={APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY: slice_name}
    ):
        ns_name = namespace["metadata"]["name"]
        try:
            unbind_app_namespace(client, slice_obj, ns_name)
        except Exception:
            logger.error("failed to unbind namespace %s from slice", ns_name)
            raise
    for ns_name in (slice_obj.get("status") or {}).get("allowedNamespaces") or []:
        try:
            unbind_allowed_namespace(client, ns_name, slice_name)
        except Exception:
            logger.error("failed to unbind allowed namespace %s", ns_name)
            raise


def remove_inject_label(client: MemoryClient) -> bool:
    """Drop the inject label from the control-plane namespace when one slice is left.

    Returns True when the label was removed.
    """
    slices = client.list("Slice", namespace=CONTROL_PLANE_NAMESPACE)
    if len(slices) != 1:
        return False
    namespace = client.get("Namespace", CONTROL_PLANE_NAMESPACE)
    logger.info("number of slices: %d", len(slices))
    labels = namespace["metadata"].get("labels")
    if not labels or INJECT_SIDECAR_KEY not in labels:
        return False
    del labels[INJECT_SIDECAR_KEY]
    client.update(namespace)
    return True


def _delete_labelled(client: MemoryClient, kind: str, slice_name: str) -> int:
    try:
        objects = client.list(kind, labels={APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY: slice_name})
    except NotFoundError:
        return 0
    for obj in objects:
        meta = obj["metadata"]
        client.delete(kind, meta["name"], meta.get("namespace", ""))
    return len(objects)


def cleanup_service_imports(client: MemoryClient, slice_name: str) -> int:
    """Delete the slice's service imports; return how many were deleted."""
    return _delete_labelled(client, "ServiceImport", slice_name)


def cleanup_service_exports(client: MemoryClient, slice_name: str) -> int:
    """Delete the slice's service exports; return how many were deleted."""
    return _delete_labelled(client, "ServiceExport", slice_name)


def cleanup_service_discovery_objects(client: MemoryClient, slice_name: str) -> tuple[int, int]:
    """Delete the slice's service imports and exports; return both counts."""
    try:
        imports = cleanup_service_imports(client, slice_name)
    except Exception:
        logger.error("error cleaning up service import objects")
        raise
    try:
        exports = cleanup_service_exports(client, slice_name)
    except Exception:
        logger.error("error cleaning up service export objects")
        raise
    return imports, exports


def cleanup_slice_resources(client: MemoryClient, slice_obj: Mapping[str, Any]) -> None:
    """Remove namespaces bindings, router service, service discovery objects and labels."""
    logger.info("cleaning up slice resources")
    slice_name = slice_obj["metadata"]["name"]
    cleanup_slice_namespaces(client, slice_obj)
    cleanup_slice_router(client, slice_name)
    cleanup_service_discovery_objects(client, slice_name)
    remove_inject_label(client)