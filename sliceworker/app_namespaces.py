"""Onboarding and offboarding of application namespaces for a slice."""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Mapping
from typing import Any

from sliceworker.config import (
    APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY,
    CONTROL_PLANE_NAMESPACE,
    INJECT_SIDECAR_KEY,
    NSM_NETWORK_SERVICE_ANNOTATION,
    POD_INJECT_LABEL_KEY,
    Settings,
)
from sliceworker.kube import MemoryClient, NotFoundError, retry_on_conflict
from sliceworker.netop import HubClientProvider

logger = logging.getLogger(__name__)

STATUS_ANNOTATION = "kubeslice.io/status"
WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet")


def _slice_name(slice_obj: Mapping[str, Any]) -> str:
    return slice_obj["metadata"]["name"]


def _isolation_profile(slice_obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
    config = (slice_obj.get("status") or {}).get("sliceConfig") or {}
    return config.get("namespaceIsolationProfile")


def build_app_namespaces_list(slice_obj: Mapping[str, Any]) -> list[str]:
    """Return the configured application namespaces, leaving out the control plane."""
    profile = _isolation_profile(slice_obj) or {}
    return [
        ns
        for ns in profile.get("applicationNamespaces") or []
        if ns != CONTROL_PLANE_NAMESPACE
    ]


def label_app_namespaces(
    client: MemoryClient,
    cfg_namespaces: Iterable[str],
    existing: Collection[str],
    slice_obj: Mapping[str, Any],
) -> tuple[list[str], bool]:
    """Label every configured namespace not yet labelled for the slice.

    Returns the namespaces that carry the slice label afterwards and whether
    any namespace was newly labelled. Namespaces that cannot be read are skipped.
    """
    slice_name = _slice_name(slice_obj)
    labelled: list[str] = []
    changed = False
    for ns_name in cfg_namespaces:
        if ns_name in existing:
            labelled.append(ns_name)
            continue
        try:
            namespace = client.get("Namespace", ns_name)
        except Exception as exc:
            logger.error("failed to find namespace %s: %s", ns_name, exc)
            continue
        labels = namespace["metadata"].get("labels") or {}
        labels[APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY] = slice_name
        labels[INJECT_SIDECAR_KEY] = "true"
        namespace["metadata"]["labels"] = labels
        try:
            client.update(namespace)
        except Exception:
            logger.error("failed to label namespace %s", ns_name)
            raise
        logger.info("labelled namespace %s", ns_name)
        labelled.append(ns_name)
        changed = True
    return labelled, changed


def _strip_labels(labels: dict[str, str] | None, slice_name: str) -> None:
    if not labels:
        return
    labels.pop(POD_INJECT_LABEL_KEY, None)
    if labels.get(APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY) == slice_name:
        del labels[APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY]


def _strip_nsm_annotation(annotations: dict[str, str] | None, slice_name: str) -> None:
    if annotations and annotations.get(NSM_NETWORK_SERVICE_ANNOTATION) == "vl3-service-" + slice_name:
        del annotations[NSM_NETWORK_SERVICE_ANNOTATION]


def _strip_status_annotation(annotations: dict[str, str] | None) -> None:
    if annotations:
        annotations.pop(STATUS_ANNOTATION, None)


def _list_or_empty(client: MemoryClient, kind: str, namespace: str) -> list[dict[str, Any]]:
    try:
        return client.list(kind, namespace=namespace)
    except Exception as exc:
        logger.error("namespace offboarding: cannot list %s in %s: %s", kind, namespace, exc)
        return []


def delete_annotations_and_labels(
    client: MemoryClient, slice_obj: Mapping[str, Any], app_ns: str
) -> list[tuple[str, str]]:
    """Remove slice labels and annotations from pods and workloads in ``app_ns``.

    Returns the (kind, name) of every object that was written back.
    """
    slice_name = _slice_name(slice_obj)
    updated: list[tuple[str, str]] = []

    for pod in _list_or_empty(client, "Pod", app_ns):
        meta = pod["metadata"]
        _strip_labels(meta.get("labels"), slice_name)
        _strip_nsm_annotation(meta.get("annotations"), slice_name)
        _strip_status_annotation(meta.get("annotations"))
        try:
            client.update(pod)
        except Exception:
            logger.error("failed to remove slice labels from pod %s", meta["name"])
            raise
        logger.info("removed slice labels and annotations from pod %s", meta["name"])
        updated.append(("Pod", meta["name"]))

    for kind in WORKLOAD_KINDS:
        for workload in _list_or_empty(client, kind, app_ns):
            template_meta = ((workload.get("spec") or {}).get("template") or {}).get("metadata") or {}
            _strip_labels(template_meta.get("labels"), slice_name)
            _strip_nsm_annotation(template_meta.get("annotations"), slice_name)
            _strip_status_annotation(workload["metadata"].get("annotations"))
            name = workload["metadata"]["name"]
            try:
                client.update(workload)
            except Exception:
                logger.error("failed to remove slice labels from %s %s", kind, name)
                raise
            logger.info("removed slice labels and annotations from %s %s", kind, name)
            updated.append((kind, name))
    return updated


def unbind_app_namespace(
    client: MemoryClient, slice_obj: Mapping[str, Any], app_ns: str
) -> bool:
    """Detach ``app_ns`` from the slice; return False when the namespace is gone."""
    slice_name = _slice_name(slice_obj)
    try:
        namespace = client.get("Namespace", app_ns)
    except NotFoundError:
        return False

    labels = namespace["metadata"].get("labels") or {}
    if APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY not in labels:
        logger.debug("namespace unbind: slice label not found on %s", app_ns)
    else:
        del labels[APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY]
        labels.pop(INJECT_SIDECAR_KEY, None)
        namespace["metadata"]["labels"] = labels
        try:
            client.update(namespace)
        except Exception:
            logger.error("namespace unbind: failed to remove slice label from %s", app_ns)
            raise

    try:
        client.delete("NetworkPolicy", f"{slice_name}-{app_ns}", app_ns)
    except NotFoundError:
        pass
    except Exception as exc:
        logger.error("namespace unbind: failed to remove slice netpol in %s: %s", app_ns, exc)

    delete_annotations_and_labels(client, slice_obj, app_ns)
    return True


def reconcile_app_namespaces(
    client: MemoryClient,
    hub_client: HubClientProvider,
    slice_obj: dict[str, Any],
    settings: Settings,
) -> bool:
    """Bring namespace labels in line with the slice's application namespaces.

    Returns True when the set of onboarded namespaces changed and was
    published to the slice status and the hub.
    """
    if _isolation_profile(slice_obj) is None:
        return False
    slice_name = _slice_name(slice_obj)
    cfg_namespaces = build_app_namespaces_list(slice_obj)
    logger.debug("reconciling application namespaces %s", cfg_namespaces)

    existing = [
        ns["metadata"]["name"]
        for ns in client.list(
            "Namespace", labels={APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY: slice_name}
        )
    ]
    labelled, changed = label_app_namespaces(client, cfg_namespaces, set(existing), slice_obj)

    wanted = set(cfg_namespaces)
    for ns_name in existing:
        if ns_name in wanted:
            continue
        try:
            unbind_app_namespace(client, slice_obj, ns_name)
        except Exception:
            logger.error("failed to unbind namespace %s from slice", ns_name)
            raise
        changed = True

    if not changed:
        return False

    def write_status() -> dict[str, Any]:
        fresh = client.get("Slice", slice_name, settings.control_plane_namespace)
        fresh.setdefault("status", {})["applicationNamespaces"] = list(labelled)
        client.update_status(fresh)
        return fresh

    fresh = retry_on_conflict(write_status)
    slice_obj.clear()
    slice_obj.update(fresh)

    hub_client.update_app_namespaces(f"{slice_name}-{settings.cluster_name}", labelled)
    logger.info("updated onboarded namespaces in the hub")
    return True