"""Namespaces allowed to reach a slice, and the slice's network policies."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from sliceworker.app_namespaces import reconcile_app_namespaces
from sliceworker.config import (
    ALLOWED_NAMESPACE_ANNOTATION_KEY,
    ALLOWED_NAMESPACE_SELECTOR_LABEL_KEY,
    APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY,
    CONTROL_PLANE_NAMESPACE,
    Settings,
)
from sliceworker.kube import MemoryClient, NotFoundError, retry_on_conflict
from sliceworker.netop import HubClientProvider

logger = logging.getLogger(__name__)

ALLOWED_NAMESPACES_BY_DEFAULT = ("kubeslice-system", "kube-system", "istio-system")

BuildPolicy = Callable[[Mapping[str, Any], str], dict[str, Any]]


def _slice_name(slice_obj: Mapping[str, Any]) -> str:
    return slice_obj["metadata"]["name"]


def _isolation_profile(slice_obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
    config = (slice_obj.get("status") or {}).get("sliceConfig") or {}
    return config.get("namespaceIsolationProfile")


def _isolation_enabled(slice_obj: Mapping[str, Any]) -> bool:
    profile = _isolation_profile(slice_obj)
    return bool(profile and profile.get("isolationEnabled"))


def _policy_name(slice_name: str, namespace: str) -> str:
    return f"{slice_name}-{namespace}"


def annotate_allowed_namespace(
    client: MemoryClient, slice_obj: Mapping[str, Any], namespace: dict[str, Any]
) -> bool:
    """Add the slice to the namespace's allowed-slices annotation.

    Returns True when the annotation was changed and written back.
    """
    slice_name = _slice_name(slice_obj)
    meta = namespace.setdefault("metadata", {})
    annotations = meta.get("annotations") or {}
    current = annotations.get(ALLOWED_NAMESPACE_ANNOTATION_KEY)
    if current is None:
        annotations[ALLOWED_NAMESPACE_ANNOTATION_KEY] = slice_name
    elif slice_name not in current.split(","):
        annotations[ALLOWED_NAMESPACE_ANNOTATION_KEY] = f"{current},{slice_name}"
    else:
        return False
    meta["annotations"] = annotations
    client.update(namespace)
    return True


def unbind_allowed_namespace(client: MemoryClient, allowed_ns: str, slice_name: str) -> bool:
    """Remove the slice from the namespace's annotation.

    When it was the last slice, the annotation and the allowed-namespace
    label go too. Returns True when the namespace was written back; raises
    NotFoundError when the namespace does not exist.
    """
    try:
        namespace = client.get("Namespace", allowed_ns)
    except Exception:
        logger.error("namespace unbind: failed to find namespace %s", allowed_ns)
        raise

    meta = namespace["metadata"]
    annotations = meta.get("annotations")
    if not annotations or ALLOWED_NAMESPACE_ANNOTATION_KEY not in annotations:
        return False
    slices = annotations[ALLOWED_NAMESPACE_ANNOTATION_KEY].split(",")
    if slice_name not in slices:
        return False

    if len(slices) == 1:
        del annotations[ALLOWED_NAMESPACE_ANNOTATION_KEY]
        labels = meta.get("labels") or {}
        labels.pop(ALLOWED_NAMESPACE_SELECTOR_LABEL_KEY, None)
        meta["labels"] = labels
    else:
        slices.remove(slice_name)
        annotations[ALLOWED_NAMESPACE_ANNOTATION_KEY] = ",".join(slices)
    meta["annotations"] = annotations
    client.update(namespace)
    return True


def _configured_allowed_namespaces(slice_obj: Mapping[str, Any]) -> list[str]:
    profile = _isolation_profile(slice_obj) or {}
    namespaces = list(profile.get("allowedNamespaces") or [])
    namespaces += [ns for ns in ALLOWED_NAMESPACES_BY_DEFAULT if ns not in namespaces]
    return namespaces


def reconcile_allowed_namespaces(client: MemoryClient, slice_obj: dict[str, Any]) -> bool:
    """Label and annotate the namespaces allowed to reach the slice.

    Does nothing unless namespace isolation is enabled. Returns True when
    the allowed namespaces were written to the slice status.
    """
    if not _isolation_enabled(slice_obj):
        logger.debug("skipping allowed namespaces since isolation is not enabled")
        return False

    slice_name = _slice_name(slice_obj)
    configured = _configured_allowed_namespaces(slice_obj)
    logger.info("reconciling allowed namespaces %s", configured)

    existing = {
        ns["metadata"]["name"]: ns
        for ns in client.list("Namespace", has_labels=[ALLOWED_NAMESPACE_SELECTOR_LABEL_KEY])
    }
    marked: set[str] = set()
    labelled: list[str] = []
    changed = False

    for ns_name in configured:
        if ns_name in existing:
            marked.add(ns_name)
            try:
                applied = annotate_allowed_namespace(client, slice_obj, existing[ns_name])
            except Exception as exc:
                logger.error("error annotating allowed namespace %s: %s", ns_name, exc)
                applied = True
            labelled.append(ns_name)
            changed = changed or applied
            continue
        try:
            namespace = client.get("Namespace", ns_name)
        except Exception as exc:
            logger.error("failed to find namespace %s: %s", ns_name, exc)
            continue
        labels = namespace["metadata"].get("labels") or {}
        labels[ALLOWED_NAMESPACE_SELECTOR_LABEL_KEY] = ns_name
        namespace["metadata"]["labels"] = labels
        try:
            client.update(namespace)
        except Exception:
            logger.error("failed to label namespace %s", ns_name)
            raise
        logger.info("labelled namespace %s", ns_name)
        labelled.append(ns_name)
        changed = True

    for ns_name in existing:
        if ns_name in marked:
            continue
        try:
            unbind_allowed_namespace(client, ns_name, slice_name)
        except Exception:
            logger.error("failed to unbind namespace %s from slice", ns_name)
            raise
        logger.info("unbound allowed namespace %s", ns_name)
        changed = True

    if not changed:
        return False

    def write_status() -> dict[str, Any]:
        fresh = client.get("Slice", slice_name, CONTROL_PLANE_NAMESPACE)
        fresh.setdefault("status", {})["allowedNamespaces"] = list(labelled)
        client.update_status(fresh)
        return fresh

    fresh = retry_on_conflict(write_status)
    slice_obj.clear()
    slice_obj.update(fresh)
    return True


def uninstall_network_policies(client: MemoryClient, slice_obj: dict[str, Any]) -> list[str]:
    """Delete the slice's policy from each application namespace.

    Returns the namespaces a policy was deleted from and records in the
    slice status that no policies are installed.
    """
    slice_name = _slice_name(slice_obj)
    status = slice_obj.setdefault("status", {})
    removed = []
    for ns in status.get("applicationNamespaces") or []:
        try:
            client.delete("NetworkPolicy", _policy_name(slice_name, ns), ns)
        except NotFoundError:
            continue
        except Exception as exc:
            logger.error("failed to remove slice netpol in %s: %s", ns, exc)
            continue
        removed.append(ns)
    status["networkPoliciesInstalled"] = False
    client.update_status(slice_obj)
    return removed


def install_slice_network_policy(
    client: MemoryClient,
    slice_obj: Mapping[str, Any],
    app_ns: str,
    build_policy: BuildPolicy,
) -> dict[str, Any]:
    """Update the slice's policy in ``app_ns``, creating it when absent."""
    policy = build_policy(slice_obj, app_ns)
    try:
        stored = client.update(policy)
    except NotFoundError:
        return client.create(policy)
    logger.info("updated network policy in %s", app_ns)
    return stored


def reconcile_slice_network_policy(
    client: MemoryClient, slice_obj: dict[str, Any], build_policy: BuildPolicy
) -> list[str]:
    """Install or remove the slice's network policies as isolation requires.

    Returns the namespaces a policy was installed in.
    """
    if _isolation_profile(slice_obj) is None:
        return []
    if not _isolation_enabled(slice_obj):
        if (slice_obj.get("status") or {}).get("networkPoliciesInstalled"):
            uninstall_network_policies(client, slice_obj)
        return []

    installed = []
    for namespace in client.list(
        "Namespace", labels={APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY: _slice_name(slice_obj)}
    ):
        ns_name = namespace["metadata"]["name"]
        try:
            install_slice_network_policy(client, slice_obj, ns_name, build_policy)
        except Exception:
            logger.error("failed to install network policy in %s", ns_name)
            raise
        logger.info("installed netpol in namespace %s", ns_name)
        installed.append(ns_name)
    slice_obj.setdefault("status", {})["networkPoliciesInstalled"] = True
    client.update_status(slice_obj)
    return installed


def reconcile_slice_namespaces(
    client: MemoryClient,
    hub_client: HubClientProvider,
    slice_obj: dict[str, Any],
    settings: Settings,
    build_policy: BuildPolicy,
) -> None:
    """Reconcile application namespaces, allowed namespaces and network policies.

    Any failure is raised and stops the remaining steps.
    """
    reconcile_app_namespaces(client, hub_client, slice_obj, settings)
    reconcile_allowed_namespaces(client, slice_obj)
    reconcile_slice_network_policy(client, slice_obj, build_policy)