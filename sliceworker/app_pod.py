"""Application pods attached to a slice and their connectivity status."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sliceworker.config import (
    NSM_IP_LABEL_SELECTOR_KEY,
    NSM_NETWORK_SERVICE_ANNOTATION,
    POD_INJECT_LABEL_KEY,
    SIDECAR_GRPC_PORT,
    SLICE_ROUTER_DEPLOYMENT_NAME_PREFIX,
)
from sliceworker.kube import MemoryClient
from sliceworker.netop import WorkerRouterClientProvider

logger = logging.getLogger(__name__)


@dataclass
class AppPod:
    """An application pod as recorded in a slice's status."""

    pod_name: str
    pod_namespace: str = ""
    pod_ip: str = ""
    nsm_ip: str = ""
    nsm_peer_ip: str = ""
    nsm_interface: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "podName": self.pod_name,
            "podNamespace": self.pod_namespace,
            "podIp": self.pod_ip,
            "nsmIp": self.nsm_ip,
            "nsmPeerIp": self.nsm_peer_ip,
            "nsmInterface": self.nsm_interface,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppPod":
        return cls(
            pod_name=data.get("podName", ""),
            pod_namespace=data.get("podNamespace", ""),
            pod_ip=data.get("podIp", ""),
            nsm_ip=data.get("nsmIp", ""),
            nsm_peer_ip=data.get("nsmPeerIp", ""),
            nsm_interface=data.get("nsmInterface", ""),
        )


def labels_for_app_pods() -> dict[str, str]:
    """Labels that identify application pods."""
    return {POD_INJECT_LABEL_KEY: "app"}


def is_app_pod_connected_to_slice_router(
    annotations: Mapping[str, str] | None, slice_router: str
) -> bool:
    return (annotations or {}).get(NSM_NETWORK_SERVICE_ANNOTATION, "") == slice_router


def get_app_pods(client: MemoryClient, slice_obj: Mapping[str, Any]) -> list[AppPod]:
    """Return the running application pods that belong to the slice."""
    slice_name = slice_obj["metadata"]["name"]
    router = f"vl3-service-{slice_name}"
    pods = []
    for pod in client.list("Pod", labels=labels_for_app_pods()):
        meta = pod["metadata"]
        if not is_app_pod_connected_to_slice_router(meta.get("annotations"), router):
            logger.debug("pod %s is not part of slice %s", meta["name"], slice_name)
            continue
        status = pod.get("status") or {}
        if status.get("phase") == "Running":
            pods.append(
                AppPod(
                    pod_name=meta["name"],
                    pod_namespace=meta.get("namespace", ""),
                    pod_ip=status.get("podIP", ""),
                )
            )
    return pods


def find_app_pod_connected_to_slice(
    pod_name: str, connected_pods: Iterable[AppPod]
) -> AppPod | None:
    return next((p for p in connected_pods if p.pod_name == pod_name), None)


def find_pod_in_pod_list(
    pod_name: str, pods: Iterable[dict[str, Any]]
) -> dict[str, Any] | None:
    return next((p for p in pods if p["metadata"]["name"] == pod_name), None)


def get_slice_router_connected_pods(
    router_client: WorkerRouterClientProvider, slice_name: str
) -> list[AppPod]:
    """Ask the slice router which pods are connected to it."""
    address = f"{SLICE_ROUTER_DEPLOYMENT_NAME_PREFIX}{slice_name}:{SIDECAR_GRPC_PORT}"
    return list(router_client.get_client_connection_info(address))


def _touch(status: dict[str, Any]) -> None:
    status["appPodsUpdatedOn"] = int(time.time())


def _label_with_nsm_ip(
    client: MemoryClient, pod: AppPod, core_pods: Sequence[dict[str, Any]]
) -> None:
    core_pod = find_pod_in_pod_list(pod.pod_name, core_pods)
    if core_pod is None:
        logger.debug("pod %s not found, skipping nsmIP labelling", pod.pod_name)
        return
    core_pod["metadata"].setdefault("labels", {})[NSM_IP_LABEL_SELECTOR_KEY] = pod.nsm_ip
    client.update(core_pod)
    logger.debug("labelled pod %s with nsmIP %s", pod.pod_name, pod.nsm_ip)


def reconcile_app_pods(
    client: MemoryClient,
    router_client: WorkerRouterClientProvider,
    slice_obj: dict[str, Any],
) -> bool:
    """Bring recorded app pod connectivity in line with the slice router.

    Returns True when the slice status was written and the caller should requeue.
    """
    connected = get_slice_router_connected_pods(router_client, slice_obj["metadata"]["name"])
    logger.debug("pods connected to slice: %s", connected)
    core_pods = client.list("Pod", labels=labels_for_app_pods())
    status = slice_obj.setdefault("status", {})
    entries = status.get("appPods") or []
    for index, entry in enumerate(entries):
        pod = AppPod.from_dict(entry)
        live = find_app_pod_connected_to_slice(pod.pod_name, connected)
        if live is None:
            if pod.nsm_ip or pod.nsm_peer_ip:
                pod.nsm_ip = ""
                pod.nsm_peer_ip = ""
                entries[index] = pod.to_dict()
                _touch(status)
                client.update_status(slice_obj)
                logger.debug("cleared nsm addresses of disconnected pod %s", pod.pod_name)
                return True
            continue
        if pod.nsm_ip != live.nsm_ip:
            pod.nsm_ip = live.nsm_ip
            pod.nsm_peer_ip = live.nsm_peer_ip
            pod.nsm_interface = live.nsm_interface
            entries[index] = pod.to_dict()
            _touch(status)
            logger.info("app pod status changed: nsmIp=%s peerIp=%s", pod.nsm_ip, pod.nsm_peer_ip)
            _label_with_nsm_ip(client, pod, core_pods)
            client.update_status(slice_obj)
            return True
    return False