"""Network-operator pods and the client interfaces the slice controller talks to."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from sliceworker.config import SIDECAR_GRPC_PORT
from sliceworker.kube import MemoryClient

if TYPE_CHECKING:
    from sliceworker.app_pod import AppPod

logger = logging.getLogger(__name__)

NET_OP_POD_LABELS = {"app": "app_net_op"}


@dataclass(frozen=True)
class NetOpPod:
    """A network-operator pod running in the cluster."""

    pod_ip: str
    pod_name: str
    node: str


class SliceEvent(Enum):
    """Slice life-cycle events sent to network-operator pods."""

    DELETE = "EV_DELETE"


class HubClientProvider(Protocol):
    def update_app_pods_list(self, slice_config_name: str, app_pods: Sequence["AppPod"]) -> None: ...

    def update_app_namespaces(self, slice_config_name: str, onboarded_namespaces: Sequence[str]) -> None: ...


class WorkerRouterClientProvider(Protocol):
    def get_client_connection_info(self, addr: str) -> list["AppPod"]: ...

    def send_connection_context(self, server_addr: str, conn_ctx: Any) -> None: ...


class WorkerNetOpClientProvider(Protocol):
    def update_slice_qos_profile(self, addr: str, slice_obj: Mapping[str, Any]) -> None: ...

    def send_slice_lifecycle_event(self, addr: str, slice_name: str, event: SliceEvent) -> None: ...

    def send_connection_context(self, server_addr: str, gateway: Mapping[str, Any], node_port: int) -> None: ...


def _address(pod: NetOpPod) -> str:
    return f"{pod.pod_ip}:{SIDECAR_GRPC_PORT}"


def get_net_op_pods(client: MemoryClient, namespace: str) -> list[NetOpPod]:
    """Return the network-operator pods in ``namespace``."""
    return [
        NetOpPod(
            pod_ip=(pod.get("status") or {}).get("podIP", ""),
            pod_name=pod["metadata"]["name"],
            node=(pod.get("spec") or {}).get("nodeName", ""),
        )
        for pod in client.list("Pod", namespace=namespace, labels=NET_OP_POD_LABELS)
    ]


def sync_slice_qos_profile(
    client: MemoryClient,
    netop_client: WorkerNetOpClientProvider,
    slice_obj: Mapping[str, Any],
) -> list[NetOpPod]:
    """Send the slice QoS profile to every network-operator pod; stop at the first failure."""
    pods = get_net_op_pods(client, slice_obj["metadata"].get("namespace", ""))
    logger.debug("got netop pods: %s", pods)
    for pod in pods:
        try:
            netop_client.update_slice_qos_profile(_address(pod), slice_obj)
        except Exception:
            logger.error("failed to send qos to netop pod %s (%s)", pod.pod_name, pod.pod_ip)
            raise
    return pods


def send_slice_deletion_event(
    client: MemoryClient,
    netop_client: WorkerNetOpClientProvider,
    slice_name: str,
    namespace: str,
) -> list[NetOpPod]:
    """Tell every network-operator pod that a slice is gone; failures are only logged."""
    pods = get_net_op_pods(client, namespace)
    for pod in pods:
        try:
            netop_client.send_slice_lifecycle_event(_address(pod), slice_name, SliceEvent.DELETE)
        except Exception as exc:
            logger.error(
                "failed to send slice lifecycle event to netop pod %s (%s): %s",
                pod.pod_name,
                pod.pod_ip,
                exc,
            )
    return pods