"""The slice reconciler: one pass brings a slice and its resources up to date."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sliceworker.allowed_namespaces import BuildPolicy, reconcile_slice_namespaces
from sliceworker.app_pod import AppPod, get_app_pods, reconcile_app_pods
from sliceworker.cleanup import cleanup_slice_resources
from sliceworker.config import INJECT_SIDECAR_KEY, Settings
from sliceworker.kube import (
    EVENT_TYPE_WARNING,
    Event,
    MemoryClient,
    NotFoundError,
    Result,
    add_finalizer,
    contains_finalizer,
    is_deleting,
    remove_finalizer,
)
from sliceworker.netop import (
    HubClientProvider,
    WorkerNetOpClientProvider,
    WorkerRouterClientProvider,
    send_slice_deletion_event,
    sync_slice_qos_profile,
)
from sliceworker.router import reconcile_slice_router

logger = logging.getLogger(__name__)

SLICE_FINALIZER = "networking.kubeslice.io/slice-finalizer"

RecordEvent = Callable[[Event], None]
Installer = Callable[[MemoryClient, Mapping[str, Any]], None]
RecordAppPodsCount = Callable[[int, str, str, str], None]


def _slice_config(slice_obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return (slice_obj.get("status") or {}).get("sliceConfig")


def _gateway_enabled(slice_obj: Mapping[str, Any], direction: str) -> bool:
    gateway = (_slice_config(slice_obj) or {}).get("externalGatewayConfig")
    return bool(gateway and (gateway.get(direction) or {}).get("enabled"))


def is_egress_configured(slice_obj: Mapping[str, Any]) -> bool:
    """Tell whether the slice asks for an egress gateway."""
    return _gateway_enabled(slice_obj, "egress")


def is_ingress_configured(slice_obj: Mapping[str, Any]) -> bool:
    """Tell whether the slice asks for an ingress gateway."""
    return _gateway_enabled(slice_obj, "ingress")


def is_app_pod_status_changed(current: Sequence[AppPod], old: Sequence[AppPod]) -> bool:
    """Tell whether the set of (IP, name) pairs differs between two app pod lists."""
    if len(current) != len(old):
        return True
    names_by_ip = {pod.pod_ip: pod.pod_name for pod in old}
    return any(names_by_ip.get(pod.pod_ip, "") != pod.pod_name for pod in current)


def _missing_policy_builder(slice_obj: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    raise RuntimeError("no network policy builder configured")


@dataclass
class SliceReconciler:
    """Reconciles Slice objects held by ``client``."""

    client: MemoryClient
    hub_client: HubClientProvider
    router_client: WorkerRouterClientProvider
    netop_client: WorkerNetOpClientProvider
    settings: Settings = field(default_factory=Settings)
    build_policy: BuildPolicy | None = None
    record_event: RecordEvent | None = None
    install_egress: Installer | None = None
    install_ingress: Installer | None = None
    record_app_pods_count: RecordAppPodsCount | None = None
    environ: Mapping[str, str] | None = None

    def _warn(self, slice_obj: Mapping[str, Any], message: str) -> None:
        if self.record_event is not None:
            self.record_event(
                Event(object=slice_obj, event_type=EVENT_TYPE_WARNING, reason="Error", message=message)
            )

    def _label_control_plane_namespace(self) -> None:
        namespace = self.client.get("Namespace", self.settings.control_plane_namespace)
        labels = namespace["metadata"].get("labels") or {}
        if INJECT_SIDECAR_KEY not in labels:
            labels[INJECT_SIDECAR_KEY] = "true"
            namespace["metadata"]["labels"] = labels
            self.client.update(namespace)

    def _install_gateway(
        self, slice_obj: dict[str, Any], installer: Installer | None, kind: str
    ) -> bool:
        logger.debug("installing %s", kind)
        if installer is None:
            logger.warning("no %s installer configured; skipping", kind)
            return True
        try:
            installer(self.client, slice_obj)
        except Exception as exc:
            logger.error("unable to install %s: %s", kind, exc)
            self._warn(slice_obj, f"Failed to install {kind}")
            return False
        return True

    def reconcile(self, name: str, namespace: str) -> Result:
        """Run one reconciliation pass for the named slice."""
        try:
            slice_obj = self.client.get("Slice", name, namespace)
        except NotFoundError:
            logger.info("slice %s/%s not found; it must have been deleted", namespace, name)
            return Result()

        logger.info("reconciling slice %s", name)
        self._label_control_plane_namespace()

        result = self.handle_slice_deletion(slice_obj, name, namespace)
        if result is not None:
            return result

        status = slice_obj.setdefault("status", {})
        if not status.get("dnsIp"):
            result = self.handle_dns_service(slice_obj)
            if result is not None:
                return result

        if _slice_config(slice_obj) is None:
            logger.error("slice is not reconciled from hub yet, skipping reconciliation")
            raise RuntimeError("slice not reconciled from hub")

        reconcile_slice_namespaces(
            self.client,
            self.hub_client,
            slice_obj,
            self.settings,
            self.build_policy or _missing_policy_builder,
        )

        logger.debug("syncing slice QoS config with netop pods")
        try:
            sync_slice_qos_profile(self.client, self.netop_client, slice_obj)
        except Exception as exc:
            logger.error("failed to sync QoS profile with netop pods: %s", exc)
            self._warn(slice_obj, "Failed to sync QoS profile with netop pods")

        logger.info("external gateway config: %s", _slice_config(slice_obj))
        if is_egress_configured(slice_obj) and not self._install_gateway(
            slice_obj, self.install_egress, "egress"
        ):
            return Result()
        if is_ingress_configured(slice_obj) and not self._install_gateway(
            slice_obj, self.install_ingress, "ingress"
        ):
            return Result()

        result = reconcile_slice_router(
            self.client, slice_obj, self.settings, self.record_event, self.environ
        )
        if result is not None:
            return result

        try:
            app_pods = get_app_pods(self.client, slice_obj)
        except Exception as exc:
            logger.debug("failed to fetch app pods: %s", exc)
            app_pods = []
        old_pods = [AppPod.from_dict(p) for p in status.get("appPods") or []]
        if is_app_pod_status_changed(app_pods, old_pods):
            logger.info("app pod status changed")
            return self.handle_app_pod_status_change(app_pods, slice_obj)

        logger.debug("reconciling app pods")
        if reconcile_app_pods(self.client, self.router_client, slice_obj):
            logger.info("updating app pod list in hub")
            config_name = f"{name}-{self.settings.cluster_name}"
            pods = [AppPod.from_dict(p) for p in slice_obj["status"].get("appPods") or []]
            try:
                self.hub_client.update_app_pods_list(config_name, pods)
            except Exception:
                logger.error("failed to update app pod list in hub")
                self._warn(
                    slice_obj, "Failed to update app pod list in kubeslice-controller cluster"
                )
                raise
            return Result(requeue=True)

        return Result(requeue_after=self.settings.reconcile_interval)

    def handle_app_pod_status_change(
        self, app_pods: Sequence[AppPod], slice_obj: dict[str, Any]
    ) -> Result:
        """Record the new app pod list in the slice status and report counts."""
        slice_name = slice_obj["metadata"]["name"]
        cluster = self.settings.cluster_name
        status = slice_obj.setdefault("status", {})
        old = [AppPod.from_dict(p) for p in status.get("appPods") or []]

        if self.record_app_pods_count is not None:
            if not app_pods:
                for pod in old:
                    self.record_app_pods_count(0, cluster, slice_name, pod.pod_namespace)
            per_namespace: dict[str, int] = defaultdict(int)
            for pod in app_pods:
                per_namespace[pod.pod_namespace] += 1
            for ns, count in per_namespace.items():
                self.record_app_pods_count(count, cluster, slice_name, ns)

        status["appPods"] = [pod.to_dict() for pod in app_pods]
        status["appPodsUpdatedOn"] = int(time.time())
        try:
            self.client.update_status(slice_obj)
        except Exception:
            logger.error("failed to update slice status for app pods")
            raise
        logger.info("app pod status updated in slice")
        return Result(requeue=True)

    def handle_dns_service(self, slice_obj: dict[str, Any]) -> Result | None:
        """Record the DNS service IP in the slice status.

        Returns a Result when the status was written, None when there is no
        DNS service and reconciliation should go on.
        """
        try:
            service = self.client.get(
                "Service", self.settings.dns_deployment_name, self.settings.control_plane_namespace
            )
        except NotFoundError:
            logger.info("DNS service not found in the cluster; continuing")
            return None
        slice_obj.setdefault("status", {})["dnsIp"] = (service.get("spec") or {}).get(
            "clusterIP", ""
        )
        try:
            self.client.update_status(slice_obj)
        except Exception:
            logger.error("failed to update slice status for dns")
            raise
        return Result()

    def handle_slice_deletion(
        self, slice_obj: dict[str, Any], name: str, namespace: str
    ) -> Result | None:
        """Register the finalizer, or clean up a slice being deleted.

        Returns a Result when reconciliation must stop, None otherwise.
        """
        if not is_deleting(slice_obj):
            if not contains_finalizer(slice_obj, SLICE_FINALIZER):
                add_finalizer(slice_obj, SLICE_FINALIZER)
                self.client.update(slice_obj)
            return None

        if contains_finalizer(slice_obj, SLICE_FINALIZER):
            logger.info("deleting slice %s", slice_obj["metadata"]["name"])
            try:
                send_slice_deletion_event(self.client, self.netop_client, name, namespace)
            except Exception as exc:
                logger.error("failed to send slice deletion event to netop: %s", exc)
            cleanup_slice_resources(self.client, slice_obj)
            remove_finalizer(slice_obj, SLICE_FINALIZER)
            self.client.update(slice_obj)
        return Result()