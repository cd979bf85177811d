"""The per-slice virtual L3 router: its deployment, service and clean-up."""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from sliceworker.config import (
    APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY,
    CONTROL_PLANE_NAMESPACE,
    NODE_TYPE_SELECTOR_LABEL_KEY,
    POD_INJECT_LABEL_KEY,
    SIDECAR_GRPC_PORT,
    SLICE_ROUTER_DEPLOYMENT_NAME_PREFIX,
    Settings,
)
from sliceworker.kube import (
    EVENT_TYPE_WARNING,
    Event,
    MemoryClient,
    NotFoundError,
    Result,
    set_controller_reference,
)

logger = logging.getLogger(__name__)

NSM_DATAPLANE_VPP = "vpp"
NSM_DATAPLANE_KERNEL = "kernel"
NSM_VPP_DATAPLANE_APP = "nsm-vpp-plane"
NSM_KERNEL_DATAPLANE_APP = "nsm-kernel-plane"
DEFAULT_PULL_POLICY = "Always"
ROUTER_REQUEUE_AFTER = 10.0

RecordEvent = Callable[[Event], None]


def _env(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def _slice_name(slice_obj: Mapping[str, Any]) -> str:
    return slice_obj["metadata"]["name"]


def _slice_namespace(slice_obj: Mapping[str, Any]) -> str:
    return slice_obj["metadata"].get("namespace", "")


def _slice_config(slice_obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return (slice_obj.get("status") or {}).get("sliceConfig")


def _router_name(slice_name: str) -> str:
    return SLICE_ROUTER_DEPLOYMENT_NAME_PREFIX + slice_name


def _env_var(name: str, value: str) -> dict[str, str]:
    return {"name": name, "value": value}


def _warn(record_event: RecordEvent | None, slice_obj: Mapping[str, Any], message: str) -> None:
    if record_event is not None:
        record_event(
            Event(object=slice_obj, event_type=EVENT_TYPE_WARNING, reason="Error", message=message)
        )


def labels_for_slice_router_deployment(name: str) -> dict[str, str]:
    """Labels carried by the slice router pods of slice ``name``."""
    return {
        "networkservicemesh.io/app": "vl3-nse-" + name,
        "networkservicemesh.io/impl": "vl3-service-" + name,
        POD_INJECT_LABEL_KEY: "router",
        APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY: name,
    }


def get_sidecar_image_and_pull_policy(
    environ: Mapping[str, str] | None = None,
) -> tuple[str, str]:
    """Return the router sidecar image and its pull policy from the environment."""
    env = _env(environ)
    image = env.get("AVESHA_VL3_SIDECAR_IMAGE", "")
    policy = env.get("AVESHA_VL3_SIDECAR_IMAGE_PULLPOLICY", "") or DEFAULT_PULL_POLICY
    return image, policy


def get_nsm_dataplane_mode(client: MemoryClient, slice_obj: Mapping[str, Any]) -> str:
    """Return ``vpp`` when a VPP dataplane pod runs in the slice namespace, else ``kernel``."""
    vpp_pods = client.list(
        "Pod", namespace=_slice_namespace(slice_obj), labels={"app": NSM_VPP_DATAPLANE_APP}
    )
    return NSM_DATAPLANE_VPP if vpp_pods else NSM_DATAPLANE_KERNEL


def container_spec_for_slice_router(
    slice_obj: Mapping[str, Any],
    dataplane: str,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the router container for the given dataplane."""
    env = _env(environ)
    name = _slice_name(slice_obj)
    config = _slice_config(slice_obj) or {}
    status = slice_obj.get("status") or {}

    container: dict[str, Any] = {
        "name": "vl3-nse",
        "image": env.get("AVESHA_VL3_ROUTER_IMAGE", ""),
        "imagePullPolicy": env.get("AVESHA_VL3_ROUTER_PULLPOLICY", "") or DEFAULT_PULL_POLICY,
        "env": [
            _env_var("DATAPLANE", dataplane),
            _env_var("ENDPOINT_NETWORK_SERVICE", "vl3-service-" + name),
            _env_var("ENDPOINT_LABELS", "app=vl3-nse-" + name),
            _env_var("TRACER_ENABLED", "true"),
            _env_var("NSREGISTRY_ADDR", "nsmgr." + CONTROL_PLANE_NAMESPACE),
            _env_var("NSREGISTRY_PORT", str(SIDECAR_GRPC_PORT)),
        ],
        "resources": {"limits": {"networkservicemesh.io/socket": "1"}},
        "securityContext": {"privileged": True},
    }

    if dataplane == NSM_DATAPLANE_KERNEL:
        container["env"] += [
            _env_var("IP_ADDRESS", config.get("clusterSubnetCIDR", "")),
            _env_var("DST_ROUTES", config.get("sliceSubnet", "")),
            _env_var("DNS_NAMESERVERS", status.get("dnsIp", "")),
            _env_var("DNS_DOMAINS", "slice.local"),
        ]
    elif dataplane == NSM_DATAPLANE_VPP:
        container["env"].append(
            _env_var("NSE_IPAM_UNIQUE_OCTET", config.get("clusterSubnetCIDR", ""))
        )
        container["volumeMounts"] = [
            {
                "name": "universal-cnf-config-volume",
                "mountPath": "/etc/universal-cnf/config.yaml",
                "subPath": "config.yaml",
            }
        ]
    return container


def container_spec_for_sidecar(
    dataplane: str, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Build the sidecar container that runs beside the router."""
    image, policy = get_sidecar_image_and_pull_policy(environ)
    return {
        "name": "kubeslice-vl3-sidecar",
        "image": image,
        "imagePullPolicy": policy,
        "env": [
            _env_var("DATAPLANE", dataplane),
            _env_var("POD_TYPE", "SLICEROUTER_POD"),
        ],
        "securityContext": {
            "privileged": True,
            "allowPrivilegeEscalation": True,
            "capabilities": {"add": ["NET_ADMIN"]},
        },
        "volumeMounts": [{"name": "shared-volume", "mountPath": "/config"}],
    }


def volume_spec_for_slice_router(
    slice_obj: Mapping[str, Any], dataplane: str
) -> list[dict[str, Any]]:
    """Volumes for the router pod; VPP also needs its configuration map."""
    volumes: list[dict[str, Any]] = [{"name": "shared-volume", "emptyDir": {}}]
    if dataplane == NSM_DATAPLANE_VPP:
        volumes.append(
            {
                "name": "universal-cnf-config-volume",
                "configMap": {"name": "ucnf-vl3-service-" + _slice_name(slice_obj)},
            }
        )
    return volumes


def _gateway_tolerations() -> list[dict[str, str]]:
    return [
        {"key": NODE_TYPE_SELECTOR_LABEL_KEY, "operator": "Equal", "effect": effect, "value": "gateway"}
        for effect in ("NoSchedule", "NoExecute")
    ]


def _gateway_affinity() -> dict[str, Any]:
    return {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {
                                "key": NODE_TYPE_SELECTOR_LABEL_KEY,
                                "operator": "In",
                                "values": ["gateway"],
                            }
                        ]
                    }
                ]
            }
        }
    }


def deployment_for_slice_router(
    slice_obj: Mapping[str, Any],
    dataplane: str,
    settings: Settings,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the router deployment, owned by the slice."""
    name = _slice_name(slice_obj)
    labels = labels_for_slice_router_deployment(name)
    pod_spec: dict[str, Any] = {
        "serviceAccountName": "slice-router",
        "affinity": _gateway_affinity(),
        "containers": [
            container_spec_for_slice_router(slice_obj, dataplane, environ),
            container_spec_for_sidecar(dataplane, environ),
        ],
        "volumes": volume_spec_for_slice_router(slice_obj, dataplane),
        "tolerations": _gateway_tolerations(),
    }
    if settings.image_pull_secret_name:
        pod_spec["imagePullSecrets"] = [{"name": settings.image_pull_secret_name}]

    deployment: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": _router_name(name), "namespace": _slice_namespace(slice_obj)},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": dict(labels)},
            "template": {"metadata": {"labels": dict(labels)}, "spec": pod_spec},
        },
    }
    # An owner that cannot be set leaves the deployment unowned.
    with contextlib.suppress(ValueError):
        set_controller_reference(slice_obj, deployment)
    return deployment


def service_for_slice_router(slice_obj: Mapping[str, Any]) -> dict[str, Any]:
    """Build the router's gRPC service, owned by the slice.

    Raises ValueError when the slice cannot own the service.
    """
    name = _slice_name(slice_obj)
    service: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": _router_name(name), "namespace": CONTROL_PLANE_NAMESPACE},
        "spec": {
            "selector": labels_for_slice_router_deployment(name),
            "ports": [{"port": SIDECAR_GRPC_PORT, "name": "grpc"}],
        },
    }
    return set_controller_reference(slice_obj, service)


def deploy_slice_router(
    client: MemoryClient,
    slice_obj: Mapping[str, Any],
    settings: Settings,
    record_event: RecordEvent | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Create the router deployment for the slice and return it."""
    dataplane = get_nsm_dataplane_mode(client, slice_obj)
    if dataplane not in (NSM_DATAPLANE_KERNEL, NSM_DATAPLANE_VPP):
        raise ValueError(f"invalid dataplane: {dataplane}")
    deployment = deployment_for_slice_router(slice_obj, dataplane, settings, environ)
    try:
        created = client.create(deployment)
    except Exception:
        logger.error("failed to create deployment for slice router")
        _warn(record_event, slice_obj, "Error creating slice router")
        raise
    logger.info(
        "created slice router deployment for %s, cluster subnet %s",
        _slice_name(slice_obj),
        (_slice_config(slice_obj) or {}).get("clusterSubnetCIDR", ""),
    )
    return created


def deploy_slice_router_service(
    client: MemoryClient,
    slice_obj: Mapping[str, Any],
    record_event: RecordEvent | None = None,
) -> dict[str, Any]:
    """Create the router service for the slice and return it."""
    service = service_for_slice_router(slice_obj)
    try:
        created = client.create(service)
    except Exception:
        logger.error("failed to create service for slice router")
        _warn(record_event, slice_obj, "Error creating service for slice router")
        raise
    logger.info("created slice router service for %s", _slice_name(slice_obj))
    return created


def slice_config_defined(slice_obj: Mapping[str, Any]) -> bool:
    """Tell whether the slice carries the subnets the router needs."""
    config = _slice_config(slice_obj)
    return bool(config and config.get("sliceSubnet") and config.get("clusterSubnetCIDR"))


def reconcile_slice_router(
    client: MemoryClient,
    slice_obj: Mapping[str, Any],
    settings: Settings,
    record_event: RecordEvent | None = None,
    environ: Mapping[str, str] | None = None,
) -> Result | None:
    """Create whatever part of the slice router is missing.

    Returns a Result when the caller should stop and requeue, None when the
    router deployment and service both exist.
    """
    name = _slice_name(slice_obj)
    try:
        client.get("Deployment", _router_name(name), _slice_namespace(slice_obj))
    except NotFoundError:
        if not slice_config_defined(slice_obj):
            logger.info("slice subnet config not available yet, cannot deploy slice router")
            return Result(requeue_after=ROUTER_REQUEUE_AFTER)
        try:
            deploy_slice_router(client, slice_obj, settings, record_event, environ)
        except Exception:
            logger.error("failed to deploy slice router")
            raise
        return Result(requeue_after=ROUTER_REQUEUE_AFTER)

    try:
        client.get("Service", _router_name(name), CONTROL_PLANE_NAMESPACE)
    except NotFoundError:
        if _slice_config(slice_obj) is None:
            return Result(requeue_after=ROUTER_REQUEUE_AFTER)
        try:
            deploy_slice_router_service(client, slice_obj, record_event)
        except Exception:
            logger.error("failed to deploy slice router service")
            raise
        return Result(requeue_after=ROUTER_REQUEUE_AFTER)

    return None


def cleanup_slice_router(client: MemoryClient, slice_name: str) -> bool:
    """Delete the slice's network service; return whether there was one."""
    try:
        client.get("NetworkService", "vl3-service-" + slice_name, CONTROL_PLANE_NAMESPACE)
    except NotFoundError:
        return False
    client.delete("NetworkService", "vl3-service-" + slice_name, CONTROL_PLANE_NAMESPACE)
    return True