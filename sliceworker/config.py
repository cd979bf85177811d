"""Operator-wide constants and settings read from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

CONTROL_PLANE_NAMESPACE = "kubeslice-system"
DNS_DEPLOYMENT_NAME = "kubeslice-dns"
NSM_IP_LABEL_SELECTOR_KEY = "kubeslice.io/nsmIP"

APPLICATION_NAMESPACE_SELECTOR_LABEL_KEY = "kubeslice.io/slice"
NODE_TYPE_SELECTOR_LABEL_KEY = "kubeslice.io/node-type"
ALLOWED_NAMESPACE_SELECTOR_LABEL_KEY = "kubeslice.io/namespace"
ALLOWED_NAMESPACE_ANNOTATION_KEY = "kubeslice.io/trafficAllowedToSlices"
INJECT_SIDECAR_KEY = "kubeslice.io/inject"
POD_INJECT_LABEL_KEY = "kubeslice.io/pod-type"
NSM_NETWORK_SERVICE_ANNOTATION = "ns.networkservicemesh.io"

SLICE_ROUTER_DEPLOYMENT_NAME_PREFIX = "vl3-slice-router-"
SIDECAR_GRPC_PORT = 5000

DEFAULT_IMAGE_PULL_SECRET_NAME = "kubeslice-nexus"
RECONCILE_INTERVAL = 10.0


def get_env_or_default(
    key: str, default: str, environ: Mapping[str, str] | None = None
) -> str:
    """Return the environment value for ``key``, or ``default`` when it is unset."""
    env = os.environ if environ is None else environ
    return env.get(key, default)


@dataclass(frozen=True)
class Settings:
    """Values the worker reads once from its environment."""

    cluster_name: str = ""
    node_ip: str = ""
    image_pull_secret_name: str = DEFAULT_IMAGE_PULL_SECRET_NAME
    control_plane_namespace: str = CONTROL_PLANE_NAMESPACE
    dns_deployment_name: str = DNS_DEPLOYMENT_NAME
    reconcile_interval: float = RECONCILE_INTERVAL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``environ`` (the process environment by default)."""
        env = os.environ if environ is None else environ
        return cls(
            cluster_name=env.get("CLUSTER_NAME", ""),
            node_ip=env.get("NODE_IP", ""),
            image_pull_secret_name=get_env_or_default(
                "IMAGE_PULL_SECRET_NAME", DEFAULT_IMAGE_PULL_SECRET_NAME, env
            ),
        )