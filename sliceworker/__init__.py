"""Reconciliation of application slices on a worker cluster."""

__version__ = "1.18.0"

__all__ = [
    "allowed_namespaces",
    "app_namespaces",
    "app_pod",
    "cleanup",
    "config",
    "kube",
    "netop",
    "reconciler",
    "router",
]