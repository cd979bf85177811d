# sliceworker

Reconciliation logic for application slices running on a worker cluster.
Given a `Slice` object, one pass of `SliceReconciler.reconcile` brings the
cluster in line with the slice's configuration. It:

- labels the `kubeslice-system` namespace with `kubeslice.io/inject=true` and
  registers the slice finalizer,
- records the cluster DNS service IP (`kubeslice-dns`) in the slice status,
- onboards and offboards application namespaces and allowed namespaces,
  including their labels and annotations, and installs or removes the slice's
  network policies (`sliceworker.app_namespaces`,
  `sliceworker.allowed_namespaces`),
- creates the slice router deployment and its gRPC service
  (`sliceworker.router`),
- tracks application pods connected to the slice router and labels them with
  their NSM IP (`sliceworker.app_pod`),
- pushes QoS profiles and slice deletion events to the netop pods
  (`sliceworker.netop`),
- on deletion, unbinds namespaces, deletes the router's network service,
  service imports and service exports, and removes the inject label when the
  last slice goes (`sliceworker.cleanup`).

Objects are plain dictionaries shaped like cluster resources (`kind`,
`metadata`, `spec`, `status`). They are read and written through
`MemoryClient` in `sliceworker.kube`, an in-memory store with `get`, `list`,
`create`, `update`, `update_status` and `delete`, resource versions, conflict
detection and finalizer-aware deletion.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

The reconciler talks to the hub, the slice router and the netop pods through
three small interfaces (`HubClientProvider`, `WorkerRouterClientProvider`,
`WorkerNetOpClientProvider` in `sliceworker.netop`). Any object with the right
methods will do:

```python
from sliceworker.config import Settings
from sliceworker.kube import MemoryClient
from sliceworker.reconciler import SliceReconciler


class Hub:
    def update_app_pods_list(self, slice_config_name, app_pods): ...
    def update_app_namespaces(self, slice_config_name, onboarded_namespaces): ...


class Router:
    def get_client_connection_info(self, addr):
        return []
    def send_connection_context(self, server_addr, conn_ctx): ...


class NetOp:
    def update_slice_qos_profile(self, addr, slice_obj): ...
    def send_slice_lifecycle_event(self, addr, slice_name, event): ...
    def send_connection_context(self, server_addr, gateway, node_port): ...


client = MemoryClient()
client.create({"kind": "Namespace", "metadata": {"name": "kubeslice-system"}})
client.create({
    "kind": "Slice",
    "metadata": {"name": "test-slice", "namespace": "kubeslice-system"},
    "spec": {},
    "status": {
        "sliceConfig": {
            "sliceSubnet": "10.0.0.1/16",
            "clusterSubnetCIDR": "10.0.0.1/20",
        },
    },
})

reconciler = SliceReconciler(
    client=client,
    hub_client=Hub(),
    router_client=Router(),
    netop_client=NetOp(),
    settings=Settings.from_env(),
)

result = reconciler.reconcile("test-slice", "kubeslice-system")
print(result.requeue, result.requeue_after)
```

`reconcile` returns a `Result` that says whether the slice should be looked at
again (`requeue`) and after how many seconds (`requeue_after`). A slice that
does not exist gives an empty `Result`. A slice without `status.sliceConfig`
raises `RuntimeError`; other failures the pass cannot recover from are raised
as the exception that caused them.

Optional fields of `SliceReconciler`:

| Field | Use |
| --- | --- |
| `build_policy` | `(slice_obj, namespace) -> dict` building the slice's NetworkPolicy for a namespace; needed when namespace isolation is enabled |
| `record_event` | called with an `Event` whenever a warning is raised against the slice |
| `install_egress`, `install_ingress` | called with `(client, slice_obj)` when the slice's external gateway config enables egress or ingress |
| `record_app_pods_count` | called with `(count, cluster, slice, namespace)` when the app pod list changes |
| `environ` | mapping read for router images instead of the process environment |

## Configuration

`Settings.from_env()` reads these environment variables:

| Variable | Meaning | Default |
| --- | --- | --- |
| `CLUSTER_NAME` | name of this worker cluster | empty |
| `NODE_IP` | node IP of this worker | empty |
| `IMAGE_PULL_SECRET_NAME` | pull secret added to the slice router pods | `kubeslice-nexus` |

The slice router images are taken from `AVESHA_VL3_ROUTER_IMAGE`,
`AVESHA_VL3_ROUTER_PULLPOLICY`, `AVESHA_VL3_SIDECAR_IMAGE` and
`AVESHA_VL3_SIDECAR_IMAGE_PULLPOLICY`. A pull policy that is not set defaults
to `Always`.

## What it does not do

- It has no connection to a real cluster: `MemoryClient` is the only client,
  and there is no watch loop or manager that calls `reconcile` on changes.
  Callers run passes themselves and honour the returned `Result`.
- It does not build network policies or install egress and ingress gateways
  itself; these come from the `build_policy`, `install_egress` and
  `install_ingress` callables. Without an installer an enabled gateway is
  skipped with a warning; without a policy builder, enabling isolation raises
  `RuntimeError`.
- It does not reconcile slice gateways, and it exports no metrics; app pod
  counts go only to `record_app_pods_count`.
- It has no command-line interface.