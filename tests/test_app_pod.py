import pytest

from sliceworker.app_pod import (
    AppPod,
    find_app_pod_connected_to_slice,
    find_pod_in_pod_list,
    get_app_pods,
    get_slice_router_connected_pods,
    is_app_pod_connected_to_slice_router,
    labels_for_app_pods,
    reconcile_app_pods,
)
from sliceworker.kube import MemoryClient


class FakeRouter:
    def __init__(self, pods=(), error=None):
        self.pods = list(pods)
        self.error = error
        self.addresses = []

    def get_client_connection_info(self, addr):
        self.addresses.append(addr)
        if self.error:
            raise self.error
        return list(self.pods)

    def send_connection_context(self, server_addr, conn_ctx):
        raise AssertionError("not used")


def _app_pod(name="nginx-pod", namespace="default", slice_name="test-slice", phase="Running", ip="1.2.3.4"):
    return {
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {"kubeslice.io/slice": slice_name, "kubeslice.io/pod-type": "app"},
            "annotations": {"ns.networkservicemesh.io": f"vl3-service-{slice_name}"},
        },
        "status": {"phase": phase, "podIP": ip},
    }


def _slice(app_pods=()):
    return {
        "kind": "Slice",
        "metadata": {"name": "test-slice", "namespace": "kubeslice-system"},
        "status": {"appPods": [p.to_dict() for p in app_pods]},
    }


def test_app_pod_dict_round_trip():
    pod = AppPod("nginx-pod", "default", "1.2.3.4", "10.0.0.2", "10.0.0.1", "nsm0")
    assert AppPod.from_dict(pod.to_dict()) == pod


def test_labels_for_app_pods():
    assert labels_for_app_pods() == {"kubeslice.io/pod-type": "app"}


@pytest.mark.parametrize(
    "annotations, expected",
    [
        ({"ns.networkservicemesh.io": "vl3-service-test-slice"}, True),
        ({"ns.networkservicemesh.io": "vl3-service-other"}, False),
        ({}, False),
        (None, False),
    ],
)
def test_is_app_pod_connected(annotations, expected):
    assert is_app_pod_connected_to_slice_router(annotations, "vl3-service-test-slice") is expected


def test_get_app_pods_keeps_running_pods_of_slice():
    client = MemoryClient(
        [
            _app_pod(),
            _app_pod(name="pending", phase="Pending"),
            _app_pod(name="elsewhere", slice_name="other"),
        ]
    )
    pods = get_app_pods(client, _slice())
    assert pods == [AppPod(pod_name="nginx-pod", pod_namespace="default", pod_ip="1.2.3.4")]


def test_find_helpers():
    connected = [AppPod("a"), AppPod("nginx-pod", nsm_ip="10.0.0.2")]
    assert find_app_pod_connected_to_slice("nginx-pod", connected).nsm_ip == "10.0.0.2"
    assert find_app_pod_connected_to_slice("missing", connected) is None
    pods = [_app_pod(name="x"), _app_pod()]
    assert find_pod_in_pod_list("nginx-pod", pods)["metadata"]["name"] == "nginx-pod"
    assert find_pod_in_pod_list("missing", pods) is None


def test_router_address():
    router = FakeRouter([AppPod("nginx-pod")])
    assert get_slice_router_connected_pods(router, "test-slice") == [AppPod("nginx-pod")]
    assert router.addresses == ["vl3-slice-router-test-slice:5000"]


def test_reconcile_clears_nsm_of_disconnected_pod():
    recorded = AppPod("nginx-pod", "default", "1.2.3.4", nsm_ip="10.0.0.2", nsm_peer_ip="10.0.0.1")
    slice_obj = _slice([recorded])
    client = MemoryClient([_app_pod(), slice_obj])
    assert reconcile_app_pods(client, FakeRouter(), slice_obj) is True
    stored = client.get("Slice", "test-slice", "kubeslice-system")
    entry = AppPod.from_dict(stored["status"]["appPods"][0])
    assert (entry.nsm_ip, entry.nsm_peer_ip) == ("", "")
    assert "appPodsUpdatedOn" in stored["status"]


def test_reconcile_skips_disconnected_pod_without_nsm():
    slice_obj = _slice([AppPod("nginx-pod", "default", "1.2.3.4")])
    client = MemoryClient([_app_pod(), slice_obj])
    assert reconcile_app_pods(client, FakeRouter(), slice_obj) is False
    assert "appPodsUpdatedOn" not in client.get("Slice", "test-slice", "kubeslice-system")["status"]


def test_reconcile_records_new_nsm_ip_and_labels_pod():
    slice_obj = _slice([AppPod("nginx-pod", "default", "1.2.3.4")])
    client = MemoryClient([_app_pod(), slice_obj])
    live = AppPod("nginx-pod", nsm_ip="10.0.0.2", nsm_peer_ip="10.0.0.1", nsm_interface="nsm0")
    assert reconcile_app_pods(client, FakeRouter([live]), slice_obj) is True
    entry = AppPod.from_dict(client.get("Slice", "test-slice", "kubeslice-system")["status"]["appPods"][0])
    assert (entry.nsm_ip, entry.nsm_peer_ip, entry.nsm_interface) == ("10.0.0.2", "10.0.0.1", "nsm0")
    assert entry.pod_ip == "1.2.3.4"
    pod = client.get("Pod", "nginx-pod", "default")
    assert pod["metadata"]["labels"]["kubeslice.io/nsmIP"] == "10.0.0.2"


def test_reconcile_no_change_when_nsm_ip_matches():
    recorded = AppPod("nginx-pod", "default", "1.2.3.4", nsm_ip="10.0.0.2")
    slice_obj = _slice([recorded])
    client = MemoryClient([_app_pod(), slice_obj])
    live = AppPod("nginx-pod", nsm_ip="10.0.0.2")
    assert reconcile_app_pods(client, FakeRouter([live]), slice_obj) is False


def test_reconcile_propagates_router_error():
    slice_obj = _slice([AppPod("nginx-pod")])
    client = MemoryClient([slice_obj])
    with pytest.raises(ConnectionError):
        reconcile_app_pods(client, FakeRouter(error=ConnectionError("down")), slice_obj)