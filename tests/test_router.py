import pytest

from sliceworker.config import Settings
from sliceworker.kube import ConflictError, MemoryClient, NotFoundError
from sliceworker.router import (
    cleanup_slice_router,
    container_spec_for_sidecar,
    container_spec_for_slice_router,
    deploy_slice_router,
    deploy_slice_router_service,
    deployment_for_slice_router,
    get_nsm_dataplane_mode,
    get_sidecar_image_and_pull_policy,
    labels_for_slice_router_deployment,
    reconcile_slice_router,
    service_for_slice_router,
    slice_config_defined,
    volume_spec_for_slice_router,
)

ENV = {"AVESHA_VL3_SIDECAR_IMAGE": "vl3-sidecar-test", "AVESHA_VL3_ROUTER_IMAGE": "vl3-test"}
CONFIG = {
    "sliceDisplayName": "test-slice",
    "sliceSubnet": "10.0.0.1/16",
    "sliceId": "test-slice",
    "sliceType": "Application",
    "clusterSubnetCIDR": "10.0.0.1/20",
}


def make_slice(client, name="test-slice", namespace="kubeslice-system", config=None):
    client.create(
        {
            "apiVersion": "networking.kubeslice.io/v1beta1",
            "kind": "Slice",
            "metadata": {"name": name, "namespace": namespace},
        }
    )
    slice_obj = client.get("Slice", name, namespace)
    if config is not None:
        slice_obj["status"] = {"sliceConfig": dict(config)}
    return slice_obj


def env_dict(container):
    return {e["name"]: e["value"] for e in container["env"]}


def test_labels_for_router():
    labels = labels_for_slice_router_deployment("test-slice")
    assert labels["kubeslice.io/slice"] == "test-slice"
    assert labels["kubeslice.io/pod-type"] == "router"
    assert labels["networkservicemesh.io/impl"] == "vl3-service-test-slice"


def test_sidecar_image_and_default_pull_policy():
    assert get_sidecar_image_and_pull_policy(ENV) == ("vl3-sidecar-test", "Always")


def test_sidecar_pull_policy_override():
    env = dict(ENV, AVESHA_VL3_SIDECAR_IMAGE_PULLPOLICY="IfNotPresent")
    assert get_sidecar_image_and_pull_policy(env)[1] == "IfNotPresent"


def test_dataplane_mode_kernel_then_vpp():
    client = MemoryClient()
    slice_obj = make_slice(client)
    assert get_nsm_dataplane_mode(client, slice_obj) == "kernel"
    client.create(
        {
            "kind": "Pod",
            "metadata": {
                "name": "vpp-0",
                "namespace": "kubeslice-system",
                "labels": {"app": "nsm-vpp-plane"},
            },
        }
    )
    assert get_nsm_dataplane_mode(client, slice_obj) == "vpp"


def test_kernel_router_container():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    slice_obj["status"]["dnsIp"] = "10.0.0.20"
    container = container_spec_for_slice_router(slice_obj, "kernel", ENV)
    env = env_dict(container)
    assert container["image"] == "vl3-test"
    assert env["IP_ADDRESS"] == "10.0.0.1/20"
    assert env["DST_ROUTES"] == "10.0.0.1/16"
    assert env["DNS_NAMESERVERS"] == "10.0.0.20"
    assert "NSE_IPAM_UNIQUE_OCTET" not in env
    assert "volumeMounts" not in container


def test_vpp_router_container_and_volumes():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    container = container_spec_for_slice_router(slice_obj, "vpp", ENV)
    env = env_dict(container)
    assert env["NSE_IPAM_UNIQUE_OCTET"] == "10.0.0.1/20"
    assert "IP_ADDRESS" not in env
    assert container["volumeMounts"][0]["name"] == "universal-cnf-config-volume"
    volumes = volume_spec_for_slice_router(slice_obj, "vpp")
    assert [v["name"] for v in volumes] == ["shared-volume", "universal-cnf-config-volume"]
    assert volumes[1]["configMap"]["name"] == "ucnf-vl3-service-test-slice"
    assert len(volume_spec_for_slice_router(slice_obj, "kernel")) == 1


def test_sidecar_container():
    container = container_spec_for_sidecar("kernel", ENV)
    assert container["name"] == "kubeslice-vl3-sidecar"
    assert env_dict(container) == {"DATAPLANE": "kernel", "POD_TYPE": "SLICEROUTER_POD"}
    assert container["securityContext"]["capabilities"]["add"] == ["NET_ADMIN"]


def test_deployment_owned_by_slice_with_pull_secret():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    dep = deployment_for_slice_router(slice_obj, "kernel", Settings(), ENV)
    assert dep["metadata"]["name"] == "vl3-slice-router-test-slice"
    assert dep["spec"]["template"]["spec"]["imagePullSecrets"] == [{"name": "kubeslice-nexus"}]
    owner = dep["metadata"]["ownerReferences"][0]
    assert owner["uid"] == slice_obj["metadata"]["uid"]
    assert dep["spec"]["selector"]["matchLabels"] == dep["spec"]["template"]["metadata"]["labels"]


def test_deployment_without_pull_secret():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    dep = deployment_for_slice_router(
        slice_obj, "kernel", Settings(image_pull_secret_name=""), ENV
    )
    assert "imagePullSecrets" not in dep["spec"]["template"]["spec"]


def test_service_across_namespaces_is_rejected():
    client = MemoryClient()
    slice_obj = make_slice(client, namespace="elsewhere", config=CONFIG)
    with pytest.raises(ValueError):
        service_for_slice_router(slice_obj)


def test_slice_config_defined():
    assert slice_config_defined({"metadata": {"name": "s"}}) is False
    assert slice_config_defined({"metadata": {"name": "s"}, "status": {"sliceConfig": CONFIG}})
    partial = {"sliceSubnet": "10.0.0.1/16", "clusterSubnetCIDR": ""}
    assert slice_config_defined({"metadata": {"name": "s"}, "status": {"sliceConfig": partial}}) is False


def test_reconcile_creates_router_deployment_and_service():
    client = MemoryClient()
    slice_obj = make_slice(client)
    settings = Settings()

    waiting = reconcile_slice_router(client, slice_obj, settings, environ=ENV)
    assert waiting.requeue_after == 10
    with pytest.raises(NotFoundError):
        client.get("Deployment", "vl3-slice-router-test-slice", "kubeslice-system")

    slice_obj["status"] = {"sliceConfig": dict(CONFIG)}
    assert reconcile_slice_router(client, slice_obj, settings, environ=ENV).requeue_after == 10
    created = client.get("Deployment", "vl3-slice-router-test-slice", "kubeslice-system")
    containers = created["spec"]["template"]["spec"]["containers"]
    assert containers[0]["image"] == "vl3-test"
    assert containers[1]["image"] == "vl3-sidecar-test"

    assert reconcile_slice_router(client, slice_obj, settings, environ=ENV).requeue_after == 10
    svc = client.get("Service", "vl3-slice-router-test-slice", "kubeslice-system")
    assert svc["metadata"]["name"] == "vl3-slice-router-test-slice"

    assert reconcile_slice_router(client, slice_obj, settings, environ=ENV) is None


def test_deploy_failure_records_event():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    deploy_slice_router(client, slice_obj, Settings(), environ=ENV)
    events = []
    with pytest.raises(ConflictError):
        deploy_slice_router(client, slice_obj, Settings(), events.append, ENV)
    assert [e.message for e in events] == ["Error creating slice router"]
    assert events[0].event_type == "Warning"


def test_service_failure_records_event():
    client = MemoryClient()
    slice_obj = make_slice(client, config=CONFIG)
    deploy_slice_router_service(client, slice_obj)
    events = []
    with pytest.raises(ConflictError):
        deploy_slice_router_service(client, slice_obj, events.append)
    assert [e.message for e in events] == ["Error creating service for slice router"]


def test_cleanup_slice_router():
    client = MemoryClient()
    assert cleanup_slice_router(client, "test-slice") is False
    client.create(
        {
            "kind": "NetworkService",
            "metadata": {"name": "vl3-service-test-slice", "namespace": "kubeslice-system"},
        }
    )
    assert cleanup_slice_router(client, "test-slice") is True
    with pytest.raises(NotFoundError):
        client.get("NetworkService", "vl3-service-test-slice", "kubeslice-system")