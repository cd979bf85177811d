import pytest

from sliceworker.config import (
    CONTROL_PLANE_NAMESPACE,
    Settings,
    get_env_or_default,
)


def test_get_env_or_default_returns_value_when_present():
    assert get_env_or_default("IMAGE_PULL_SECRET_NAME", "fallback", {"IMAGE_PULL_SECRET_NAME": "regcred"}) == "regcred"


def test_get_env_or_default_returns_default_when_missing():
    assert get_env_or_default("IMAGE_PULL_SECRET_NAME", "fallback", {}) == "fallback"


def test_get_env_or_default_reads_process_environment(monkeypatch):
    monkeypatch.setenv("SLICEWORKER_TEST_KEY", "from-env")
    assert get_env_or_default("SLICEWORKER_TEST_KEY", "fallback") == "from-env"


def test_settings_defaults_from_empty_environment():
    settings = Settings.from_env({})
    assert settings.cluster_name == ""
    assert settings.node_ip == ""
    assert settings.image_pull_secret_name == "kubeslice-nexus"
    assert settings.control_plane_namespace == "kubeslice-system"
    assert settings.dns_deployment_name == "kubeslice-dns"
    assert settings.reconcile_interval == 10.0


def test_settings_read_values():
    env = {
        "CLUSTER_NAME": "cluster-1",
        "NODE_IP": "10.0.0.5",
        "IMAGE_PULL_SECRET_NAME": "my-secret",
    }
    settings = Settings.from_env(env)
    assert settings.cluster_name == "cluster-1"
    assert settings.node_ip == "10.0.0.5"
    assert settings.image_pull_secret_name == "my-secret"


def test_settings_use_process_environment(monkeypatch):
    monkeypatch.setenv("CLUSTER_NAME", "worker-a")
    monkeypatch.delenv("IMAGE_PULL_SECRET_NAME", raising=False)
    settings = Settings.from_env()
    assert settings.cluster_name == "worker-a"
    assert settings.control_plane_namespace == CONTROL_PLANE_NAMESPACE


def test_settings_are_immutable():
    settings = Settings.from_env({"CLUSTER_NAME": "cluster-1"})
    with pytest.raises(AttributeError):
        settings.cluster_name = "other"
    assert settings.cluster_name == "cluster-1"