import base64

import pytest

from cluster_orchestrator.core.errors import PermanentProviderError
from cluster_orchestrator.resources.connection import ClusterConnection

PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def make_attributes(**overrides) -> dict:
    attrs = {
        "host": "https://c1.k8s.example.com",
        "token": "secret-token",
        "cluster_ca_certificate": base64.b64encode(PEM).decode("ascii"),
    }
    attrs.update(overrides)
    return attrs


def test_certificate_is_decoded():
    conn = ClusterConnection.from_attributes(make_attributes())

    assert conn.endpoint == "https://c1.k8s.example.com"
    assert conn.ca_certificate == PEM


def test_token_is_not_in_repr():
    conn = ClusterConnection.from_attributes(make_attributes())
    assert "secret-token" not in repr(conn)


def test_invalid_base64_is_permanent_and_attributed():
    with pytest.raises(PermanentProviderError) as e:
        ClusterConnection.from_attributes(
            make_attributes(cluster_ca_certificate="%%%"), address="kubernetes_namespace.apps"
        )

    assert e.value.address == "kubernetes_namespace.apps"
    assert "base64" in e.value.message


def test_missing_values_are_reported():
    with pytest.raises(PermanentProviderError, match="host, token"):
        ClusterConnection.from_attributes(make_attributes(host="", token=None))


def test_kubeconfig_round_trips_certificate():
    conn = ClusterConnection.from_attributes(make_attributes())
    cfg = conn.to_kubeconfig("k8s-ams3")

    assert cfg["current-context"] == "k8s-ams3"
    cluster = cfg["clusters"][0]["cluster"]
    assert cluster["server"] == "https://c1.k8s.example.com"
    assert base64.b64decode(cluster["certificate-authority-data"]) == PEM
    assert cfg["users"][0]["user"]["token"] == "secret-token"
