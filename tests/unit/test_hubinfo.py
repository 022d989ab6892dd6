import kubernetes as k8s
import pytest
import yaml

from obsfleet import hubinfo
from obsfleet.configuration import configuration
from obsfleet.resources.kinds import serialize
from obsfleet.utils import b64decode, b64encode
from tests.utils import demo_router_ca_bundle


def demo_ingress_controller(domain="apps.hub.example"):
    return {
        "apiVersion": "operator.openshift.io/v1",
        "kind": "IngressController",
        "metadata": {"name": "default", "namespace": hubinfo.INGRESS_OPERATOR_NAMESPACE},
        "spec": {},
        "status": {"domain": domain},
    }


def test_with_scheme():
    assert hubinfo.with_scheme("obs.example") == "https://obs.example"
    assert hubinfo.with_scheme("http://obs.example") == "http://obs.example"
    assert hubinfo.get_obs_api_url("https://obs.example/") == (
        "https://obs.example/api/metrics/v1/default/api/v1/receive"
    )


def test_hub_info_without_ingress(cluster):
    cluster.seed(demo_router_ca_bundle(configuration.NAMESPACE))
    info = hubinfo.get_hub_info()
    assert info["endpoint"] == (
        f"https://{configuration.OPERAND_NAME_PREFIX}observatorium-api.{configuration.NAMESPACE}"
        f".svc.cluster.local:8080{hubinfo.REMOTE_WRITE_PATH}"
    )
    assert info["hub-alertmanager-endpoint"] == f"https://alertmanager.{configuration.NAMESPACE}.svc.cluster.local:9095"
    assert info["hub-router-ca"].startswith("-----BEGIN CERTIFICATE-----")
    assert hubinfo.get_obs_api_route_host() is None


def test_hub_info_without_router_ca(cluster):
    with pytest.raises(k8s.client.exceptions.ApiException):
        hubinfo.get_hub_info()


def test_hub_info_with_ingress(cluster):
    cluster.seed(
        demo_ingress_controller(),
        {
            "apiVersion": "route.openshift.io/v1",
            "kind": "Route",
            "metadata": {"name": hubinfo.ALERTMANAGER_ROUTE, "namespace": configuration.NAMESPACE},
            "spec": {"host": "alertmanager.apps.hub.example"},
        },
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": hubinfo.INGRESS_DEFAULT_CERT, "namespace": hubinfo.INGRESS_NAMESPACE},
            "data": {"tls.crt": b64encode("router-ca")},
        },
    )
    info = hubinfo.get_hub_info()
    # no route yet for the API, so the ingress domain is used
    assert info["endpoint"] == (
        f"https://observatorium-api-{configuration.NAMESPACE}.apps.hub.example{hubinfo.REMOTE_WRITE_PATH}"
    )
    assert info["hub-alertmanager-endpoint"] == "https://alertmanager.apps.hub.example"
    assert info["hub-router-ca"] == "router-ca"
    assert hubinfo.get_obs_api_route_host() == f"observatorium-api-{configuration.NAMESPACE}.apps.hub.example"


def test_router_ca_bring_your_own(cluster):
    cluster.seed(
        *[
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": name, "namespace": configuration.NAMESPACE},
                "data": {"tls.crt": b64encode(f"{name}-pem")},
            }
            for name in [hubinfo.ALERTMANAGER_BYO_CA, hubinfo.ALERTMANAGER_BYO_CERT]
        ]
    )
    assert hubinfo.get_router_ca() == f"{hubinfo.ALERTMANAGER_BYO_CA}-pem"


def test_hub_info_secret():
    info = {"endpoint": "https://obs.example", "hub-alertmanager-endpoint": "", "hub-router-ca": "ca"}
    secret = serialize(hubinfo.create_hub_info_secret(info, "cluster1", "spoke"))
    assert secret["metadata"] == {"name": hubinfo.HUB_INFO_SECRET, "namespace": "spoke"}
    document = b64decode(secret["data"][hubinfo.HUB_INFO_KEY]).decode()
    assert document.startswith("cluster-name: cluster1\n")
    assert yaml.safe_load(document) == {"cluster-name": "cluster1", **info}
