import logging
from typing import Optional
from urllib.parse import urlsplit

import kubernetes as k8s
import yaml

from obsfleet.configuration import configuration
from obsfleet.resources.kinds import get_object
from obsfleet.utils import b64decode, b64encode

logger = logging.getLogger("obsfleet.hubinfo")

HUB_INFO_SECRET = "hub-info-secret"
HUB_INFO_KEY = "hub-info.yaml"
REMOTE_WRITE_PATH = "/api/metrics/v1/default/api/v1/receive"

OBS_API_ROUTE = "observatorium-api"
ALERTMANAGER_ROUTE = "alertmanager"
ALERTMANAGER_BYO_CA = "alertmanager-byo-ca"
ALERTMANAGER_BYO_CERT = "alertmanager-byo-cert"
ALERTMANAGER_CA_BUNDLE = "alertmanager-ca-bundle"

INGRESS_OPERATOR_NAMESPACE = "openshift-ingress-operator"
INGRESS_CONTROLLER_NAME = "default"
INGRESS_NAMESPACE = "openshift-ingress"
INGRESS_DEFAULT_CERT = "router-certs-default"


def get_ingress_controller() -> Optional[dict]:
    return get_object("IngressController", INGRESS_CONTROLLER_NAME, INGRESS_OPERATOR_NAMESPACE)


def _route_host(route_name: str, ingress_controller: dict) -> str:
    route = get_object("Route", route_name, configuration.NAMESPACE)
    if route is not None and (route.get("spec") or {}).get("host"):
        return route["spec"]["host"]
    # the route is not created yet, fall back to the domain of the ingress controller
    domain = (ingress_controller.get("status") or {}).get("domain")
    if not domain:
        logger.warning(f"No host found for route {route_name}")
        return ""
    return f"{route_name}-{configuration.NAMESPACE}.{domain}"


def get_obs_api_host(ingress_controller: Optional[dict] = None) -> str:
    """
    It returns the externally reachable host of the metrics ingestion API; on hubs without an ingress
    controller the in-cluster service address is used

    :param ingress_controller: the default ingress controller, if already fetched
    :return: the host (with port for in-cluster addresses)
    """
    ingress_controller = ingress_controller or get_ingress_controller()
    if ingress_controller is None:
        return (
            f"{configuration.OPERAND_NAME_PREFIX}observatorium-api."
            f"{configuration.NAMESPACE}.svc.cluster.local:8080"
        )
    return _route_host(OBS_API_ROUTE, ingress_controller)


def get_obs_api_route_host() -> Optional[str]:
    ingress_controller = get_ingress_controller()
    if ingress_controller is None:
        return None
    return _route_host(OBS_API_ROUTE, ingress_controller) or None


def get_alertmanager_endpoint(ingress_controller: Optional[dict] = None) -> str:
    ingress_controller = ingress_controller or get_ingress_controller()
    if ingress_controller is None:
        return with_scheme(f"alertmanager.{configuration.NAMESPACE}.svc.cluster.local:9095")
    host = _route_host(ALERTMANAGER_ROUTE, ingress_controller)
    return with_scheme(host) if host else ""


def get_router_ca(ingress_controller: Optional[dict] = None) -> str:
    """
    It returns the CA the spokes need to trust the hub alertmanager endpoint

    :param ingress_controller: the default ingress controller, if already fetched
    :return: the PEM encoded CA
    """
    byo_ca = get_object("Secret", ALERTMANAGER_BYO_CA, configuration.NAMESPACE)
    byo_cert = get_object("Secret", ALERTMANAGER_BYO_CERT, configuration.NAMESPACE)
    if byo_ca is not None and byo_cert is not None:
        return b64decode((byo_ca.get("data") or {}).get("tls.crt")).decode()

    ingress_controller = ingress_controller or get_ingress_controller()
    if ingress_controller is None:
        bundle = get_object("ConfigMap", ALERTMANAGER_CA_BUNDLE, configuration.NAMESPACE)
        if bundle is None:
            raise k8s.client.exceptions.ApiException(
                status=404, reason=f"ConfigMap {ALERTMANAGER_CA_BUNDLE} not found"
            )
        return (bundle.get("data") or {}).get("service-ca.crt", "")

    cert_name = ((ingress_controller.get("spec") or {}).get("defaultCertificate") or {}).get(
        "name"
    ) or INGRESS_DEFAULT_CERT
    secret = get_object("Secret", cert_name, INGRESS_NAMESPACE)
    if secret is None:
        raise k8s.client.exceptions.ApiException(
            status=404, reason=f"Router certificate secret {cert_name} not found"
        )
    return b64decode((secret.get("data") or {}).get("tls.crt")).decode()


def with_scheme(host: str) -> str:
    if urlsplit(host).scheme in ("http", "https"):
        return host
    return f"https://{host}"


def get_obs_api_url(host: str) -> str:
    return with_scheme(host).rstrip("/") + REMOTE_WRITE_PATH


def get_hub_info() -> dict:
    """
    It collects the connection details a spoke needs to reach the hub; this is fetched once per reconcile pass

    :return: the hub info as dict, without the cluster name
    """
    ingress_controller = get_ingress_controller()
    return {
        "endpoint": get_obs_api_url(get_obs_api_host(ingress_controller)),
        "hub-alertmanager-endpoint": get_alertmanager_endpoint(ingress_controller),
        "hub-router-ca": get_router_ca(ingress_controller),
    }


def create_hub_info_secret(hub_info: dict, cluster_name: str, namespace: str) -> k8s.client.V1Secret:
    """
    It builds the hub info secret for one managed cluster

    :param hub_info: the hub info as returned by get_hub_info()
    :param cluster_name: the name of the managed cluster
    :param namespace: the namespace on the managed cluster
    :return: the secret
    """
    document = yaml.safe_dump({"cluster-name": cluster_name, **hub_info}, sort_keys=False)
    return k8s.client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=k8s.client.V1ObjectMeta(name=HUB_INFO_SECRET, namespace=namespace),
        data={HUB_INFO_KEY: b64encode(document)},
        type="Opaque",
    )
