"""
Synthesis of the two ManifestWorks shipped to every managed cluster: the operator bundle installs the endpoint
operator together with everything it needs to talk to the hub, the resource bundle carries the ObservabilityAddon and
the resources rendered from the endpoint templates. Synthesis only reads; given the same inputs it always returns equal
bundles.
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

import kopf

from obsfleet import hubinfo
from obsfleet.allowlist import (
    ALLOWLIST_CONFIGMAP,
    ALLOWLIST_KEY,
    CUSTOM_ALLOWLIST_CONFIGMAP,
    MetricsAllowlist,
    dump_allowlist,
    merge_allowlist,
    parse_allowlist,
)
from obsfleet.certificates import CA_CRT, MANAGED_CLUSTER_CERTS, SERVER_CA_CERTS, TLS_CRT, TLS_KEY
from obsfleet.configuration import ObservabilityConfiguration, configuration
from obsfleet.rendering import render, template_kinds
from obsfleet.resources.crds import create_addon_definition
from obsfleet.resources.kinds import get_object, serialize
from obsfleet.resources.manifestworks import (
    create_manifestwork,
    operator_work_name,
    resource_work_name,
)

logger = logging.getLogger("obsfleet.bundle")

ADDON_NAME = "observability-addon"
ADDON_API_VERSION = "observability.open-cluster-management.io/v1beta1"
ENDPOINT_TEMPLATES = "endpoint-observability"
HUB_TEMPLATES = "hub"
ENDPOINT_OPERATOR_DEPLOYMENT = "endpoint-observability-operator"
TRUST_BUNDLE_SECRET = "observability-managed-cluster-certs"
CLIENT_CERT_SECRET = "observability-controller-open-cluster-management.io-observability-signer-client-cert"
PULL_SECRET_PLACEHOLDER = "REPLACE_WITH_IMAGEPULLSECRET"


@dataclass
class FleetInputs:
    """
    Everything read from the hub that is shared by the bundles of all managed clusters
    """

    mco: dict
    spec: ObservabilityConfiguration
    pull_secret: Optional[dict]
    server_ca: dict
    allowlist: MetricsAllowlist
    hub_info: dict

    @property
    def annotations(self) -> dict:
        return (self.mco.get("metadata") or {}).get("annotations") or {}


def endpoint_template_path() -> str:
    return os.path.join(configuration.TEMPLATE_PATH, ENDPOINT_TEMPLATES)


def hub_template_path() -> str:
    return os.path.join(configuration.TEMPLATE_PATH, HUB_TEMPLATES)


def read_allowlist() -> MetricsAllowlist:
    """
    It merges the default allow-list with the custom one, if there is any

    :raises AllowlistError: if one of the allow-lists is malformed
    :return: the merged allow-list
    """
    default_cm = get_object("ConfigMap", ALLOWLIST_CONFIGMAP, configuration.NAMESPACE)
    if default_cm is None:
        default_cm = next(
            cm for cm in render(hub_template_path()) if cm["metadata"]["name"] == ALLOWLIST_CONFIGMAP
        )
    default = parse_allowlist((default_cm.get("data") or {}).get(ALLOWLIST_KEY))
    custom_cm = get_object("ConfigMap", CUSTOM_ALLOWLIST_CONFIGMAP, configuration.NAMESPACE)
    custom = None
    if custom_cm is not None:
        custom = parse_allowlist((custom_cm.get("data") or {}).get(ALLOWLIST_KEY))
    return merge_allowlist(default, custom)


def collect_inputs(mco: dict) -> FleetInputs:
    """
    It reads all hub-side inputs of the bundle synthesis

    :param mco: the MultiClusterObservability resource
    :return: the collected inputs
    """
    spec = ObservabilityConfiguration.from_body(mco)
    pull_secret = get_object("Secret", spec.imagePullSecret, configuration.NAMESPACE)
    if pull_secret is None:
        logger.info(f"Image pull secret {spec.imagePullSecret} not found, not distributing it")
    server_ca = get_object("Secret", SERVER_CA_CERTS, configuration.NAMESPACE)
    if server_ca is None:
        raise kopf.TemporaryError(f"Server CA secret {SERVER_CA_CERTS} is not available yet", delay=5)
    return FleetInputs(
        mco=mco,
        spec=spec,
        pull_secret=pull_secret,
        server_ca=server_ca,
        allowlist=read_allowlist(),
        hub_info=hubinfo.get_hub_info(),
    )


def _namespace() -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": configuration.SPOKE_NAMESPACE},
    }


def _pull_secret(pull_secret: dict) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": pull_secret["metadata"]["name"],
            "namespace": configuration.SPOKE_NAMESPACE,
        },
        "data": {".dockerconfigjson": (pull_secret.get("data") or {}).get(".dockerconfigjson")},
        "type": "kubernetes.io/dockerconfigjson",
    }


def _trust_bundle(server_ca: dict) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": TRUST_BUNDLE_SECRET, "namespace": configuration.SPOKE_NAMESPACE},
        "data": {CA_CRT: (server_ca.get("data") or {}).get(TLS_CRT)},
        "type": "Opaque",
    }


def _client_cert(cluster_cert: dict) -> dict:
    data = cluster_cert.get("data") or {}
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": CLIENT_CERT_SECRET, "namespace": configuration.SPOKE_NAMESPACE},
        "data": {key: data.get(key) for key in [CA_CRT, TLS_CRT, TLS_KEY]},
        "type": "Opaque",
    }


def _allowlist(allowlist: MetricsAllowlist) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": ALLOWLIST_CONFIGMAP, "namespace": configuration.SPOKE_NAMESPACE},
        "data": {ALLOWLIST_KEY: dump_allowlist(allowlist)},
    }


def create_addon_manifest(spec: ObservabilityConfiguration) -> dict:
    return {
        "apiVersion": ADDON_API_VERSION,
        "kind": "ObservabilityAddon",
        "metadata": {"name": ADDON_NAME, "namespace": configuration.SPOKE_NAMESPACE},
        "spec": dict(spec.observabilityAddonSpec),
    }


def _set_env(container: dict, name: str, value: str) -> None:
    for env in container.setdefault("env", []):
        if env.get("name") == name:
            env.pop("valueFrom", None)
            env["value"] = value
            return
    container["env"].append({"name": name, "value": value})


def update_resource(resource: dict, cluster_namespace: str, inputs: FleetInputs) -> dict:
    """
    It applies the per-cluster substitutions to a rendered endpoint resource

    :param resource: the rendered resource, changed in place
    :param cluster_namespace: the namespace of the managed cluster on the hub
    :param inputs: the shared synthesis inputs
    :return: the resource
    """
    kind = resource["kind"]
    if kind == "Deployment" and resource["metadata"]["name"] == ENDPOINT_OPERATOR_DEPLOYMENT:
        pod_spec = resource["spec"]["template"]["spec"]
        for container in pod_spec["containers"]:
            if container["name"] != ENDPOINT_OPERATOR_DEPLOYMENT:
                continue
            container["image"] = configuration.image(
                configuration.ENDPOINT_OPERATOR_IMAGE, inputs.annotations
            )
            container["imagePullPolicy"] = inputs.spec.imagePullPolicy
            _set_env(container, "HUB_NAMESPACE", cluster_namespace)
            _set_env(
                container,
                "COLLECTOR_IMAGE",
                configuration.image(configuration.METRICS_COLLECTOR_IMAGE, inputs.annotations),
            )
        if inputs.spec.nodeSelector:
            pod_spec["nodeSelector"] = dict(inputs.spec.nodeSelector)
        if inputs.spec.tolerations:
            pod_spec["tolerations"] = list(inputs.spec.tolerations)
    elif kind == "ServiceAccount":
        resource["imagePullSecrets"] = [
            {"name": inputs.spec.imagePullSecret}
            if pull_secret.get("name") == PULL_SECRET_PLACEHOLDER
            else pull_secret
            for pull_secret in resource.get("imagePullSecrets") or []
        ]
    elif kind == "ClusterRoleBinding":
        for subject in resource.get("subjects") or []:
            if subject.get("kind") == "ServiceAccount":
                subject["namespace"] = configuration.SPOKE_NAMESPACE
    return resource


def synthesize(
    cluster_namespace: str,
    cluster_name: str,
    mco: dict,
    inputs: Optional[FleetInputs] = None,
    include_addon: bool = True,
) -> Tuple[dict, dict]:
    """
    It synthesizes the operator and the resource ManifestWork for one managed cluster

    :param cluster_namespace: the namespace of the managed cluster on the hub
    :param cluster_name: the name of the managed cluster
    :param mco: the MultiClusterObservability resource
    :param inputs: the shared inputs, collected from the hub if not given
    :param include_addon: ship the ObservabilityAddon; False once the cluster's marker is being deleted
    :return: the operator ManifestWork and the resource ManifestWork
    """
    inputs = inputs or collect_inputs(mco)
    rendered = [
        update_resource(resource, cluster_namespace, inputs)
        for resource in render(endpoint_template_path(), configuration.SPOKE_NAMESPACE)
    ]
    deployments = [r for r in rendered if r["kind"] == "Deployment"]
    others = [r for r in rendered if r["kind"] != "Deployment"]

    operator_manifests: List[dict] = [_namespace()]
    if inputs.pull_secret is not None:
        operator_manifests.append(_pull_secret(inputs.pull_secret))
    operator_manifests.append(_trust_bundle(inputs.server_ca))
    operator_manifests.append(_allowlist(inputs.allowlist))
    operator_manifests.append(
        serialize(
            hubinfo.create_hub_info_secret(
                inputs.hub_info, cluster_name, configuration.SPOKE_NAMESPACE
            )
        )
    )
    cluster_cert = get_object("Secret", MANAGED_CLUSTER_CERTS, cluster_namespace)
    if cluster_cert is not None:
        operator_manifests.append(_client_cert(cluster_cert))
    operator_manifests.extend(deployments)

    resource_manifests: List[dict] = []
    if include_addon:
        resource_manifests.append(create_addon_manifest(inputs.spec))
    if cluster_name != configuration.LOCAL_CLUSTER_NAME:
        resource_manifests.append(serialize(create_addon_definition()))
    resource_manifests.extend(others)

    return (
        create_manifestwork(operator_work_name(cluster_namespace), cluster_namespace, operator_manifests),
        create_manifestwork(resource_work_name(cluster_namespace), cluster_namespace, resource_manifests),
    )


def manifest_kinds() -> set:
    """
    All kinds that can appear in a synthesized ManifestWork
    """
    return {"Namespace", "Secret", "ConfigMap", "ObservabilityAddon", "CustomResourceDefinition"} | (
        template_kinds(endpoint_template_path())
    )
