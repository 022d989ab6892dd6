"""
Hub side objects that exist once per managed cluster: the ObservabilityAddon marker, the ManagedClusterAddOn and the
RBAC that lets the cluster's addon agent read its configuration. The ClusterRoles and the ClusterManagementAddOn are
global and shared by all clusters.
"""
import logging
from typing import List, Optional

import kubernetes as k8s

from obsfleet.bundle import ADDON_API_VERSION, ADDON_NAME
from obsfleet.certificates import remove_managed_cluster_cert
from obsfleet.configuration import ObservabilityConfiguration, configuration
from obsfleet.resources.kinds import get_kind, get_object, list_objects
from obsfleet.resources.manifestworks import delete_manifestworks
from obsfleet.resources.utils import handle_delete_object, handle_ensure_object
from obsfleet.utils import has_finalizer, owner_labels, remove_finalizer

logger = logging.getLogger("obsfleet.addon")

ADDON_FINALIZER = "observability.open-cluster-management.io/addon-cleanup"
ADDON_CONTROLLER = "observability-controller"
MCO_ROLE = "endpoint-observability-mco-role"
MCO_ROLE_BINDING = "endpoint-observability-mco-rolebinding"
RES_ROLE = "endpoint-observability-res-role"
RES_ROLE_BINDING = "endpoint-observability-res-rolebinding"

# ObservabilityAddon condition types as understood by the addon framework
STATUS_MAP = {
    "Available": "Available",
    "Progressing": "Progressing",
    "Deployed": "Progressing",
    "Disabled": "Degraded",
    "Degraded": "Degraded",
    "NotSupported": "Degraded",
}


def create_addon_marker(namespace: str, spec: ObservabilityConfiguration) -> dict:
    return {
        "apiVersion": ADDON_API_VERSION,
        "kind": "ObservabilityAddon",
        "metadata": {"name": ADDON_NAME, "namespace": namespace, "labels": owner_labels()},
        "spec": dict(spec.observabilityAddonSpec),
    }


def is_terminating(obj: Optional[dict]) -> bool:
    return bool(obj and obj["metadata"].get("deletionTimestamp"))


def ensure_addon(logger, namespace: str, spec: ObservabilityConfiguration, owner: Optional[str] = None) -> bool:
    """
    It makes sure the marker of a managed cluster exists. A marker that is being deleted is left alone until the
    spoke has finished its cleanup.

    :param logger: a logger object
    :param namespace: the cluster namespace
    :param spec: the effective MultiClusterObservability spec
    :param owner: the logical owner of the marker
    :return: True if the marker is live, False if it is terminating
    """
    live = get_object("ObservabilityAddon", ADDON_NAME, namespace)
    if is_terminating(live):
        logger.info(f"ObservabilityAddon {namespace}/{ADDON_NAME} is terminating, skip updating it")
        return False
    handle_ensure_object(logger, create_addon_marker(namespace, spec), owner=owner)
    return True


def delete_addon(logger, namespace: str) -> bool:
    return handle_delete_object(logger, "ObservabilityAddon", ADDON_NAME, namespace)


def list_addon_markers() -> List[dict]:
    return [
        marker
        for marker in list_objects("ObservabilityAddon", labels=owner_labels())
        if marker["metadata"]["name"] == ADDON_NAME
    ]


def delete_stale_addon_finalizer(logger, marker: dict) -> bool:
    """
    It removes the spoke finalizer from a terminating marker, so the deletion completes even if the spoke never
    acknowledges it

    :param logger: a logger object
    :param marker: the serialized marker
    :return: True if the finalizer was removed
    """
    if not is_terminating(marker) or not has_finalizer(marker, ADDON_FINALIZER):
        return False
    remove_finalizer(marker, ADDON_FINALIZER)
    metadata = marker["metadata"]
    try:
        get_kind("ObservabilityAddon").replace(
            name=metadata["name"], body=marker, namespace=metadata["namespace"]
        )
    except k8s.client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        raise e
    logger.info(f"Finalizer removed from stale ObservabilityAddon {metadata['namespace']}/{metadata['name']}")
    return True


def create_managed_cluster_addon(namespace: str) -> dict:
    return {
        "apiVersion": get_kind("ManagedClusterAddOn").api_version,
        "kind": "ManagedClusterAddOn",
        "metadata": {"name": ADDON_CONTROLLER, "namespace": namespace},
        "spec": {"installNamespace": configuration.SPOKE_NAMESPACE},
    }


def ensure_managed_cluster_addon(logger, namespace: str, owner: Optional[str] = None) -> str:
    return handle_ensure_object(logger, create_managed_cluster_addon(namespace), owner=owner)


def create_cluster_management_addon() -> dict:
    return {
        "apiVersion": get_kind("ClusterManagementAddOn").api_version,
        "kind": "ClusterManagementAddOn",
        "metadata": {"name": ADDON_CONTROLLER},
        "spec": {
            "addOnMeta": {
                "displayName": "Observability Controller",
                "description": "Manages Observability components.",
            },
            "addOnConfiguration": {
                "crdName": "observabilityaddons.observability.open-cluster-management.io"
            },
        },
    }


def _rule(api_groups: List[str], resources: List[str], verbs: List[str]) -> k8s.client.V1PolicyRule:
    return k8s.client.V1PolicyRule(api_groups=api_groups, resources=resources, verbs=verbs)


def create_mco_role() -> k8s.client.V1ClusterRole:
    return k8s.client.V1ClusterRole(
        api_version="rbac.authorization.k8s.io/v1",
        kind="ClusterRole",
        metadata=k8s.client.V1ObjectMeta(name=MCO_ROLE),
        rules=[
            _rule(
                ["observability.open-cluster-management.io"],
                ["multiclusterobservabilities"],
                ["watch", "list", "get"],
            )
        ],
    )


def create_res_role() -> k8s.client.V1ClusterRole:
    return k8s.client.V1ClusterRole(
        api_version="rbac.authorization.k8s.io/v1",
        kind="ClusterRole",
        metadata=k8s.client.V1ObjectMeta(name=RES_ROLE),
        rules=[
            _rule(
                ["observability.open-cluster-management.io"],
                ["observabilityaddons", "observabilityaddons/status"],
                ["watch", "list", "get", "update"],
            ),
            _rule([""], ["pods"], ["watch", "list", "get"]),
            _rule(
                ["addon.open-cluster-management.io"],
                ["managedclusteraddons", "managedclusteraddons/status"],
                ["watch", "list", "get", "update"],
            ),
            _rule(
                ["coordination.k8s.io"],
                ["leases"],
                ["watch", "list", "get", "update", "create", "delete"],
            ),
        ],
    )


def agent_group(cluster_name: str) -> str:
    return f"system:open-cluster-management:cluster:{cluster_name}:addon:{ADDON_CONTROLLER}"


def _agent_subjects(cluster_name: str, namespace: str) -> List[k8s.client.RbacV1Subject]:
    return [
        k8s.client.RbacV1Subject(
            kind="Group",
            name=agent_group(cluster_name),
            namespace=namespace,
            api_group="rbac.authorization.k8s.io",
        )
    ]


def create_mco_role_binding(cluster_name: str, namespace: str) -> k8s.client.V1ClusterRoleBinding:
    return k8s.client.V1ClusterRoleBinding(
        api_version="rbac.authorization.k8s.io/v1",
        kind="ClusterRoleBinding",
        metadata=k8s.client.V1ObjectMeta(name=f"{namespace}-{MCO_ROLE_BINDING}"),
        role_ref=k8s.client.V1RoleRef(
            api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=MCO_ROLE
        ),
        subjects=_agent_subjects(cluster_name, namespace),
    )


def create_res_role_binding(cluster_name: str, namespace: str) -> k8s.client.V1RoleBinding:
    return k8s.client.V1RoleBinding(
        api_version="rbac.authorization.k8s.io/v1",
        kind="RoleBinding",
        metadata=k8s.client.V1ObjectMeta(name=RES_ROLE_BINDING, namespace=namespace),
        role_ref=k8s.client.V1RoleRef(
            api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=RES_ROLE
        ),
        subjects=_agent_subjects(cluster_name, namespace),
    )


def ensure_role_bindings(logger, cluster_name: str, namespace: str, owner: Optional[str] = None) -> None:
    handle_ensure_object(logger, create_mco_role_binding(cluster_name, namespace), owner=owner)
    handle_ensure_object(logger, create_res_role_binding(cluster_name, namespace), owner=owner)


def ensure_global_resources(logger, owner: Optional[str] = None) -> None:
    """
    The global objects are re-checked on every pass, the sync primitive keeps this free of writes
    """
    handle_ensure_object(logger, create_mco_role(), owner=owner)
    handle_ensure_object(logger, create_res_role(), owner=owner)
    handle_ensure_object(logger, create_cluster_management_addon(), owner=owner)


def delete_global_resources(logger) -> None:
    handle_delete_object(logger, "ClusterRole", MCO_ROLE)
    handle_delete_object(logger, "ClusterRole", RES_ROLE)
    handle_delete_object(logger, "ClusterManagementAddOn", ADDON_CONTROLLER)


def delete_managed_cluster_res(logger, namespace: str) -> None:
    """
    It removes everything this operator created for one managed cluster, except the marker

    :param logger: a logger object
    :param namespace: the cluster namespace
    """
    handle_delete_object(logger, "ClusterRoleBinding", f"{namespace}-{MCO_ROLE_BINDING}")
    handle_delete_object(logger, "RoleBinding", RES_ROLE_BINDING, namespace)
    handle_delete_object(logger, "ManagedClusterAddOn", ADDON_CONTROLLER, namespace)
    delete_manifestworks(logger, namespace)
    remove_managed_cluster_cert(logger, namespace)


def addon_conditions(marker: dict) -> List[dict]:
    return [
        {
            "type": STATUS_MAP.get(condition.get("type"), condition.get("type")),
            "status": condition.get("status"),
            "lastTransitionTime": condition.get("lastTransitionTime"),
            "reason": condition.get("reason"),
            "message": condition.get("message"),
        }
        for condition in (marker.get("status") or {}).get("conditions") or []
    ]


def update_addon_status(logger, marker: dict) -> bool:
    """
    It copies the conditions reported by the spoke on the marker into the status of the ManagedClusterAddOn

    :param logger: a logger object
    :param marker: the serialized marker
    :return: True if the ManagedClusterAddOn status was written
    """
    conditions = addon_conditions(marker)
    if not conditions:
        return False
    namespace = marker["metadata"]["namespace"]
    managed_cluster_addon = get_object("ManagedClusterAddOn", ADDON_CONTROLLER, namespace)
    if managed_cluster_addon is None:
        logger.info(f"ManagedClusterAddOn does not exist in {namespace}")
        return False
    status = managed_cluster_addon.get("status") or {}
    if status.get("conditions") == conditions:
        return False
    managed_cluster_addon["status"] = {**status, "conditions": conditions}
    get_kind("ManagedClusterAddOn").replace_status(
        name=ADDON_CONTROLLER, body=managed_cluster_addon, namespace=namespace
    )
    logger.info(f"Updated status for ManagedClusterAddOn in {namespace}")
    return True
