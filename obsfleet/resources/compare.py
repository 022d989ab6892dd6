"""
Equality functions for the resources this operator writes. Every comparator only looks at the fields the operator
owns; server-assigned metadata (resourceVersion, uid, managedFields, status, ...) never takes part in a comparison.
"""
from typing import Callable, Iterable


class UnknownKindError(LookupError):
    pass


def _meta(obj: dict, key: str):
    return (obj.get("metadata") or {}).get(key)


def _same_identity(desired: dict, live: dict) -> bool:
    return _meta(desired, "name") == _meta(live, "name") and (
        _meta(desired, "namespace") or None
    ) == (_meta(live, "namespace") or None)


def _fields_equal(*keys: str) -> Callable[[dict, dict], bool]:
    def _compare(desired: dict, live: dict) -> bool:
        if not _same_identity(desired, live):
            return False
        return all(desired.get(key) == live.get(key) for key in keys)

    return _compare


def compare_namespaces(desired: dict, live: dict) -> bool:
    return _meta(desired, "name") == _meta(live, "name")


def compare_secrets(desired: dict, live: dict) -> bool:
    if not _same_identity(desired, live):
        return False
    if (desired.get("data") or {}) != (live.get("data") or {}):
        return False
    return (desired.get("type") or "Opaque") == (live.get("type") or "Opaque")


def compare_config_maps(desired: dict, live: dict) -> bool:
    if not _same_identity(desired, live):
        return False
    return (desired.get("data") or {}) == (live.get("data") or {})


def compare_service_accounts(desired: dict, live: dict) -> bool:
    if not _same_identity(desired, live):
        return False
    return (desired.get("imagePullSecrets") or []) == (live.get("imagePullSecrets") or [])


def compare_manifestworks(desired: dict, live: dict) -> bool:
    """
    Two ManifestWorks are equal if they carry the same manifests in the same order, each compared by the
    comparator of its own kind
    """
    if not _same_identity(desired, live):
        return False
    return manifests_equal(workload_manifests(desired), workload_manifests(live))


def workload_manifests(work: dict) -> list:
    return ((work.get("spec") or {}).get("workload") or {}).get("manifests") or []


COMPARATORS: dict[str, Callable[[dict, dict], bool]] = {
    "Namespace": compare_namespaces,
    "Deployment": _fields_equal("spec"),
    "StatefulSet": _fields_equal("spec"),
    "Service": _fields_equal("spec"),
    "ServiceAccount": compare_service_accounts,
    "ClusterRole": _fields_equal("rules"),
    "ClusterRoleBinding": _fields_equal("subjects", "roleRef"),
    "RoleBinding": _fields_equal("subjects", "roleRef"),
    "Secret": compare_secrets,
    "ConfigMap": compare_config_maps,
    "CustomResourceDefinition": _fields_equal("spec"),
    "ObservabilityAddon": _fields_equal("spec"),
    "ManifestWork": compare_manifestworks,
    "PlacementRule": _fields_equal("spec"),
    "ManagedClusterAddOn": _fields_equal("spec"),
    "ClusterManagementAddOn": _fields_equal("spec"),
}


def get_comparator(kind: str) -> Callable[[dict, dict], bool]:
    try:
        return COMPARATORS[kind]
    except KeyError:
        raise UnknownKindError(f"No comparator registered for kind '{kind}'") from None


def objects_equal(desired: dict, live: dict) -> bool:
    comparator = get_comparator(desired.get("kind"))
    if desired.get("kind") != live.get("kind"):
        return False
    return comparator(desired, live)


def manifests_equal(desired: list, live: list) -> bool:
    if len(desired) != len(live):
        return False
    for _desired, _live in zip(desired, live):
        if not objects_equal(_desired, _live):
            return False
    return True


def verify_registry(kinds: Iterable[str]) -> None:
    """
    It makes sure every kind the operator can emit has a comparator; meant to be called on startup

    :param kinds: the kinds that can reach the comparators
    """
    missing = sorted({kind for kind in kinds if kind not in COMPARATORS})
    if missing:
        raise UnknownKindError(
            f"No comparator registered for kind(s): {', '.join(missing)}"
        )
