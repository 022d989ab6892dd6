import copy
import logging
from typing import Callable, List, Optional

import kopf
import kubernetes as k8s

from obsfleet.allowlist import ALLOWLIST_KEY, CUSTOM_ALLOWLIST_CONFIGMAP, AllowlistError, parse_allowlist
from obsfleet.configuration import ObservabilityConfiguration, configuration
from obsfleet.objectstorage import ObjectStorageConfError, check_obj_storage_conf, read_obj_storage_conf
from obsfleet.resources.kinds import get_kind, get_object
from obsfleet.utils import format_timestamp, now

logger = logging.getLogger("obsfleet.status")

INSTALLING = "Installing"
READY = "Ready"
FAILED = "Failed"
METRICS_DISABLED = "MetricsDisabled"

EXPECTED_DEPLOYMENTS = [
    "grafana",
    "observatorium-api",
    "thanos-query",
    "thanos-query-frontend",
    "thanos-receive-controller",
    "observatorium-operator",
    "rbac-query-proxy",
]
EXPECTED_STATEFULSETS = [
    "alertmanager",
    "thanos-compact",
    "thanos-receive-default",
    "thanos-rule",
    "thanos-store-memcached",
    "thanos-store-shard-0",
]


def new_condition(
    condition_type: str, status: str, reason: str, message: str, generation: Optional[int] = None
) -> dict:
    condition = {"type": condition_type, "status": status, "reason": reason, "message": message}
    if generation is not None:
        condition["observedGeneration"] = generation
    return condition


def installing_condition() -> dict:
    return new_condition(INSTALLING, "True", "Installing", "Installation is in progress")


def ready_condition() -> dict:
    return new_condition(
        READY, "True", "Ready", "Observability components are deployed and running"
    )


def failed_condition(reason: str, message: str) -> dict:
    return new_condition(FAILED, "False", reason, message)


def metrics_disabled_condition() -> dict:
    return new_condition(
        METRICS_DISABLED,
        "True",
        "MetricsDisabled",
        "Collect metrics from the managed clusters is disabled",
    )


def find_condition(conditions: List[dict], condition_type: str) -> Optional[dict]:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(conditions: List[dict], condition: dict) -> None:
    """
    It adds or updates a condition; the transition time only moves if the status changes

    :param conditions: the list of conditions, changed in place
    :param condition: the new condition
    """
    existing = find_condition(conditions, condition["type"])
    if existing is None:
        conditions.append({**condition, "lastTransitionTime": format_timestamp(now())})
        return
    if existing.get("status") != condition["status"]:
        existing["status"] = condition["status"]
        existing["lastTransitionTime"] = format_timestamp(now())
    existing["reason"] = condition["reason"]
    existing["message"] = condition["message"]
    if "observedGeneration" in condition:
        existing["observedGeneration"] = condition["observedGeneration"]


def remove_condition(conditions: List[dict], condition_type: str) -> None:
    conditions[:] = [c for c in conditions if c.get("type") != condition_type]


def fillup_status(conditions: List[dict]) -> None:
    for condition in conditions:
        if not condition.get("status"):
            condition["status"] = "Unknown"
        if not condition.get("lastTransitionTime"):
            condition["lastTransitionTime"] = format_timestamp(now())


def _ready(workload: dict) -> bool:
    return ((workload.get("status") or {}).get("readyReplicas") or 0) >= 1


def check_object_storage(spec: ObservabilityConfiguration) -> Optional[dict]:
    data = read_obj_storage_conf(spec.object_storage, configuration.NAMESPACE)
    if data is None:
        name = (spec.object_storage or {}).get("name")
        return failed_condition(
            "ObjectStorageSecretNotFound", f"Failed to find the object storage secret {name}"
        )
    try:
        check_obj_storage_conf(data)
    except ObjectStorageConfError as e:
        return failed_condition("ObjectStorageConfInvalid", str(e))
    return None


def _check_workloads(kind: str, names: List[str], reason: str) -> Optional[dict]:
    for name in names:
        workload = get_object(kind, f"{configuration.OPERAND_NAME_PREFIX}{name}", configuration.NAMESPACE)
        if workload is None:
            return failed_condition(
                f"{reason}NotFound",
                f"Failed to find expected {kind} {configuration.OPERAND_NAME_PREFIX}{name}",
            )
        if not _ready(workload):
            return failed_condition(
                f"{reason}NotReady", f"{kind} {configuration.OPERAND_NAME_PREFIX}{name} is not ready"
            )
    return None


def check_deployments() -> Optional[dict]:
    return _check_workloads("Deployment", EXPECTED_DEPLOYMENTS, "Deployment")


def check_statefulsets() -> Optional[dict]:
    return _check_workloads("StatefulSet", EXPECTED_STATEFULSETS, "StatefulSet")


def check_allowlist() -> Optional[dict]:
    custom = get_object("ConfigMap", CUSTOM_ALLOWLIST_CONFIGMAP, configuration.NAMESPACE)
    if custom is None:
        return None
    try:
        parse_allowlist((custom.get("data") or {}).get(ALLOWLIST_KEY))
    except AllowlistError as e:
        return failed_condition("AllowlistInvalid", str(e))
    return None


CHECKS: List[Callable[[ObservabilityConfiguration], Optional[dict]]] = [
    check_object_storage,
    lambda _: check_deployments(),
    lambda _: check_statefulsets(),
    lambda _: check_allowlist(),
]


def update_ready_status(conditions: List[dict], spec: ObservabilityConfiguration) -> None:
    """
    The checks run in a fixed order and the first failing one wins
    """
    for check in CHECKS:
        failed = check(spec)
        if failed is not None:
            set_condition(conditions, failed)
            remove_condition(conditions, READY)
            return
    set_condition(conditions, ready_condition())
    remove_condition(conditions, FAILED)


def update_addon_spec_status(conditions: List[dict], spec: ObservabilityConfiguration) -> None:
    if not spec.metrics_enabled:
        set_condition(conditions, metrics_disabled_condition())
    else:
        remove_condition(conditions, METRICS_DISABLED)


def aggregate_conditions(
    conditions: List[dict], spec: ObservabilityConfiguration, generation: Optional[int] = None
) -> None:
    fillup_status(conditions)
    set_condition(conditions, installing_condition())
    update_ready_status(conditions, spec)
    update_addon_spec_status(conditions, spec)
    if generation is not None:
        for condition in conditions:
            condition["observedGeneration"] = generation


def write_status(logger, name: str, mutate: Callable[[List[dict]], None]) -> Optional[List[dict]]:
    """
    It applies the condition mutations to the live MultiClusterObservability and writes its status. A conflict
    is retried once with a freshly read object, after that a short requeue is requested.

    :param logger: a logger object
    :param name: the name of the MultiClusterObservability resource
    :param mutate: a function that changes a list of conditions in place
    :return: the written conditions, None if the resource is gone
    """
    _kind = get_kind("MultiClusterObservability")
    for attempt in range(2):
        live = get_object("MultiClusterObservability", name)
        if live is None:
            return None
        status = live.get("status") or {}
        conditions = copy.deepcopy(status.get("conditions") or [])
        mutate(conditions)
        if conditions == (status.get("conditions") or []):
            logger.debug(f"Status of {name} is up to date")
            return conditions
        live["status"] = {**status, "conditions": conditions}
        try:
            _kind.replace_status(name=name, body=live)
            return conditions
        except k8s.client.exceptions.ApiException as e:
            if e.status != 409:
                raise e
            if attempt == 0:
                logger.warning(f"Conflict writing status of {name}, retrying")
    raise kopf.TemporaryError(f"Status of {name} could not be written due to conflicts", delay=1)
