import copy
from typing import Iterable, List

import kopf
import kubernetes as k8s

from obsfleet.resources.compare import manifests_equal, workload_manifests
from obsfleet.resources.kinds import get_kind, get_object, list_objects
from obsfleet.resources.utils import CREATED, UNCHANGED, UPDATED, handle_delete_object
from obsfleet.utils import owner_labels

WORK_NAME_SUFFIX = "-observability"
OPERATOR_WORK_NAME_SUFFIX = "-observability-operator"

TERMINATING_RETRY_DELAY = 10


def operator_work_name(namespace: str) -> str:
    return f"{namespace}{OPERATOR_WORK_NAME_SUFFIX}"


def resource_work_name(namespace: str) -> str:
    return f"{namespace}{WORK_NAME_SUFFIX}"


def expected_work_names(namespace: str) -> set:
    return {operator_work_name(namespace), resource_work_name(namespace)}


def create_manifestwork(name: str, namespace: str, manifests: List[dict]) -> dict:
    return {
        "apiVersion": get_kind("ManifestWork").api_version,
        "kind": "ManifestWork",
        "metadata": {"name": name, "namespace": namespace, "labels": owner_labels()},
        "spec": {"workload": {"manifests": manifests}},
    }


def apply_manifestwork(logger, work: dict) -> str:
    """
    It applies a ManifestWork as one unit: create it if missing, replace it if any manifest differs from the live
    one and leave it alone otherwise

    :param logger: a logger object
    :param work: the desired ManifestWork
    :return: one of "created", "updated", "unchanged"
    """
    desired = copy.deepcopy(work)
    name = desired["metadata"]["name"]
    namespace = desired["metadata"]["namespace"]
    _kind = get_kind("ManifestWork")

    live = get_object("ManifestWork", name, namespace)
    if live is None:
        _kind.create(body=desired, namespace=namespace)
        logger.info(f"ManifestWork {namespace}/{name} created")
        return CREATED

    if live["metadata"].get("deletionTimestamp"):
        raise kopf.TemporaryError(
            f"Existing manifestwork {namespace}/{name} is terminating, skip and reconcile later",
            delay=TERMINATING_RETRY_DELAY,
        )

    if manifests_equal(workload_manifests(desired), workload_manifests(live)):
        logger.debug(f"ManifestWork {namespace}/{name} is up to date")
        return UNCHANGED

    desired["metadata"]["resourceVersion"] = live["metadata"].get("resourceVersion")
    try:
        _kind.replace(name=name, body=desired, namespace=namespace)
    except k8s.client.exceptions.ApiException as e:
        if e.status == 409:
            raise kopf.TemporaryError(
                f"ManifestWork {namespace}/{name} was modified concurrently", delay=1
            )
        raise e
    logger.info(f"ManifestWork {namespace}/{name} updated")
    return UPDATED


def list_manifestworks(namespace=None) -> List[dict]:
    return list_objects("ManifestWork", namespace=namespace, labels=owner_labels())


def delete_manifestworks(logger, namespace: str) -> int:
    """
    It deletes all ManifestWorks owned by this operator in a cluster namespace, regardless of their names

    :param logger: a logger object
    :param namespace: the cluster namespace
    :return: the number of deleted ManifestWorks
    """
    deleted = 0
    for work in list_manifestworks(namespace):
        if handle_delete_object(logger, "ManifestWork", work["metadata"]["name"], namespace):
            deleted += 1
    return deleted


def find_invalid_manifestworks(works: Iterable[dict]) -> List[dict]:
    """
    A ManifestWork is invalid if its name matches none of the names expected for its namespace
    """
    return [
        work
        for work in works
        if work["metadata"]["name"] not in expected_work_names(work["metadata"]["namespace"])
    ]
