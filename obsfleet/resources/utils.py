import copy
from typing import Iterable, Optional

import kopf
import kubernetes as k8s

from obsfleet.resources.compare import get_comparator
from obsfleet.resources.kinds import get_kind, get_object, list_objects, serialize
from obsfleet.utils import OWNED_BY_ANNOTATION, owner_labels

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def owner_reference(kind: str, name: str, namespace: Optional[str] = None) -> str:
    if namespace:
        return f"{kind}/{namespace}/{name}"
    return f"{kind}/{name}"


def _prepare(obj, owner: Optional[str]) -> dict:
    desired = copy.deepcopy(serialize(obj))
    _kind = get_kind(desired["kind"])
    desired.setdefault("apiVersion", _kind.api_version)
    metadata = desired.setdefault("metadata", {})
    metadata["labels"] = {**(metadata.get("labels") or {}), **owner_labels()}
    if owner:
        metadata["annotations"] = {
            **(metadata.get("annotations") or {}),
            OWNED_BY_ANNOTATION: owner,
        }
    return desired


def handle_ensure_object(logger, obj, owner: Optional[str] = None) -> str:
    """
    It creates an object if it doesn't exist and replaces it if the live object differs from the desired one;
    nothing is written if both are equal

    :param logger: a logger object
    :param obj: the desired object, either a kubernetes model object or a dict
    :param owner: the logical owner of this object, see owner_reference()
    :return: one of "created", "updated", "unchanged"
    """
    desired = _prepare(obj, owner)
    kind = desired["kind"]
    name = desired["metadata"]["name"]
    namespace = desired["metadata"].get("namespace")
    _kind = get_kind(kind)
    compare = get_comparator(kind)

    live = get_object(kind, name, namespace)
    if live is None:
        try:
            _kind.create(body=desired, namespace=namespace)
            logger.info(f"{kind} {_display(name, namespace)} created")
            return CREATED
        except k8s.client.exceptions.ApiException as e:
            if e.status != 409:
                raise e
            logger.warning(f"{kind} {_display(name, namespace)} already available")
            live = get_object(kind, name, namespace)
            if live is None:
                raise kopf.TemporaryError(
                    f"{kind} {_display(name, namespace)} vanished while being created", delay=1
                )

    for attempt in range(2):
        if compare(desired, live):
            logger.debug(f"{kind} {_display(name, namespace)} is up to date")
            return UNCHANGED
        desired["metadata"]["resourceVersion"] = live["metadata"].get("resourceVersion")
        # finalizers belong to whoever put them there
        if live["metadata"].get("finalizers"):
            desired["metadata"]["finalizers"] = live["metadata"]["finalizers"]
        try:
            _kind.replace(name=name, body=desired, namespace=namespace)
            logger.info(f"{kind} {_display(name, namespace)} updated")
            return UPDATED
        except k8s.client.exceptions.ApiException as e:
            if e.status != 409:
                raise e
            logger.warning(
                f"Conflict updating {kind} {_display(name, namespace)}, fetching the latest version"
            )
            live = get_object(kind, name, namespace)
            if live is None:
                break
    raise kopf.TemporaryError(
        f"{kind} {_display(name, namespace)} could not be updated due to conflicts", delay=1
    )


def handle_delete_object(logger, kind: str, name: str, namespace: Optional[str] = None) -> bool:
    """
    It deletes an object; a missing object is fine

    :param logger: a logger object
    :param kind: the kind of the object
    :param name: the name of the object
    :param namespace: the namespace, None for cluster scoped objects
    :return: True if a delete request was sent
    """
    try:
        get_kind(kind).delete(name=name, namespace=namespace)
        logger.info(f"{kind} {_display(name, namespace)} deleted")
        return True
    except k8s.client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        raise e


def handle_create_namespace(logger, name: str, owner: Optional[str] = None) -> str:
    namespace = k8s.client.V1Namespace(
        api_version="v1",
        kind="Namespace",
        metadata=k8s.client.V1ObjectMeta(name=name),
    )
    return handle_ensure_object(logger, namespace, owner=owner)


def delete_owned_objects(logger, kinds: Iterable[str], owner: str) -> int:
    """
    Walk all objects of the given kinds that carry the ownership label and delete the ones recorded for this owner

    :param logger: a logger object
    :param kinds: the kinds to look at
    :param owner: the owner reference, see owner_reference()
    :return: the number of deleted objects
    """
    deleted = 0
    for kind in kinds:
        for obj in list_objects(kind, labels=owner_labels()):
            metadata = obj.get("metadata") or {}
            if (metadata.get("annotations") or {}).get(OWNED_BY_ANNOTATION) != owner:
                continue
            if handle_delete_object(logger, kind, metadata["name"], metadata.get("namespace")):
                deleted += 1
    return deleted


def _display(name: str, namespace: Optional[str]) -> str:
    return f"{namespace}/{name}" if namespace else name
