"""
The hub driver reconciles the MultiClusterObservability resource itself: hub side defaults, certificates, the
placement rule that selects the fleet and the aggregated status.
"""
import logging
from typing import Optional

from obsfleet import hubinfo
from obsfleet.bundle import hub_template_path
from obsfleet.certificates import CertificateError, clean_client_certs, create_observability_certs
from obsfleet.configuration import ObservabilityConfiguration, configuration
from obsfleet.placement import ensure_placement_rule
from obsfleet.rendering import render
from obsfleet.resources.kinds import get_kind, list_objects
from obsfleet.resources.utils import delete_owned_objects, handle_ensure_object, owner_reference
from obsfleet.status import (
    READY,
    aggregate_conditions,
    failed_condition,
    find_condition,
    remove_condition,
    set_condition,
    write_status,
)
from obsfleet.utils import is_paused

logger = logging.getLogger("obsfleet.hub")

DEFAULT_STORAGE_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"
NOT_READY_REQUEUE_DELAY = 2

# the kinds the hub driver creates on behalf of a MultiClusterObservability resource
OWNED_KINDS = ["PlacementRule", "ConfigMap", "Secret", "Namespace"]


def resolve_storage_class(logger, mco: dict) -> Optional[str]:
    """
    If the configured storage class does not exist, storageConfig.storageClass is set to the default storage class

    :param logger: a logger object
    :param mco: the MultiClusterObservability resource
    :return: the effective storage class
    """
    spec = ObservabilityConfiguration.from_body(mco)
    desired = spec.storageConfig.get("storageClass")
    storage_classes = list_objects("StorageClass")
    if desired in {sc["metadata"]["name"] for sc in storage_classes}:
        return desired
    default = next(
        (
            sc["metadata"]["name"]
            for sc in storage_classes
            if ((sc["metadata"].get("annotations") or {}).get(DEFAULT_STORAGE_CLASS_ANNOTATION)) == "true"
        ),
        None,
    )
    if default is None:
        logger.warning(f"StorageClass {desired} does not exist and there is no default StorageClass")
        return desired
    get_kind("MultiClusterObservability").patch(
        name=mco["metadata"]["name"], body={"spec": {"storageConfig": {"storageClass": default}}}
    )
    logger.info(f"StorageClass {desired} does not exist, using the default StorageClass {default}")
    return default


def ensure_hub_resources(logger, owner: Optional[str] = None) -> None:
    for resource in render(hub_template_path(), configuration.NAMESPACE):
        handle_ensure_object(logger, resource, owner=owner)


def _certificate_failed(conditions: list, message: str) -> None:
    set_condition(conditions, failed_condition("CertificateInvalid", message))
    remove_condition(conditions, READY)


def reconcile_hub(logger, mco: dict) -> Optional[int]:
    """
    One pass of the hub driver

    :param logger: a logger object
    :param mco: the MultiClusterObservability resource
    :return: a requeue delay in seconds if the hub is not ready yet, None otherwise
    """
    name = mco["metadata"]["name"]
    configuration.observed_root.record(name)
    if is_paused(mco):
        logger.info(f"MultiClusterObservability {name} is paused, skip reconciling")
        return None

    owner = owner_reference("MultiClusterObservability", name)
    resolve_storage_class(logger, mco)
    ensure_hub_resources(logger, owner=owner)
    try:
        create_observability_certs(logger, hubinfo.get_obs_api_route_host(), owner=owner)
    except CertificateError as e:
        write_status(logger, name, lambda c: _certificate_failed(c, str(e)))
        raise e
    ensure_placement_rule(logger, owner=owner)

    spec = ObservabilityConfiguration.from_body(mco)
    generation = (mco.get("metadata") or {}).get("generation")

    conditions = write_status(logger, name, lambda c: aggregate_conditions(c, spec, generation))
    if conditions is not None and find_condition(conditions, READY) is None:
        return NOT_READY_REQUEUE_DELAY
    return None


def delete_hub(logger, mco: dict) -> None:
    """
    It removes everything the hub driver created for a MultiClusterObservability resource. The fleet is torn down
    by the fleet driver once the resource is gone.

    :param logger: a logger object
    :param mco: the MultiClusterObservability resource
    """
    name = mco["metadata"]["name"]
    clean_client_certs(logger)
    deleted = delete_owned_objects(
        logger, OWNED_KINDS, owner_reference("MultiClusterObservability", name)
    )
    logger.info(f"Removed {deleted} objects owned by MultiClusterObservability {name}")
    configuration.observed_root.forget(name)
