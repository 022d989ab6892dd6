import kopf
import kubernetes as k8s

from obsfleet.bundle import hub_template_path, manifest_kinds
from obsfleet.rendering import template_kinds
from obsfleet.resources.compare import UnknownKindError, verify_registry
from obsfleet.resources.crds import create_addon_definition, create_observability_definition
from obsfleet.resources.kinds import get_kind

# the kinds the operator writes through the sync primitive outside of ManifestWorks
SYNCED_KINDS = {
    "Namespace",
    "Secret",
    "ConfigMap",
    "ClusterRole",
    "ClusterRoleBinding",
    "RoleBinding",
    "ObservabilityAddon",
    "PlacementRule",
    "ManagedClusterAddOn",
    "ClusterManagementAddOn",
}


def handle_crds(logger) -> list:
    """
    It creates the custom resource definitions for the MultiClusterObservability and the ObservabilityAddon resource

    :param logger: a logger object
    :return: the CRD definitions
    """
    definitions = [create_observability_definition(), create_addon_definition()]
    for definition in definitions:
        try:
            get_kind("CustomResourceDefinition").create(body=definition)
            logger.info(f"CRD {definition.metadata.name} created")
        except k8s.client.exceptions.ApiException as e:
            if e.status == 409:
                logger.warning(f"CRD {definition.metadata.name} already available")
            else:
                raise e
    return definitions


@kopf.on.startup()
async def check_observability_components(logger, **kwargs) -> None:
    """
    Checks all required components of the operator in the current version. Every kind that can reach the object
    comparison must have a comparator, otherwise the operator refuses to start.
    """
    from obsfleet.configuration import configuration

    logger.info(
        f"Ensuring observability components with the following configuration: {configuration}"
    )

    try:
        verify_registry(manifest_kinds() | template_kinds(hub_template_path()) | SYNCED_KINDS)
    except UnknownKindError as e:
        raise kopf.PermanentError(str(e))

    #
    # handle the MultiClusterObservability and ObservabilityAddon CRDs
    #
    handle_crds(logger)

    logger.info("Observability components installed/patched")
