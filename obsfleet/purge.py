import logging

import kubernetes as k8s

logger = logging.getLogger("obsfleet")


def purge_operator():
    """
    Purge the operator's global components from the cluster; deleting the CRDs lets the API server remove all
    MultiClusterObservability and ObservabilityAddon resources
    """
    # the API objects are bound to the kube config that is loaded when they are imported
    from obsfleet.addon import delete_global_resources
    from obsfleet.resources.crds import create_addon_definition, create_observability_definition

    delete_global_resources(logger)
    for definition in [create_observability_definition(), create_addon_definition()]:
        remove_crd(definition)


def remove_crd(definition: k8s.client.V1CustomResourceDefinition):
    from obsfleet.resources.utils import handle_delete_object

    logger.info(f"Removing CRD {definition.metadata.name}")
    try:
        handle_delete_object(logger, "CustomResourceDefinition", definition.metadata.name)
    except k8s.client.exceptions.ApiException as e:
        logger.error(f"Error removing CRD {definition.metadata.name}: " + str(e))


if __name__ == "__main__":
    try:
        k8s.config.load_incluster_config()
        logger.info("Loaded in-cluster config")
    except k8s.config.ConfigException:
        # if the operator is executed locally load the current KUBECONFIG
        k8s.config.load_kube_config()
        logger.info("Loaded KUBECONFIG config")
    purge_operator()
