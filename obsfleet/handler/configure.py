import kopf

from obsfleet.configuration import configuration


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    settings.peering.standalone = True
    settings.posting.enabled = False
    settings.execution.max_workers = configuration.MAX_WORKERS
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix="observability.open-cluster-management.io",
        key="last-handled-configuration",
    )
    settings.persistence.finalizer = "observability.open-cluster-management.io/kopf-finalizer"
