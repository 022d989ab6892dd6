import traceback

import click
import kopf

from obsfleet.hub import delete_hub, reconcile_hub

GROUP = "observability.open-cluster-management.io"
PLURAL = "multiclusterobservabilities"


def _reconcile(body, logger):
    try:
        requeue = reconcile_hub(logger, body)
    except (kopf.TemporaryError, kopf.PermanentError) as e:
        raise e from None
    except Exception as e:  # noqa
        logger.error(traceback.format_exc())
        logger.error("Could not reconcile observability due to the following error: " + str(e))
        raise kopf.TemporaryError(str(e), delay=10)
    if requeue:
        raise kopf.TemporaryError("Observability components are not ready yet", delay=requeue)


@kopf.on.resume(GROUP, PLURAL)
@kopf.on.create(GROUP, PLURAL)
@kopf.on.update(GROUP, PLURAL)
async def observability_changed(body, logger, **kwargs):
    """
    Reconciles the hub side of a MultiClusterObservability resource

    :param body: the body of the Kubernetes resource that triggered the handler
    :param logger: the logger object
    """
    _reconcile(body, logger)


# this is a workaround to get the --dev flag from the CLI for testing
# https://kopf.readthedocs.io/en/stable/cli/#development-mode
try:
    _ctx = click.get_current_context()
    if "priority" in _ctx.params and _ctx.params["priority"] == 666:
        RECONCILIATION_INTERVAL = 2
    else:
        RECONCILIATION_INTERVAL = 60
except RuntimeError:
    # this module is not imported via kopf CLI
    RECONCILIATION_INTERVAL = 2


@kopf.timer(GROUP, PLURAL, interval=RECONCILIATION_INTERVAL, initial_delay=RECONCILIATION_INTERVAL)
async def reconcile_observability(body, logger, **kwargs):
    """
    Periodically re-checks the hub components, so the status follows the workloads

    :param body: the body of the Kubernetes resource that triggered the handler
    :param logger: a logger object
    """
    _reconcile(body, logger)


@kopf.on.delete(GROUP, PLURAL)
async def observability_deleted(body, logger, **kwargs):
    """
    It removes the hub side objects of a MultiClusterObservability resource

    :param body: the body of the request
    :param logger: a logger object
    """
    delete_hub(logger, body)
