"""
Every watched change that affects the fleet funnels into the same serialized fleet pass. The handlers are plain
functions, kopf runs them in its thread pool.
"""
import traceback

import kopf

from obsfleet.fleet import reconcile_fleet
from obsfleet.handler.observability import RECONCILIATION_INTERVAL
from obsfleet.predicates import (
    addon_marker_filter,
    alertmanager_route_filter,
    custom_allowlist_filter,
    manifestwork_filter,
    placement_rule_filter,
    root_filter,
    router_ca_filters,
    server_ca_filter,
)

_byo_ca_filter, _ingress_ca_filter = router_ca_filters()


def _reconcile_fleet(logger, reason: str):
    logger.debug(f"Fleet reconcile requested by {reason}")
    try:
        reconcile_fleet(logger)
    except (kopf.TemporaryError, kopf.PermanentError) as e:
        raise e from None
    except Exception as e:  # noqa
        logger.error(traceback.format_exc())
        logger.error("Could not reconcile the fleet due to the following error: " + str(e))
        raise kopf.TemporaryError(str(e), delay=10)


@kopf.on.event("apps.open-cluster-management.io", "placementrules", when=placement_rule_filter())
def placement_rule_event(logger, **kwargs):
    _reconcile_fleet(logger, "placement rule")


@kopf.timer(
    "apps.open-cluster-management.io",
    "placementrules",
    interval=RECONCILIATION_INTERVAL,
    when=placement_rule_filter(),
)
def reconcile_placement(logger, **kwargs):
    """
    The periodic pass also retries clusters that failed in an event triggered pass
    """
    _reconcile_fleet(logger, "timer")


@kopf.on.event("observability.open-cluster-management.io", "multiclusterobservabilities", when=root_filter())
def observability_event(logger, **kwargs):
    _reconcile_fleet(logger, "multiclusterobservability")


@kopf.on.event("work.open-cluster-management.io", "manifestworks", when=manifestwork_filter())
def manifestwork_event(logger, **kwargs):
    _reconcile_fleet(logger, "manifestwork")


@kopf.on.event("observability.open-cluster-management.io", "observabilityaddons", when=addon_marker_filter())
def addon_event(logger, **kwargs):
    _reconcile_fleet(logger, "observabilityaddon")


@kopf.on.event("v1", "configmaps", when=custom_allowlist_filter())
def allowlist_event(logger, **kwargs):
    _reconcile_fleet(logger, "custom allow-list")


@kopf.on.event("v1", "secrets", id="server-ca", when=server_ca_filter())
@kopf.on.event("v1", "secrets", id="byo-router-ca", when=_byo_ca_filter)
@kopf.on.event("v1", "secrets", id="ingress-router-ca", when=_ingress_ca_filter)
def trust_secret_event(logger, name, **kwargs):
    _reconcile_fleet(logger, f"secret {name}")


@kopf.on.event("route.openshift.io", "routes", when=alertmanager_route_filter())
def alertmanager_route_event(logger, **kwargs):
    _reconcile_fleet(logger, "alertmanager route")
