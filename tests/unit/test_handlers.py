import kopf
import pytest

from obsfleet.configuration import configuration
from obsfleet.handler import components, configure, fleet, observability
from tests.utils import demo_observability, demo_router_ca_bundle

CRDS = [
    "multiclusterobservabilities.observability.open-cluster-management.io",
    "observabilityaddons.observability.open-cluster-management.io",
]


def test_handle_crds(cluster, logger):
    components.handle_crds(logger)
    # already existing CRDs are fine
    components.handle_crds(logger)
    for name in CRDS:
        assert cluster.get("CustomResourceDefinition", name) is not None


async def test_startup(cluster, logger):
    await components.check_observability_components(logger=logger)
    assert [crd["metadata"]["name"] for crd in cluster.all("CustomResourceDefinition")] == CRDS


def test_hub_not_ready_is_requeued(cluster, logger):
    cluster.seed(demo_observability(), demo_router_ca_bundle(configuration.NAMESPACE))
    with pytest.raises(kopf.TemporaryError) as e:
        observability._reconcile(cluster.get("MultiClusterObservability", "observability"), logger)
    assert e.value.delay == 2


def test_unexpected_errors_are_temporary(cluster, logger, monkeypatch):
    def broken(logger):
        raise RuntimeError("boom")

    monkeypatch.setattr(fleet, "reconcile_fleet", broken)
    with pytest.raises(kopf.TemporaryError, match="boom"):
        fleet.placement_rule_event(logger=logger)


def test_operator_settings():
    settings = kopf.OperatorSettings()
    configure.configure(settings)
    assert settings.peering.standalone is True
    assert settings.posting.enabled is False
    assert settings.execution.max_workers == configuration.MAX_WORKERS
    assert settings.persistence.finalizer == "observability.open-cluster-management.io/kopf-finalizer"
