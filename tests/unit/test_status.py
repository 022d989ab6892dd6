import kopf
import pytest

from obsfleet.certificates import CertificateError
from obsfleet.configuration import ObservabilityConfiguration, configuration
from obsfleet.hub import (
    DEFAULT_STORAGE_CLASS_ANNOTATION,
    NOT_READY_REQUEUE_DELAY,
    delete_hub,
    reconcile_hub,
    resolve_storage_class,
)
from obsfleet.status import (
    EXPECTED_DEPLOYMENTS,
    EXPECTED_STATEFULSETS,
    FAILED,
    INSTALLING,
    METRICS_DISABLED,
    READY,
    aggregate_conditions,
    failed_condition,
    find_condition,
    set_condition,
    write_status,
)
from obsfleet.utils import b64encode
from tests.utils import demo_object_storage_secret, demo_observability, demo_router_ca_bundle, demo_workload


def seed_workloads(cluster, kind, names, ready=True):
    prefix = configuration.OPERAND_NAME_PREFIX
    cluster.seed(*[demo_workload(kind, f"{prefix}{name}", configuration.NAMESPACE, ready) for name in names])


def aggregate(mco):
    spec = ObservabilityConfiguration.from_body(mco)
    return lambda conditions: aggregate_conditions(conditions, spec, mco["metadata"].get("generation"))


def reason_of(conditions, condition_type):
    condition = find_condition(conditions, condition_type)
    return condition["reason"] if condition else None


def test_status_progression(cluster, logger):
    mco = demo_observability()
    cluster.seed(mco)

    conditions = write_status(logger, "observability", aggregate(mco))
    assert find_condition(conditions, INSTALLING)["status"] == "True"
    assert reason_of(conditions, FAILED) == "ObjectStorageSecretNotFound"
    assert find_condition(conditions, READY) is None

    cluster.seed(demo_object_storage_secret(configuration.NAMESPACE))
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "DeploymentNotFound"

    seed_workloads(cluster, "Deployment", EXPECTED_DEPLOYMENTS[:-1])
    seed_workloads(cluster, "Deployment", EXPECTED_DEPLOYMENTS[-1:], ready=False)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "DeploymentNotReady"

    cluster.objects[
        ("deployment", configuration.NAMESPACE, f"{configuration.OPERAND_NAME_PREFIX}{EXPECTED_DEPLOYMENTS[-1]}")
    ]["status"]["readyReplicas"] = 1
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "StatefulSetNotFound"

    seed_workloads(cluster, "StatefulSet", EXPECTED_STATEFULSETS)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert find_condition(conditions, READY)["status"] == "True"
    assert find_condition(conditions, FAILED) is None
    assert all(c["observedGeneration"] == 1 for c in conditions)

    live = cluster.get("MultiClusterObservability", "observability")
    assert live["status"]["conditions"] == conditions

    # nothing changed, nothing is written
    cluster.writes.clear()
    write_status(logger, "observability", aggregate(mco))
    assert cluster.writes == []


def test_invalid_object_storage(cluster, logger):
    mco = demo_observability()
    cluster.seed(mco, demo_object_storage_secret(configuration.NAMESPACE, conf="type: s3\n"))
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "ObjectStorageConfInvalid"


def test_invalid_custom_allowlist(cluster, logger):
    mco = demo_observability()
    cluster.seed(
        mco,
        demo_object_storage_secret(configuration.NAMESPACE),
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "observability-metrics-custom-allowlist", "namespace": configuration.NAMESPACE},
            "data": {"metrics_list.yaml": "names: up"},
        },
    )
    seed_workloads(cluster, "Deployment", EXPECTED_DEPLOYMENTS)
    seed_workloads(cluster, "StatefulSet", EXPECTED_STATEFULSETS)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "AllowlistInvalid"
    assert find_condition(conditions, READY) is None


def test_failure_priority(cluster, logger):
    # a missing object storage secret hides every other failure
    mco = demo_observability()
    cluster.seed(mco)
    seed_workloads(cluster, "StatefulSet", EXPECTED_STATEFULSETS, ready=False)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "ObjectStorageSecretNotFound"
    assert len([c for c in conditions if c["type"] == FAILED]) == 1


def test_metrics_disabled(cluster, logger):
    mco = demo_observability(observabilityAddonSpec={"enableMetrics": False})
    cluster.seed(mco)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert find_condition(conditions, METRICS_DISABLED)["status"] == "True"

    mco = demo_observability(observabilityAddonSpec={"enableMetrics": True})
    conditions = write_status(logger, "observability", aggregate(mco))
    assert find_condition(conditions, METRICS_DISABLED) is None


def test_transition_time():
    conditions = [{**failed_condition("DeploymentNotFound", "missing"), "lastTransitionTime": "2020-01-01T00:00:00Z"}]
    set_condition(conditions, failed_condition("StatefulSetNotFound", "missing"))
    assert conditions[0]["reason"] == "StatefulSetNotFound"
    assert conditions[0]["lastTransitionTime"] == "2020-01-01T00:00:00Z"

    set_condition(conditions, {**failed_condition("StatefulSetNotFound", "missing"), "status": "True"})
    assert conditions[0]["lastTransitionTime"] != "2020-01-01T00:00:00Z"


def test_status_conflicts(cluster, logger):
    mco = demo_observability()
    cluster.seed(mco)
    key = ("replace", "multiclusterobservabilities", None, "observability")

    cluster.conflicts[key] = 1
    assert write_status(logger, "observability", aggregate(mco)) is not None
    assert cluster.get("MultiClusterObservability", "observability")["status"]["conditions"]

    cluster.conflicts[key] = 2
    with pytest.raises(kopf.TemporaryError):
        write_status(logger, "observability", lambda c: set_condition(c, failed_condition("Other", "other")))


def test_status_of_missing_resource(cluster, logger):
    assert write_status(logger, "observability", aggregate(demo_observability())) is None


def test_reconcile_hub(cluster, logger):
    mco = demo_observability()
    cluster.seed(mco, demo_router_ca_bundle(configuration.NAMESPACE))
    mco = cluster.get("MultiClusterObservability", "observability")

    assert reconcile_hub(logger, mco) == NOT_READY_REQUEUE_DELAY
    assert configuration.observed_root.name == "observability"
    assert cluster.get("PlacementRule", configuration.PLACEMENTRULE_NAME, configuration.NAMESPACE) is not None
    assert cluster.get("ConfigMap", "observability-metrics-allowlist", configuration.NAMESPACE) is not None
    assert cluster.get("Secret", "observability-server-ca-certs", configuration.NAMESPACE) is not None

    cluster.seed(demo_object_storage_secret(configuration.NAMESPACE))
    seed_workloads(cluster, "Deployment", EXPECTED_DEPLOYMENTS)
    seed_workloads(cluster, "StatefulSet", EXPECTED_STATEFULSETS)
    assert reconcile_hub(logger, mco) is None
    live = cluster.get("MultiClusterObservability", "observability")
    assert find_condition(live["status"]["conditions"], READY)["status"] == "True"


def test_reconcile_paused_hub(cluster, logger):
    mco = demo_observability()
    mco["metadata"]["annotations"] = {"mco-pause": "true"}
    cluster.seed(mco)
    assert reconcile_hub(logger, mco) is None
    assert cluster.writes == []


def test_malformed_certificate(cluster, logger):
    mco = demo_observability()
    cluster.seed(
        mco,
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "observability-server-ca-certs", "namespace": configuration.NAMESPACE},
            "data": {"tls.crt": b64encode("garbage"), "tls.key": b64encode("garbage")},
        },
    )
    with pytest.raises(CertificateError):
        reconcile_hub(logger, mco)
    live = cluster.get("MultiClusterObservability", "observability")
    assert reason_of(live["status"]["conditions"], FAILED) == "CertificateInvalid"
    # the broken CA is not replaced
    assert cluster.writes_to("Secret", configuration.NAMESPACE) == []


def demo_storage_class(name, default=False):
    annotations = {DEFAULT_STORAGE_CLASS_ANNOTATION: "true"} if default else {}
    return {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {"name": name, "annotations": annotations},
        "provisioner": "kubernetes.io/no-provisioner",
    }


def test_storage_class_defaulting(cluster, logger):
    mco = demo_observability()
    mco["spec"]["storageConfig"]["storageClass"] = "missing"
    cluster.seed(mco, demo_storage_class("slow"), demo_storage_class("standard", default=True))

    assert resolve_storage_class(logger, mco) == "standard"
    live = cluster.get("MultiClusterObservability", "observability")
    assert live["spec"]["storageConfig"]["storageClass"] == "standard"
    # the object storage reference is kept
    assert live["spec"]["storageConfig"]["metricObjectStorage"]["name"] == "thanos-object-storage"

    cluster.writes.clear()
    assert resolve_storage_class(logger, live) == "standard"
    assert cluster.writes == []


def test_delete_hub(cluster, logger):
    cluster.seed(demo_observability(), demo_router_ca_bundle(configuration.NAMESPACE))
    mco = cluster.get("MultiClusterObservability", "observability")
    reconcile_hub(logger, mco)
    assert cluster.get("Secret", "observability-client-ca-certs", configuration.ISSUER_NAMESPACE) is not None

    delete_hub(logger, mco)
    assert cluster.get("PlacementRule", configuration.PLACEMENTRULE_NAME, configuration.NAMESPACE) is None
    assert cluster.get("ConfigMap", "observability-metrics-allowlist", configuration.NAMESPACE) is None
    assert cluster.get("Secret", "observability-server-ca-certs", configuration.NAMESPACE) is None
    assert cluster.get("Secret", "observability-client-ca-certs", configuration.ISSUER_NAMESPACE) is None
    assert configuration.observed_root.name is None
    # objects the operator does not own survive
    assert cluster.get("ConfigMap", "alertmanager-ca-bundle", configuration.NAMESPACE) is not None


def test_allowlist_with_numeric_record(cluster, logger):
    mco = demo_observability()
    cluster.seed(
        mco,
        demo_object_storage_secret(configuration.NAMESPACE),
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "observability-metrics-custom-allowlist", "namespace": configuration.NAMESPACE},
            "data": {"metrics_list.yaml": "recording_rules:\n- record: 5\n  expr: up\n"},
        },
    )
    seed_workloads(cluster, "Deployment", EXPECTED_DEPLOYMENTS)
    seed_workloads(cluster, "StatefulSet", EXPECTED_STATEFULSETS)
    conditions = write_status(logger, "observability", aggregate(mco))
    assert reason_of(conditions, FAILED) == "AllowlistInvalid"
    assert find_condition(conditions, READY) is None
