"""
The fleet driver turns the placement decisions into per-cluster state: a marker, RBAC, a client certificate and two
ManifestWorks for every selected cluster, and the removal of all of it for clusters that left the fleet.
"""
import logging
import threading
import traceback
from contextlib import contextmanager
from typing import Dict, Optional

import kopf

from obsfleet import addon
from obsfleet.allowlist import AllowlistError
from obsfleet.bundle import FleetInputs, collect_inputs, synthesize
from obsfleet.certificates import ensure_managed_cluster_cert
from obsfleet.configuration import configuration
from obsfleet.placement import ClusterRef, Resolution, decisions_of, get_placement_rule, resolve
from obsfleet.resources.kinds import get_object, list_objects
from obsfleet.resources.manifestworks import apply_manifestwork, list_manifestworks
from obsfleet.resources.utils import handle_delete_object, owner_reference
from obsfleet.utils import is_paused

logger = logging.getLogger("obsfleet.fleet")

FLEET_KEY = "fleet"

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


class FleetReconcileError(kopf.TemporaryError):
    def __init__(self, failures: Dict[str, Exception], delay: float = 10):
        self.failures = failures
        details = "; ".join(f"{namespace}: {error}" for namespace, error in failures.items())
        super().__init__(f"Failed to reconcile {len(failures)} managed cluster(s): {details}", delay=delay)


@contextmanager
def serialized(key: str):
    """
    Reconciles of the same key never overlap, different keys may run concurrently
    """
    with _locks_guard:
        lock = _locks.setdefault(key, threading.Lock())
    with lock:
        yield


def get_root() -> Optional[dict]:
    """
    It returns the MultiClusterObservability resource; after a restart its name is derived by listing

    :return: the root resource or None
    """
    observed_root = configuration.observed_root
    if observed_root.name:
        root = get_object("MultiClusterObservability", observed_root.name)
        if root is not None:
            return root
    roots = list_objects("MultiClusterObservability")
    if not roots:
        return None
    observed_root.record(roots[0]["metadata"]["name"])
    return roots[0]


class FleetReconciler:
    def __init__(self, logger):
        self.logger = logger
        self.failures: Dict[str, Exception] = {}

    def reconcile(self) -> Optional[Resolution]:
        """
        One level-triggered pass over the whole fleet. Failures of single clusters are collected and raised together
        once all clusters were processed.

        :return: the computed resolution, None if the root resource is paused
        """
        self.failures = {}
        mco = get_root()
        placement = get_placement_rule() if mco is not None else None
        delete_all = mco is None or placement is None
        if mco is not None and is_paused(mco):
            self.logger.info("MultiClusterObservability is paused, skip reconciling the fleet")
            return None

        decisions = [] if delete_all else decisions_of(placement)
        markers = addon.list_addon_markers()
        resolution = resolve(
            decisions,
            [marker["metadata"]["namespace"] for marker in markers],
            list_manifestworks(),
        )

        if not delete_all:
            owner = owner_reference("MultiClusterObservability", mco["metadata"]["name"])
            addon.ensure_global_resources(self.logger, owner=owner)
            try:
                inputs = collect_inputs(mco)
            except AllowlistError as e:
                raise kopf.TemporaryError(f"Metrics allow-list is invalid: {e}", delay=30)
            for ref in decisions:
                self._guarded(ref.namespace, self.provision, ref, inputs, owner)

        for namespace in resolution.to_remove:
            self._guarded(namespace, self.deprovision, namespace)
        for work in resolution.invalid_works:
            metadata = work["metadata"]
            self._guarded(
                metadata["namespace"],
                handle_delete_object,
                self.logger,
                "ManifestWork",
                metadata["name"],
                metadata["namespace"],
            )

        self.cleanup_stale_markers()
        self.propagate_addon_status()

        if delete_all and not list_manifestworks():
            addon.delete_global_resources(self.logger)

        if self.failures:
            raise FleetReconcileError(self.failures)
        return resolution

    def _guarded(self, namespace: str, func, *args):
        try:
            func(*args)
        except Exception as e:
            self.logger.error(f"Failed to reconcile cluster namespace {namespace}: {traceback.format_exc()}")
            self.failures[namespace] = e

    def provision(self, ref: ClusterRef, inputs: FleetInputs, owner: Optional[str] = None) -> None:
        live = addon.ensure_addon(self.logger, ref.namespace, inputs.spec, owner=owner)
        addon.ensure_role_bindings(self.logger, ref.name, ref.namespace, owner=owner)
        ensure_managed_cluster_cert(self.logger, ref.name, ref.namespace, owner=owner)
        operator_work, resource_work = synthesize(
            ref.namespace, ref.name, inputs.mco, inputs=inputs, include_addon=live
        )
        apply_manifestwork(self.logger, operator_work)
        apply_manifestwork(self.logger, resource_work)
        addon.ensure_managed_cluster_addon(self.logger, ref.namespace, owner=owner)

    def deprovision(self, namespace: str) -> None:
        addon.delete_addon(self.logger, namespace)
        addon.delete_managed_cluster_res(self.logger, namespace)

    def cleanup_stale_markers(self) -> None:
        namespaces_with_works = {work["metadata"]["namespace"] for work in list_manifestworks()}
        for marker in addon.list_addon_markers():
            if marker["metadata"]["namespace"] in namespaces_with_works:
                continue
            self._guarded(
                marker["metadata"]["namespace"], addon.delete_stale_addon_finalizer, self.logger, marker
            )

    def propagate_addon_status(self) -> None:
        for marker in addon.list_addon_markers():
            if addon.is_terminating(marker):
                continue
            self._guarded(marker["metadata"]["namespace"], addon.update_addon_status, self.logger, marker)


def reconcile_fleet(logger) -> Optional[Resolution]:
    with serialized(FLEET_KEY):
        return FleetReconciler(logger).reconcile()
