"""
Declarative filters for the kopf watch subscriptions, passed as when= to the handlers. kopf calls them with the same
keyword arguments it passes to the handler.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from obsfleet.addon import ADDON_NAME
from obsfleet.allowlist import CUSTOM_ALLOWLIST_CONFIGMAP
from obsfleet.certificates import CERT_DEPENDENTS, SERVER_CA_CERTS
from obsfleet.configuration import ObservedRoot, configuration
from obsfleet.hubinfo import (
    ALERTMANAGER_BYO_CA,
    ALERTMANAGER_BYO_CERT,
    ALERTMANAGER_ROUTE,
    INGRESS_DEFAULT_CERT,
    INGRESS_NAMESPACE,
)
from obsfleet.utils import OWNER_LABEL, OWNER_LABEL_VALUE

DELETED = "DELETED"


@dataclass(frozen=True)
class ObjectFilter:
    """
    Accepts an event if the object matches all given criteria; an empty criterion matches everything
    """

    names: FrozenSet[str] = frozenset()
    namespaces: FrozenSet[str] = frozenset()
    labels: FrozenSet[tuple] = frozenset()
    event_types: FrozenSet[Optional[str]] = frozenset()

    def __call__(self, name=None, namespace=None, labels=None, type=None, **_) -> bool:
        if self.names and name not in self.names:
            return False
        if self.namespaces and namespace not in self.namespaces:
            return False
        labels = labels or {}
        if any(labels.get(key) != value for key, value in self.labels):
            return False
        if self.event_types and type not in self.event_types:
            return False
        return True


@dataclass(frozen=True)
class RootFilter:
    """
    Accepts every event of the root resource and keeps the last observed root name up to date
    """

    observed: ObservedRoot = field(compare=False)

    def __call__(self, name=None, type=None, **_) -> bool:
        if type == DELETED:
            self.observed.forget(name)
        elif name:
            self.observed.record(name)
        return True


def _owned() -> FrozenSet[tuple]:
    return frozenset({(OWNER_LABEL, OWNER_LABEL_VALUE)})


def placement_rule_filter() -> ObjectFilter:
    return ObjectFilter(
        names=frozenset({configuration.PLACEMENTRULE_NAME}),
        namespaces=frozenset({configuration.NAMESPACE}),
    )


def root_filter() -> RootFilter:
    return RootFilter(configuration.observed_root)


def manifestwork_filter() -> ObjectFilter:
    # creations are caused by the fleet driver itself
    return ObjectFilter(labels=_owned(), event_types=frozenset({"MODIFIED", DELETED}))


def addon_marker_filter() -> ObjectFilter:
    return ObjectFilter(names=frozenset({ADDON_NAME}), labels=_owned())


def custom_allowlist_filter() -> ObjectFilter:
    return ObjectFilter(
        names=frozenset({CUSTOM_ALLOWLIST_CONFIGMAP}),
        namespaces=frozenset({configuration.NAMESPACE}),
    )


def server_ca_filter() -> ObjectFilter:
    return ObjectFilter(
        names=frozenset({SERVER_CA_CERTS}),
        namespaces=frozenset({configuration.NAMESPACE}),
        event_types=frozenset({"ADDED", "MODIFIED"}),
    )


def alertmanager_route_filter() -> ObjectFilter:
    return ObjectFilter(
        names=frozenset({ALERTMANAGER_ROUTE}),
        namespaces=frozenset({configuration.NAMESPACE}),
    )


def router_ca_filters() -> list:
    return [
        ObjectFilter(
            names=frozenset({ALERTMANAGER_BYO_CA, ALERTMANAGER_BYO_CERT}),
            namespaces=frozenset({configuration.NAMESPACE}),
        ),
        ObjectFilter(
            names=frozenset({INGRESS_DEFAULT_CERT}),
            namespaces=frozenset({INGRESS_NAMESPACE}),
        ),
    ]


def certificate_filter() -> ObjectFilter:
    return ObjectFilter(
        names=frozenset(CERT_DEPENDENTS),
        namespaces=frozenset({configuration.NAMESPACE, configuration.ISSUER_NAMESPACE}),
        event_types=frozenset({"ADDED", "MODIFIED"}),
    )
