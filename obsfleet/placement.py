from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional

from obsfleet.configuration import configuration
from obsfleet.resources.kinds import get_kind, get_object
from obsfleet.resources.manifestworks import find_invalid_manifestworks
from obsfleet.resources.utils import handle_ensure_object


@dataclass(frozen=True)
class ClusterRef:
    name: str
    namespace: str


class Resolution(NamedTuple):
    to_add: List[ClusterRef]
    to_remove: List[str]
    invalid_works: List[dict]


def decisions_of(placement: Optional[dict]) -> List[ClusterRef]:
    """
    It reads the placement decisions of a PlacementRule; duplicate cluster namespaces are collapsed

    :param placement: the PlacementRule, None is treated as no decisions
    :return: the referenced clusters in decision order
    """
    if placement is None:
        return []
    refs = []
    seen = set()
    for decision in (placement.get("status") or {}).get("decisions") or []:
        namespace = decision.get("clusterNamespace")
        if not namespace or namespace in seen:
            continue
        seen.add(namespace)
        refs.append(ClusterRef(decision.get("clusterName") or namespace, namespace))
    return refs


def resolve(
    decisions: Iterable[ClusterRef], current_markers: Iterable[str], works: Iterable[dict] = ()
) -> Resolution:
    """
    Diff the desired cluster set against the clusters currently carrying a marker. A cluster namespace that only has
    ManifestWorks left (for instance after its marker was deleted) is also scheduled for removal.

    :param decisions: the desired clusters
    :param current_markers: the namespaces that have a marker
    :param works: the ManifestWorks owned by this operator
    :return: the clusters to add, the namespaces to remove and the invalid ManifestWorks
    """
    decisions = list(decisions)
    works = list(works)
    markers = set(current_markers)
    desired = {ref.namespace for ref in decisions}
    to_add = [ref for ref in decisions if ref.namespace not in markers]
    present = markers | {work["metadata"]["namespace"] for work in works}
    to_remove = sorted(present - desired)
    return Resolution(to_add, to_remove, find_invalid_manifestworks(works))


def get_placement_rule() -> Optional[dict]:
    return get_object("PlacementRule", configuration.PLACEMENTRULE_NAME, configuration.NAMESPACE)


def create_placement_rule() -> dict:
    return {
        "apiVersion": get_kind("PlacementRule").api_version,
        "kind": "PlacementRule",
        "metadata": {
            "name": configuration.PLACEMENTRULE_NAME,
            "namespace": configuration.NAMESPACE,
        },
        "spec": {
            "clusterConditions": [
                {"status": "True", "type": "ManagedClusterConditionAvailable"}
            ],
            "clusterSelector": {
                "matchExpressions": [
                    {"key": "vendor", "operator": "In", "values": ["OpenShift"]},
                    {"key": "observability", "operator": "NotIn", "values": ["disabled"]},
                ]
            },
        },
    }


def ensure_placement_rule(logger, owner: Optional[str] = None) -> str:
    return handle_ensure_object(logger, create_placement_rule(), owner=owner)
