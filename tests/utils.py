import copy
import itertools
from datetime import datetime, timezone
from typing import Optional

import kubernetes as k8s
import yaml

VERBS = {"read", "create", "replace", "patch", "delete", "list"}


def _api_error(status: int, reason: str) -> k8s.client.exceptions.ApiException:
    return k8s.client.exceptions.ApiException(status=status, reason=reason)


def _merge(target: dict, patch: dict) -> dict:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _matches(obj: dict, label_selector: Optional[str]) -> bool:
    if not label_selector:
        return True
    labels = obj.get("metadata", {}).get("labels") or {}
    for requirement in label_selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeKubernetes:
    """
    A small in-memory API server. Objects are stored as serialized dicts keyed by (resource, namespace, name), where
    resource is the snake_case resource of the typed APIs or the plural of custom objects.
    """

    def __init__(self):
        self.objects = {}
        self.writes = []
        # (verb, resource, namespace, name) -> number of 409 responses to inject
        self.conflicts = {}
        self._versions = itertools.count(1)
        self._api_client = k8s.client.ApiClient()

    def api(self) -> "FakeApi":
        return FakeApi(self)

    @staticmethod
    def resource_of(kind: str) -> str:
        from obsfleet.resources.kinds import get_kind

        _kind = get_kind(kind)
        return getattr(_kind, "resource", None) or _kind.plural

    def key_of(self, obj: dict) -> tuple:
        from obsfleet.resources.kinds import get_kind

        namespace = obj["metadata"].get("namespace") if get_kind(obj["kind"]).namespaced else None
        return self.resource_of(obj["kind"]), namespace, obj["metadata"]["name"]

    def seed(self, *objs) -> None:
        for obj in objs:
            obj = self._api_client.sanitize_for_serialization(obj)
            resource, namespace, _ = self.key_of(obj)
            self.handle("create", resource, namespace, body=obj, record=False)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        obj = self.objects.get((self.resource_of(kind), namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def all(self, kind: str, namespace: Optional[str] = None) -> list:
        resource = self.resource_of(kind)
        return [
            copy.deepcopy(obj)
            for (_resource, _namespace, _), obj in sorted(self.objects.items(), key=lambda i: str(i[0]))
            if _resource == resource and (namespace is None or _namespace == namespace)
        ]

    def writes_to(self, kind: str, namespace: Optional[str] = None) -> list:
        resource = self.resource_of(kind)
        return [w for w in self.writes if w[1] == resource and (namespace is None or w[2] == namespace)]

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _conflict(self, verb: str, resource: str, namespace, name) -> None:
        key = (verb, resource, namespace, name)
        if self.conflicts.get(key):
            self.conflicts[key] -= 1
            raise _api_error(409, "Conflict")

    def handle(
        self,
        verb: str,
        resource: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        body=None,
        label_selector: Optional[str] = None,
        status: bool = False,
        record: bool = True,
    ):
        if verb == "list":
            return {
                "items": [
                    copy.deepcopy(obj)
                    for (_resource, _namespace, _), obj in sorted(
                        self.objects.items(), key=lambda i: str(i[0])
                    )
                    if _resource == resource
                    and (namespace is None or _namespace == namespace)
                    and _matches(obj, label_selector)
                ]
            }

        if body is not None:
            body = copy.deepcopy(self._api_client.sanitize_for_serialization(body))
        if verb == "create":
            name = body["metadata"]["name"]
        key = (resource, namespace, name)
        live = self.objects.get(key)

        if verb == "create":
            if live is not None:
                raise _api_error(409, "AlreadyExists")
            metadata = body.setdefault("metadata", {})
            if namespace:
                metadata["namespace"] = namespace
            metadata["resourceVersion"] = self._next_version()
            metadata["uid"] = f"uid-{metadata['resourceVersion']}"
            metadata.setdefault(
                "creationTimestamp", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            )
            metadata.setdefault("generation", 1)
            self.objects[key] = body
            self._record(record, verb, key)
            return copy.deepcopy(body)

        if live is None:
            raise _api_error(404, "NotFound")

        if verb == "read":
            return copy.deepcopy(live)

        if verb == "delete":
            if live["metadata"].get("finalizers"):
                live["metadata"].setdefault(
                    "deletionTimestamp", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
                )
                live["metadata"]["resourceVersion"] = self._next_version()
            else:
                del self.objects[key]
            self._record(record, verb, key)
            return {"status": "Success"}

        self._conflict(verb, resource, namespace, name)
        if verb == "patch":
            _merge(live, body)
            live["metadata"]["resourceVersion"] = self._next_version()
            self._record(record, verb, key)
            return copy.deepcopy(live)

        # replace
        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected and expected != live["metadata"]["resourceVersion"]:
            raise _api_error(409, "Conflict")
        if status:
            live["status"] = body.get("status")
            updated = live
        else:
            updated = body
            for field in ["uid", "creationTimestamp", "deletionTimestamp", "namespace", "generation"]:
                if field in live["metadata"]:
                    updated["metadata"][field] = live["metadata"][field]
            if "status" in live:
                updated["status"] = live["status"]
            if updated.get("spec") != live.get("spec"):
                updated["metadata"]["generation"] = live["metadata"].get("generation", 1) + 1
        updated["metadata"]["resourceVersion"] = self._next_version()
        if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = updated
        self._record(record, "replace_status" if status else verb, key)
        return copy.deepcopy(updated)

    def _record(self, record: bool, verb: str, key: tuple) -> None:
        if record:
            self.writes.append((verb, *key))


class FakeApi:
    """
    Stands in for the typed kubernetes APIs and the CustomObjectsApi; the called method name is parsed into a verb
    and a resource
    """

    def __init__(self, server: FakeKubernetes):
        self.server = server

    def __getattr__(self, method: str):
        verb, _, rest = method.partition("_")
        verb = {"get": "read"}.get(verb, verb)
        if verb not in VERBS:
            raise AttributeError(method)
        status = rest.endswith("_status")
        if status:
            rest = rest[: -len("_status")]

        if rest.endswith("custom_object"):

            def custom_call(plural, namespace=None, name=None, body=None, label_selector=None, **_):
                return self.server.handle(verb, plural, namespace, name, body, label_selector, status)

            return custom_call

        if rest.endswith("_for_all_namespaces"):
            rest = rest[: -len("_for_all_namespaces")]
        if rest.startswith("namespaced_"):
            rest = rest[len("namespaced_"):]

        def call(name=None, namespace=None, body=None, label_selector=None, **_):
            return self.server.handle(verb, rest, namespace, name, body, label_selector, status)

        return call


S3_CONF = yaml.safe_dump(
    {
        "type": "s3",
        "config": {
            "bucket": "thanos",
            "endpoint": "minio:9000",
            "access_key": "minio",
            "secret_key": "minio123",
        },
    }
)


def demo_observability(name: str = "observability", storage_secret: str = "thanos-object-storage", **spec) -> dict:
    body = {
        "apiVersion": "observability.open-cluster-management.io/v1beta2",
        "kind": "MultiClusterObservability",
        "metadata": {"name": name, "generation": 1},
        "spec": {
            "storageConfig": {
                "metricObjectStorage": {"name": storage_secret, "key": "thanos.yaml"}
            },
            **spec,
        },
    }
    return body


def demo_object_storage_secret(namespace: str, name: str = "thanos-object-storage", conf: str = S3_CONF) -> dict:
    from obsfleet.utils import b64encode

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "data": {"thanos.yaml": b64encode(conf)},
        "type": "Opaque",
    }


def demo_workload(kind: str, name: str, namespace: str, ready: bool = True) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"replicas": 1},
        "status": {"readyReplicas": 1 if ready else 0},
    }


def demo_placement_rule(name: str, namespace: str, clusters: list) -> dict:
    return {
        "apiVersion": "apps.open-cluster-management.io/v1",
        "kind": "PlacementRule",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {},
        "status": {
            "decisions": [
                {"clusterName": cluster, "clusterNamespace": cluster} for cluster in clusters
            ]
        },
    }


def demo_router_ca_bundle(namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "alertmanager-ca-bundle", "namespace": namespace},
        "data": {"service-ca.crt": "-----BEGIN CERTIFICATE-----\nrouter\n-----END CERTIFICATE-----\n"},
    }
