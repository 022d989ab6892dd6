from typing import Optional

import kubernetes as k8s

from obsfleet.resources.compare import UnknownKindError
from obsfleet.utils import get_label_selector

app_v1_api = k8s.client.AppsV1Api()
core_v1_api = k8s.client.CoreV1Api()
rbac_v1_api = k8s.client.RbacAuthorizationV1Api()
storage_v1_api = k8s.client.StorageV1Api()
extension_api = k8s.client.ApiextensionsV1Api()
custom_api = k8s.client.CustomObjectsApi()

api_client = k8s.client.ApiClient()


def serialize(obj) -> Optional[dict]:
    """
    It turns a kubernetes model object (or a plain dict) into its JSON-compatible dict representation

    :param obj: a kubernetes model object or dict
    :return: the serialized object
    """
    if obj is None:
        return None
    return api_client.sanitize_for_serialization(obj)


class BuiltinKind:
    """
    A kind served by one of the typed kubernetes APIs; the API object is looked up on every call so it can be
    exchanged at runtime
    """

    def __init__(self, kind: str, api_version: str, api: str, resource: str, namespaced: bool = True):
        self.kind = kind
        self.api_version = api_version
        self.api = api
        self.resource = resource
        self.namespaced = namespaced

    def _method(self, verb: str, suffix: str = "", all_namespaces: bool = False):
        api = globals()[self.api]
        if not self.namespaced:
            return getattr(api, f"{verb}_{self.resource}{suffix}")
        if all_namespaces:
            return getattr(api, f"{verb}_{self.resource}_for_all_namespaces")
        return getattr(api, f"{verb}_namespaced_{self.resource}{suffix}")

    def _scope(self, namespace: Optional[str]) -> dict:
        return {"namespace": namespace} if self.namespaced else {}

    def read(self, name: str, namespace: Optional[str] = None):
        return self._method("read")(name=name, **self._scope(namespace))

    def create(self, body, namespace: Optional[str] = None):
        return self._method("create")(body=body, **self._scope(namespace))

    def replace(self, name: str, body, namespace: Optional[str] = None):
        return self._method("replace")(name=name, body=body, **self._scope(namespace))

    def replace_status(self, name: str, body, namespace: Optional[str] = None):
        return self._method("replace", suffix="_status")(
            name=name, body=body, **self._scope(namespace)
        )

    def patch(self, name: str, body, namespace: Optional[str] = None):
        return self._method("patch")(name=name, body=body, **self._scope(namespace))

    def delete(self, name: str, namespace: Optional[str] = None):
        return self._method("delete")(name=name, **self._scope(namespace))

    def list(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        kwargs = {"label_selector": label_selector} if label_selector else {}
        if self.namespaced and namespace is None:
            return self._method("list", all_namespaces=True)(**kwargs)
        return self._method("list")(**self._scope(namespace), **kwargs)


class CustomKind:
    """
    A kind served through the CustomObjectsApi
    """

    def __init__(self, kind: str, group: str, version: str, plural: str, namespaced: bool = True):
        self.kind = kind
        self.group = group
        self.version = version
        self.plural = plural
        self.namespaced = namespaced

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def _call(self, verb: str, namespace: Optional[str], suffix: str = "", **kwargs):
        if self.namespaced and namespace is not None:
            method = getattr(custom_api, f"{verb}_namespaced_custom_object{suffix}")
            kwargs["namespace"] = namespace
        else:
            method = getattr(custom_api, f"{verb}_cluster_custom_object{suffix}")
        return method(group=self.group, version=self.version, plural=self.plural, **kwargs)

    def read(self, name: str, namespace: Optional[str] = None):
        return self._call("get", namespace, name=name)

    def create(self, body, namespace: Optional[str] = None):
        return self._call("create", namespace, body=body)

    def replace(self, name: str, body, namespace: Optional[str] = None):
        return self._call("replace", namespace, name=name, body=body)

    def replace_status(self, name: str, body, namespace: Optional[str] = None):
        return self._call("replace", namespace, suffix="_status", name=name, body=body)

    def patch(self, name: str, body, namespace: Optional[str] = None):
        return self._call("patch", namespace, name=name, body=body)

    def delete(self, name: str, namespace: Optional[str] = None):
        return self._call("delete", namespace, name=name)

    def list(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        kwargs = {"label_selector": label_selector} if label_selector else {}
        return self._call("list", namespace, **kwargs)


KINDS = {
    _kind.kind: _kind
    for _kind in [
        BuiltinKind("Namespace", "v1", "core_v1_api", "namespace", namespaced=False),
        BuiltinKind("Secret", "v1", "core_v1_api", "secret"),
        BuiltinKind("ConfigMap", "v1", "core_v1_api", "config_map"),
        BuiltinKind("Service", "v1", "core_v1_api", "service"),
        BuiltinKind("ServiceAccount", "v1", "core_v1_api", "service_account"),
        BuiltinKind("Deployment", "apps/v1", "app_v1_api", "deployment"),
        BuiltinKind("StatefulSet", "apps/v1", "app_v1_api", "stateful_set"),
        BuiltinKind(
            "ClusterRole", "rbac.authorization.k8s.io/v1", "rbac_v1_api", "cluster_role", namespaced=False
        ),
        BuiltinKind(
            "ClusterRoleBinding",
            "rbac.authorization.k8s.io/v1",
            "rbac_v1_api",
            "cluster_role_binding",
            namespaced=False,
        ),
        BuiltinKind("RoleBinding", "rbac.authorization.k8s.io/v1", "rbac_v1_api", "role_binding"),
        BuiltinKind(
            "StorageClass", "storage.k8s.io/v1", "storage_v1_api", "storage_class", namespaced=False
        ),
        BuiltinKind(
            "CustomResourceDefinition",
            "apiextensions.k8s.io/v1",
            "extension_api",
            "custom_resource_definition",
            namespaced=False,
        ),
        CustomKind(
            "MultiClusterObservability",
            "observability.open-cluster-management.io",
            "v1beta2",
            "multiclusterobservabilities",
            namespaced=False,
        ),
        CustomKind(
            "ObservabilityAddon",
            "observability.open-cluster-management.io",
            "v1beta1",
            "observabilityaddons",
        ),
        CustomKind("ManifestWork", "work.open-cluster-management.io", "v1", "manifestworks"),
        CustomKind("PlacementRule", "apps.open-cluster-management.io", "v1", "placementrules"),
        CustomKind(
            "ManagedClusterAddOn",
            "addon.open-cluster-management.io",
            "v1alpha1",
            "managedclusteraddons",
        ),
        CustomKind(
            "ClusterManagementAddOn",
            "addon.open-cluster-management.io",
            "v1alpha1",
            "clustermanagementaddons",
            namespaced=False,
        ),
        CustomKind("Route", "route.openshift.io", "v1", "routes"),
        CustomKind("IngressController", "operator.openshift.io", "v1", "ingresscontrollers"),
    ]
}


def get_kind(kind: str):
    try:
        return KINDS[kind]
    except KeyError:
        raise UnknownKindError(f"Kind '{kind}' is not served by this operator") from None


def get_object(kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
    """
    It reads an object and returns it serialized; a missing object is returned as None

    :param kind: the kind of the object
    :param name: the name of the object
    :param namespace: the namespace of the object, None for cluster scoped objects
    :return: the object as dict or None
    """
    try:
        return serialize(get_kind(kind).read(name=name, namespace=namespace))
    except k8s.client.exceptions.ApiException as e:
        if e.status == 404:
            return None
        raise e


def list_objects(kind: str, namespace: Optional[str] = None, labels: Optional[dict] = None) -> list[dict]:
    """
    It lists objects of a kind, optionally filtered by namespace and labels

    :param kind: the kind of the objects
    :param namespace: the namespace to list in; None lists across all namespaces
    :param labels: the labels the objects must carry
    :return: a list of serialized objects
    """
    selector = get_label_selector(labels) if labels else None
    result = serialize(get_kind(kind).list(namespace=namespace, label_selector=selector))
    return result.get("items") or []
