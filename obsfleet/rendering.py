import copy
import functools
import glob
import os
from typing import Optional

import yaml

from obsfleet.resources.kinds import get_kind


@functools.lru_cache(maxsize=None)
def _load(template_path: str) -> tuple:
    documents = []
    for path in sorted(glob.glob(os.path.join(template_path, "*.yaml"))):
        with open(path) as f:
            documents.extend(doc for doc in yaml.safe_load_all(f) if doc)
    return tuple(documents)


def render(template_path: str, namespace: Optional[str] = None, labels: Optional[dict] = None) -> list[dict]:
    """
    It renders all YAML templates of a template set; every call returns fresh objects

    :param template_path: the directory of the template set
    :param namespace: the namespace to set on all namespaced objects
    :param labels: labels to add to all objects
    :return: a list of objects in file order
    """
    resources = []
    for document in _load(template_path):
        resource = copy.deepcopy(document)
        metadata = resource.setdefault("metadata", {})
        if namespace and get_kind(resource["kind"]).namespaced:
            metadata["namespace"] = namespace
        if labels:
            metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
        resources.append(resource)
    return resources


def template_kinds(template_path: str) -> set:
    return {document["kind"] for document in _load(template_path)}
