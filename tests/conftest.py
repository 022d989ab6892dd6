import logging

import pytest

from tests.utils import FakeKubernetes

API_OBJECTS = [
    "app_v1_api",
    "core_v1_api",
    "rbac_v1_api",
    "storage_v1_api",
    "extension_api",
    "custom_api",
]


@pytest.fixture()
def cluster(monkeypatch):
    """
    An in-memory API server that every API object of the operator talks to
    """
    from obsfleet.configuration import configuration
    from obsfleet.resources import kinds

    server = FakeKubernetes()
    api = server.api()
    for name in API_OBJECTS:
        monkeypatch.setattr(kinds, name, api)
    configuration.observed_root.record(None)
    yield server
    configuration.observed_root.record(None)


@pytest.fixture()
def logger():
    return logging.getLogger("obsfleet.tests")
