import pytest
import yaml

from obsfleet.configuration import configuration
from obsfleet.objectstorage import ObjectStorageConfError, check_obj_storage_conf, read_obj_storage_conf
from tests.utils import S3_CONF, demo_object_storage_secret


def _conf(storage_type, **config):
    return yaml.safe_dump({"type": storage_type, "config": config}).encode()


def test_check_obj_storage_conf():
    assert check_obj_storage_conf(S3_CONF.encode()) is True
    assert check_obj_storage_conf(_conf("GCS", bucket="b", service_account="sa")) is True
    assert check_obj_storage_conf(
        _conf("azure", storage_account="a", storage_account_key="k", container="c", endpoint="e")
    )


@pytest.mark.parametrize(
    "data",
    [
        None,
        b"",
        b"type: [s3",
        b"- s3",
        yaml.safe_dump({"config": {"bucket": "b"}}).encode(),
        _conf("swift", bucket="b"),
        yaml.safe_dump({"type": "s3"}).encode(),
        _conf("s3", bucket="b", endpoint="e", access_key="a"),
        _conf("gcs", bucket="b"),
    ],
)
def test_invalid_obj_storage_conf(data):
    with pytest.raises(ObjectStorageConfError):
        check_obj_storage_conf(data)


def test_read_obj_storage_conf(cluster):
    reference = {"name": "thanos-object-storage", "key": "thanos.yaml"}
    assert read_obj_storage_conf(None, configuration.NAMESPACE) is None
    assert read_obj_storage_conf(reference, configuration.NAMESPACE) is None

    cluster.seed(demo_object_storage_secret(configuration.NAMESPACE))
    assert read_obj_storage_conf(reference, configuration.NAMESPACE) == S3_CONF.encode()
    assert read_obj_storage_conf({"name": "thanos-object-storage", "key": "other.yaml"}, configuration.NAMESPACE) == b""
