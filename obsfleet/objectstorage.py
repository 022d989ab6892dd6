from typing import Optional

import yaml

from obsfleet.resources.kinds import get_object
from obsfleet.utils import b64decode

# required (non-empty) keys of the "config" section per storage type
REQUIRED_KEYS = {
    "s3": ["bucket", "endpoint", "access_key", "secret_key"],
    "gcs": ["bucket", "service_account"],
    "azure": ["storage_account", "storage_account_key", "container", "endpoint"],
}


class ObjectStorageConfError(ValueError):
    pass


def check_obj_storage_conf(data: Optional[bytes]) -> bool:
    """
    It validates a Thanos object storage configuration

    :param data: the raw YAML configuration
    :raises ObjectStorageConfError: if the configuration is invalid
    :return: True if the configuration is valid
    """
    if not data:
        raise ObjectStorageConfError("no object storage configuration found")
    try:
        conf = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ObjectStorageConfError(f"invalid object storage configuration: {e}") from None
    if not isinstance(conf, dict):
        raise ObjectStorageConfError("invalid config format")

    storage_type = conf.get("type")
    if not isinstance(storage_type, str):
        raise ObjectStorageConfError("invalid config format, missing type")
    storage_type = storage_type.lower()
    if storage_type not in REQUIRED_KEYS:
        raise ObjectStorageConfError(
            f"invalid type config, only {', '.join(REQUIRED_KEYS)} types are supported"
        )

    storage_conf = conf.get("config")
    if not isinstance(storage_conf, dict):
        raise ObjectStorageConfError("invalid config format, missing config section")
    for key in REQUIRED_KEYS[storage_type]:
        if not storage_conf.get(key):
            raise ObjectStorageConfError(f"no {storage_type} {key} in config file")
    return True


def read_obj_storage_conf(reference: Optional[dict], namespace: str) -> Optional[bytes]:
    """
    It reads the object storage configuration referenced by the root resource

    :param reference: the {name, key} reference of the storage secret
    :param namespace: the namespace of the storage secret
    :return: the raw configuration (empty if the key is missing) or None if there is no such secret
    """
    if not reference or not reference.get("name"):
        return None
    secret = get_object("Secret", reference["name"], namespace)
    if secret is None:
        return None
    return b64decode((secret.get("data") or {}).get(reference.get("key") or ""))
