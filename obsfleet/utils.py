import base64
import logging
from datetime import datetime, timezone
from typing import Optional

from obsfleet.configuration import PAUSE_ANNOTATION

logger = logging.getLogger("obsfleet")

OWNER_LABEL = "owner"
OWNER_LABEL_VALUE = "multicluster-observability-operator"
OWNED_BY_ANNOTATION = "observability.open-cluster-management.io/owned-by"


def get_label_selector(labels: dict[str, str]) -> str:
    return ",".join(["{0}={1}".format(*label) for label in list(labels.items())])


def owner_labels() -> dict[str, str]:
    return {OWNER_LABEL: OWNER_LABEL_VALUE}


def b64encode(value) -> str:
    if isinstance(value, str):
        value = value.encode()
    return base64.b64encode(value).decode()


def b64decode(value: Optional[str]) -> bytes:
    if not value:
        return b""
    return base64.b64decode(value)


def now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value) -> Optional[datetime]:
    """
    It parses a Kubernetes timestamp; the API may hand out strings or already parsed datetimes

    :param value: the timestamp as str or datetime
    :return: an aware datetime or None
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def is_paused(body) -> bool:
    annotations = (body.get("metadata") or {}).get("annotations") or {}
    return str(annotations.get(PAUSE_ANNOTATION, "")).lower() == "true"


def has_finalizer(obj: dict, finalizer: str) -> bool:
    return finalizer in (obj.get("metadata", {}).get("finalizers") or [])


def remove_finalizer(obj: dict, finalizer: str) -> bool:
    finalizers = obj.get("metadata", {}).get("finalizers") or []
    if finalizer not in finalizers:
        return False
    obj["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]
    return True
