import copy
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Optional

from decouple import config

__VERSION__ = "0.3.0"

logger = logging.getLogger("obsfleet")

MIN_METRICS_INTERVAL = 15
MAX_METRICS_INTERVAL = 3600

PAUSE_ANNOTATION = "mco-pause"
IMAGE_REPOSITORY_ANNOTATION = "mco-imageRepository"
IMAGE_TAG_SUFFIX_ANNOTATION = "mco-imageTagSuffix"


@dataclass
class ObservabilityConfiguration:
    """
    The desired state of the observability stack as declared on a MultiClusterObservability resource,
    completed with the operator defaults
    """

    imagePullPolicy: str = field(default_factory=lambda: "Always")
    imagePullSecret: str = field(
        default_factory=lambda: config(
            "DEFAULT_PULL_SECRET", default="multiclusterhub-operator-pull-secret"
        )
    )
    nodeSelector: dict = field(default_factory=lambda: {})
    tolerations: list = field(default_factory=lambda: [])
    storageConfig: dict = field(
        default_factory=lambda: {
            "metricObjectStorage": None,
            "storageClass": "gp2",
            "alertmanagerStorageSize": "1Gi",
            "ruleStorageSize": "1Gi",
            "compactStorageSize": "100Gi",
            "receiveStorageSize": "100Gi",
            "storeStorageSize": "10Gi",
        }
    )
    retentionConfig: dict = field(
        default_factory=lambda: {
            "retentionResolutionRaw": "30d",
            "retentionResolution5m": "180d",
            "retentionResolution1h": "0d",
            "retentionInLocal": "24h",
            "deleteDelay": "48h",
            "blockDuration": "2h",
        }
    )
    observabilityAddonSpec: dict = field(
        default_factory=lambda: {"enableMetrics": True, "interval": 300}
    )

    @staticmethod
    def _coerce(value):
        if value in ["false", "False"]:
            return False
        if value in ["true", "True"]:
            return True
        return value

    @staticmethod
    def _merge(source, destination):
        for key, value in source.items():
            if isinstance(value, dict):
                # get node or create one
                node = destination.get(key)
                if not isinstance(node, dict):
                    node = destination[key] = {}
                ObservabilityConfiguration._merge(value, node)
            else:
                destination[key] = ObservabilityConfiguration._coerce(value)
        return destination

    @staticmethod
    def _update_dict(source, merger):
        for key, value in merger.items():
            if not hasattr(source, key):
                logger.warning(f"The configuration key '{key}' is unknown.")
                continue
            if value is None:
                continue
            if type(value) is dict and type(getattr(source, key)) is dict:
                setattr(
                    source,
                    key,
                    ObservabilityConfiguration._merge(value, getattr(source, key)),
                )
            else:
                setattr(source, key, copy.deepcopy(ObservabilityConfiguration._coerce(value)))

    def update(self, new: dict):
        ObservabilityConfiguration._update_dict(self, new)
        self._bound_interval()

    def _bound_interval(self):
        interval = self.observabilityAddonSpec.get("interval", 300)
        try:
            interval = int(interval)
        except (TypeError, ValueError):
            logger.warning(f"Invalid metrics push interval '{interval}', using 300")
            interval = 300
        bounded = min(max(interval, MIN_METRICS_INTERVAL), MAX_METRICS_INTERVAL)
        if bounded != interval:
            logger.warning(
                f"Metrics push interval {interval}s is out of bounds, using {bounded}s"
            )
        self.observabilityAddonSpec["interval"] = bounded

    @property
    def metrics_enabled(self) -> bool:
        return self.observabilityAddonSpec.get("enableMetrics", True) is not False

    @property
    def object_storage(self) -> Optional[dict]:
        return self.storageConfig.get("metricObjectStorage")

    @classmethod
    def from_body(cls, body) -> "ObservabilityConfiguration":
        _s = cls()
        _s.update(dict(body.get("spec") or {}))
        return _s


class ObservedRoot:
    """
    Holds the name of the MultiClusterObservability resource that was last seen by the operator. There is only
    one writer per process at a time; readers must treat an empty value as unknown and re-derive it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._name = None

    @property
    def name(self) -> Optional[str]:
        return self._name

    def record(self, name: Optional[str]) -> None:
        with self._lock:
            self._name = name

    def forget(self, name: str) -> None:
        with self._lock:
            if self._name == name:
                self._name = None


class OperatorConfiguration:
    def __init__(self):
        self.NAMESPACE = config(
            "OBSERVABILITY_NAMESPACE", default="open-cluster-management-observability"
        )
        self.ISSUER_NAMESPACE = config(
            "ISSUER_NAMESPACE", default=f"{self.NAMESPACE}-issuer"
        )
        self.SPOKE_NAMESPACE = config(
            "SPOKE_NAMESPACE", default="open-cluster-management-addon-observability"
        )
        self.PLACEMENTRULE_NAME = config("PLACEMENTRULE_NAME", default="observability")
        self.LOCAL_CLUSTER_NAME = config("LOCAL_CLUSTER_NAME", default="local-cluster")
        self.IMAGE_REPOSITORY = config(
            "IMAGE_REPOSITORY", default="quay.io/open-cluster-management"
        )
        self.IMAGE_TAG_SUFFIX = config("IMAGE_TAG_SUFFIX", default="2.4.0")
        self.ENDPOINT_OPERATOR_IMAGE = config(
            "ENDPOINT_OPERATOR_IMAGE", default="endpoint-monitoring-operator"
        )
        self.METRICS_COLLECTOR_IMAGE = config(
            "METRICS_COLLECTOR_IMAGE", default="metrics-collector"
        )
        self.OPERAND_NAME_PREFIX = config("OPERAND_NAME_PREFIX", default="observability-")
        self.TEMPLATE_PATH = config(
            "TEMPLATE_PATH",
            default=os.path.join(os.path.dirname(__file__), "manifests"),
        )
        self.CERT_RENEWAL_INTERVAL = config("CERT_RENEWAL_INTERVAL", default=3600, cast=int)
        self.MAX_WORKERS = config("OPERATOR_MAX_WORKERS", default=10, cast=int)
        self.observed_root = ObservedRoot()

    def image(self, name: str, annotations: Optional[dict] = None) -> str:
        """
        Compose a full image reference, honoring the image overrides annotated on the root resource

        :param name: the image name without repository and tag
        :param annotations: the annotations of the MultiClusterObservability resource
        :return: the image reference
        """
        annotations = annotations or {}
        repository = annotations.get(IMAGE_REPOSITORY_ANNOTATION) or self.IMAGE_REPOSITORY
        tag = annotations.get(IMAGE_TAG_SUFFIX_ANNOTATION) or self.IMAGE_TAG_SUFFIX
        return f"{repository}/{name}:{tag}"

    def to_dict(self):
        return {k: v for k, v in self.__dict__.items() if k.isupper()}

    def __str__(self):
        return str(self.to_dict())


configuration = OperatorConfiguration()
