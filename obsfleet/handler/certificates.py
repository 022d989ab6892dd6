import kopf

from obsfleet.certificates import check_renewal, restart_dependents
from obsfleet.configuration import configuration
from obsfleet.predicates import certificate_filter


@kopf.on.event("v1", "secrets", when=certificate_filter())
def certificate_changed(body, logger, **kwargs):
    """
    A workload that is older than the certificate it consumes gets restarted
    """
    restart_dependents(logger, dict(body))


@kopf.timer(
    "observability.open-cluster-management.io",
    "multiclusterobservabilities",
    interval=configuration.CERT_RENEWAL_INTERVAL,
)
def renew_certificates(logger, **kwargs):
    """
    It renews the certificates that are in the last fifth of their validity
    """
    renewed = check_renewal(logger)
    if renewed:
        logger.info(f"Renewed certificates: {', '.join(renewed)}")
