import ipaddress
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import kopf
import kubernetes as k8s
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from obsfleet.configuration import configuration
from obsfleet.resources.kinds import get_kind, get_object, list_objects
from obsfleet.resources.utils import (
    handle_create_namespace,
    handle_delete_object,
    handle_ensure_object,
)
from obsfleet.utils import (
    OWNED_BY_ANNOTATION,
    b64decode,
    b64encode,
    now,
    owner_labels,
    parse_timestamp,
)

logger = logging.getLogger("obsfleet.certificates")

SERVER_CA_CERTS = "observability-server-ca-certs"
SERVER_CA_CN = "observability-server-ca-certificate"
SERVER_CERTS = "observability-server-certs"
SERVER_CERT_CN = "observability-server-certificate"
CLIENT_CA_CERTS = "observability-client-ca-certs"
CLIENT_CA_CN = "observability-client-ca-certificate"
GRAFANA_CERTS = "observability-grafana-certs"
GRAFANA_CN = "grafana"
MANAGED_CLUSTER_CERTS = "observability-managed-cluster-client-certs"
MANAGED_CLUSTER_OU = "acm"

ORGANIZATION = "Red Hat, Inc."
COUNTRY = "US"
KEY_SIZE = 2048
CA_VALIDITY = timedelta(days=365 * 5)
LEAF_VALIDITY = timedelta(days=365)

CA_CRT = "ca.crt"
TLS_CRT = "tls.crt"
TLS_KEY = "tls.key"

RESTART_LABEL = "cert/time-restarted"


class CertificateError(kopf.PermanentError):
    pass


@dataclass(frozen=True)
class TrustDomain:
    name: str
    ca_secret: str
    ca_common_name: str
    server: bool

    @property
    def namespace(self) -> str:
        if self.server:
            return configuration.NAMESPACE
        return configuration.ISSUER_NAMESPACE


SERVER_DOMAIN = TrustDomain("server", SERVER_CA_CERTS, SERVER_CA_CN, server=True)
CLIENT_DOMAIN = TrustDomain("client", CLIENT_CA_CERTS, CLIENT_CA_CN, server=False)
TRUST_DOMAINS = {domain.ca_secret: domain for domain in [SERVER_DOMAIN, CLIENT_DOMAIN]}

# which workload consumes which certificate secret
CERT_DEPENDENTS = {
    SERVER_CA_CERTS: "rbac-query-proxy",
    GRAFANA_CERTS: "rbac-query-proxy",
    CLIENT_CA_CERTS: "observatorium-api",
    SERVER_CERTS: "observatorium-api",
}


def get_trust_domain(issuer_name: str) -> TrustDomain:
    try:
        return TRUST_DOMAINS[issuer_name]
    except KeyError:
        raise CertificateError(f"Unknown certificate issuer '{issuer_name}'") from None


def _subject(common_name: str, org_units: Optional[List[str]] = None) -> x509.Name:
    attributes = [
        x509.NameAttribute(NameOID.COUNTRY_NAME, COUNTRY),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
    ]
    for org_unit in org_units or []:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, org_unit))
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attributes)


def _serial_number() -> int:
    return secrets.randbelow(2**128 - 1) + 1


def _key_usage(is_ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=is_ca,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def _san(common_name: str, hosts: Optional[List[str]]) -> x509.SubjectAlternativeName:
    names = [x509.DNSName(common_name)]
    for host in hosts or []:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            if host != common_name:
                names.append(x509.DNSName(host))
    return x509.SubjectAlternativeName(names)


def generate_ca(
    common_name: str, not_before: Optional[datetime] = None, validity: timedelta = CA_VALIDITY
) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """
    It generates a self-signed CA certificate with a fresh RSA key

    :param common_name: the common name of the CA
    :param not_before: the start of the validity window, defaults to now
    :param validity: the length of the validity window
    :return: the certificate and its private key
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    not_before = not_before or now()
    subject = _subject(common_name)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(is_ca=True), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    return cert, key


def issue_certificate(
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    common_name: str,
    server: bool,
    is_ca: bool = False,
    org_units: Optional[List[str]] = None,
    hosts: Optional[List[str]] = None,
    not_before: Optional[datetime] = None,
    validity: Optional[timedelta] = None,
) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """
    It issues a certificate signed by the given CA

    :param ca_cert: the issuing CA certificate
    :param ca_key: the private key of the issuing CA
    :param common_name: the common name of the new certificate
    :param server: True for serverAuth, False for clientAuth
    :param is_ca: issue an intermediate CA instead of a leaf
    :param org_units: organizational units for the subject
    :param hosts: extra DNS names or IP addresses
    :param not_before: the start of the validity window, defaults to now
    :param validity: the length of the validity window
    :return: the certificate and its private key
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    not_before = not_before or now()
    if validity is None:
        validity = CA_VALIDITY if is_ca else LEAF_VALIDITY
    usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
    builder = (
        x509.CertificateBuilder()
        .subject_name(_subject(common_name, org_units))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + validity)
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(_key_usage(is_ca=is_ca), critical=True)
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
        )
    )
    if not is_ca:
        builder = builder.add_extension(_san(common_name, hosts), critical=False)
    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    return cert, key


def cert_to_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def parse_certificate(pem: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CertificateError(f"Malformed certificate: {e}") from None


def parse_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    try:
        return serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as e:
        raise CertificateError(f"Malformed private key: {e}") from None


def load_certificate_pair(secret: dict) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """
    It parses the certificate and key stored in a certificate secret

    :param secret: the serialized secret
    :return: the certificate and its private key
    """
    data = secret.get("data") or {}
    name = secret["metadata"]["name"]
    if not data.get(TLS_CRT) or not data.get(TLS_KEY):
        raise CertificateError(f"Secret {name} does not contain a certificate pair")
    return parse_certificate(b64decode(data[TLS_CRT])), parse_private_key(b64decode(data[TLS_KEY]))


def create_certificate_secret(
    name: str, namespace: str, ca_pem: bytes, cert_pem: bytes, key_pem: bytes
) -> k8s.client.V1Secret:
    return k8s.client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=k8s.client.V1ObjectMeta(name=name, namespace=namespace, labels=owner_labels()),
        data={
            CA_CRT: b64encode(ca_pem),
            TLS_CRT: b64encode(cert_pem),
            TLS_KEY: b64encode(key_pem),
        },
        type="Opaque",
    )


def ensure_ca(logger, name: str, common_name: str, namespace: str, owner: Optional[str] = None) -> bool:
    """
    It creates a self-signed CA secret if it doesn't exist; an existing CA is never overwritten

    :param logger: a logger object
    :param name: the name of the CA secret
    :param common_name: the common name of the CA
    :param namespace: the namespace of the CA secret
    :param owner: the logical owner of the secret
    :return: True if the CA was created
    """
    if get_object("Secret", name, namespace) is not None:
        logger.debug(f"CA secret {namespace}/{name} already available")
        return False
    cert, key = generate_ca(common_name)
    cert_pem = cert_to_pem(cert)
    secret = create_certificate_secret(name, namespace, cert_pem, cert_pem, key_to_pem(key))
    handle_ensure_object(logger, secret, owner=owner)
    logger.info(f"CA {common_name} created in secret {namespace}/{name}")
    return True


def ensure_leaf_cert(
    logger,
    name: str,
    namespace: str,
    issuer_name: str,
    is_ca: bool,
    common_name: str,
    org_units: Optional[List[str]] = None,
    hosts: Optional[List[str]] = None,
    owner: Optional[str] = None,
) -> bool:
    """
    It issues a certificate under the CA of the given issuer if the secret doesn't exist yet

    :param logger: a logger object
    :param name: the name of the certificate secret
    :param namespace: the namespace of the certificate secret
    :param issuer_name: the name of the issuing CA secret
    :param is_ca: issue an intermediate CA instead of a leaf
    :param common_name: the common name of the certificate
    :param org_units: organizational units for the subject
    :param hosts: extra DNS names or IP addresses
    :param owner: the logical owner of the secret
    :return: True if a certificate was issued
    """
    domain = get_trust_domain(issuer_name)
    if get_object("Secret", name, namespace) is not None:
        logger.debug(f"Certificate secret {namespace}/{name} already available")
        return False
    ca_secret = get_object("Secret", domain.ca_secret, domain.namespace)
    if ca_secret is None:
        raise kopf.TemporaryError(
            f"CA secret {domain.namespace}/{domain.ca_secret} is not available yet", delay=5
        )
    _issue_into_secret(
        logger, name, namespace, domain, ca_secret, is_ca, common_name, org_units, hosts, owner
    )
    return True


def _issue_into_secret(
    logger, name, namespace, domain, ca_secret, is_ca, common_name, org_units, hosts, owner
) -> None:
    ca_cert, ca_key = load_certificate_pair(ca_secret)
    cert, key = issue_certificate(
        ca_cert,
        ca_key,
        common_name,
        server=domain.server,
        is_ca=is_ca,
        org_units=org_units,
        hosts=hosts,
    )
    secret = create_certificate_secret(
        name, namespace, cert_to_pem(ca_cert), cert_to_pem(cert), key_to_pem(key)
    )
    handle_ensure_object(logger, secret, owner=owner)
    logger.info(f"Certificate {common_name} issued by {domain.ca_secret} into {namespace}/{name}")


def needs_renewal(secret: Optional[dict], at: Optional[datetime] = None) -> bool:
    """
    A certificate is due for renewal within the last fifth of its validity window; missing certificate data always
    needs a renewal, unparseable data raises a CertificateError

    :param secret: the serialized certificate secret
    :param at: the point in time to check for, defaults to now
    :return: True if the certificate should be renewed
    """
    if not secret:
        return True
    pem = b64decode((secret.get("data") or {}).get(TLS_CRT))
    if not pem:
        return True
    cert = parse_certificate(pem)
    at = at or now()
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    return at > not_after - (not_after - not_before) / 5


def server_cert_hosts(obs_api_host: Optional[str] = None) -> List[str]:
    hosts = [
        f"{configuration.OPERAND_NAME_PREFIX}observatorium-api.{configuration.NAMESPACE}.svc.cluster.local"
    ]
    if obs_api_host:
        hosts.append(obs_api_host)
    return hosts


def create_observability_certs(logger, obs_api_host: Optional[str] = None, owner: Optional[str] = None) -> None:
    """
    It builds the server trust domain and then the client trust domain, each CA before its leaves

    :param logger: a logger object
    :param obs_api_host: the externally reachable host of the metrics API
    :param owner: the logical owner of the certificate secrets
    """
    namespace = configuration.NAMESPACE
    ensure_ca(logger, SERVER_CA_CERTS, SERVER_CA_CN, namespace, owner=owner)
    ensure_leaf_cert(
        logger,
        SERVER_CERTS,
        namespace,
        SERVER_CA_CERTS,
        False,
        SERVER_CERT_CN,
        hosts=server_cert_hosts(obs_api_host),
        owner=owner,
    )

    handle_create_namespace(logger, configuration.ISSUER_NAMESPACE, owner=owner)
    ensure_ca(logger, CLIENT_CA_CERTS, CLIENT_CA_CN, configuration.ISSUER_NAMESPACE, owner=owner)
    ensure_leaf_cert(
        logger, GRAFANA_CERTS, namespace, CLIENT_CA_CERTS, False, GRAFANA_CN, owner=owner
    )


def ensure_managed_cluster_cert(
    logger, cluster_name: str, cluster_namespace: str, owner: Optional[str] = None
) -> bool:
    return ensure_leaf_cert(
        logger,
        MANAGED_CLUSTER_CERTS,
        cluster_namespace,
        CLIENT_CA_CERTS,
        False,
        cluster_name,
        org_units=[MANAGED_CLUSTER_OU],
        owner=owner,
    )


def remove_managed_cluster_cert(logger, cluster_namespace: str) -> bool:
    return handle_delete_object(logger, "Secret", MANAGED_CLUSTER_CERTS, cluster_namespace)


def clean_client_certs(logger) -> None:
    handle_delete_object(logger, "Secret", CLIENT_CA_CERTS, configuration.ISSUER_NAMESPACE)


def _leaf_secrets_of(domain: TrustDomain) -> List[dict]:
    namespace = configuration.NAMESPACE
    if domain.server:
        names = [SERVER_CERTS]
    else:
        names = [GRAFANA_CERTS]
    leaves = [s for s in (get_object("Secret", n, namespace) for n in names) if s]
    if not domain.server:
        leaves.extend(managed_cluster_cert_secrets())
    return leaves


def managed_cluster_cert_secrets() -> List[dict]:
    return [
        secret
        for secret in list_objects("Secret", labels=owner_labels())
        if secret["metadata"]["name"] == MANAGED_CLUSTER_CERTS
    ]


def _reissue(logger, secret: dict, domain: TrustDomain, ca_secret: dict) -> None:
    old, _ = load_certificate_pair(secret)
    common_name = old.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    org_units = [
        a.value for a in old.subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)
    ]
    is_ca = old.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    hosts = []
    try:
        san = old.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        hosts = [h for h in san.get_values_for_type(x509.DNSName) if h != common_name]
        hosts += [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass
    metadata = secret["metadata"]
    owner = (metadata.get("annotations") or {}).get(OWNED_BY_ANNOTATION)
    _issue_into_secret(
        logger,
        metadata["name"],
        metadata["namespace"],
        domain,
        ca_secret,
        is_ca,
        common_name,
        org_units,
        hosts,
        owner,
    )


def renew_certificate(logger, name: str, namespace: str) -> List[dict]:
    """
    It regenerates a certificate in place. A renewed CA re-issues all leaves of its trust domain, since they
    would not verify against the new CA anymore. Existing certificate material that cannot be parsed is never
    replaced.

    :param logger: a logger object
    :param name: the name of the certificate secret
    :param namespace: the namespace of the certificate secret
    :return: the renewed secrets
    """
    secret = get_object("Secret", name, namespace)
    if name in TRUST_DOMAINS:
        domain = TRUST_DOMAINS[name]
        if secret is not None:
            load_certificate_pair(secret)
        owner = ((secret or {}).get("metadata", {}).get("annotations") or {}).get(
            OWNED_BY_ANNOTATION
        )
        cert, key = generate_ca(domain.ca_common_name)
        cert_pem = cert_to_pem(cert)
        handle_ensure_object(
            logger,
            create_certificate_secret(name, namespace, cert_pem, cert_pem, key_to_pem(key)),
            owner=owner,
        )
        logger.info(f"CA {domain.ca_common_name} renewed")
        ca_secret = get_object("Secret", name, namespace)
        renewed = [ca_secret]
        for leaf in _leaf_secrets_of(domain):
            _reissue(logger, leaf, domain, ca_secret)
            renewed.append(leaf)
        return renewed

    if secret is None:
        raise CertificateError(f"Certificate secret {namespace}/{name} does not exist")
    ca_pem = b64decode((secret.get("data") or {}).get(CA_CRT))
    issuer = parse_certificate(ca_pem).subject if ca_pem else None
    for domain in TRUST_DOMAINS.values():
        ca_secret = get_object("Secret", domain.ca_secret, domain.namespace)
        if ca_secret is None:
            continue
        ca_cert, _ = load_certificate_pair(ca_secret)
        if ca_cert.subject == issuer:
            _reissue(logger, secret, domain, ca_secret)
            logger.info(f"Certificate {namespace}/{name} renewed")
            return [secret]
    raise CertificateError(f"No issuer found for certificate secret {namespace}/{name}")


def restart_dependents(logger, secret: dict, force: bool = False) -> Optional[str]:
    """
    Stamp a restart label onto the pod template of the workload consuming this certificate secret. Without force
    the workload is only restarted if the secret is younger than the workload.

    :param logger: a logger object
    :param secret: the serialized certificate secret
    :param force: restart regardless of creation times
    :return: the name of the restarted deployment, if any
    """
    name = secret["metadata"]["name"]
    deployment_name = dependent_of(name)
    if deployment_name is None:
        return None
    deployment = get_object("Deployment", deployment_name, configuration.NAMESPACE)
    if deployment is None:
        logger.debug(f"Deployment {deployment_name} not found, no restart required")
        return None
    if not force:
        secret_created = parse_timestamp(secret["metadata"].get("creationTimestamp"))
        deployment_created = parse_timestamp(deployment["metadata"].get("creationTimestamp"))
        if secret_created is None or deployment_created is None or secret_created <= deployment_created:
            return None
    restart_deployment(logger, deployment_name, name)
    return deployment_name


def dependent_of(secret_name: str) -> Optional[str]:
    if secret_name not in CERT_DEPENDENTS:
        return None
    return f"{configuration.OPERAND_NAME_PREFIX}{CERT_DEPENDENTS[secret_name]}"


def restart_deployment(logger, deployment_name: str, secret_name: str) -> None:
    body = {
        "spec": {
            "template": {"metadata": {"labels": {RESTART_LABEL: now().strftime("%Y-%m-%d.%H%M%S")}}}
        }
    }
    get_kind("Deployment").patch(name=deployment_name, body=body, namespace=configuration.NAMESPACE)
    logger.info(f"Deployment {deployment_name} restarted to pick up certificate {secret_name}")


def check_renewal(logger, at: Optional[datetime] = None) -> List[str]:
    """
    It renews every known certificate that is due and restarts the workloads that consume them

    :param logger: a logger object
    :param at: the point in time to check for, defaults to now
    :return: the names of the renewed secrets
    """
    renewed = []
    affected = []
    candidates = [
        (SERVER_CA_CERTS, configuration.NAMESPACE),
        (SERVER_CERTS, configuration.NAMESPACE),
        (CLIENT_CA_CERTS, configuration.ISSUER_NAMESPACE),
        (GRAFANA_CERTS, configuration.NAMESPACE),
    ]
    for name, namespace in candidates:
        secret = get_object("Secret", name, namespace)
        if secret is None:
            continue
        load_certificate_pair(secret)
        if not needs_renewal(secret, at):
            continue
        logger.info(f"Certificate {namespace}/{name} is due for renewal")
        affected.extend(renew_certificate(logger, name, namespace))
        renewed.append(name)
    for secret in managed_cluster_cert_secrets():
        load_certificate_pair(secret)
        if needs_renewal(secret, at):
            metadata = secret["metadata"]
            renew_certificate(logger, metadata["name"], metadata["namespace"])
            renewed.append(metadata["name"])

    # a CA renewal affects several secrets that share a consumer, each consumer restarts once
    restarted = set()
    for secret in affected:
        deployment_name = dependent_of(secret["metadata"]["name"])
        if deployment_name is None or deployment_name in restarted:
            continue
        if restart_dependents(logger, secret, force=True):
            restarted.add(deployment_name)
    return renewed
