"""
Generator and inspection helpers for the TLS Secrets that secure the DataPlane
admin API
"""

# Standard
from typing import Dict, Optional, Tuple
import base64
import datetime

# Third Party
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# First Party
import alog

# Local
from .. import config
from ..constants import SERVICE_SECRET_LABEL
from ..managed_object import HasOwnerReferenceSemantics

log = alog.use_channel("GNSEC")

ORGANIZATION = "Kong, Inc."
COUNTRY = "US"

CA_CERT_KEY = "ca.crt"
TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"

# X.509 upper bound on the length of the common name
MAX_COMMON_NAME_LENGTH = 64


def admin_api_subject(service_name: str, namespace: str) -> str:
    """The wildcard DNS name covering every endpoint of a headless admin
    Service
    """
    return f"*.{service_name}.{namespace}.svc"


def common_name(subject: str) -> str:
    """The certificate common name for a subject. Longer subjects are cut to
    the X.509 limit; the full subject is always carried in the SAN.
    """
    return subject[:MAX_COMMON_NAME_LENGTH]


def service_secret_labels(service_name: str) -> Dict[str, str]:
    return {SERVICE_SECRET_LABEL: service_name}


## Keys and certs ##############################################################


def generate_key() -> Tuple[rsa.RSAPrivateKey, str]:
    """Generate a new RSA key

    Returns:
        key:  RSAPrivateKey
            The key object that can be used to sign certificates
        key_pem:  str
            The PEM encoded string for the key
    """
    key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=config.tls.key_size,
        backend=default_backend(),
    )
    key_pem = key.private_bytes(
        Encoding.PEM,
        PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key, key_pem.decode("utf-8")


def _name(subject: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name(subject)),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COUNTRY_NAME, COUNTRY),
        ]
    )


def generate_cert(
    subject: str,
    key: rsa.RSAPrivateKey,
    ca_key: Optional[rsa.RSAPrivateKey] = None,
    ca_cert: Optional[x509.Certificate] = None,
) -> str:
    """Generate a server certificate for the subject. When no CA is given the
    certificate is signed by its own key.

    Args:
        subject:  str
            The single DNS SAN of the certificate, also used for its
            common name
        key:  RSAPrivateKey
            The key whose public half the certificate carries
        ca_key:  Optional[RSAPrivateKey]
            The signing key of the CA
        ca_cert:  Optional[x509.Certificate]
            The CA certificate, used as the issuer

    Returns:
        cert_pem:  str
            The PEM encoded certificate
    """
    issuer = ca_cert.subject if ca_cert is not None else _name(subject)
    signing_key = ca_key if ca_key is not None else key
    not_before = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(
            not_before + datetime.timedelta(days=config.tls.cert_validity_days)
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(subject)]),
            critical=False,
        )
        .add_extension(
            # X509v3 Key Usage: critical
            #     Digital Signature, Key Encipherment
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]
            ),
            critical=False,
        )
        .sign(signing_key, hashes.SHA256(), default_backend())
    )
    return cert.public_bytes(Encoding.PEM).decode("utf-8")


def parse_ca(ca_secret: dict) -> Tuple[rsa.RSAPrivateKey, x509.Certificate, str]:
    """Parse the key and certificate of a CA Secret

    Returns:
        ca_key:  RSAPrivateKey
        ca_cert:  x509.Certificate
        ca_cert_pem:  str
    """
    data = ca_secret.get("data") or {}
    ca_cert_pem = decode_data(data.get(TLS_CERT_KEY))
    ca_key_pem = decode_data(data.get(TLS_KEY_KEY))
    ca_key = serialization.load_pem_private_key(ca_key_pem.encode("utf-8"), None)
    ca_cert = x509.load_pem_x509_certificate(ca_cert_pem.encode("utf-8"))
    return ca_key, ca_cert, ca_cert_pem


## Secret data #################################################################


def encode_data(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")


def decode_data(value: Optional[str]) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def generate_tls_secret(
    owner: HasOwnerReferenceSemantics,
    subject: str,
    extra_labels: Optional[Dict[str, str]] = None,
    ca_secret: Optional[dict] = None,
) -> dict:
    """Generate a TLS Secret with a fresh key and certificate for the subject

    Args:
        owner:  HasOwnerReferenceSemantics
            The Managed Resource owning the Secret
        subject:  str
            The certificate subject
        extra_labels:  Optional[Dict[str, str]]
            Labels added on top of the owner's managed labels
        ca_secret:  Optional[dict]
            The cluster CA Secret. The certificate is self-signed without one.

    Returns:
        secret:  dict
            The target Secret with ca.crt, tls.crt and tls.key
    """
    key, key_pem = generate_key()
    if ca_secret is not None:
        ca_key, ca_cert, ca_cert_pem = parse_ca(ca_secret)
        cert_pem = generate_cert(subject, key, ca_key, ca_cert)
    else:
        log.debug("No cluster CA configured, self-signing %s", subject)
        cert_pem = generate_cert(subject, key)
        ca_cert_pem = cert_pem

    labels = dict(owner.managed_labels())
    labels.update(extra_labels or {})
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/tls",
        "metadata": {
            "namespace": owner.namespace,
            "generateName": f"{owner.kind.lower()}-{owner.name}-",
            "labels": labels,
            "ownerReferences": [owner.owner_reference()],
            "finalizers": owner.owned_finalizers(),
        },
        "data": {
            CA_CERT_KEY: encode_data(ca_cert_pem),
            TLS_CERT_KEY: encode_data(cert_pem),
            TLS_KEY_KEY: encode_data(key_pem),
        },
    }


def load_certificate(secret: dict) -> Optional[x509.Certificate]:
    """Parse the tls.crt of a Secret. A missing or broken certificate yields
    None.
    """
    try:
        cert_pem = decode_data((secret.get("data") or {}).get(TLS_CERT_KEY))
        if not cert_pem:
            return None
        return x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    except ValueError as err:
        log.debug("Could not parse certificate: %s", err)
        return None


def certificate_needs_renewal(secret: dict, subject: str) -> bool:
    """Whether the certificate in the Secret must be replaced: it is missing or
    broken, is for another subject or expires within the renewal window
    """
    cert = load_certificate(secret)
    if cert is None:
        return True

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return True
    if subject not in san.value.get_values_for_type(x509.DNSName):
        log.debug2("Certificate SAN does not cover %s", subject)
        return True

    renew_at = cert.not_valid_after_utc - datetime.timedelta(
        days=config.tls.renew_before_days
    )
    if datetime.datetime.now(datetime.timezone.utc) >= renew_at:
        log.debug2("Certificate for %s is close to expiry", subject)
        return True
    return False
