"""
Tests for the TLS Secret generator and certificate inspection
"""

# Standard
import datetime

# Third Party
from cryptography import x509
from cryptography.x509.oid import NameOID
import pytest

# First Party
import aconfig

# Local
from gateway_operator.constants import SERVICE_SECRET_LABEL
from gateway_operator.resources import secrets
from gateway_operator.test_helpers.helpers import (
    TEST_DATAPLANE_UID,
    TEST_NAMESPACE,
    library_config,
    make_dataplane,
)

## Helpers #####################################################################

SUBJECT = secrets.admin_api_subject("dataplane-admin-abc", TEST_NAMESPACE)


@pytest.fixture(scope="module")
def ca_secret():
    """A CA Secret holding a self-signed key pair"""
    key, key_pem = secrets.generate_key()
    cert_pem = secrets.generate_cert("test-ca", key)
    return {
        "kind": "Secret",
        "data": {
            "tls.crt": secrets.encode_data(cert_pem),
            "tls.key": secrets.encode_data(key_pem),
        },
    }


@pytest.fixture(scope="module")
def tls_secret():
    return secrets.generate_tls_secret(
        make_dataplane(),
        SUBJECT,
        extra_labels=secrets.service_secret_labels("dataplane-admin-abc"),
    )


def common_name(cert):
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


## Generation ##################################################################


def test_admin_api_subject():
    """Make sure that the subject covers every endpoint of the Service"""
    assert SUBJECT == f"*.dataplane-admin-abc.{TEST_NAMESPACE}.svc"


def test_generate_tls_secret_metadata(tls_secret):
    """Make sure that the Secret is owned and labelled for its Service"""
    metadata = tls_secret["metadata"]
    assert tls_secret["type"] == "kubernetes.io/tls"
    assert metadata["generateName"] == "dataplane-test-dataplane-"
    assert metadata["labels"][SERVICE_SECRET_LABEL] == "dataplane-admin-abc"
    assert metadata["ownerReferences"][0]["uid"] == TEST_DATAPLANE_UID
    assert set(tls_secret["data"]) == {"ca.crt", "tls.crt", "tls.key"}


def test_generate_tls_secret_self_signed(tls_secret):
    """Make sure that without a CA the certificate is its own CA"""
    cert = secrets.load_certificate(tls_secret)
    assert common_name(cert) == SUBJECT
    assert cert.issuer == cert.subject
    assert tls_secret["data"]["ca.crt"] == tls_secret["data"]["tls.crt"]
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(x509.DNSName) == [SUBJECT]


def test_generate_tls_secret_ca_signed(ca_secret):
    """Make sure that a CA signs the certificate and is published as ca.crt"""
    secret = secrets.generate_tls_secret(make_dataplane(), SUBJECT, ca_secret=ca_secret)
    cert = secrets.load_certificate(secret)
    assert common_name(cert) == SUBJECT
    assert cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == (
        "test-ca"
    )
    assert secret["data"]["ca.crt"] == ca_secret["data"]["tls.crt"]


## Renewal #####################################################################


def test_certificate_current(tls_secret):
    """Make sure that a fresh certificate for the subject is kept"""
    assert not secrets.certificate_needs_renewal(tls_secret, SUBJECT)


def test_certificate_other_subject(tls_secret):
    """Make sure that a certificate for another subject is replaced"""
    other = secrets.admin_api_subject("other", TEST_NAMESPACE)
    assert secrets.certificate_needs_renewal(tls_secret, other)


@pytest.mark.parametrize(
    "data",
    [{}, {"tls.crt": ""}, {"tls.crt": secrets.encode_data("not a certificate")}],
)
def test_certificate_missing_or_broken(data):
    """Make sure that a missing or unparsable certificate is replaced"""
    secret = {"data": data}
    assert secrets.load_certificate(secret) is None
    assert secrets.certificate_needs_renewal(secret, SUBJECT)


def test_certificate_close_to_expiry(tls_secret):
    """Make sure that a certificate within the renewal window is replaced"""
    cert = secrets.load_certificate(tls_secret)
    now = datetime.datetime.now(datetime.timezone.utc)
    remaining = (cert.not_valid_after_utc - now).days
    tls_config = aconfig.Config(
        {
            "key_size": 2048,
            "cert_validity_days": 365,
            "renew_before_days": remaining + 1,
        },
        override_env_vars=False,
    )
    with library_config(tls=tls_config):
        assert secrets.certificate_needs_renewal(tls_secret, SUBJECT)


def test_generate_tls_secret_long_subject():
    """Make sure that a subject over the common name limit is still certified
    in full through the SAN
    """
    subject = secrets.admin_api_subject(
        "dataplane-admin-edge-gateway-eu-west-abcde", "production-gateways"
    )
    assert len(subject) > secrets.MAX_COMMON_NAME_LENGTH
    secret = secrets.generate_tls_secret(make_dataplane(), subject)
    cert = secrets.load_certificate(secret)
    assert common_name(cert) == subject[: secrets.MAX_COMMON_NAME_LENGTH]
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(x509.DNSName) == [subject]
    assert not secrets.certificate_needs_renewal(secret, subject)
