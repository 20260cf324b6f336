import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _build_cert(common_names, dns_names):
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name(
        [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Org")]
        + [x509.NameAttribute(NameOID.COMMON_NAME, cn) for cn in common_names]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
    )
    if dns_names is not None:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    return builder.sign(key, hashes.SHA256()), key


def build_cert_der(common_names=("api.example.com",), dns_names=None) -> bytes:
    cert, _ = _build_cert(common_names, dns_names)
    return cert.public_bytes(serialization.Encoding.DER)


def write_cert_pair(directory, common_names, dns_names):
    """Write a self-signed PEM certificate and its key, for a local TLS server."""
    cert, key = _build_cert(common_names, dns_names)
    cert_path = directory / "server.pem"
    key_path = directory / "server.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(cert_path), str(key_path)


@pytest.fixture(scope="session")
def api_cert_der():
    return build_cert_der(
        ("api.example.com",), ["api.example.com", "www.example.com"]
    )
