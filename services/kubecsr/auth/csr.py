"""Key pair and certificate signing request construction.

Keys are RSA (2048 bits), generated fresh for every request and never
written to disk. The CSR subject mirrors the request: ``user`` becomes the
common name, and each populated attribute list is copied value by value.
"""

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kubecsr.api.models.issue import CertificateRequestSpec
from kubecsr.errors import KeyGenerationError, RequestEncodingError
from kubecsr.logging_config import get_logger

logger = get_logger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

# Request attribute -> subject OID, in the order they appear in the subject
_SUBJECT_FIELDS: tuple[tuple[str, x509.ObjectIdentifier], ...] = (
    ("country", NameOID.COUNTRY_NAME),
    ("province", NameOID.STATE_OR_PROVINCE_NAME),
    ("locality", NameOID.LOCALITY_NAME),
    ("street_address", NameOID.STREET_ADDRESS),
    ("postal_code", NameOID.POSTAL_CODE),
    ("organization", NameOID.ORGANIZATION_NAME),
    ("organization_unit", NameOID.ORGANIZATIONAL_UNIT_NAME),
)


def generate_key(key_size: int = KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate a fresh RSA private key."""
    if key_size < KEY_SIZE:
        raise KeyGenerationError(f"Key size must be at least {KEY_SIZE} bits")
    try:
        return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    except Exception as e:
        logger.error("Private key generation failed", error=str(e))
        raise KeyGenerationError(f"Failed to generate private key: {e}") from e


def build_subject(spec: CertificateRequestSpec) -> x509.Name:
    """Build the CSR subject from the request attributes."""
    attributes: list[x509.NameAttribute] = []
    for field_name, oid in _SUBJECT_FIELDS:
        for value in getattr(spec, field_name):
            if value:
                attributes.append(x509.NameAttribute(oid, value))
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, spec.user))
    return x509.Name(attributes)


def build_signing_request(spec: CertificateRequestSpec, key: rsa.RSAPrivateKey) -> bytes:
    """Create a PEM-encoded CSR for ``spec`` signed with ``key``."""
    try:
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(build_subject(spec))
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        # Invalid attribute values (e.g. a country code that is not two letters)
        # surface here, either from NameAttribute or from signing.
        logger.warning("CSR construction failed", user=spec.user, error=str(e))
        raise RequestEncodingError(f"Failed to create certificate signing request: {e}") from e

    return csr.public_bytes(serialization.Encoding.PEM)


def encode_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    """Serialize the private key as an unencrypted ``RSA PRIVATE KEY`` PEM block."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_signing_request(pem_data: bytes) -> x509.CertificateSigningRequest:
    """Load a CSR from PEM data."""
    return x509.load_pem_x509_csr(pem_data)
