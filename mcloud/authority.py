from __future__ import annotations

import base64
import ipaddress
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.x509.oid import NameOID

from mcloud.config import MAX_NODE_CERT_VALIDITY_DAYS, Settings
from mcloud.constants import ORGANIZATION_NAME, ROOT_CA_COMMON_NAME, TOKEN_PREFIX
from mcloud.errors import CryptoFailure
from mcloud.logger import get_logger
from mcloud.utils import hash_secret, normalize_utc, utcnow

_logger = get_logger("authority")

TOKEN_ALPHABET = string.ascii_letters + string.digits
TOKEN_SUFFIX_LENGTH = 16
TOKEN_CLUSTER_PREFIX_LENGTH = 8

# Errors a broken or missing crypto backend surfaces as.
_BACKEND_ERRORS = (OSError, NotImplementedError, UnsupportedAlgorithm, ValueError, TypeError)


@dataclass(frozen=True)
class CAMaterial:
    cert_pem: str
    key_pem: str


@dataclass(frozen=True)
class IssuedCertificate:
    cert_pem: str
    key_pem: str
    fingerprint: str
    expires_at: datetime


def _key_to_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _not_valid_after(cert: x509.Certificate) -> datetime:
    not_after = getattr(cert, "not_valid_after_utc", None)
    if not_after is None:
        not_after = cert.not_valid_after
    return normalize_utc(not_after) or not_after


def _san_for(address: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(address))
    except ValueError:
        return x509.DNSName(address)


def hash_token(token: str) -> str:
    return hash_secret(token.strip())


def token_display_prefix(token: str) -> str:
    """Non-secret part of a token (``mcloud-<cluster>``) safe to log and list."""
    return token.rsplit("-", 1)[0] if token.count("-") >= 2 else token[:8]


def node_request_message(*, action: str, node_id: str, signed_at: int) -> bytes:
    return f"{action}\n{node_id}\n{signed_at}".encode("utf-8")


def sign_node_request(*, key_pem: str, message: bytes) -> str:
    try:
        key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
    except _BACKEND_ERRORS as exc:
        raise CryptoFailure("Unable to load node private key.") from exc
    if isinstance(key, ec.EllipticCurvePrivateKey):
        signature = key.sign(message, ec.ECDSA(hashes.SHA256()))
    elif isinstance(key, rsa.RSAPrivateKey):
        signature = key.sign(message, PKCS1v15(), hashes.SHA256())
    else:
        raise CryptoFailure("Unsupported node private key type.")
    return base64.b64encode(signature).decode("ascii")


class CredentialAuthority:
    def __init__(self, settings: Settings) -> None:
        self._ca_validity_days = settings.ca_validity_days
        self._node_validity_days = min(settings.node_cert_validity_days, MAX_NODE_CERT_VALIDITY_DAYS)

    def create_ca(self) -> CAMaterial:
        try:
            key = ec.generate_private_key(ec.SECP256R1())
            subject = x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, ROOT_CA_COMMON_NAME),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION_NAME),
                ]
            )
            now = utcnow()
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + timedelta(days=self._ca_validity_days))
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=True,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
                .sign(private_key=key, algorithm=hashes.SHA256())
            )
            material = CAMaterial(
                cert_pem=cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"),
                key_pem=_key_to_pem(key),
            )
        except _BACKEND_ERRORS as exc:
            _logger.error("authority.ca.failed", "Cluster CA generation failed", error=str(exc))
            raise CryptoFailure("Unable to generate cluster CA.") from exc
        _logger.info("authority.ca.created", "Generated cluster CA", validity_days=self._ca_validity_days)
        return material

    def issue_node_certificate(
        self,
        ca: CAMaterial,
        subject_address: str,
        *,
        common_name: str,
    ) -> IssuedCertificate:
        try:
            ca_key = serialization.load_pem_private_key(ca.key_pem.encode("utf-8"), password=None)
            if not isinstance(ca_key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
                raise CryptoFailure("Unsupported CA private key type.")
            ca_cert = x509.load_pem_x509_certificate(ca.cert_pem.encode("utf-8"))

            key = ec.generate_private_key(ec.SECP256R1())
            now = utcnow()
            subject = x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION_NAME),
                ]
            )
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(ca_cert.subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + timedelta(days=self._node_validity_days))
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.SubjectAlternativeName([_san_for(subject_address)]),
                    critical=False,
                )
                .add_extension(
                    x509.ExtendedKeyUsage(
                        [x509.oid.ExtendedKeyUsageOID.SERVER_AUTH, x509.oid.ExtendedKeyUsageOID.CLIENT_AUTH]
                    ),
                    critical=False,
                )
                .sign(private_key=ca_key, algorithm=hashes.SHA256())
            )
        except _BACKEND_ERRORS as exc:
            _logger.error(
                "authority.cert.failed",
                "Node certificate issuance failed",
                common_name=common_name,
                error=str(exc),
            )
            raise CryptoFailure("Unable to issue node certificate.", common_name=common_name) from exc

        issued = IssuedCertificate(
            cert_pem=cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"),
            key_pem=_key_to_pem(key),
            fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
            expires_at=_not_valid_after(cert),
        )
        _logger.info(
            "authority.cert.issued",
            "Issued node certificate",
            common_name=common_name,
            address=subject_address,
            fingerprint=issued.fingerprint[:16],
        )
        return issued

    def verify_certificate(self, cert_pem: str, ca_cert_pem: str) -> bool:
        return verify_certificate(cert_pem, ca_cert_pem)

    def generate_bootstrap_token(self, cluster_id: str) -> str:
        try:
            suffix = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_SUFFIX_LENGTH))
        except (OSError, NotImplementedError) as exc:
            raise CryptoFailure("Secure random source unavailable.") from exc
        return f"{TOKEN_PREFIX}-{cluster_id[:TOKEN_CLUSTER_PREFIX_LENGTH]}-{suffix}"


def verify_certificate(cert_pem: str, ca_cert_pem: str, *, at: Optional[datetime] = None) -> bool:
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
        ca_cert = x509.load_pem_x509_certificate(ca_cert_pem.encode("utf-8"))
    except ValueError:
        return False
    if cert.issuer != ca_cert.subject:
        return False

    public_key = ca_cert.public_key()
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(
                cert.signature,
                cert.tbs_certificate_bytes,
                ec.ECDSA(cert.signature_hash_algorithm),
            )
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                cert.signature,
                cert.tbs_certificate_bytes,
                PKCS1v15(),
                cert.signature_hash_algorithm,
            )
        else:
            return False
    except InvalidSignature:
        return False

    if at is not None and _not_valid_after(cert) < (normalize_utc(at) or at):
        return False
    return True


def verify_node_signature(
    *,
    cert_pem: str,
    ca_cert_pem: str,
    message: bytes,
    signature_b64: str,
) -> bool:
    if not verify_certificate(cert_pem, ca_cert_pem, at=utcnow()):
        return False
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
        signature = base64.b64decode(signature_b64.encode("utf-8"), validate=True)
    except ValueError:
        return False

    public_key = cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, message, PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        else:
            return False
    except InvalidSignature:
        return False
    return True


def signed_at_now() -> int:
    return int(datetime.now(timezone.utc).timestamp())
