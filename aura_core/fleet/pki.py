from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from aura_core.errors import RecoverableError
from aura_core.logging import get_logger
from aura_core.storage.json_files import read_json, write_json
from aura_core.storage.paths import join_uri

logger = get_logger(__name__)

CA_ORGANIZATION = "Aura IoT Platform"
CA_COMMON_NAME = "Aura Root CA"
DEVICE_ORGANIZATION = "Aura Device"
CA_VALIDITY_DAYS = 3650


@dataclass(frozen=True)
class IssuedCertificate:
    serial: str
    certificate_pem: str
    private_key_pem: str
    ca_certificate_pem: str
    not_after: str


def ca_uri(base_uri: str) -> str:
    return join_uri(base_uri, "control", "pki", "ca.json")


def _key_pem(key: RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def format_serial(serial: int) -> str:
    return f"{serial:X}"


class CertificateAuthority:
    """Platform root CA that signs per-device client certificates.

    The CA is created on first use and persisted under ``control/pki`` so every
    process sharing the data root signs with the same key.
    """

    def __init__(
        self,
        base_uri: str,
        *,
        validity_days: int = 365,
        ca_key_bits: int = 4096,
        device_key_bits: int = 2048,
    ) -> None:
        self.uri = ca_uri(base_uri)
        self.validity_days = validity_days
        self.ca_key_bits = ca_key_bits
        self.device_key_bits = device_key_bits
        self._lock = threading.Lock()
        self._ca: tuple[x509.Certificate, RSAPrivateKey] | None = None

    def ca_certificate_pem(self) -> str:
        cert, _ = self._load_or_create()
        return _cert_pem(cert)

    def issue(self, device_id: str) -> IssuedCertificate:
        ca_cert, ca_key = self._load_or_create()
        key = rsa.generate_private_key(
            public_exponent=65537, key_size=self.device_key_bits
        )
        now = datetime.now(timezone.utc)
        not_after = now + timedelta(days=self.validity_days)
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, DEVICE_ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, device_id),
            ]
        )
        serial = x509.random_serial_number()
        serial_hex = format_serial(serial)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
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
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
        logger.info(
            "Device certificate issued",
            extra={"device_id": device_id, "certificate_serial": serial_hex},
        )
        return IssuedCertificate(
            serial=serial_hex,
            certificate_pem=_cert_pem(cert),
            private_key_pem=_key_pem(key),
            ca_certificate_pem=_cert_pem(ca_cert),
            not_after=not_after.isoformat(),
        )

    def _load_or_create(self) -> tuple[x509.Certificate, RSAPrivateKey]:
        with self._lock:
            if self._ca is None:
                try:
                    stored = read_json(self.uri)
                except (OSError, ValueError) as exc:
                    raise RecoverableError(f"CA read failed: {exc}") from exc
                if stored:
                    self._ca = _ca_from_payload(stored)
                else:
                    self._ca = self._create()
            return self._ca

    def _create(self) -> tuple[x509.Certificate, RSAPrivateKey]:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.ca_key_bits)
        now = datetime.now(timezone.utc)
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
            ]
        )
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=CA_VALIDITY_DAYS))
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
            .sign(key, hashes.SHA256())
        )
        write_json(self.uri, {"certificate_pem": _cert_pem(cert), "key_pem": _key_pem(key)})
        logger.info(
            "Platform CA created",
            extra={"certificate_serial": format_serial(cert.serial_number)},
        )
        return cert, key


def _ca_from_payload(payload: dict[str, str]) -> tuple[x509.Certificate, RSAPrivateKey]:
    cert = x509.load_pem_x509_certificate(payload["certificate_pem"].encode("ascii"))
    key = serialization.load_pem_private_key(
        payload["key_pem"].encode("ascii"), password=None
    )
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("platform CA key must be RSA")
    return cert, key
