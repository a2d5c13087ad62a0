import base64
import binascii
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pyasn1.codec.der.decoder import decode as der_decode
from pyasn1.error import PyAsn1Error
from pyasn1.type import namedtype, univ

from einvoice.enums import CertificateType
from einvoice.errors import CertificateError, SigningError
from einvoice.hashing import hex_digest_b64

logger = logging.getLogger(__name__)


# ASN.1 outline of an X.509 certificate; only the signature is decoded
class X509Certificate(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('tbsCertificate', univ.Any()),
        namedtype.NamedType('signatureAlgorithm', univ.Any()),
        namedtype.NamedType('signatureValue', univ.BitString())
    )


def pem_to_base64(pem: str) -> str:
    """Extract base64 content from a PEM string (or pass bare base64 through)."""
    lines = pem.strip().splitlines()
    return "".join(line.strip() for line in lines if "-----" not in line)


def wrap_pem(body: str, label: str = "CERTIFICATE") -> str:
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----\n"


def load_certificate_der(certificate: str) -> bytes:
    try:
        return base64.b64decode(pem_to_base64(certificate), validate=True)
    except (binascii.Error, ValueError) as e:
        raise CertificateError.invalid(f"certificate is not base64 encoded ({e})")


def load_certificate(certificate: str) -> x509.Certificate:
    der = load_certificate_der(certificate)
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateError.invalid(str(e))


def load_private_key(private_key) -> ec.EllipticCurvePrivateKey:
    """Load an EC private key from PEM text, or from the bare base64 body
    of a SEC1 / PKCS#8 key as issued during onboarding."""
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key
    if isinstance(private_key, bytes):
        private_key = private_key.decode("utf-8")
    text = "\n".join(line.strip() for line in private_key.strip().splitlines())
    try:
        if text.startswith("-----BEGIN"):
            key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
        else:
            key = serialization.load_der_private_key(base64.b64decode(text), password=None)
    except (ValueError, TypeError, binascii.Error) as e:
        raise SigningError(f"Unable to load private key: {e}")
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SigningError("Private key is not an EC key")
    return key


def format_issuer_name(name: x509.Name) -> str:
    """Issuer DN as ``CN=..., DC=...`` in the order the certificate stores it."""
    parts = []
    for rdn in name.rdns:
        parts.append("+".join(f"{attr.rfc4514_attribute_name}={attr.value}" for attr in rdn))
    return ", ".join(parts)


def signature_bytes(der: bytes) -> bytes:
    """The certificate's signatureValue BIT STRING content, without the unused-bits byte."""
    try:
        decoded, _ = der_decode(der, asn1Spec=X509Certificate())
    except PyAsn1Error as e:
        raise CertificateError.invalid(f"unable to decode certificate structure ({e})")
    return decoded['signatureValue'].asOctets()


@dataclass(frozen=True)
class CertificateInfo:
    issuer_name: str
    serial_number: str
    digest: str
    public_key: bytes
    signature: bytes
    base64: str
    not_valid_after: datetime

    def public_key_object(self) -> ec.EllipticCurvePublicKey:
        return serialization.load_der_public_key(self.public_key)


def extract_certificate_info(certificate: str) -> CertificateInfo:
    """
    Derives the values the signature block and the QR code need from a
    PEM (or bare base64 DER) certificate.

    The digest is SHA-256 over the base64 *text* of the DER certificate,
    hex encoded and then base64 encoded again, which is what the platform
    validator computes.
    """
    der = load_certificate_der(certificate)
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateError.invalid(str(e))
    cert_b64 = base64.b64encode(der).decode("ascii")

    public_key_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return CertificateInfo(
        issuer_name=format_issuer_name(cert.issuer),
        serial_number=str(cert.serial_number),
        digest=hex_digest_b64(cert_b64.encode("utf-8")),
        public_key=public_key_bytes,
        signature=signature_bytes(der),
        base64=cert_b64,
        not_valid_after=cert.not_valid_after_utc,
    )


# ========== CERTIFICATE MODEL ==========
@dataclass(frozen=True)
class Certificate:
    """A CSID issued by the platform together with the key it was requested for.

    Certificates are never mutated; superseding one means storing a new
    instance and deactivating the old ones.
    """

    type: CertificateType
    certificate: str
    private_key: str
    secret: str
    request_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    active: bool = True
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "type", CertificateType(self.type))
        if self.expires_at is None:
            object.__setattr__(self, "expires_at", load_certificate(self.certificate).not_valid_after_utc)
        if self.issued_at is None:
            object.__setattr__(self, "issued_at", datetime.now(timezone.utc))

    @classmethod
    def from_api_response(cls, response: dict, private_key: str,
                          certificate_type: CertificateType = CertificateType.COMPLIANCE) -> "Certificate":
        try:
            token = response["binarySecurityToken"]
            secret = response["secret"]
        except KeyError as e:
            raise CertificateError.invalid(f"response is missing {e}")
        try:
            certificate = base64.b64decode(token).decode("ascii")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CertificateError.invalid(f"binarySecurityToken is not valid base64 ({e})")
        return cls(
            type=certificate_type,
            certificate=certificate,
            private_key=private_key,
            secret=secret,
            request_id=str(response["requestID"]) if response.get("requestID") is not None else None,
            metadata={
                k: str(response[k]) for k in ("dispositionMessage", "tokenType") if k in response
            },
        )

    @property
    def body(self) -> str:
        return pem_to_base64(self.certificate)

    @property
    def pem(self) -> str:
        return wrap_pem(self.body)

    @property
    def binary_security_token(self) -> str:
        return base64.b64encode(self.body.encode("ascii")).decode("ascii")

    def auth_credentials(self):
        return self.binary_security_token, self.secret

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def is_expiring_soon(self, days: int = 30, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return not self.is_expired(now) and self.expires_at <= now + timedelta(days=days)

    @property
    def is_usable(self) -> bool:
        return self.active and not self.is_expired()

    def deactivated(self) -> "Certificate":
        return dataclasses.replace(self, active=False)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "certificate": self.certificate,
            "private_key": self.private_key,
            "secret": self.secret,
            "request_id": self.request_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "active": self.active,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Certificate":
        data = dict(data)
        for key in ("issued_at", "expires_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


# ========== STORE ==========
class CertificateStore(Protocol):
    def save(self, certificate: Certificate) -> None: ...

    def get_active(self, certificate_type: CertificateType) -> Optional[Certificate]: ...

    def deactivate_all(self, certificate_type: CertificateType) -> None: ...

    def all(self) -> List[Certificate]: ...


class InMemoryCertificateStore:
    def __init__(self):
        self._certificates: List[Certificate] = []
        self._lock = threading.Lock()

    def save(self, certificate: Certificate) -> None:
        with self._lock:
            self._certificates.append(certificate)

    def get_active(self, certificate_type: CertificateType) -> Optional[Certificate]:
        with self._lock:
            for certificate in reversed(self._certificates):
                if certificate.type is certificate_type and certificate.active:
                    return certificate
        return None

    def deactivate_all(self, certificate_type: CertificateType) -> None:
        with self._lock:
            self._certificates = [
                c.deactivated() if c.type is certificate_type and c.active else c
                for c in self._certificates
            ]

    def all(self) -> List[Certificate]:
        with self._lock:
            return list(self._certificates)


class CertificateManager:
    """Supplies the active certificate for signing and guards its lifecycle."""

    def __init__(self, store: Optional[CertificateStore] = None):
        self.store = store if store is not None else InMemoryCertificateStore()

    def store_certificate(self, certificate: Certificate) -> Certificate:
        self.validate_key_pair(certificate)
        self.store.deactivate_all(certificate.type)
        self.store.save(certificate)
        logger.info("Stored %s certificate (request_id=%s, expires %s)",
                    certificate.type.value, certificate.request_id, certificate.expires_at)
        return certificate

    def get_active(self, certificate_type: CertificateType = CertificateType.PRODUCTION) -> Certificate:
        certificate = self.store.get_active(certificate_type)
        if certificate is None:
            raise CertificateError.not_found(certificate_type.value)
        if certificate.is_expired():
            raise CertificateError.expired(certificate.expires_at)
        return certificate

    def has_active(self, certificate_type: CertificateType) -> bool:
        certificate = self.store.get_active(certificate_type)
        return certificate is not None and certificate.is_usable

    def expiring_soon(self, days: int = 30) -> List[Certificate]:
        return [c for c in self.store.all() if c.active and c.is_expiring_soon(days)]

    def validate_key_pair(self, certificate: Certificate) -> None:
        try:
            private_key = load_private_key(certificate.private_key)
        except SigningError as e:
            raise CertificateError.invalid(e.message)
        public_key = load_certificate(certificate.certificate).public_key()
        challenge = b"einvoice key pair check"
        signature = private_key.sign(challenge, ec.ECDSA(hashes.SHA256()))
        try:
            public_key.verify(signature, challenge, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, TypeError):
            raise CertificateError.key_mismatch()
