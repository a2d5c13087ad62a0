import logging
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from einvoice.builder import UblInvoiceBuilder
from einvoice.enums import InvoiceSubType, PaymentMethod
from einvoice.ledger import INITIAL_HASH
from einvoice.models import Address, Invoice, LineItem, Party
from einvoice.signing import InvoiceSigner

CERT_SERIAL = 379112742831380471835263969587287663520528387
ISSUER_NAME = "DC=local, DC=gov, DC=extgazt, CN=TSZEINVOICE-SubCA-1"


def make_certificate(private_key, serial=CERT_SERIAL, days_valid=365):
    issuer = x509.Name([
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "local"),
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "gov"),
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "extgazt"),
        x509.NameAttribute(NameOID.COMMON_NAME, "TSZEINVOICE-SubCA-1"),
    ])
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "SA"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Maximum Speed Tech Supply LTD"),
        x509.NameAttribute(NameOID.COMMON_NAME, "TST-886431145-399999999900003"),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days_valid))
        .sign(private_key, hashes.SHA256())
    )
    return cert


def key_to_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(autouse=True)
def isolated_logging(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    yield
    logger = logging.getLogger("einvoice")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture(scope="session")
def private_key():
    return ec.generate_private_key(ec.SECP256K1())


@pytest.fixture(scope="session")
def private_key_pem(private_key):
    return key_to_pem(private_key)


@pytest.fixture(scope="session")
def other_private_key_pem():
    return key_to_pem(ec.generate_private_key(ec.SECP256K1()))


@pytest.fixture(scope="session")
def x509_certificate(private_key):
    return make_certificate(private_key)


@pytest.fixture(scope="session")
def certificate_pem(x509_certificate):
    return x509_certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture
def seller():
    return Party(
        name="Maximum Speed Tech Supply LTD",
        name_ar="شركة توريد التكنولوجيا بأقصى سرعة المحدودة",
        vat_number="399999999900003",
        registration_number="1010010000",
        address=Address(
            street="Prince Sultan",
            building="2322",
            city="Riyadh",
            postal_code="23333",
            district="Al-Murabba",
        ),
    )


@pytest.fixture
def buyer():
    return Party(
        name="Fatoora Samples LTD",
        vat_number="399999999800003",
        address=Address(
            street="Salah Al-Din",
            building="1111",
            city="Riyadh",
            postal_code="12222",
            district="Al-Murooj",
        ),
    )


@pytest.fixture
def make_invoice(seller, buyer):
    def _make(**overrides):
        fields = dict(
            invoice_number="SME00010",
            seller=seller,
            buyer=buyer,
            line_items=[LineItem("Book", 2, "100.00")],
            sub_type=InvoiceSubType.STANDARD,
            issued_at=datetime(2024, 5, 1, 10, 30, 0),
            payment_method=PaymentMethod.CASH,
        )
        fields.update(overrides)
        return Invoice(**fields)

    return _make


@pytest.fixture
def chained_invoice(make_invoice):
    return make_invoice().with_chain(1, INITIAL_HASH)


@pytest.fixture
def unsigned_xml(chained_invoice):
    return UblInvoiceBuilder().build(chained_invoice)


@pytest.fixture
def signed_document(unsigned_xml, private_key_pem, certificate_pem):
    return InvoiceSigner().sign(
        unsigned_xml, private_key_pem, certificate_pem,
        signing_time=datetime(2024, 5, 1, 10, 31, 0),
    )
