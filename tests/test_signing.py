import base64

import pytest

from einvoice.builder import NAMESPACES, inject_qr, parse_document, serialize_document
from einvoice.certificates import extract_certificate_info
from einvoice.errors import CertificateError, SigningError
from einvoice.hashing import invoice_hash
from einvoice.signing import InvoiceSigner, render_signed_properties, signed_properties_hash

from tests.conftest import ISSUER_NAME


def test_sign_and_verify(signed_document, unsigned_xml, x509_certificate):
    signer = InvoiceSigner()
    assert signer.verify(signed_document.xml)
    assert signer.verify(signed_document.xml, x509_certificate.public_key())
    assert signed_document.invoice_hash == invoice_hash(unsigned_xml)


def test_qr_injection_keeps_signature_valid(signed_document):
    assert InvoiceSigner().verify(inject_qr(signed_document.xml, "AQRUZXN0"))


def test_signature_block_contents(signed_document, certificate_pem):
    root = parse_document(signed_document.xml)
    info = extract_certificate_info(certificate_pem)

    def text(xpath):
        return root.xpath(xpath, namespaces=NAMESPACES)[0].text

    assert text("//ds:Reference[@Id='invoiceSignedData']/ds:DigestValue") == signed_document.invoice_hash
    assert text("//ds:SignatureValue") == signed_document.signature_value
    assert text("//ds:X509Certificate") == info.base64
    assert text("//xades:SigningTime") == "2024-05-01T10:31:00"
    assert text("//ds:X509IssuerName") == ISSUER_NAME
    assert text("//ds:X509SerialNumber") == info.serial_number
    assert text("//ds:Reference[@URI='#xadesSignedProperties']/ds:DigestValue") == \
        signed_document.signed_properties_hash
    assert len(root.xpath("//ds:Transform", namespaces=NAMESPACES)) == 4
    # placeholder replaced, not duplicated
    assert len(root.xpath("//ds:Signature", namespaces=NAMESPACES)) == 1


def test_signed_properties_whitespace():
    rendered = render_signed_properties("2024-05-01T10:31:00", "ZGlnZXN0", "CN=Test", "1")
    lines = rendered.split("\n")
    assert lines[0] == ('<xades:SignedProperties xmlns:xades="http://uri.etsi.org/01903/v1.3.2#"'
                        ' Id="xadesSignedProperties">')
    assert lines[1] == " " * 36 + "<xades:SignedSignatureProperties>"
    assert lines[2] == " " * 40 + "<xades:SigningTime>2024-05-01T10:31:00</xades:SigningTime>"
    assert lines[-1] == " " * 32 + "</xades:SignedProperties>"
    assert 'xmlns:ds="http://www.w3.org/2000/09/xmldsig#"' in rendered

    embedded = render_signed_properties("2024-05-01T10:31:00", "ZGlnZXN0", "CN=Test", "1",
                                        standalone=False)
    assert "xmlns" not in embedded


def test_signed_properties_hash_depends_on_every_value():
    base = signed_properties_hash("2024-05-01T10:31:00", "ZGlnZXN0", "CN=Test", "1")
    assert base == signed_properties_hash("2024-05-01T10:31:00", "ZGlnZXN0", "CN=Test", "1")
    assert base != signed_properties_hash("2024-05-01T10:31:01", "ZGlnZXN0", "CN=Test", "1")
    assert base != signed_properties_hash("2024-05-01T10:31:00", "ZGlnZXN0", "CN=Test", "2")


def test_flipped_signature_byte_fails(signed_document):
    signature = bytearray(base64.b64decode(signed_document.signature_value))
    signature[-1] ^= 0x01
    tampered = signed_document.xml.replace(
        signed_document.signature_value, base64.b64encode(bytes(signature)).decode("ascii"))
    assert not InvoiceSigner().verify(tampered)


def test_tampered_content_fails(signed_document):
    root = parse_document(signed_document.xml)
    root.find("cbc:ID", namespaces=NAMESPACES).text = "SME99999"
    assert not InvoiceSigner().verify(serialize_document(root))


def test_tampered_signing_time_fails(signed_document):
    tampered = signed_document.xml.replace("2024-05-01T10:31:00", "2024-05-01T10:32:00")
    assert not InvoiceSigner().verify(tampered)


def test_other_key_does_not_verify(signed_document, other_private_key_pem):
    from einvoice.certificates import load_private_key

    other_public = load_private_key(other_private_key_pem).public_key()
    assert not InvoiceSigner().verify(signed_document.xml, other_public)


def test_unsigned_document_does_not_verify(unsigned_xml):
    assert not InvoiceSigner().verify(unsigned_xml)


def test_bad_key_raises(unsigned_xml, certificate_pem):
    with pytest.raises(SigningError):
        InvoiceSigner().sign(unsigned_xml, "not a key", certificate_pem)


def test_key_certificate_mismatch(unsigned_xml, other_private_key_pem, certificate_pem):
    with pytest.raises(CertificateError):
        InvoiceSigner().sign(unsigned_xml, other_private_key_pem, certificate_pem)


def test_missing_placeholder(private_key_pem, certificate_pem):
    xml = '<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"/>'
    with pytest.raises(SigningError):
        InvoiceSigner().sign(xml, private_key_pem, certificate_pem)


def test_sign_hash_rejects_non_base64(private_key):
    with pytest.raises(SigningError):
        InvoiceSigner().sign_hash("not base64!", private_key)
