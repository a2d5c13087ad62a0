import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from xml.sax.saxutils import escape as xml_escape

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from lxml import etree

from einvoice.builder import NAMESPACES, parse_document, serialize_document
from einvoice.certificates import CertificateInfo, extract_certificate_info, load_private_key
from einvoice.errors import CertificateError, SigningError
from einvoice.hashing import hex_digest_b64, invoice_hash

logger = logging.getLogger(__name__)

SIGNING_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"

XADES_NS_DECL = ' xmlns:xades="http://uri.etsi.org/01903/v1.3.2#"'
DS_NS_DECL = ' xmlns:ds="http://www.w3.org/2000/09/xmldsig#"'

# Hashed as raw text, so every space and newline here is significant.
SIGNED_PROPERTIES_TEMPLATE = (
    '<xades:SignedProperties{xades_ns} Id="xadesSignedProperties">\n'
    '                                    <xades:SignedSignatureProperties>\n'
    '                                        <xades:SigningTime>{signing_time}</xades:SigningTime>\n'
    '                                        <xades:SigningCertificate>\n'
    '                                            <xades:Cert>\n'
    '                                                <xades:CertDigest>\n'
    '                                                    <ds:DigestMethod{ds_ns} Algorithm="http://www.w3.org/2001/04/xmlenc#sha256"/>\n'
    '                                                    <ds:DigestValue{ds_ns}>{cert_digest}</ds:DigestValue>\n'
    '                                                </xades:CertDigest>\n'
    '                                                <xades:IssuerSerial>\n'
    '                                                    <ds:X509IssuerName{ds_ns}>{issuer_name}</ds:X509IssuerName>\n'
    '                                                    <ds:X509SerialNumber{ds_ns}>{serial_number}</ds:X509SerialNumber>\n'
    '                                                </xades:IssuerSerial>\n'
    '                                            </xades:Cert>\n'
    '                                        </xades:SigningCertificate>\n'
    '                                    </xades:SignedSignatureProperties>\n'
    '                                </xades:SignedProperties>'
)

SIGNATURE_TEMPLATE = (
    '<ds:Signature xmlns:ds="http://www.w3.org/2000/09/xmldsig#" Id="signature">\n'
    '                        <ds:SignedInfo>\n'
    '                            <ds:CanonicalizationMethod Algorithm="http://www.w3.org/2006/12/xml-c14n11"/>\n'
    '                            <ds:SignatureMethod Algorithm="http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"/>\n'
    '                            <ds:Reference Id="invoiceSignedData" URI="">\n'
    '                                <ds:Transforms>\n'
    '                                    <ds:Transform Algorithm="http://www.w3.org/TR/1999/REC-xpath-19991116">\n'
    '                                        <ds:XPath>not(//ancestor-or-self::ext:UBLExtensions)</ds:XPath>\n'
    '                                    </ds:Transform>\n'
    '                                    <ds:Transform Algorithm="http://www.w3.org/TR/1999/REC-xpath-19991116">\n'
    '                                        <ds:XPath>not(//ancestor-or-self::cac:Signature)</ds:XPath>\n'
    '                                    </ds:Transform>\n'
    '                                    <ds:Transform Algorithm="http://www.w3.org/TR/1999/REC-xpath-19991116">\n'
    "                                        <ds:XPath>not(//ancestor-or-self::cac:AdditionalDocumentReference[cbc:ID='QR'])</ds:XPath>\n"
    '                                    </ds:Transform>\n'
    '                                    <ds:Transform Algorithm="http://www.w3.org/2006/12/xml-c14n11"/>\n'
    '                                </ds:Transforms>\n'
    '                                <ds:DigestMethod Algorithm="http://www.w3.org/2001/04/xmlenc#sha256"/>\n'
    '                                <ds:DigestValue>{invoice_digest}</ds:DigestValue>\n'
    '                            </ds:Reference>\n'
    '                            <ds:Reference Type="http://www.w3.org/2000/09/xmldsig#SignatureProperties" URI="#xadesSignedProperties">\n'
    '                                <ds:DigestMethod Algorithm="http://www.w3.org/2001/04/xmlenc#sha256"/>\n'
    '                                <ds:DigestValue>{signed_properties_digest}</ds:DigestValue>\n'
    '                            </ds:Reference>\n'
    '                        </ds:SignedInfo>\n'
    '                        <ds:SignatureValue>{signature_value}</ds:SignatureValue>\n'
    '                        <ds:KeyInfo>\n'
    '                            <ds:X509Data>\n'
    '                                <ds:X509Certificate>{certificate}</ds:X509Certificate>\n'
    '                            </ds:X509Data>\n'
    '                        </ds:KeyInfo>\n'
    '                        <ds:Object>\n'
    '                            <xades:QualifyingProperties xmlns:xades="http://uri.etsi.org/01903/v1.3.2#" Target="signature">\n'
    '                                {signed_properties}\n'
    '                            </xades:QualifyingProperties>\n'
    '                        </ds:Object>\n'
    '                    </ds:Signature>'
)


def render_signed_properties(signing_time: str, cert_digest: str, issuer_name: str,
                             serial_number: str, standalone: bool = True) -> str:
    """Render the SignedProperties block.

    ``standalone=True`` gives the digest form with the namespaces declared
    inline; ``False`` gives the copy embedded under QualifyingProperties,
    which inherits them.
    """
    return SIGNED_PROPERTIES_TEMPLATE.format(
        xades_ns=XADES_NS_DECL if standalone else "",
        ds_ns=DS_NS_DECL if standalone else "",
        signing_time=xml_escape(signing_time),
        cert_digest=xml_escape(cert_digest),
        issuer_name=xml_escape(issuer_name),
        serial_number=xml_escape(serial_number),
    )


def signed_properties_hash(signing_time: str, cert_digest: str, issuer_name: str,
                           serial_number: str) -> str:
    xml_string = render_signed_properties(signing_time, cert_digest, issuer_name, serial_number)
    return hex_digest_b64(xml_string.encode("utf-8"))


@dataclass(frozen=True)
class SignedDocument:
    xml: str
    invoice_hash: str
    signature_value: str
    signed_properties_hash: str
    signing_time: str
    certificate: CertificateInfo


class InvoiceSigner:
    """XAdES enveloped signing of rendered UBL invoices."""

    def sign_hash(self, invoice_hash_b64: str, private_key) -> str:
        """
        Signs a base64-encoded invoice hash with ECDSA over SHA-256.
        Returns the base64 DER signature used for SignatureValue and QR tag 7.
        """
        key = load_private_key(private_key)
        try:
            hash_bytes = base64.b64decode(invoice_hash_b64, validate=True)
        except binascii.Error as e:
            raise SigningError(f"Invoice hash is not base64 encoded: {e}")
        signature = key.sign(hash_bytes, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode("utf-8")

    def sign(self, xml: str, private_key, certificate: str,
             signing_time: Optional[datetime] = None) -> SignedDocument:
        try:
            root = parse_document(xml)
        except etree.XMLSyntaxError as e:
            raise SigningError(f"Invoice XML is not well-formed: {e}")
        placeholders = root.xpath("//sac:SignatureInformation/ds:Signature", namespaces=NAMESPACES)
        if not placeholders:
            raise SigningError("Document has no signature placeholder")

        key = load_private_key(private_key)
        info = extract_certificate_info(certificate)
        public_der = key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        if public_der != info.public_key:
            raise CertificateError.key_mismatch()

        # Phase 1: pre-hash
        digest = invoice_hash(xml)

        # Phase 2: sign and hash the signed properties
        signature_value = self.sign_hash(digest, key)
        signing_time = (signing_time or datetime.now(timezone.utc)).strftime(SIGNING_TIME_FORMAT)
        properties_hash = signed_properties_hash(
            signing_time, info.digest, info.issuer_name, info.serial_number
        )

        # Phase 3: assemble and insert
        signature_xml = SIGNATURE_TEMPLATE.format(
            invoice_digest=digest,
            signed_properties_digest=properties_hash,
            signature_value=signature_value,
            certificate=info.base64,
            signed_properties=render_signed_properties(
                signing_time, info.digest, info.issuer_name, info.serial_number, standalone=False
            ),
        )
        signature = etree.fromstring(signature_xml.encode("utf-8"))
        placeholder = placeholders[0]
        signature.tail = placeholder.tail
        placeholder.getparent().replace(placeholder, signature)
        signed_xml = serialize_document(root)

        if invoice_hash(signed_xml) != digest:
            raise SigningError("Signed document does not reproduce the invoice hash")

        logger.info("Signed invoice hash %s (certificate serial %s)", digest, info.serial_number)
        return SignedDocument(
            xml=signed_xml,
            invoice_hash=digest,
            signature_value=signature_value,
            signed_properties_hash=properties_hash,
            signing_time=signing_time,
            certificate=info,
        )

    def verify(self, xml: str, public_key: Optional[ec.EllipticCurvePublicKey] = None) -> bool:
        """Check the stored digests and the signature value of a signed document.

        When no public key is given, the one in the embedded certificate is used.
        """
        try:
            root = parse_document(xml)
        except etree.XMLSyntaxError as e:
            raise SigningError(f"Invoice XML is not well-formed: {e}")

        def text(xpath: str) -> Optional[str]:
            nodes = root.xpath(xpath, namespaces=NAMESPACES)
            return nodes[0].text.strip() if nodes and nodes[0].text else None

        stored_digest = text("//ds:Reference[@Id='invoiceSignedData']/ds:DigestValue")
        signature_value = text("//ds:SignatureValue")
        if stored_digest is None or signature_value is None:
            logger.info("Document carries no signature")
            return False

        if invoice_hash(xml) != stored_digest:
            logger.info("Invoice digest mismatch")
            return False

        properties = "//xades:SignedProperties/xades:SignedSignatureProperties"
        stored_properties_hash = text("//ds:Reference[@URI='#xadesSignedProperties']/ds:DigestValue")
        recomputed = signed_properties_hash(
            text(f"{properties}/xades:SigningTime") or "",
            text(f"{properties}//xades:CertDigest/ds:DigestValue") or "",
            text(f"{properties}//ds:X509IssuerName") or "",
            text(f"{properties}//ds:X509SerialNumber") or "",
        )
        if stored_properties_hash != recomputed:
            logger.info("Signed properties digest mismatch")
            return False

        if public_key is None:
            certificate = text("//ds:X509Certificate")
            if certificate is None:
                return False
            public_key = extract_certificate_info(certificate).public_key_object()

        try:
            public_key.verify(
                base64.b64decode(signature_value, validate=True),
                base64.b64decode(stored_digest),
                ec.ECDSA(hashes.SHA256()),
            )
        except (InvalidSignature, binascii.Error, ValueError):
            logger.info("Signature value does not verify")
            return False
        return True
