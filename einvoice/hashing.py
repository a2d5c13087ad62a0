import base64
import hashlib
import io

from lxml import etree

from einvoice.builder import NAMESPACES, parse_document
from einvoice.errors import SigningError

# Subtrees excluded from the invoice digest. These mirror the three XPath
# transforms declared in the signature's invoiceSignedData reference.
EXCLUDED_XPATHS = (
    "//ext:UBLExtensions",
    "//cac:Signature",
    "//cac:AdditionalDocumentReference[cbc:ID='QR']",
)


def remove_unsigned_parts(root: etree._Element) -> etree._Element:
    for xpath in EXCLUDED_XPATHS:
        for elem in root.xpath(xpath, namespaces=NAMESPACES):
            parent = elem.getparent()
            if parent is not None:
                parent.remove(elem)
    return root


def canonicalize(xml) -> bytes:
    """Strip the excluded subtrees and return the C14N 1.1 byte form."""
    try:
        root = parse_document(xml)
    except etree.XMLSyntaxError as e:
        raise SigningError(f"Invoice XML is not well-formed: {e}")
    remove_unsigned_parts(root)
    buf = io.BytesIO()
    # exclusive=False, no comments: Canonical XML 1.1 output for UBL documents
    root.getroottree().write_c14n(buf, exclusive=False, with_comments=False)
    return buf.getvalue()


def invoice_hash(xml) -> str:
    """Base64 SHA-256 digest of the canonical invoice body."""
    digest = hashlib.sha256(canonicalize(xml)).digest()
    return base64.b64encode(digest).decode("utf-8")


def hex_digest_b64(data: bytes) -> str:
    """SHA-256 as lowercase hex, then base64 of that hex text.

    Used for the certificate digest and the signed properties digest.
    """
    hash_hex = hashlib.sha256(data).hexdigest()
    return base64.b64encode(hash_hex.encode("utf-8")).decode("utf-8")
