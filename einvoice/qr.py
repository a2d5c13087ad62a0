"""
TLV (Tag-Length-Value) encoding of the invoice QR code.

Each field is encoded as:
  - Tag:    1 byte (1 to 9 for this protocol)
  - Length: ASN.1 BER length, short form below 128, long form otherwise
  - Value:  raw bytes

The concatenation is base64 encoded.

Tags 1-5: UTF-8 text (seller name, VAT number, timestamp, total, VAT total)
Tags 6-7: base64 invoice hash / signature strings, as UTF-8 bytes
Tags 8-9: raw public key DER and raw certificate signature
"""

import base64
import binascii
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import BytesIO
from typing import Dict, List, Union

import qrcode

from einvoice.certificates import CertificateInfo
from einvoice.errors import CodecError
from einvoice.models import VAT_NUMBER_PATTERN, Invoice

logger = logging.getLogger(__name__)

TAG_NAMES = {
    1: "seller_name",
    2: "vat_number",
    3: "timestamp",
    4: "total_with_vat",
    5: "vat_amount",
    6: "invoice_hash",
    7: "signature",
    8: "public_key",
    9: "certificate_signature",
}
TEXT_TAGS = (1, 2, 3, 4, 5, 6, 7)
REQUIRED_TAGS = tuple(range(1, 10))

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def encode_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    size = (length.bit_length() + 7) // 8
    return bytes([0x80 | size]) + length.to_bytes(size, "big")


def decode_length(data: bytes, offset: int):
    """Returns (length, offset of the first value byte)."""
    if offset >= len(data):
        raise CodecError(f"Truncated TLV data: missing length at position {offset}")
    first = data[offset]
    offset += 1
    if first < 0x80:
        return first, offset
    size = first & 0x7F
    if size == 0:
        raise CodecError(f"Indefinite BER length at position {offset - 1} is not allowed")
    if offset + size > len(data):
        raise CodecError(f"Truncated TLV data: length needs {size} bytes at position {offset}")
    return int.from_bytes(data[offset:offset + size], "big"), offset + size


def encode_tlv(tags: Dict[int, Union[str, bytes]]) -> str:
    parts = []
    for tag, value in sorted(tags.items()):
        if not 0 < tag < 256:
            raise CodecError(f"Invalid tag number: {tag}")
        value_bytes = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        parts.append(bytes([tag]) + encode_length(len(value_bytes)) + value_bytes)
    return base64.b64encode(b"".join(parts)).decode("ascii")


def decode_tlv(payload: str) -> Dict[int, bytes]:
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecError(f"QR payload is not valid base64: {e}")

    result = {}
    i = 0
    while i < len(data):
        tag = data[i]
        length, start = decode_length(data, i + 1)
        end = start + length
        if end > len(data):
            raise CodecError(
                f"Tag {tag} claims length {length} but only {len(data) - start} bytes remain"
            )
        result[tag] = data[start:end]
        i = end
    return result


def build_qr(invoice: Invoice, signature_value: str, certificate: CertificateInfo) -> str:
    """Assemble the nine mandatory tags for a signed invoice."""
    if not invoice.invoice_hash:
        raise CodecError("Invoice hash must be assigned before the QR code is built")
    payload = encode_tlv({
        1: invoice.seller.display_name,
        2: invoice.seller.vat_number,
        3: invoice.issued_at.strftime(TIMESTAMP_FORMAT),
        4: f"{invoice.total_with_vat:.2f}",
        5: f"{invoice.total_vat:.2f}",
        6: invoice.invoice_hash,
        7: signature_value,
        8: certificate.public_key,
        9: certificate.signature,
    })
    logger.info("Built QR payload for invoice %s (%d chars)", invoice.invoice_number, len(payload))
    return payload


def describe_qr(payload: str) -> Dict[str, str]:
    """Decoded tags keyed by name; binary tags are shown as hex."""
    described = {}
    for tag, value in decode_tlv(payload).items():
        name = TAG_NAMES.get(tag, f"tag_{tag}")
        if tag in TEXT_TAGS:
            described[name] = value.decode("utf-8", errors="replace")
        else:
            described[name] = value.hex()
    return described


def validate_qr(payload: str) -> List[str]:
    """Advisory checks on a QR payload. Returns the problems found."""
    try:
        tags = decode_tlv(payload)
    except CodecError as e:
        return [e.message]

    problems = []
    for tag in REQUIRED_TAGS:
        if not tags.get(tag):
            problems.append(f"Missing required tag {tag} ({TAG_NAMES[tag]})")

    def text(tag: int) -> str:
        return tags.get(tag, b"").decode("utf-8", errors="replace")

    if tags.get(2) and not VAT_NUMBER_PATTERN.match(text(2)):
        problems.append("Invalid VAT number format")
    if tags.get(3):
        try:
            datetime.strptime(text(3), TIMESTAMP_FORMAT)
        except ValueError:
            problems.append("Invalid timestamp format")
    for tag in (4, 5):
        if tags.get(tag):
            try:
                valid = Decimal(text(tag)).is_finite()
            except InvalidOperation:
                valid = False
            if not valid:
                problems.append(f"Invalid {TAG_NAMES[tag].replace('_', ' ')}")
    return problems


def render_qr_png(payload: str) -> bytes:
    """Render the base64 payload as a PNG QR image."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=4,
        border=2
    )
    qr.add_data(payload)
    qr.make(fit=True)

    buffered = BytesIO()
    qr.make_image().save(buffered, format="PNG")
    return buffered.getvalue()
