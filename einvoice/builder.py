import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

from lxml import etree

from einvoice.enums import InvoiceSubType, InvoiceType, PaymentMethod, VatCategory
from einvoice.errors import FieldError, ValidationError
from einvoice.models import (
    CENT,
    VAT_NUMBER_PATTERN,
    Address,
    Invoice,
    LineItem,
    Party,
    money,
    parse_decimal,
)

logger = logging.getLogger(__name__)

NAMESPACES = {
    "inv": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "ext": "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2",
    "sig": "urn:oasis:names:specification:ubl:schema:xsd:CommonSignatureComponents-2",
    "sac": "urn:oasis:names:specification:ubl:schema:xsd:SignatureAggregateComponents-2",
    "sbc": "urn:oasis:names:specification:ubl:schema:xsd:SignatureBasicComponents-2",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "xades": "http://uri.etsi.org/01903/v1.3.2#",
}

PROFILE_ID = "reporting:1.0"
XADES_EXTENSION_URI = "urn:oasis:names:specification:ubl:dsig:enveloped:xades"
SIGNATURE_INFORMATION_ID = "urn:oasis:names:specification:ubl:signature:1"
REFERENCED_SIGNATURE_ID = "urn:oasis:names:specification:ubl:signature:Invoice"

QR_XPATH = ("//cac:AdditionalDocumentReference[cbc:ID='QR']"
            "/cac:Attachment/cbc:EmbeddedDocumentBinaryObject")


def qname(prefixed: str) -> str:
    prefix, local = prefixed.split(":")
    return "{%s}%s" % (NAMESPACES[prefix], local)


def parse_document(xml) -> etree._Element:
    """Parse rendered invoice XML keeping whitespace exactly as written."""
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=False, resolve_entities=False, no_network=True)
    return etree.fromstring(xml, parser)


def serialize_document(root: etree._Element) -> str:
    return etree.tostring(
        root.getroottree(),
        encoding="UTF-8",
        xml_declaration=True,
    ).decode("utf-8")


def format_amount(value) -> str:
    return f"{money(value):.2f}"


def format_quantity(value) -> str:
    quantized = Decimal(value).quantize(Decimal("0.00001"), rounding=ROUND_HALF_UP)
    return f"{quantized:.5f}".rstrip("0").rstrip(".")


def _sub(parent, tag: str, text: Optional[str] = None, **attrib) -> etree._Element:
    elem = etree.SubElement(parent, qname(tag), **attrib)
    if text is not None:
        elem.text = str(text)
    return elem


class UblInvoiceBuilder:
    """Renders an :class:`Invoice` into a UBL 2.1 document.

    Elements are emitted strictly in the order the schema mandates. The
    signature and the QR value are left as placeholders; the signer and
    :func:`inject_qr` fill them in later.
    """

    def __init__(self, home_country: str = "SA"):
        self.home_country = home_country

    def build(self, invoice: Invoice) -> str:
        errors = self.problems(invoice)
        if errors:
            raise ValidationError.from_errors(errors)

        root = etree.Element(
            qname("inv:Invoice"),
            nsmap={
                None: NAMESPACES["inv"],
                "cac": NAMESPACES["cac"],
                "cbc": NAMESPACES["cbc"],
                "ext": NAMESPACES["ext"],
            },
        )
        currency = invoice.currency

        self._add_extensions(root)
        self._add_header(root, invoice)
        if invoice.is_note:
            billing = _sub(root, "cac:BillingReference")
            reference = _sub(billing, "cac:InvoiceDocumentReference")
            _sub(reference, "cbc:ID", invoice.original_invoice)
        self._add_document_references(root, invoice)
        self._add_signature_reference(root)
        self._add_party(_sub(root, "cac:AccountingSupplierParty"), invoice.seller)
        if invoice.buyer is not None:
            self._add_party(_sub(root, "cac:AccountingCustomerParty"), invoice.buyer)
        if invoice.supplied_at is not None:
            delivery = _sub(root, "cac:Delivery")
            _sub(delivery, "cbc:ActualDeliveryDate", invoice.supplied_at.strftime("%Y-%m-%d"))
        self._add_payment(root, invoice)

        discount = invoice.total_discount
        if discount > 0:
            allowance = _sub(root, "cac:AllowanceCharge")
            _sub(allowance, "cbc:ChargeIndicator", "false")
            _sub(allowance, "cbc:AllowanceChargeReason", "Discount")
            _sub(allowance, "cbc:Amount", format_amount(discount), currencyID=currency)

        self._add_tax_totals(root, invoice)
        self._add_monetary_totals(root, invoice)
        for index, item in enumerate(invoice.line_items, start=1):
            self._add_line(root, index, item, currency)

        xml = etree.tostring(root, pretty_print=True, encoding="UTF-8", xml_declaration=True)
        logger.info("Rendered invoice %s (icv=%s)", invoice.invoice_number, invoice.icv)
        return xml.decode("utf-8")

    def problems(self, invoice: Invoice) -> List[FieldError]:
        errors = []
        if invoice.icv is None:
            errors.append(FieldError("icv", "Invoice counter value has not been assigned", "required"))
        if not invoice.previous_hash:
            errors.append(FieldError("previous_hash", "Previous invoice hash has not been assigned",
                                     "required"))
        buyer = invoice.buyer
        if not invoice.is_simplified and buyer is not None:
            address = buyer.address or Address(country=self.home_country)
            if address.country == self.home_country:
                for name in address.missing_fields():
                    errors.append(FieldError(
                        f"buyer.address.{name}",
                        f"Buyer {name.replace('_', ' ')} is required for standard invoices "
                        f"to {self.home_country} buyers",
                        "required",
                    ))
        return errors

    # --------- SECTIONS ---------
    def _add_extensions(self, root):
        extensions = _sub(root, "ext:UBLExtensions")
        extension = _sub(extensions, "ext:UBLExtension")
        _sub(extension, "ext:ExtensionURI", XADES_EXTENSION_URI)
        content = _sub(extension, "ext:ExtensionContent")
        signatures = etree.SubElement(
            content,
            qname("sig:UBLDocumentSignatures"),
            nsmap={k: NAMESPACES[k] for k in ("sig", "sac", "sbc")},
        )
        information = _sub(signatures, "sac:SignatureInformation")
        _sub(information, "cbc:ID", SIGNATURE_INFORMATION_ID)
        _sub(information, "sbc:ReferencedSignatureID", REFERENCED_SIGNATURE_ID)
        etree.SubElement(information, qname("ds:Signature"), nsmap={"ds": NAMESPACES["ds"]},
                         Id="signature")

    def _add_header(self, root, invoice: Invoice):
        _sub(root, "cbc:ProfileID", PROFILE_ID)
        _sub(root, "cbc:ID", invoice.invoice_number)
        _sub(root, "cbc:UUID", invoice.uuid)
        _sub(root, "cbc:IssueDate", invoice.issued_at.strftime("%Y-%m-%d"))
        _sub(root, "cbc:IssueTime", invoice.issued_at.strftime("%H:%M:%S"))
        _sub(root, "cbc:InvoiceTypeCode", invoice.invoice_type.value, name=invoice.sub_type.value)
        for note in invoice.notes:
            _sub(root, "cbc:Note", note)
        _sub(root, "cbc:DocumentCurrencyCode", invoice.currency)
        _sub(root, "cbc:TaxCurrencyCode", invoice.currency)

    def _add_document_references(self, root, invoice: Invoice):
        icv = _sub(root, "cac:AdditionalDocumentReference")
        _sub(icv, "cbc:ID", "ICV")
        _sub(icv, "cbc:UUID", str(invoice.icv))

        pih = _sub(root, "cac:AdditionalDocumentReference")
        _sub(pih, "cbc:ID", "PIH")
        attachment = _sub(pih, "cac:Attachment")
        _sub(attachment, "cbc:EmbeddedDocumentBinaryObject", invoice.previous_hash,
             mimeCode="text/plain")

        qr = _sub(root, "cac:AdditionalDocumentReference")
        _sub(qr, "cbc:ID", "QR")
        attachment = _sub(qr, "cac:Attachment")
        _sub(attachment, "cbc:EmbeddedDocumentBinaryObject", "", mimeCode="text/plain")

    def _add_signature_reference(self, root):
        signature = _sub(root, "cac:Signature")
        _sub(signature, "cbc:ID", REFERENCED_SIGNATURE_ID)
        _sub(signature, "cbc:SignatureMethod", XADES_EXTENSION_URI)

    def _add_party(self, container, party: Party):
        node = _sub(container, "cac:Party")
        if party.registration_number:
            identification = _sub(node, "cac:PartyIdentification")
            _sub(identification, "cbc:ID", party.registration_number,
                 schemeID=party.registration_scheme)
        if party.address is not None:
            self._add_address(node, party.address)
        if party.vat_number:
            tax_scheme = _sub(node, "cac:PartyTaxScheme")
            _sub(tax_scheme, "cbc:CompanyID", party.vat_number)
            scheme = _sub(tax_scheme, "cac:TaxScheme")
            _sub(scheme, "cbc:ID", "VAT")
        legal = _sub(node, "cac:PartyLegalEntity")
        _sub(legal, "cbc:RegistrationName", party.display_name)

    def _add_address(self, party_node, address: Address):
        postal = _sub(party_node, "cac:PostalAddress")
        for tag, value in (
            ("cbc:StreetName", address.street),
            ("cbc:AdditionalStreetName", address.additional_street),
            ("cbc:BuildingNumber", address.building),
            ("cbc:PlotIdentification", address.plot),
            ("cbc:CitySubdivisionName", address.district),
            ("cbc:CityName", address.city),
            ("cbc:PostalZone", address.postal_code),
            ("cbc:CountrySubentity", address.country_subentity),
        ):
            if value:
                _sub(postal, tag, value)
        country = _sub(postal, "cac:Country")
        _sub(country, "cbc:IdentificationCode", address.country or self.home_country)

    def _add_payment(self, root, invoice: Invoice):
        if invoice.payment_method is None and not invoice.is_note:
            return
        means = _sub(root, "cac:PaymentMeans")
        method = invoice.payment_method or PaymentMethod.UNKNOWN
        _sub(means, "cbc:PaymentMeansCode", method.value)
        if invoice.is_note:
            _sub(means, "cbc:InstructionNote", invoice.reason)
        if invoice.payment_terms:
            terms = _sub(root, "cac:PaymentTerms")
            _sub(terms, "cbc:Note", invoice.payment_terms)

    def _add_tax_totals(self, root, invoice: Invoice):
        currency = invoice.currency
        total = _sub(root, "cac:TaxTotal")
        _sub(total, "cbc:TaxAmount", format_amount(invoice.total_vat), currencyID=currency)
        for group in invoice.vat_breakdown():
            subtotal = _sub(total, "cac:TaxSubtotal")
            _sub(subtotal, "cbc:TaxableAmount", format_amount(group.taxable_amount),
                 currencyID=currency)
            _sub(subtotal, "cbc:TaxAmount", format_amount(group.tax_amount), currencyID=currency)
            category = _sub(subtotal, "cac:TaxCategory")
            _sub(category, "cbc:ID", group.category.value)
            _sub(category, "cbc:Percent", f"{group.rate:.2f}")
            if group.category is not VatCategory.STANDARD and group.exemption_reason is not None:
                _sub(category, "cbc:TaxExemptionReasonCode", group.exemption_reason.value)
                _sub(category, "cbc:TaxExemptionReason", group.exemption_reason.description)
            scheme = _sub(category, "cac:TaxScheme")
            _sub(scheme, "cbc:ID", "VAT")

        # Accounting currency total, required by the KSA rules even though it repeats the amount.
        repeated = _sub(root, "cac:TaxTotal")
        _sub(repeated, "cbc:TaxAmount", format_amount(invoice.total_vat), currencyID=currency)

    def _add_monetary_totals(self, root, invoice: Invoice):
        currency = invoice.currency
        totals = _sub(root, "cac:LegalMonetaryTotal")
        _sub(totals, "cbc:LineExtensionAmount", format_amount(invoice.subtotal), currencyID=currency)
        _sub(totals, "cbc:TaxExclusiveAmount", format_amount(invoice.subtotal), currencyID=currency)
        _sub(totals, "cbc:TaxInclusiveAmount", format_amount(invoice.total_with_vat),
             currencyID=currency)
        if invoice.total_discount > 0:
            _sub(totals, "cbc:AllowanceTotalAmount", format_amount(invoice.total_discount),
                 currencyID=currency)
        _sub(totals, "cbc:PayableAmount", format_amount(invoice.total_with_vat), currencyID=currency)

    def _add_line(self, root, index: int, item: LineItem, currency: str):
        line = _sub(root, "cac:InvoiceLine")
        _sub(line, "cbc:ID", str(index))
        _sub(line, "cbc:InvoicedQuantity", format_quantity(item.quantity), unitCode=item.unit_code)
        _sub(line, "cbc:LineExtensionAmount", format_amount(item.subtotal), currencyID=currency)
        if item.discount > 0:
            allowance = _sub(line, "cac:AllowanceCharge")
            _sub(allowance, "cbc:ChargeIndicator", "false")
            _sub(allowance, "cbc:AllowanceChargeReason", "discount")
            _sub(allowance, "cbc:Amount", format_amount(item.discount), currencyID=currency)

        tax_total = _sub(line, "cac:TaxTotal")
        _sub(tax_total, "cbc:TaxAmount", format_amount(item.vat_amount), currencyID=currency)
        _sub(tax_total, "cbc:RoundingAmount", format_amount(item.total), currencyID=currency)

        product = _sub(line, "cac:Item")
        _sub(product, "cbc:Name", item.name)
        category = _sub(product, "cac:ClassifiedTaxCategory")
        _sub(category, "cbc:ID", item.vat_category.value)
        _sub(category, "cbc:Percent", f"{item.rate:.2f}")
        scheme = _sub(category, "cac:TaxScheme")
        _sub(scheme, "cbc:ID", "VAT")

        price = _sub(line, "cac:Price")
        _sub(price, "cbc:PriceAmount", format_amount(item.unit_price), currencyID=currency)


# ========== RENDERED DOCUMENT HELPERS ==========
def _qr_node(root):
    nodes = root.xpath(QR_XPATH, namespaces=NAMESPACES)
    return nodes[0] if nodes else None


def inject_qr(xml: str, qr: str) -> str:
    """Write ``qr`` into the QR placeholder of a rendered document."""
    try:
        root = parse_document(xml)
    except etree.XMLSyntaxError as e:
        raise ValidationError.from_errors([FieldError("xml", f"Malformed invoice XML: {e}", "malformed")])
    node = _qr_node(root)
    if node is None:
        raise ValidationError.from_errors(
            [FieldError("qr", "Document has no QR placeholder", "qr_placeholder_missing")]
        )
    node.text = qr
    return serialize_document(root)


def extract_qr(xml: str) -> Optional[str]:
    """Read the QR value back out of a rendered or cleared document."""
    try:
        root = parse_document(xml)
    except etree.XMLSyntaxError as e:
        raise ValidationError.from_errors([FieldError("xml", f"Malformed invoice XML: {e}", "malformed")])
    node = _qr_node(root)
    if node is None or not (node.text or "").strip():
        return None
    return node.text.strip()


REQUIRED_ELEMENTS = (
    "cbc:ProfileID",
    "cbc:ID",
    "cbc:UUID",
    "cbc:IssueDate",
    "cbc:IssueTime",
    "cbc:InvoiceTypeCode",
    "cbc:DocumentCurrencyCode",
    "cac:AccountingSupplierParty",
    "cac:TaxTotal",
    "cac:LegalMonetaryTotal",
    "cac:InvoiceLine",
)

LINE_ELEMENTS = (
    ("cbc:ID", "line ID"),
    ("cbc:InvoicedQuantity", "quantity"),
    ("cbc:LineExtensionAmount", "line extension amount"),
    ("cac:Item/cbc:Name", "item name"),
    ("cac:Price/cbc:PriceAmount", "price amount"),
    ("cac:Item/cac:ClassifiedTaxCategory/cbc:ID", "tax category"),
)

MONETARY_TOTALS = (
    ("cbc:LineExtensionAmount", "line extension amount"),
    ("cbc:TaxExclusiveAmount", "tax exclusive amount"),
    ("cbc:TaxInclusiveAmount", "tax inclusive amount"),
    ("cbc:PayableAmount", "payable amount"),
)

ICV_XPATH = "cac:AdditionalDocumentReference[cbc:ID='ICV']/cbc:UUID"
PIH_XPATH = ("cac:AdditionalDocumentReference[cbc:ID='PIH']"
             "/cac:Attachment/cbc:EmbeddedDocumentBinaryObject")


def _text(node, path: str) -> Optional[str]:
    found = node.xpath(path, namespaces=NAMESPACES)
    if not found or not (found[0].text or "").strip():
        return None
    return found[0].text.strip()


def _amount(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return parse_decimal(value)
    except InvalidOperation:
        return None


def check_document(xml: str) -> List[str]:
    """Structural sanity checks on a rendered document. Returns problems found.

    Covers the header elements, the ICV and PIH references, the invoice
    type code and sub-type, the seller's VAT number, name and address,
    every line, and the consistency of the document totals.
    """
    try:
        root = parse_document(xml)
    except etree.XMLSyntaxError as e:
        return [f"Malformed XML: {e}"]

    problems = []
    if root.tag != qname("inv:Invoice"):
        problems.append(f"Unexpected root element {root.tag}")
    for tag in REQUIRED_ELEMENTS:
        if root.find(tag, namespaces=NAMESPACES) is None:
            problems.append(f"Missing required element {tag}")

    problems.extend(_check_references(root))
    problems.extend(_check_type_code(root))
    problems.extend(_check_seller(root))
    for number, line in enumerate(root.findall("cac:InvoiceLine", namespaces=NAMESPACES), start=1):
        for path, label in LINE_ELEMENTS:
            if _text(line, path) is None:
                problems.append(f"Line {number}: Missing {label}")
    problems.extend(_check_totals(root))
    return problems


def _check_references(root) -> List[str]:
    problems = []
    icv = _text(root, ICV_XPATH)
    if icv is None:
        problems.append("Missing ICV (Invoice Counter Value) reference")
    elif not icv.isdigit() or int(icv) < 1:
        problems.append(f"ICV reference must be a positive integer, got {icv}")
    if _text(root, PIH_XPATH) is None:
        problems.append("Missing PIH (Previous Invoice Hash) reference")
    return problems


def _check_type_code(root) -> List[str]:
    type_code = root.find("cbc:InvoiceTypeCode", namespaces=NAMESPACES)
    if type_code is None:
        return []
    problems = []
    if type_code.text not in {t.value for t in InvoiceType}:
        problems.append(f"Unknown invoice type code {type_code.text}")
    sub_type = (type_code.get("name") or "").strip()
    if not sub_type:
        problems.append("Invoice type code missing name attribute (sub-type)")
    elif sub_type not in {s.value for s in InvoiceSubType}:
        problems.append(f"Unknown invoice sub-type {sub_type}")
    return problems


def _check_seller(root) -> List[str]:
    supplier = root.find("cac:AccountingSupplierParty", namespaces=NAMESPACES)
    if supplier is None:
        return []
    problems = []
    vat_number = _text(supplier, "cac:Party/cac:PartyTaxScheme/cbc:CompanyID")
    if vat_number is None:
        problems.append("Missing seller VAT number")
    elif not VAT_NUMBER_PATTERN.match(vat_number):
        problems.append("Seller VAT number must be 15 digits starting with 3")
    if _text(supplier, "cac:Party/cac:PartyLegalEntity/cbc:RegistrationName") is None:
        problems.append("Missing seller registration name")
    if supplier.find("cac:Party/cac:PostalAddress", namespaces=NAMESPACES) is None:
        problems.append("Missing seller postal address")
    return problems


def _check_totals(root) -> List[str]:
    problems = []
    tax_total = root.find("cac:TaxTotal", namespaces=NAMESPACES)
    tax_text = _text(tax_total, "cbc:TaxAmount") if tax_total is not None else None
    if tax_total is not None and tax_text is None:
        problems.append("Missing tax total amount")

    totals = root.find("cac:LegalMonetaryTotal", namespaces=NAMESPACES)
    if totals is None:
        return problems
    values = {}
    for path, label in MONETARY_TOTALS:
        text = _text(totals, path)
        if text is None:
            problems.append(f"Missing {label} in legal monetary total")
        elif _amount(text) is None:
            problems.append(f"The {label} '{text}' in legal monetary total is not a number")
        values[path] = text

    line_extension = _amount(values["cbc:LineExtensionAmount"])
    tax_inclusive = _amount(values["cbc:TaxInclusiveAmount"])
    tax = _amount(tax_text)
    if None not in (line_extension, tax_inclusive, tax):
        expected = money(line_extension + tax)
        if abs(expected - tax_inclusive) > CENT:
            problems.append(
                f"Tax inclusive amount ({values['cbc:TaxInclusiveAmount']}) does not match "
                f"line extension ({values['cbc:LineExtensionAmount']}) + tax ({tax_text})"
            )
    return problems
