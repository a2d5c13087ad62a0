from datetime import datetime
from decimal import Decimal

import pytest
from lxml import etree

from einvoice.builder import (
    NAMESPACES,
    UblInvoiceBuilder,
    check_document,
    extract_qr,
    format_quantity,
    inject_qr,
    parse_document,
    serialize_document,
)
from einvoice.enums import InvoiceSubType, InvoiceType, VatCategory, VatExemptionReason
from einvoice.errors import ValidationError
from einvoice.ledger import INITIAL_HASH
from einvoice.models import Address, LineItem, Party


def children(xml):
    root = parse_document(xml)
    return [etree.QName(child).localname for child in root if isinstance(child.tag, str)]


def find_text(xml, path):
    return parse_document(xml).findtext(path, namespaces=NAMESPACES)


def test_element_order(make_invoice):
    invoice = make_invoice(
        supplied_at=datetime(2024, 5, 1),
        line_items=[LineItem("Book", 2, "100.00"), LineItem("Pen", 3, "100.00", discount="50")],
    ).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    assert children(xml) == [
        "UBLExtensions",
        "ProfileID",
        "ID",
        "UUID",
        "IssueDate",
        "IssueTime",
        "InvoiceTypeCode",
        "DocumentCurrencyCode",
        "TaxCurrencyCode",
        "AdditionalDocumentReference",
        "AdditionalDocumentReference",
        "AdditionalDocumentReference",
        "Signature",
        "AccountingSupplierParty",
        "AccountingCustomerParty",
        "Delivery",
        "PaymentMeans",
        "AllowanceCharge",
        "TaxTotal",
        "TaxTotal",
        "LegalMonetaryTotal",
        "InvoiceLine",
        "InvoiceLine",
    ]


def test_header_and_references(unsigned_xml, chained_invoice):
    root = parse_document(unsigned_xml)
    type_code = root.find("cbc:InvoiceTypeCode", namespaces=NAMESPACES)
    assert type_code.text == "388"
    assert type_code.get("name") == "0100000"
    assert root.findtext("cbc:ProfileID", namespaces=NAMESPACES) == "reporting:1.0"
    assert root.findtext("cbc:UUID", namespaces=NAMESPACES) == chained_invoice.uuid
    assert root.findtext("cbc:IssueDate", namespaces=NAMESPACES) == "2024-05-01"
    assert root.findtext("cbc:IssueTime", namespaces=NAMESPACES) == "10:30:00"

    refs = root.findall("cac:AdditionalDocumentReference", namespaces=NAMESPACES)
    assert [r.findtext("cbc:ID", namespaces=NAMESPACES) for r in refs] == ["ICV", "PIH", "QR"]
    assert refs[0].findtext("cbc:UUID", namespaces=NAMESPACES) == "1"
    pih = refs[1].find("cac:Attachment/cbc:EmbeddedDocumentBinaryObject", namespaces=NAMESPACES)
    assert pih.text == INITIAL_HASH
    assert pih.get("mimeCode") == "text/plain"

    placeholder = root.xpath("//sac:SignatureInformation/ds:Signature", namespaces=NAMESPACES)
    assert placeholder and placeholder[0].get("Id") == "signature"


def test_amounts_and_quantities(unsigned_xml):
    assert find_text(unsigned_xml, "cac:TaxTotal/cbc:TaxAmount") == "30.00"
    assert find_text(unsigned_xml, "cac:LegalMonetaryTotal/cbc:LineExtensionAmount") == "200.00"
    assert find_text(unsigned_xml, "cac:LegalMonetaryTotal/cbc:PayableAmount") == "230.00"
    assert find_text(unsigned_xml, "cac:InvoiceLine/cbc:InvoicedQuantity") == "2"
    assert find_text(unsigned_xml, "cac:InvoiceLine/cac:TaxTotal/cbc:RoundingAmount") == "230.00"
    assert find_text(unsigned_xml, "cac:InvoiceLine/cac:Price/cbc:PriceAmount") == "100.00"
    assert find_text(unsigned_xml, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:Percent") == "15.00"


def test_second_tax_total_only_carries_amount(unsigned_xml):
    totals = parse_document(unsigned_xml).findall("cac:TaxTotal", namespaces=NAMESPACES)
    assert len(totals) == 2
    assert [etree.QName(c).localname for c in totals[1]] == ["TaxAmount"]
    assert totals[1][0].get("currencyID") == "SAR"


def test_format_quantity():
    assert format_quantity(Decimal("2")) == "2"
    assert format_quantity(Decimal("1.50")) == "1.5"
    assert format_quantity(Decimal("2.123456")) == "2.12346"
    assert format_quantity(Decimal("10")) == "10"


def test_line_discount_block(make_invoice):
    invoice = make_invoice(
        line_items=[LineItem("Book", 3, "100.00", discount="50.00")]
    ).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    line = parse_document(xml).find("cac:InvoiceLine", namespaces=NAMESPACES)
    assert [etree.QName(c).localname for c in line] == [
        "ID", "InvoicedQuantity", "LineExtensionAmount", "AllowanceCharge", "TaxTotal", "Item", "Price"
    ]
    assert line.findtext("cac:AllowanceCharge/cbc:Amount", namespaces=NAMESPACES) == "50.00"
    assert find_text(xml, "cac:LegalMonetaryTotal/cbc:AllowanceTotalAmount") == "50.00"
    assert find_text(xml, "cac:LegalMonetaryTotal/cbc:TaxInclusiveAmount") == "287.50"


def test_exemption_reason_rendered(make_invoice):
    invoice = make_invoice(line_items=[
        LineItem("Export", 1, "40.00", vat_category=VatCategory.ZERO_RATED,
                 exemption_reason=VatExemptionReason.EXPORT_GOODS),
    ]).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    category = "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory"
    assert find_text(xml, f"{category}/cbc:ID") == "Z"
    assert find_text(xml, f"{category}/cbc:TaxExemptionReasonCode") == "VATEX-SA-32"
    assert find_text(xml, f"{category}/cbc:TaxExemptionReason") == "Export of goods"


def test_credit_note_references_original(make_invoice):
    invoice = make_invoice(
        invoice_type=InvoiceType.CREDIT_NOTE,
        original_invoice="SME00009",
        reason="Goods returned",
    ).with_chain(2, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    names = children(xml)
    assert names.index("BillingReference") < names.index("AdditionalDocumentReference")
    assert find_text(xml, "cac:BillingReference/cac:InvoiceDocumentReference/cbc:ID") == "SME00009"
    assert find_text(xml, "cac:PaymentMeans/cbc:InstructionNote") == "Goods returned"
    assert find_text(xml, "cbc:InvoiceTypeCode") == "381"


def test_standard_buyer_address_is_mandatory(make_invoice):
    buyer = Party(name="Local Buyer", vat_number="399999999800003",
                  address=Address(city="Riyadh"))
    invoice = make_invoice(buyer=buyer).with_chain(1, INITIAL_HASH)
    with pytest.raises(ValidationError) as excinfo:
        UblInvoiceBuilder().build(invoice)
    assert set(excinfo.value.fields) == {
        "buyer.address.street",
        "buyer.address.building",
        "buyer.address.postal_code",
        "buyer.address.district",
    }


def test_foreign_buyer_address_is_optional(make_invoice):
    buyer = Party(name="Dubai Buyer", address=Address(city="Dubai", country="AE"))
    invoice = make_invoice(buyer=buyer).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    assert find_text(
        xml, "cac:AccountingCustomerParty/cac:Party/cac:PostalAddress/cac:Country/cbc:IdentificationCode"
    ) == "AE"


def test_simplified_invoice_without_buyer(make_invoice):
    invoice = make_invoice(buyer=None, sub_type=InvoiceSubType.SIMPLIFIED).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    assert "AccountingCustomerParty" not in children(xml)
    assert parse_document(xml).find("cbc:InvoiceTypeCode", namespaces=NAMESPACES).get("name") == "0200000"


def test_chain_values_required(make_invoice):
    with pytest.raises(ValidationError) as excinfo:
        UblInvoiceBuilder().build(make_invoice())
    assert set(excinfo.value.fields) == {"icv", "previous_hash"}


def test_text_is_escaped(make_invoice):
    invoice = make_invoice(line_items=[LineItem("Nuts & Bolts <large>", 1, 5)]).with_chain(1, INITIAL_HASH)
    xml = UblInvoiceBuilder().build(invoice)
    assert "Nuts &amp; Bolts &lt;large&gt;" in xml
    assert find_text(xml, "cac:InvoiceLine/cac:Item/cbc:Name") == "Nuts & Bolts <large>"


def test_supplier_party(unsigned_xml, seller):
    party = "cac:AccountingSupplierParty/cac:Party"
    assert find_text(unsigned_xml, f"{party}/cac:PartyIdentification/cbc:ID") == "1010010000"
    assert find_text(unsigned_xml, f"{party}/cac:PartyTaxScheme/cbc:CompanyID") == "399999999900003"
    assert find_text(unsigned_xml, f"{party}/cac:PartyLegalEntity/cbc:RegistrationName") == seller.name_ar
    assert find_text(unsigned_xml, f"{party}/cac:PostalAddress/cbc:CitySubdivisionName") == "Al-Murabba"


def test_qr_inject_and_extract(unsigned_xml):
    assert extract_qr(unsigned_xml) is None
    with_qr = inject_qr(unsigned_xml, "AQRUZXN0")
    assert extract_qr(with_qr) == "AQRUZXN0"
    # other references untouched
    assert find_text(with_qr, "cac:AdditionalDocumentReference/cbc:UUID") == "1"


def test_inject_qr_requires_placeholder():
    xml = '<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"/>'
    with pytest.raises(ValidationError) as excinfo:
        inject_qr(xml, "AQRUZXN0")
    assert excinfo.value.errors[0].code == "qr_placeholder_missing"


def test_check_document(unsigned_xml):
    assert check_document(unsigned_xml) == []
    problems = check_document('<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"/>')
    assert "Missing required element cbc:UUID" in problems
    assert check_document("<not-xml")[0].startswith("Malformed XML")


def edit(xml, path, change):
    root = parse_document(xml)
    for node in root.xpath(path, namespaces=NAMESPACES):
        change(node)
    return serialize_document(root)


def remove(node):
    node.getparent().remove(node)


def set_text(text):
    def change(node):
        node.text = text
    return change


SELLER = "cac:AccountingSupplierParty/cac:Party"
LINE = "cac:InvoiceLine"
TOTALS = "cac:LegalMonetaryTotal"


@pytest.mark.parametrize("path, problem", [
    ("cbc:DocumentCurrencyCode", "Missing required element cbc:DocumentCurrencyCode"),
    ("cac:AdditionalDocumentReference[cbc:ID='ICV']", "Missing ICV (Invoice Counter Value) reference"),
    ("cac:AdditionalDocumentReference[cbc:ID='PIH']", "Missing PIH (Previous Invoice Hash) reference"),
    (f"{SELLER}/cac:PartyTaxScheme", "Missing seller VAT number"),
    (f"{SELLER}/cac:PartyLegalEntity", "Missing seller registration name"),
    (f"{SELLER}/cac:PostalAddress", "Missing seller postal address"),
    (f"{LINE}/cbc:ID", "Line 1: Missing line ID"),
    (f"{LINE}/cbc:InvoicedQuantity", "Line 1: Missing quantity"),
    (f"{LINE}/cbc:LineExtensionAmount", "Line 1: Missing line extension amount"),
    (f"{LINE}/cac:Item/cbc:Name", "Line 1: Missing item name"),
    (f"{LINE}/cac:Price/cbc:PriceAmount", "Line 1: Missing price amount"),
    (f"{LINE}/cac:Item/cac:ClassifiedTaxCategory/cbc:ID", "Line 1: Missing tax category"),
    ("cac:TaxTotal/cbc:TaxAmount", "Missing tax total amount"),
    (f"{TOTALS}/cbc:TaxExclusiveAmount", "Missing tax exclusive amount in legal monetary total"),
    (f"{TOTALS}/cbc:PayableAmount", "Missing payable amount in legal monetary total"),
])
def test_check_document_missing_parts(unsigned_xml, path, problem):
    assert check_document(edit(unsigned_xml, path, remove)) == [problem]


@pytest.mark.parametrize("path, text, problem", [
    ("cac:AdditionalDocumentReference[cbc:ID='ICV']/cbc:UUID", "0",
     "ICV reference must be a positive integer, got 0"),
    (f"{SELLER}/cac:PartyTaxScheme/cbc:CompanyID", "123",
     "Seller VAT number must be 15 digits starting with 3"),
    ("cbc:InvoiceTypeCode", "999", "Unknown invoice type code 999"),
    (f"{TOTALS}/cbc:TaxInclusiveAmount", "999.00",
     "Tax inclusive amount (999.00) does not match line extension (200.00) + tax (30.00)"),
    (f"{TOTALS}/cbc:LineExtensionAmount", "abc",
     "The line extension amount 'abc' in legal monetary total is not a number"),
])
def test_check_document_wrong_values(unsigned_xml, path, text, problem):
    assert check_document(edit(unsigned_xml, path, set_text(text))) == [problem]


def test_check_document_sub_type_attribute(unsigned_xml):
    xml = edit(unsigned_xml, "cbc:InvoiceTypeCode", lambda node: node.attrib.pop("name"))
    assert check_document(xml) == ["Invoice type code missing name attribute (sub-type)"]
    xml = edit(unsigned_xml, "cbc:InvoiceTypeCode", lambda node: node.set("name", "0900000"))
    assert check_document(xml) == ["Unknown invoice sub-type 0900000"]


def test_check_document_tolerates_one_cent(unsigned_xml):
    xml = edit(unsigned_xml, f"{TOTALS}/cbc:TaxInclusiveAmount", set_text("230.01"))
    assert check_document(xml) == []
