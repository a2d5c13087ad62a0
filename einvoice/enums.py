from decimal import Decimal
from enum import Enum


class InvoiceType(Enum):
    TAX_INVOICE = "388"
    CREDIT_NOTE = "381"
    DEBIT_NOTE = "383"

    @property
    def label(self) -> str:
        return {
            InvoiceType.TAX_INVOICE: "Tax Invoice",
            InvoiceType.CREDIT_NOTE: "Credit Note",
            InvoiceType.DEBIT_NOTE: "Debit Note",
        }[self]

    @property
    def is_note(self) -> bool:
        return self is not InvoiceType.TAX_INVOICE


class InvoiceSubType(Enum):
    """Seven character transaction code carried in the ``name`` attribute
    of ``cbc:InvoiceTypeCode``.

    The first two characters select standard (``01``) or simplified
    (``02``); the remaining flags mark third-party, nominal, export,
    summary and self-billed transactions.
    """

    STANDARD = "0100000"
    SIMPLIFIED = "0200000"
    STANDARD_THIRD_PARTY = "0110000"
    SIMPLIFIED_THIRD_PARTY = "0210000"
    STANDARD_NOMINAL = "0101000"
    SIMPLIFIED_NOMINAL = "0201000"
    STANDARD_EXPORT = "0100100"
    STANDARD_SUMMARY = "0100010"
    STANDARD_SELF_BILLED = "0100001"

    @property
    def is_simplified(self) -> bool:
        return self.value[:2] == "02"

    @property
    def label(self) -> str:
        kind = "Simplified" if self.is_simplified else "Standard"
        names = ("third party", "nominal", "export", "summary", "self-billed")
        flags = [name for name, bit in zip(names, self.value[2:]) if bit == "1"]
        return f"{kind} ({', '.join(flags)})" if flags else kind


class VatCategory(Enum):
    STANDARD = "S"
    ZERO_RATED = "Z"
    EXEMPT = "E"
    OUT_OF_SCOPE = "O"

    @property
    def default_rate(self) -> Decimal:
        return Decimal("15") if self is VatCategory.STANDARD else Decimal("0")

    @property
    def label(self) -> str:
        return {
            VatCategory.STANDARD: "Standard rate",
            VatCategory.ZERO_RATED: "Zero rated",
            VatCategory.EXEMPT: "Exempt from VAT",
            VatCategory.OUT_OF_SCOPE: "Not subject to VAT",
        }[self]


class VatExemptionReason(Enum):
    # Exempt
    FINANCIAL_SERVICES = "VATEX-SA-29"
    LIFE_INSURANCE = "VATEX-SA-29-7"
    REAL_ESTATE = "VATEX-SA-30"
    # Zero rated
    EXPORT_GOODS = "VATEX-SA-32"
    EXPORT_SERVICES = "VATEX-SA-33"
    INTERNATIONAL_TRANSPORT_GOODS = "VATEX-SA-34-1"
    INTERNATIONAL_TRANSPORT_PASSENGERS = "VATEX-SA-34-2"
    TRANSPORT_RELATED_SERVICES = "VATEX-SA-34-3"
    TRANSPORT_MEANS_SUPPLY = "VATEX-SA-34-4"
    TRANSPORT_MEANS_SERVICES = "VATEX-SA-34-5"
    MEDICINES = "VATEX-SA-35"
    INVESTMENT_METALS = "VATEX-SA-36"
    PRIVATE_EDUCATION = "VATEX-SA-EDU"
    PRIVATE_HEALTHCARE = "VATEX-SA-HEA"
    MILITARY_GOODS = "VATEX-SA-MLTRY"
    # Out of scope
    OUT_OF_SCOPE = "VATEX-SA-OOS"

    @property
    def description(self) -> str:
        return _EXEMPTION_DESCRIPTIONS[self]

    @property
    def category(self) -> VatCategory:
        if self in (VatExemptionReason.FINANCIAL_SERVICES,
                    VatExemptionReason.LIFE_INSURANCE,
                    VatExemptionReason.REAL_ESTATE):
            return VatCategory.EXEMPT
        if self is VatExemptionReason.OUT_OF_SCOPE:
            return VatCategory.OUT_OF_SCOPE
        return VatCategory.ZERO_RATED


_EXEMPTION_DESCRIPTIONS = {
    VatExemptionReason.FINANCIAL_SERVICES: "Financial services mentioned in Article 29 of the VAT Regulations",
    VatExemptionReason.LIFE_INSURANCE: "Life insurance services mentioned in Article 29 of the VAT Regulations",
    VatExemptionReason.REAL_ESTATE: "Real estate transactions mentioned in Article 30 of the VAT Regulations",
    VatExemptionReason.EXPORT_GOODS: "Export of goods",
    VatExemptionReason.EXPORT_SERVICES: "Export of services",
    VatExemptionReason.INTERNATIONAL_TRANSPORT_GOODS: "The international transport of Goods",
    VatExemptionReason.INTERNATIONAL_TRANSPORT_PASSENGERS: "International transport of passengers",
    VatExemptionReason.TRANSPORT_RELATED_SERVICES: "Services directly connected and incidental to a Supply of international passenger transport",
    VatExemptionReason.TRANSPORT_MEANS_SUPPLY: "Supply of a qualifying means of transport",
    VatExemptionReason.TRANSPORT_MEANS_SERVICES: "Any services relating to Goods or passenger transportation, as defined in article twenty five of these Regulations",
    VatExemptionReason.MEDICINES: "Medicines and medical equipment",
    VatExemptionReason.INVESTMENT_METALS: "Qualifying metals",
    VatExemptionReason.PRIVATE_EDUCATION: "Private education to citizen",
    VatExemptionReason.PRIVATE_HEALTHCARE: "Private healthcare to citizen",
    VatExemptionReason.MILITARY_GOODS: "Supply of qualified military goods",
    VatExemptionReason.OUT_OF_SCOPE: "Reason is free text, to be provided by the taxpayer on case to case basis",
}


class PaymentMethod(Enum):
    CASH = "10"
    CREDIT = "30"
    BANK_CARD = "48"
    DIRECT_DEBIT = "49"
    BANK_TRANSFER = "42"
    UNKNOWN = "1"


class CertificateType(Enum):
    COMPLIANCE = "compliance"
    PRODUCTION = "production"
