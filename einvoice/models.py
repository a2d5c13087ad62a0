import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, ClassVar, Dict, List, Optional
from uuid import uuid4

from einvoice.enums import (
    InvoiceSubType,
    InvoiceType,
    PaymentMethod,
    VatCategory,
    VatExemptionReason,
)
from einvoice.errors import FieldError, ValidationError

CENT = Decimal("0.01")
VAT_NUMBER_PATTERN = re.compile(r"^3\d{14}$")


def money(value) -> Decimal:
    """Round half-up to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_decimal(value) -> Decimal:
    """Strict conversion: raises ``InvalidOperation`` for text, NaN and infinities."""
    number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    if not number.is_finite():
        raise InvalidOperation(f"{value} is not a finite number")
    return number


def to_decimal(value, field_name: str = "amount") -> Decimal:
    try:
        return parse_decimal(value)
    except InvalidOperation:
        raise ValidationError.from_errors(
            [FieldError(field_name, f"'{value}' is not a number", "not_a_number")]
        )


def _convert(errors: List[FieldError], path: str, value, convert: Callable, message: str, code: str):
    """Apply ``convert`` to ``value``; on failure record a FieldError and return None."""
    try:
        return convert(value)
    except (ValueError, TypeError, ArithmeticError):
        errors.append(FieldError(path, message, code))
        return None


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ========== PARTIES ==========
@dataclass
class Address:
    street: Optional[str] = None
    building: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    district: Optional[str] = None
    plot: Optional[str] = None
    additional_street: Optional[str] = None
    country_subentity: Optional[str] = None
    country: str = "SA"

    REQUIRED: ClassVar[tuple] = ("street", "building", "postal_code", "city", "district")

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Party:
    name: Optional[str] = None
    name_ar: Optional[str] = None
    vat_number: Optional[str] = None
    registration_number: Optional[str] = None
    registration_scheme: str = "CRN"
    address: Optional[Address] = None

    @property
    def display_name(self) -> str:
        return self.name_ar or self.name or ""

    @property
    def country(self) -> Optional[str]:
        return self.address.country if self.address else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Party":
        data = dict(data)
        address = data.pop("address", None)
        known = {f.name for f in dataclasses.fields(cls)}
        party = cls(**{k: v for k, v in data.items() if k in known})
        if address is not None:
            party.address = address if isinstance(address, Address) else Address.from_dict(address)
        return party


# ========== LINE ITEMS ==========
@dataclass
class LineItem:
    name: str
    quantity: Decimal
    unit_price: Decimal
    vat_category: VatCategory = VatCategory.STANDARD
    vat_rate: Optional[Decimal] = None
    exemption_reason: Optional[VatExemptionReason] = None
    discount: Decimal = Decimal("0")
    unit_code: str = "PCE"

    AMOUNTS: ClassVar[tuple] = ("quantity", "unit_price", "discount", "vat_rate")

    def __post_init__(self):
        if self.discount is None:
            self.discount = Decimal("0")
        errors = [
            FieldError(name, f"Line item: {name.replace('_', ' ')} is required", "required")
            for name in ("quantity", "unit_price") if getattr(self, name) is None
        ]
        errors.extend(self.coerce(vars(self)))
        if errors:
            raise ValidationError.from_errors(errors)

    @classmethod
    def coerce(cls, values: Dict[str, Any], index: Optional[int] = None) -> List[FieldError]:
        """Convert amounts and codes in ``values`` in place.

        Returns one FieldError per value that could not be converted, with
        ``line_items[index].`` prefixed to the field when an index is given.
        """
        prefix = "" if index is None else f"line_items[{index}]."
        line = "Line item" if index is None else f"Line {index + 1}"
        errors: List[FieldError] = []
        for name in cls.AMOUNTS:
            value = values.get(name)
            if value is None or (isinstance(value, Decimal) and value.is_finite()):
                continue
            values[name] = _convert(errors, prefix + name, value, parse_decimal,
                                    f"{line}: {name.replace('_', ' ')} '{value}' is not a number",
                                    "not_a_number")
        values["vat_category"] = _convert(
            errors, prefix + "vat_category", values.get("vat_category", VatCategory.STANDARD),
            VatCategory, f"{line}: unknown VAT category '{values.get('vat_category')}'", "unknown_code",
        )
        if values.get("exemption_reason") is not None:
            values["exemption_reason"] = _convert(
                errors, prefix + "exemption_reason", values["exemption_reason"], VatExemptionReason,
                f"{line}: unknown exemption reason '{values['exemption_reason']}'", "unknown_code",
            )
        return errors

    @property
    def rate(self) -> Decimal:
        if self.vat_rate is not None:
            return self.vat_rate
        return self.vat_category.default_rate

    @property
    def gross_amount(self) -> Decimal:
        return money(self.quantity * self.unit_price)

    @property
    def subtotal(self) -> Decimal:
        return money(self.quantity * self.unit_price - self.discount)

    @property
    def vat_amount(self) -> Decimal:
        return money(self.subtotal * self.rate / Decimal("100"))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.vat_amount

    def problems(self, index: int = 0) -> List[FieldError]:
        prefix = f"line_items[{index}]"
        errors = []
        if _blank(self.name):
            errors.append(FieldError(f"{prefix}.name", f"Line {index + 1}: name is required", "required"))
        if self.quantity <= 0:
            errors.append(FieldError(f"{prefix}.quantity",
                                     f"Line {index + 1}: quantity must be greater than zero",
                                     "must_be_positive"))
        if self.unit_price < 0:
            errors.append(FieldError(f"{prefix}.unit_price",
                                     f"Line {index + 1}: unit price cannot be negative",
                                     "must_not_be_negative"))
        if self.discount < 0:
            errors.append(FieldError(f"{prefix}.discount",
                                     f"Line {index + 1}: discount cannot be negative",
                                     "must_not_be_negative"))
        elif self.discount > self.quantity * self.unit_price:
            errors.append(FieldError(f"{prefix}.discount",
                                     f"Line {index + 1}: discount exceeds quantity x price",
                                     "discount_too_large"))
        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "LineItem":
        """Build a line item, reporting every missing or unconvertible value at once.

        Field paths are ``line_items[index].<name>`` so the errors can be
        merged into the enclosing invoice's report.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        errors = []
        for name in ("name", "quantity", "unit_price"):
            if _blank(values.get(name)):
                values.pop(name, None)
                errors.append(FieldError(f"line_items[{index}].{name}",
                                         f"Line {index + 1}: {name.replace('_', ' ')} is required",
                                         "required"))
        errors.extend(cls.coerce(values, index))
        if errors:
            raise ValidationError.from_errors(errors)
        values["name"] = str(values["name"])
        return cls(**values)


@dataclass(frozen=True)
class VatBreakdown:
    category: VatCategory
    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    exemption_reason: Optional[VatExemptionReason] = None


# ========== INVOICE ==========
@dataclass
class Invoice:
    """A single tax invoice, credit note or debit note.

    Construction validates the whole document and raises one
    :class:`ValidationError` listing every problem. ``icv`` and
    ``previous_hash`` are normally filled in by the ledger through
    :meth:`with_chain`, and ``invoice_hash`` is assigned exactly once after
    the document has been canonicalized and signed.
    """

    invoice_number: str
    seller: Optional[Party]
    line_items: List[LineItem]
    invoice_type: InvoiceType = InvoiceType.TAX_INVOICE
    sub_type: InvoiceSubType = InvoiceSubType.STANDARD
    issued_at: datetime = field(default_factory=lambda: datetime.now().replace(microsecond=0))
    buyer: Optional[Party] = None
    supplied_at: Optional[datetime] = None
    currency: str = "SAR"
    uuid: str = field(default_factory=lambda: str(uuid4()))
    icv: Optional[int] = None
    previous_hash: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payment_terms: Optional[str] = None
    original_invoice: Optional[str] = None
    reason: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    invoice_hash: Optional[str] = None

    CODES: ClassVar[Dict[str, type]] = {
        "invoice_type": InvoiceType,
        "sub_type": InvoiceSubType,
        "payment_method": PaymentMethod,
    }

    def __post_init__(self):
        errors = self.coerce(vars(self))
        if errors:
            raise ValidationError.from_errors(errors)
        errors = self.problems()
        if errors:
            raise ValidationError.from_errors(errors)

    @classmethod
    def coerce(cls, values: Dict[str, Any]) -> List[FieldError]:
        """Convert enum codes and ISO timestamps in ``values`` in place."""
        errors: List[FieldError] = []
        for name, enum in cls.CODES.items():
            if name not in values:
                continue
            if values[name] is None:
                if name != "payment_method":
                    errors.append(FieldError(name, f"{name.replace('_', ' ').capitalize()} is required",
                                             "required"))
                continue
            values[name] = _convert(errors, name, values[name], enum,
                                    f"Unknown {name.replace('_', ' ')} '{values[name]}'",
                                    "unknown_code")
        if "issued_at" in values and values["issued_at"] is None:
            errors.append(FieldError("issued_at", "Issue date is required", "required"))
        for name in ("issued_at", "supplied_at"):
            if values.get(name) is not None:
                values[name] = _convert(errors, name, values[name], _parse_timestamp,
                                        f"{name} '{values[name]}' is not an ISO-8601 timestamp",
                                        "invalid_timestamp")
        return errors

    def problems(self) -> List[FieldError]:
        errors = []
        if not self.invoice_number or not str(self.invoice_number).strip():
            errors.append(FieldError("invoice_number", "Invoice number is required", "required"))

        if self.seller is None:
            errors.append(FieldError("seller", "Seller information is required", "required"))
        else:
            if not self.seller.vat_number:
                errors.append(FieldError("seller.vat_number", "Seller VAT number is required", "required"))
            if not self.seller.name and not self.seller.name_ar:
                errors.append(FieldError("seller.name", "Seller name is required", "required"))

        if not self.line_items:
            errors.append(FieldError("line_items", "At least one line item is required", "required"))
        for index, item in enumerate(self.line_items or []):
            errors.extend(item.problems(index))

        if not self.sub_type.is_simplified and self.buyer is None:
            errors.append(FieldError("buyer", "Buyer information is required for standard invoices",
                                     "required"))

        if self.invoice_type.is_note:
            label = self.invoice_type.label
            if not self.original_invoice:
                errors.append(FieldError("original_invoice",
                                         f"{label} requires a reference to the original invoice",
                                         "required"))
            if not self.reason:
                errors.append(FieldError("reason", f"{label} requires a reason", "required"))
        return errors

    # --------- TOTALS ---------
    @property
    def subtotal(self) -> Decimal:
        return sum((item.subtotal for item in self.line_items), Decimal("0.00"))

    @property
    def total_vat(self) -> Decimal:
        return sum((item.vat_amount for item in self.line_items), Decimal("0.00"))

    @property
    def total_with_vat(self) -> Decimal:
        return self.subtotal + self.total_vat

    @property
    def total_discount(self) -> Decimal:
        return sum((money(item.discount) for item in self.line_items), Decimal("0.00"))

    def vat_breakdown(self) -> List[VatBreakdown]:
        """Line items grouped by (category, effective rate), in first-seen order."""
        groups: Dict[tuple, Dict[str, Any]] = {}
        for item in self.line_items:
            key = (item.vat_category, item.rate)
            group = groups.setdefault(key, {
                "taxable": Decimal("0.00"),
                "tax": Decimal("0.00"),
                "reason": item.exemption_reason,
            })
            group["taxable"] += item.subtotal
            group["tax"] += item.vat_amount
            if group["reason"] is None:
                group["reason"] = item.exemption_reason
        return [
            VatBreakdown(category, rate, g["taxable"], g["tax"], g["reason"])
            for (category, rate), g in groups.items()
        ]

    # --------- FLAGS ---------
    @property
    def is_simplified(self) -> bool:
        return self.sub_type.is_simplified

    @property
    def is_note(self) -> bool:
        return self.invoice_type.is_note

    # --------- CHAIN ---------
    def with_chain(self, icv: int, previous_hash: str) -> "Invoice":
        return dataclasses.replace(self, icv=icv, previous_hash=previous_hash, invoice_hash=None)

    def assign_hash(self, invoice_hash: str) -> None:
        if self.invoice_hash is not None and self.invoice_hash != invoice_hash:
            raise ValidationError.from_errors([
                FieldError("invoice_hash", "Invoice hash has already been assigned", "already_assigned")
            ])
        self.invoice_hash = invoice_hash

    # --------- FACTORIES ---------
    @classmethod
    def standard(cls, invoice_number: str, seller: Party, buyer: Party,
                 line_items: List[LineItem], **kwargs) -> "Invoice":
        return cls(invoice_number=invoice_number, seller=seller, buyer=buyer,
                   line_items=line_items, sub_type=InvoiceSubType.STANDARD, **kwargs)

    @classmethod
    def simplified(cls, invoice_number: str, seller: Party,
                   line_items: List[LineItem], **kwargs) -> "Invoice":
        return cls(invoice_number=invoice_number, seller=seller, line_items=line_items,
                   sub_type=InvoiceSubType.SIMPLIFIED, **kwargs)

    @classmethod
    def credit_note(cls, invoice_number: str, seller: Party, line_items: List[LineItem],
                    original_invoice: str, reason: str, **kwargs) -> "Invoice":
        return cls(invoice_number=invoice_number, seller=seller, line_items=line_items,
                   invoice_type=InvoiceType.CREDIT_NOTE, original_invoice=original_invoice,
                   reason=reason, **kwargs)

    @classmethod
    def debit_note(cls, invoice_number: str, seller: Party, line_items: List[LineItem],
                   original_invoice: str, reason: str, **kwargs) -> "Invoice":
        return cls(invoice_number=invoice_number, seller=seller, line_items=line_items,
                   invoice_type=InvoiceType.DEBIT_NOTE, original_invoice=original_invoice,
                   reason=reason, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_seller: Optional[Party] = None,
                  currency: Optional[str] = None) -> "Invoice":
        """Build an invoice from a JSON-style payload.

        Timestamps are ISO-8601 strings; enum fields take their codes
        (``"388"``, ``"0200000"``, ``"10"``). Missing keys, unknown codes and
        unparseable amounts are collected across the header and every line
        and raised together as one :class:`ValidationError`. ``currency``
        applies when the payload does not name one.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        seller = values.pop("seller", None)
        buyer = values.pop("buyer", None)
        items = values.pop("line_items", [])
        if currency and "currency" not in values:
            values["currency"] = currency

        errors: List[FieldError] = []
        if _blank(values.get("invoice_number")):
            errors.append(FieldError("invoice_number", "Invoice number is required", "required"))
        else:
            values["invoice_number"] = str(values["invoice_number"])
        errors.extend(cls.coerce(values))

        parties: Dict[str, Optional[Party]] = {"seller": default_seller, "buyer": None}
        for name, party in (("seller", seller), ("buyer", buyer)):
            if isinstance(party, Party):
                parties[name] = party
            elif isinstance(party, dict):
                parties[name] = Party.from_dict(party)
            elif party is not None:
                errors.append(FieldError(name, f"{name.capitalize()} must be an object", "invalid"))
        if seller is None and default_seller is None:
            errors.append(FieldError("seller", "Seller information is required", "required"))

        line_items: List[LineItem] = []
        if not isinstance(items, list) or not items:
            errors.append(FieldError("line_items", "At least one line item is required", "required"))
            items = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                errors.append(FieldError(f"line_items[{index}]",
                                         f"Line {index + 1}: expected an object", "invalid"))
                continue
            try:
                line = LineItem.from_dict(item, index)
            except ValidationError as e:
                errors.extend(e.errors)
                continue
            errors.extend(line.problems(index))
            line_items.append(line)

        if errors:
            raise ValidationError.from_errors(errors)
        return cls(line_items=line_items, **parties, **values)
