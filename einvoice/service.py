import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from einvoice.builder import UblInvoiceBuilder, extract_qr, inject_qr
from einvoice.certificates import Certificate, CertificateManager
from einvoice.client import SubmissionResult, ZatcaClient
from einvoice.config import Settings
from einvoice.debug import DebugDumper
from einvoice.enums import CertificateType
from einvoice.errors import EInvoiceError
from einvoice.ledger import ChainEntry, HashChainLedger
from einvoice.models import Invoice
from einvoice.qr import build_qr
from einvoice.signing import InvoiceSigner

logger = logging.getLogger(__name__)


class SubmissionClient(Protocol):
    def compliance_check(self, xml: str, invoice_hash: str, uuid: str,
                         certificate: Certificate) -> SubmissionResult: ...

    def report(self, xml: str, invoice_hash: str, uuid: str,
               certificate: Certificate) -> SubmissionResult: ...

    def clear(self, xml: str, invoice_hash: str, uuid: str,
              certificate: Certificate) -> SubmissionResult: ...


@dataclass
class PreparedInvoice:
    invoice: Invoice
    xml: str
    invoice_hash: str
    signature_value: str
    qr: str
    entry: ChainEntry
    certificate: Certificate


@dataclass
class ProcessedInvoice:
    prepared: PreparedInvoice
    result: SubmissionResult
    xml: str
    qr: Optional[str]

    @property
    def success(self) -> bool:
        return self.result.success


class InvoiceService:
    """
    Takes a validated invoice through chaining, rendering, signing, QR
    generation and submission.

    Nothing is written to the ledger unless signing succeeded.
    """

    def __init__(self, certificates: CertificateManager, ledger: HashChainLedger,
                 client: Optional[SubmissionClient] = None,
                 builder: Optional[UblInvoiceBuilder] = None,
                 signer: Optional[InvoiceSigner] = None,
                 dumper: Optional[DebugDumper] = None):
        self.certificates = certificates
        self.ledger = ledger
        self.client = client
        self.builder = builder or UblInvoiceBuilder()
        self.signer = signer or InvoiceSigner()
        self.dumper = dumper or DebugDumper(enabled=False)

    @classmethod
    def from_settings(cls, settings: Settings, certificates: CertificateManager,
                      ledger: HashChainLedger) -> "InvoiceService":
        return cls(
            certificates,
            ledger,
            client=ZatcaClient(settings),
            builder=UblInvoiceBuilder(home_country=settings.home_country),
            dumper=DebugDumper(settings.debug_path, settings.debug_enabled),
        )

    def prepare(self, invoice: Invoice,
                certificate_type: CertificateType = CertificateType.PRODUCTION) -> PreparedInvoice:
        certificate = self.certificates.get_active(certificate_type)

        with self.ledger.reserve() as slot:
            chained = invoice.with_chain(slot.icv, slot.previous_hash)
            xml = self.builder.build(chained)
            self.dumper.unsigned(chained.invoice_number, xml)

            signed = self.signer.sign(xml, certificate.private_key, certificate.certificate)
            chained.assign_hash(signed.invoice_hash)

            qr = build_qr(chained, signed.signature_value, signed.certificate)
            final_xml = inject_qr(signed.xml, qr)

            entry = slot.commit(signed.invoice_hash, uuid=chained.uuid,
                                invoice_number=chained.invoice_number)

        self.dumper.signed(chained.invoice_number, final_xml)
        self.dumper.qr(chained.invoice_number, qr)
        self.dumper.invoice_hash(chained.invoice_number, signed.invoice_hash)
        logger.info("Prepared invoice %s with ICV %s", chained.invoice_number, chained.icv)

        return PreparedInvoice(
            invoice=chained,
            xml=final_xml,
            invoice_hash=signed.invoice_hash,
            signature_value=signed.signature_value,
            qr=qr,
            entry=entry,
            certificate=certificate,
        )

    def _require_client(self) -> SubmissionClient:
        if self.client is None:
            raise EInvoiceError("No submission client configured")
        return self.client

    def report(self, invoice: Invoice) -> ProcessedInvoice:
        """Report a simplified (B2C) invoice."""
        client = self._require_client()
        prepared = self.prepare(invoice)
        result = client.report(prepared.xml, prepared.invoice_hash, prepared.invoice.uuid,
                               prepared.certificate)
        return ProcessedInvoice(prepared, result, prepared.xml, prepared.qr)

    def clear(self, invoice: Invoice) -> ProcessedInvoice:
        """Submit a standard (B2B) invoice for clearance.

        The cleared copy returned by the platform carries its own QR, which
        replaces the locally generated one.
        """
        client = self._require_client()
        prepared = self.prepare(invoice)
        result = client.clear(prepared.xml, prepared.invoice_hash, prepared.invoice.uuid,
                              prepared.certificate)
        xml, qr = prepared.xml, prepared.qr
        cleared = result.cleared_xml
        if result.success and cleared:
            xml = cleared
            qr = extract_qr(cleared)
        return ProcessedInvoice(prepared, result, xml, qr)

    def process(self, invoice: Invoice) -> ProcessedInvoice:
        if invoice.is_simplified:
            return self.report(invoice)
        return self.clear(invoice)

    def check_compliance(self, invoice: Invoice) -> ProcessedInvoice:
        client = self._require_client()
        prepared = self.prepare(invoice, CertificateType.COMPLIANCE)
        result = client.compliance_check(prepared.xml, prepared.invoice_hash,
                                         prepared.invoice.uuid, prepared.certificate)
        return ProcessedInvoice(prepared, result, prepared.xml, prepared.qr)
