import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from einvoice.builder import check_document
from einvoice.errors import CodecError, SigningError
from einvoice.hashing import invoice_hash
from einvoice.qr import describe_qr, validate_qr
from einvoice.signing import InvoiceSigner

logger = logging.getLogger("einvoice.api")

router = APIRouter()


class InvoiceXmlReq(BaseModel):
    xml: str


class QrReq(BaseModel):
    qr: str


@router.post("/hash", summary="Compute the invoice hash of a rendered document")
async def hash_invoice(data: InvoiceXmlReq):
    try:
        return {"invoice_hash": invoice_hash(data.xml)}
    except SigningError as e:
        logger.error("Hash request rejected: %s", e.message)
        raise HTTPException(status_code=422, detail=e.message)


@router.post("/verify", summary="Verify the XAdES signature of a signed invoice")
async def verify_invoice(data: InvoiceXmlReq):
    """
    Recomputes the invoice hash and the signed properties digest, then checks
    the signature value against the certificate embedded in the document.
    """
    try:
        valid = InvoiceSigner().verify(data.xml)
    except SigningError as e:
        logger.error("Verify request rejected: %s", e.message)
        raise HTTPException(status_code=422, detail=e.message)
    logger.info("Signature verification result: %s", valid)
    return {"valid": valid}


@router.post("/qr/decode", summary="Decode and validate a QR payload")
async def decode_qr(data: QrReq):
    try:
        tags = describe_qr(data.qr)
    except CodecError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"tags": tags, "problems": validate_qr(data.qr)}


@router.post("/check", summary="Structural checks on a rendered invoice")
async def check_invoice(data: InvoiceXmlReq):
    problems = check_document(data.xml)
    return {"valid": not problems, "problems": problems}
