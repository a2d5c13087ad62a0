import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from einvoice.certificates import Certificate
from einvoice.config import Settings
from einvoice.errors import ApiError

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("binarySecurityToken", "secret")


@dataclass
class SubmissionResult:
    status_code: int
    success: bool
    status: Optional[str] = None
    errors: List[Any] = field(default_factory=list)
    warnings: List[Any] = field(default_factory=list)
    cleared_invoice: Optional[str] = None
    body: Any = None

    @property
    def cleared_xml(self) -> Optional[str]:
        if not self.cleared_invoice:
            return None
        try:
            return base64.b64decode(self.cleared_invoice, validate=True).decode("utf-8")
        except (binascii.Error, ValueError) as e:
            raise ApiError(f"Cleared invoice is not valid base64 XML: {e}", self.status_code) from e


def _redact(body: Any) -> Any:
    if isinstance(body, dict):
        return {k: ("***" if k in SENSITIVE_KEYS else v) for k, v in body.items()}
    return body


class ZatcaClient:
    """Submits signed invoices to the Fatoora gateway.

    Retries are left to the caller; every call makes exactly one request.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.base_url = settings.api_base_url.rstrip("/")
        self.api_version = settings.api_version
        self.language = settings.language
        self.timeout = settings.http_timeout
        self.session = session or requests.Session()

    def compliance_check(self, xml: str, invoice_hash: str, uuid: str,
                         certificate: Certificate) -> SubmissionResult:
        return self._submit("compliance/invoices", xml, invoice_hash, uuid, certificate)

    def report(self, xml: str, invoice_hash: str, uuid: str,
               certificate: Certificate) -> SubmissionResult:
        return self._submit("invoices/reporting/single", xml, invoice_hash, uuid, certificate)

    def clear(self, xml: str, invoice_hash: str, uuid: str,
              certificate: Certificate) -> SubmissionResult:
        return self._submit("invoices/clearance/single", xml, invoice_hash, uuid, certificate,
                            extra_headers={"Clearance-Status": "1"})

    def _submit(self, endpoint: str, xml: str, invoice_hash: str, uuid: str,
                certificate: Certificate, extra_headers: Optional[dict] = None) -> SubmissionResult:
        url = f"{self.base_url}/{endpoint}"

        # Basic Authentication using binary token and secret
        auth = HTTPBasicAuth(*certificate.auth_credentials())

        headers = {
            "Content-Type": "application/json",
            "Accept-Version": self.api_version,
            "Accept-Language": self.language,
        }
        headers.update(extra_headers or {})

        payload = {
            "invoiceHash": invoice_hash,
            "uuid": uuid,
            "invoice": base64.b64encode(xml.encode("utf-8")).decode("ascii"),
        }

        logger.info("POST %s (uuid=%s)", url, uuid)
        try:
            response = self.session.post(url, json=payload, headers=headers, auth=auth,
                                         timeout=self.timeout)
        except requests.RequestException as e:
            logger.exception("HTTP request to %s failed", url)
            raise ApiError(f"Connection to the e-invoicing API failed: {e}")

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.status_code == 401:
            logger.error("Authentication rejected by %s", url)
            raise ApiError.authentication_failed()
        if response.status_code >= 500:
            logger.error("API returned %s: %s", response.status_code, _redact(body))
            raise ApiError.from_response(response.status_code, body)

        result = self._result(response.status_code, body)
        if result.success:
            logger.info("API accepted uuid=%s with status %s", uuid, result.status)
        else:
            logger.error("API rejected uuid=%s (%s): %s", uuid, response.status_code,
                         _redact(body))
        return result

    @staticmethod
    def _result(status_code: int, body: Any) -> SubmissionResult:
        if not isinstance(body, dict):
            return SubmissionResult(status_code, status_code in (200, 202), body=body)
        validation = body.get("validationResults") or {}
        status = (body.get("reportingStatus") or body.get("clearanceStatus")
                  or validation.get("status"))
        return SubmissionResult(
            status_code=status_code,
            success=status_code in (200, 202),
            status=status,
            errors=validation.get("errorMessages") or body.get("errors") or [],
            warnings=validation.get("warningMessages") or [],
            cleared_invoice=body.get("clearedInvoice"),
            body=body,
        )
