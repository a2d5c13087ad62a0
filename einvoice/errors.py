from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message, "code": self.code}


class EInvoiceError(Exception):
    """Base class for every error raised by the e-invoicing core."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(EInvoiceError):
    """Invoice data is invalid. Carries every problem found, not just the first."""

    def __init__(self, errors: List[FieldError], message: str = "Invoice validation failed"):
        super().__init__(message, {"errors": [e.to_dict() for e in errors]})
        self.errors = list(errors)

    @classmethod
    def from_errors(cls, errors: List[FieldError]) -> "ValidationError":
        return cls(errors, "Invoice validation failed: " + "; ".join(e.message for e in errors))

    @property
    def fields(self) -> List[str]:
        return [e.field for e in self.errors]


class CertificateError(EInvoiceError):
    @classmethod
    def not_found(cls, certificate_type: str) -> "CertificateError":
        return cls(f"No active {certificate_type} certificate found", {"type": certificate_type})

    @classmethod
    def expired(cls, expires_at) -> "CertificateError":
        return cls(f"Certificate expired at {expires_at}", {"expires_at": str(expires_at)})

    @classmethod
    def invalid(cls, reason: str) -> "CertificateError":
        return cls(f"Invalid certificate: {reason}", {"reason": reason})

    @classmethod
    def key_mismatch(cls) -> "CertificateError":
        return cls("Private key does not match the certificate public key")


class SigningError(EInvoiceError):
    pass


class ChainIntegrityError(EInvoiceError):
    def __init__(self, mismatches: list):
        super().__init__(
            f"Hash chain broken at {len(mismatches)} point(s)",
            {"icvs": [m.icv for m in mismatches]},
        )
        self.mismatches = list(mismatches)


class CodecError(EInvoiceError):
    pass


class ApiError(EInvoiceError):
    """Raised by the remote client for transport and authentication failures."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errors: Optional[list] = None, warnings: Optional[list] = None):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.errors = errors or []
        self.warnings = warnings or []

    @classmethod
    def from_response(cls, status_code: int, body: Any) -> "ApiError":
        errors, warnings = [], []
        if isinstance(body, dict):
            results = body.get("validationResults") or {}
            errors = results.get("errorMessages") or body.get("errors") or []
            warnings = results.get("warningMessages") or []
            message = body.get("message") or f"API request failed with status {status_code}"
        else:
            message = f"API request failed with status {status_code}"
        return cls(message, status_code, errors, warnings)

    @classmethod
    def authentication_failed(cls) -> "ApiError":
        return cls("Authentication failed: check the certificate and secret", 401)
