"""Failure taxonomy of the signing-completion pipeline.

Caller-facing errors derive from :class:`SigningError` and are mapped to HTTP
responses by the signing router. The remaining errors are raised inside the
pipeline and recovered locally; they never reach a signer.
"""
from typing import List, Optional


class SigningError(Exception):
    status_code = 400


class SignerNotFound(SigningError):
    status_code = 404

    def __init__(self, message: str = "signing link is invalid or has expired"):
        super().__init__(message)


class AlreadySigned(SigningError):
    status_code = 409

    def __init__(self, message: str = "this document has already been signed"):
        super().__init__(message)


class SigningUnavailable(SigningError):
    status_code = 409


class FieldValidationError(SigningError):
    status_code = 422

    def __init__(self, unfilled_field_ids: List[int]):
        self.unfilled_field_ids = list(unfilled_field_ids)
        super().__init__(
            f"please fill in all required fields ({len(self.unfilled_field_ids)} remaining)"
        )


class CertificateAuthorityError(RuntimeError):
    """Signing material could not be generated or loaded."""


class PdfSigningError(RuntimeError):
    """Raised when embedding a detached signature into a PDF fails."""


class StampingError(RuntimeError):
    """Raised when field values or a visual stamp cannot be drawn onto a PDF."""


class AuditTrailError(RuntimeError):
    def __init__(self, message: str, envelope_id: Optional[int] = None):
        self.envelope_id = envelope_id
        super().__init__(message)
