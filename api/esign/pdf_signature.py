"""
Detached PDF signatures.

``sign_pdf`` appends an incremental update with a new signature field to an
existing PDF and fills it with an ``adbe.pkcs7.detached`` CMS signature made
with the process-wide signing material. pyHanko reserves the ``/Contents``
region, computes the byte range that excludes it and splices the DER
signature in, so the original bytes are kept untouched as the file's prefix.

``verify_signature`` is advisory only: it reports whether a signature is
present, what it claims and whether its byte range spans the whole file,
without validating the certificate chain.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Optional

from cryptography import x509
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.pdf_utils.misc import PdfError
from pyhanko.pdf_utils.reader import PdfFileReader
from pyhanko.sign import signers
from pyhanko.sign.fields import SigFieldSpec, SigSeedSubFilter, enumerate_sig_fields
from pyhanko.sign.validation import SignatureCoverageLevel

from . import certificates, config
from .errors import CertificateAuthorityError, PdfSigningError

logger = logging.getLogger(__name__)

_INSPECTION_ERRORS = (PdfError, ValueError, KeyError, IndexError, TypeError)


@dataclass(frozen=True)
class SignatureMetadata:
    reason: str
    location: str
    contact: str
    name: Optional[str] = None


@dataclass(frozen=True)
class SignatureInfo:
    has_signature: bool
    signer_name: Optional[str] = None
    signed_at: Optional[datetime] = None
    covers_document: bool = False
    certificate_subject: Optional[str] = None


def sign_pdf(pdf_bytes: bytes, meta: SignatureMetadata, material=None) -> bytes:
    """Return ``pdf_bytes`` with an embedded detached signature.

    Raises:
        PdfSigningError: if signing material is unavailable, the document
            cannot be parsed or updated, or the signature does not fit the
            reserved space.
    """
    try:
        material = material or certificates.materialize()
    except CertificateAuthorityError as exc:
        raise PdfSigningError(f"signing material unavailable: {exc}") from exc

    try:
        writer = IncrementalPdfFileWriter(BytesIO(pdf_bytes))
        field_name = f"Signature{len(list(enumerate_sig_fields(writer))) + 1}"
        out = signers.sign_pdf(
            writer,
            signature_meta=signers.PdfSignatureMetadata(
                field_name=field_name,
                name=meta.name or material.common_name,
                reason=meta.reason,
                location=meta.location,
                contact_info=meta.contact,
                md_algorithm="sha256",
                subfilter=SigSeedSubFilter.ADOBE_PKCS7_DETACHED,
            ),
            signer=material.pdf_signer(),
            new_field_spec=SigFieldSpec(sig_field_name=field_name),
            bytes_reserved=config.SIGNATURE_PLACEHOLDER_BYTES,
        )
    except Exception as exc:
        raise PdfSigningError(f"detached signing failed: {exc}") from exc

    signed = out.getvalue()
    logger.info("embedded detached signature %s (%d -> %d bytes)", field_name, len(pdf_bytes), len(signed))
    return signed


def verify_signature(pdf_bytes: bytes) -> SignatureInfo:
    try:
        reader = PdfFileReader(BytesIO(pdf_bytes), strict=False)
        embedded = reader.embedded_regular_signatures
    except _INSPECTION_ERRORS as exc:
        logger.debug("signature inspection failed: %s", exc)
        return SignatureInfo(has_signature=False)
    if not embedded:
        return SignatureInfo(has_signature=False)

    sig = embedded[-1]
    name = sig.sig_object.get("/Name")
    try:
        covers = sig.evaluate_signature_coverage() == SignatureCoverageLevel.ENTIRE_FILE
    except _INSPECTION_ERRORS as exc:
        logger.debug("could not evaluate signature coverage: %s", exc)
        covers = False
    return SignatureInfo(
        has_signature=True,
        signer_name=str(name) if name is not None else None,
        signed_at=signing_time(sig),
        covers_document=covers,
        certificate_subject=_certificate_subject(sig),
    )


def signing_time(sig) -> Optional[datetime]:
    """Self-reported signing time, or None when it is absent or unreadable."""
    try:
        return sig.self_reported_timestamp
    except _INSPECTION_ERRORS as exc:
        logger.debug("unreadable signing time: %s", exc)
        return None


def _certificate_subject(sig) -> Optional[str]:
    try:
        cert = x509.load_der_x509_certificate(sig.signer_cert.dump())
    except _INSPECTION_ERRORS as exc:
        logger.debug("could not read signer certificate: %s", exc)
        return None
    return cert.subject.rfc4514_string()
