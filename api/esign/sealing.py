import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from . import config
from .errors import PdfSigningError, StampingError
from .pdf_signature import SignatureMetadata, sign_pdf
from .stamping import stamp_pdf
from .utils import sha256_bytes

logger = logging.getLogger(__name__)


class SealLevel(str, Enum):
    CRYPTOGRAPHIC = "cryptographic"
    VISUAL = "visual"
    NONE = "none"


@dataclass(frozen=True)
class SealResult:
    """Final artifact of an envelope and how far sealing got.

    ``CRYPTOGRAPHIC`` carries an embedded detached signature, ``VISUAL`` only a
    drawn signature box, ``NONE`` is the untouched source document.
    """
    pdf: bytes
    content_hash: str
    level: SealLevel
    error: Optional[str] = None

    @property
    def signed(self) -> bool:
        return self.level is SealLevel.CRYPTOGRAPHIC


def verify_url(envelope_id: int) -> str:
    return f"{config.APP_URL}/verify/{envelope_id}"


def seal_document(
    original: bytes,
    values: Dict[str, dict],
    *,
    envelope_id: int,
    signer_names: List[str],
    signed_at: datetime,
    contact: str,
) -> SealResult:
    """Stamp field values and embed a detached signature, degrading on failure."""
    try:
        stamped = stamp_pdf(original, values, signed_at)
        signed = sign_pdf(stamped, SignatureMetadata(
            reason=f"Signed by all parties via {config.PRODUCT_NAME}",
            location=config.SIGNING_LOCATION,
            contact=contact,
            name=", ".join(signer_names) or None,
        ))
        return SealResult(pdf=signed, content_hash=sha256_bytes(signed), level=SealLevel.CRYPTOGRAPHIC)
    except (StampingError, PdfSigningError) as exc:
        error = str(exc)
        logger.error("cryptographic sealing failed for envelope %s, using visual stamp: %s", envelope_id, exc)

    try:
        stamped = stamp_pdf(original, values, signed_at, signer_names=signer_names, verify_url=verify_url(envelope_id))
        return SealResult(pdf=stamped, content_hash=sha256_bytes(stamped), level=SealLevel.VISUAL, error=error)
    except StampingError as exc:
        logger.error("visual stamp failed for envelope %s, keeping source document: %s", envelope_id, exc)
        return SealResult(
            pdf=original,
            content_hash=sha256_bytes(original),
            level=SealLevel.NONE,
            error=f"{error}; {exc}",
        )
