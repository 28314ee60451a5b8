from datetime import datetime
from io import BytesIO

from pypdf import PdfReader

from conftest import make_pdf
from esign import sealing
from esign.errors import PdfSigningError
from esign.pdf_signature import verify_signature
from esign.sealing import SealLevel, seal_document
from esign.utils import sha256_bytes

SIGNED_AT = datetime(2026, 5, 1, 12, 30, 0)
PNG_1PX = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="


def _seal(original, values=None):
    return seal_document(
        original,
        values or {},
        envelope_id=42,
        signer_names=["Ann Lee", "Bob Stone"],
        signed_at=SIGNED_AT,
        contact="owner@example.com",
    )


def test_cryptographic_seal_with_field_values():
    values = {
        "1": {"type": "signature", "page": 1, "x": 72, "y": 100, "w": 120, "h": 40, "value": PNG_1PX},
        "2": {"type": "text", "page": 1, "x": 72, "y": 80, "w": 100, "h": 12, "value": "Ann Lee"},
        "3": {"type": "checkbox", "page": 1, "x": 72, "y": 60, "w": 10, "h": 10, "value": "true"},
    }
    result = _seal(make_pdf(), values)

    assert result.level is SealLevel.CRYPTOGRAPHIC
    assert result.signed
    assert result.error is None
    assert result.content_hash == sha256_bytes(result.pdf)
    assert verify_signature(result.pdf).covers_document


def test_signing_failure_falls_back_to_visual_stamp(monkeypatch):
    def broken_sign(pdf_bytes, meta, material=None):
        raise PdfSigningError("no key")

    monkeypatch.setattr(sealing, "sign_pdf", broken_sign)
    result = _seal(make_pdf())

    assert result.level is SealLevel.VISUAL
    assert not result.signed
    assert "no key" in result.error
    text = PdfReader(BytesIO(result.pdf)).pages[0].extract_text()
    assert "Ann Lee, Bob Stone" in text
    assert "/verify/42" in text


def test_unreadable_source_keeps_original_bytes():
    original = b"this is not a pdf"
    result = _seal(original)

    assert result.level is SealLevel.NONE
    assert result.pdf == original
    assert result.content_hash == sha256_bytes(original)
    assert result.error
