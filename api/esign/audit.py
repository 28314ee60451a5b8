"""
Audit records for envelopes.

- ``signature_commitment``: the proof-of-binding value computed when a signer
  signs. SHA-256 over ``document_hash|signer_id|signer_email|signed_at|ip|ua``
  in that order, ``signed_at`` as ISO-8601 UTC with milliseconds and a ``Z``
  suffix, absent ip/ua as empty strings.
- ``append_event``: per-envelope event log where each row's hash covers the
  previous row's hash.
- ``render_audit_trail``: the companion PDF listing every signer's signing
  record and the final content hash.
"""

import hashlib
import logging
from datetime import datetime, timezone
from io import BytesIO
from typing import Iterable, Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlmodel import Session, select

from .config import PRODUCT_NAME
from .errors import AuditTrailError
from .models import Envelope, Event, Signer
from .utils import as_utc, canonical_json, sha256_bytes

logger = logging.getLogger(__name__)


def iso_millis(value: datetime) -> str:
    value = as_utc(value).astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def signature_commitment(
    document_hash: str,
    signer_id,
    signer_email: str,
    signed_at: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    payload = "|".join([
        document_hash,
        str(signer_id),
        signer_email,
        iso_millis(signed_at),
        ip_address or "",
        user_agent or "",
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def append_event(session: Session, env_id: int, actor: str, type_: str, meta: dict, ip=None, ua=None, commit=True) -> Event:
    last = session.exec(select(Event).where(Event.envelope_id == env_id).order_by(Event.id.desc())).first()
    prev_hash = last.hash if last else "0" * 64
    payload = {"actor": actor, "type": type_, "meta": meta}
    event = Event(
        envelope_id=env_id, actor=actor, type=type_,
        meta_json=canonical_json(payload), prev_hash=prev_hash,
        ip=ip, ua=ua,
    )
    event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
    session.add(event)
    if commit:
        session.commit()
    else:
        session.flush()
    logger.debug("audit event %s recorded for envelope %s", type_, env_id)
    return event


def verify_event_chain(events: Iterable[Event]) -> bool:
    prev = "0" * 64
    for event in events:
        if event.prev_hash != prev:
            return False
        if event.hash != sha256_bytes((prev + event.meta_json).encode()):
            return False
        prev = event.hash
    return True


def _fmt(value: Optional[datetime]) -> str:
    return f"{value:%Y-%m-%d %H:%M:%S} UTC" if value else "-"


def render_audit_trail(envelope: Envelope, signers: Iterable[Signer], final_hash: Optional[str]) -> bytes:
    try:
        lines = [
            ("Document", envelope.name),
            ("Envelope ID", envelope.id),
            ("Owner", f"{envelope.owner_name or ''} <{envelope.owner_email}>".strip()),
            ("Created", _fmt(envelope.created_at)),
            ("Completed", _fmt(envelope.completed_at)),
            ("Source SHA-256", envelope.source_hash),
            ("Final SHA-256", final_hash or "-"),
        ]
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)
        width, height = A4
        c.setTitle(f"Audit trail - {envelope.name}")
        c.setFont("Helvetica-Bold", 14)
        c.drawString(50, height - 60, "Certificate of Completion")
        c.setFont("Helvetica", 9)
        c.drawString(50, height - 74, f"{PRODUCT_NAME} - electronic signature audit trail")
        y = height - 100

        def line(text, bold=False):
            nonlocal y
            if y < 60:
                c.showPage(); y = height - 60
            c.setFont("Helvetica-Bold" if bold else "Helvetica", 10 if bold else 9)
            c.drawString(50, y, text[:110])
            y -= 14

        for k, v in lines:
            line(f"{k}: {v}")
        y -= 10
        line("Signers", bold=True)
        for s in signers:
            y -= 4
            line(f"{s.name} <{s.email}>", bold=True)
            line(f"  Status: {s.status}")
            line(f"  Signed at: {_fmt(s.signed_at)}")
            line(f"  IP address: {s.ip_address or '-'}")
            line(f"  User agent: {s.user_agent or '-'}")
            line(f"  Signature hash: {s.signature_hash or '-'}")
        c.showPage(); c.save()
        return buf.getvalue()
    except Exception as exc:
        raise AuditTrailError(f"audit trail rendering failed: {exc}", envelope_id=envelope.id) from exc
