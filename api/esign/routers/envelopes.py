import base64
import binascii
import logging
import secrets
from html import escape
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from .. import config, storage
from ..audit import append_event, verify_event_chain
from ..auth import require_admin_access
from ..completion import distribute_envelope, expire_overdue_envelopes, send_due_reminders
from ..db import get_session
from ..email import format_sender_name, send_email
from ..models import Envelope, Event, Field, Signer
from ..pdf_signature import verify_signature
from ..schemas import EnvelopeCreate
from ..utils import as_utc, new_signer_token, sha256_bytes

logger = logging.getLogger(__name__)

router = APIRouter()

def _signing_link(signer: Signer) -> str:
    return f"{config.APP_URL}/sign/{signer.token}"

@router.post("")
def create_envelope(
    data: EnvelopeCreate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    try:
        document = base64.b64decode(data.document_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(400, "document_base64 is not valid base64")
    if not document:
        raise HTTPException(400, "document is empty")
    key = storage.source_key(secrets.token_hex(8), data.filename)
    storage.put_bytes(key, document, content_type="application/pdf")

    env = Envelope(
        name=data.name,
        owner_name=data.owner_name,
        owner_email=data.owner_email,
        source_key=key,
        source_hash=sha256_bytes(document),
        expires_at=as_utc(data.expires_at),
        reminders_enabled=data.reminders_enabled,
        reminder_interval_days=data.reminder_interval_days,
    )
    session.add(env); session.flush()

    signer_key_map = {}
    for idx, s in enumerate(data.signers):
        signer = Signer(
            envelope_id=env.id,
            name=s.name,
            email=s.email,
            routing_order=s.routing_order or idx + 1,
            token=new_signer_token(env.id),
        )
        session.add(signer)
        session.flush()
        for k in (s.client_id, s.email, f"signer-{idx}"):
            if k:
                signer_key_map.setdefault(k, signer.id)
    for f in data.fields:
        target_signer_id = signer_key_map.get(f.signer_key)
        if target_signer_id is None:
            session.rollback()
            raise HTTPException(400, f"field references unknown signer '{f.signer_key}'")
        session.add(Field(
            envelope_id=env.id,
            signer_id=target_signer_id,
            page=f.page,
            x=f.x,
            y=f.y,
            w=f.w,
            h=f.h,
            type=f.type,
            required=f.required,
            name=f.name,
        ))
    append_event(session, env.id, "owner", "created", {"source_hash": env.source_hash}, commit=False)
    session.commit()
    return {"id": env.id, "status": env.status}

@router.post("/expire-overdue")
def expire_overdue(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return {"expired": expire_overdue_envelopes(session)}

@router.post("/send-reminders")
def send_reminders_route(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    sent = send_due_reminders(session)
    return {"reminded": {
        str(envelope_id): [r.recipient.email for r in results if r.delivered]
        for envelope_id, results in sent.items()
    }}

@router.post("/{envelope_id}/send")
def send_envelope(
    envelope_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    env = session.get(Envelope, envelope_id)
    if not env:
        raise HTTPException(404, "envelope not found")
    if not distribute_envelope(session, envelope_id):
        raise HTTPException(409, "envelope has already been sent")
    session.refresh(env)

    signers = session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.routing_order)
    ).all()
    requester_name = env.owner_name or "Your contact"
    sender_label = format_sender_name(env.owner_name)
    for s in signers:
        link = _signing_link(s)
        subject = f"Signature Requested: {env.name}"
        text_body = f"""{requester_name} sent you a document to review and sign.
Document: “{env.name}”

Open document: {link}
"""
        link_html = escape(link)
        html_body = f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Signature requested</h2>
      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">
        {escape(requester_name)} sent you <strong>{escape(env.name)}</strong> to review and sign.
      </p>
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Review &amp; Sign
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>
    </div>
  </body>
</html>
"""
        try:
            send_email(s.email, subject, text_body, html_body=html_body, sender_name=sender_label, reply_to=env.owner_email)
        except Exception:
            logger.exception("signature request to %s failed", s.email)
    return {"ok": True, "status": env.status}

@router.get("/{envelope_id}")
def get_envelope(
    envelope_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    env = session.get(Envelope, envelope_id)
    if not env:
        raise HTTPException(404, "envelope not found")
    signers = session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.routing_order)
    ).all()
    events = session.exec(select(Event).where(Event.envelope_id == envelope_id).order_by(Event.id)).all()
    return {
        "id": env.id,
        "name": env.name,
        "owner_email": env.owner_email,
        "status": env.status,
        "created_at": env.created_at,
        "completed_at": env.completed_at,
        "expires_at": env.expires_at,
        "last_reminder_at": env.last_reminder_at,
        "source_hash": env.source_hash,
        "final_key": env.final_key,
        "final_hash": env.final_hash,
        "audit_key": env.audit_key,
        "seal_level": env.seal_level,
        "audit_chain_valid": verify_event_chain(events),
        "signers": [
            {
                "id": s.id,
                "name": s.name,
                "email": s.email,
                "status": s.status,
                "signed_at": s.signed_at,
                "signature_hash": s.signature_hash,
            }
            for s in signers
        ],
    }

@router.get("/{envelope_id}/verify")
def verify_envelope(
    envelope_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    env = session.get(Envelope, envelope_id)
    if not env:
        raise HTTPException(404, "envelope not found")
    if not env.final_key:
        raise HTTPException(404, "final artifact not ready")
    info = verify_signature(storage.get_bytes(env.final_key))
    return {
        "envelope_id": env.id,
        "has_signature": info.has_signature,
        "signer_name": info.signer_name,
        "signed_at": info.signed_at,
        "covers_document": info.covers_document,
        "certificate_subject": info.certificate_subject,
        "final_hash": env.final_hash,
    }

# Dev helper: get signing links without tailing logs
@router.get("/{envelope_id}/signing-links")
def signing_links(
    envelope_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    env = session.get(Envelope, envelope_id)
    if not env:
        raise HTTPException(404, "envelope not found")
    signers = session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.routing_order)
    ).all()
    return {
        "envelope_id": envelope_id,
        "links": [
            {"signer": {"id": s.id, "name": s.name, "email": s.email}, "token": s.token, "link": _signing_link(s)}
            for s in signers
        ],
    }
