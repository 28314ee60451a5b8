import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlmodel import Session, select

from .. import storage
from ..audit import append_event
from ..completion import (
    RequestOrigin,
    complete_signing,
    decline_signing,
    outstanding_signers,
    resolve_signer,
)
from ..db import get_session
from ..errors import FieldValidationError, SigningError
from ..models import ENVELOPE_COMPLETED, Envelope, Field
from ..schemas import SignComplete, SignDecline

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------- helpers ----------
def request_origin(request: Request) -> RequestOrigin:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    ip = ip or request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    return RequestOrigin(
        ip_address=ip or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
    )

def to_http(exc: SigningError) -> HTTPException:
    detail = str(exc)
    if isinstance(exc, FieldValidationError):
        detail = {"message": str(exc), "unfilled_fields": exc.unfilled_field_ids}
    return HTTPException(exc.status_code, detail)

def _signer_or_404(session: Session, token: str):
    try:
        return resolve_signer(session, token)
    except SigningError as exc:
        raise to_http(exc) from exc

# ---------- routes ----------

@router.get("/{token}")
def load_signing_session(token: str, request: Request, session: Session = Depends(get_session)):
    signer = _signer_or_404(session, token)
    env = session.get(Envelope, signer.envelope_id)
    fields = session.exec(select(Field).where(Field.signer_id == signer.id)).all()
    origin = request_origin(request)
    append_event(session, env.id, f"signer:{signer.id}", "opened", {}, ip=origin.ip_address, ua=origin.user_agent)
    return {
        "envelope": {"id": env.id, "name": env.name, "status": env.status, "expires_at": env.expires_at},
        "signer": {"id": signer.id, "name": signer.name, "email": signer.email, "status": signer.status},
        "waiting_on": outstanding_signers(session, env.id),
        "fields": [
            {"id": f.id, "type": f.type, "page": f.page, "x": f.x, "y": f.y, "w": f.w, "h": f.h,
             "required": f.required, "name": f.name, "value": f.value}
            for f in fields
        ],
    }

@router.post("/{token}/complete")
def complete(token: str, payload: SignComplete, request: Request, session: Session = Depends(get_session)):
    try:
        result = complete_signing(session, token, payload.values, request_origin(request))
    except SigningError as exc:
        logger.info("signing rejected: %s", exc)
        raise to_http(exc) from exc
    return {
        "success": result.success,
        "all_completed": result.all_completed,
        "signature_hash": result.signature_hash,
    }

@router.post("/{token}/decline")
def decline(token: str, payload: SignDecline, request: Request, session: Session = Depends(get_session)):
    try:
        signer = decline_signing(session, token, payload.reason, request_origin(request))
    except SigningError as exc:
        raise to_http(exc) from exc
    return {"ok": True, "status": signer.status}

@router.get("/{token}/final-pdf")
def get_final_pdf(token: str, session: Session = Depends(get_session)):
    signer = _signer_or_404(session, token)
    env = session.get(Envelope, signer.envelope_id)
    if env.status != ENVELOPE_COMPLETED or not env.final_key:
        raise HTTPException(404, "final artifact not ready")
    pdf_bytes = storage.get_bytes(env.final_key)
    return Response(content=pdf_bytes, media_type="application/pdf")
