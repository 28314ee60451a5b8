"""
Signer and envelope state transitions.

Signer:   pending -> signed | declined   (both terminal)
Envelope: draft -> pending -> completed  (terminal), pending -> expired

Every transition is a conditional UPDATE whose WHERE clause names the state it
leaves, so of several concurrent requests exactly one sees ``rowcount == 1``.
In particular the last signers of an envelope may finish at the same instant:
each commits its own signature first, then counts outstanding signers, and
only the request that wins the ``pending -> completed`` write seals the
document and sends notices. Sealing, audit trail and notification problems are
logged and recorded as events; they never undo a committed transition.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from itsdangerous import BadSignature
from kombu.exceptions import OperationalError
from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import config, storage
from .audit import append_event, render_audit_trail, signature_commitment
from .errors import (
    AlreadySigned,
    AuditTrailError,
    FieldValidationError,
    SignerNotFound,
    SigningUnavailable,
)
from .models import (
    ENVELOPE_COMPLETED,
    ENVELOPE_DRAFT,
    ENVELOPE_EXPIRED,
    ENVELOPE_PENDING,
    SIGNER_DECLINED,
    SIGNER_PENDING,
    SIGNER_SIGNED,
    Envelope,
    Field,
    Signer,
)
from .notifications import DeliveryResult, notify_completion, notify_signed, send_reminders
from .sealing import SealLevel, SealResult, seal_document
from .utils import as_utc, read_token, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestOrigin:
    ip_address: str = "unknown"
    user_agent: str = "unknown"


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    all_completed: bool
    signature_hash: str


@dataclass(frozen=True)
class FinalArtifacts:
    seal: Optional[SealResult]
    audit_pdf: Optional[bytes]

    @property
    def signed_pdf(self) -> Optional[bytes]:
        if self.seal is None or self.seal.level is SealLevel.NONE:
            return None
        return self.seal.pdf


# ---------- lookups ----------

def resolve_signer(session: Session, token: str) -> Signer:
    try:
        read_token(token)
    except BadSignature:
        raise SignerNotFound()
    signer = session.exec(select(Signer).where(Signer.token == token)).first()
    if signer is None:
        raise SignerNotFound()
    return signer


def outstanding_signers(session: Session, envelope_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(Signer).where(
            Signer.envelope_id == envelope_id, Signer.status != SIGNER_SIGNED
        )
    ).one()


def _normalize_values(field_values) -> Dict[int, str]:
    normalized: Dict[int, str] = {}
    for field_id, raw in (field_values or {}).items():
        try:
            fid = int(field_id)
        except (TypeError, ValueError):
            continue
        value = raw.get("value") if isinstance(raw, dict) else raw
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        normalized[fid] = str(value)
    return normalized


def unfilled_required_fields(fields: List[Field], values: Dict[int, str]) -> List[int]:
    unfilled = []
    for f in fields:
        if not f.required:
            continue
        value = values.get(f.id)
        if f.type == "checkbox":
            if value != "true":
                unfilled.append(f.id)
        elif value is None or not value.strip():
            unfilled.append(f.id)
    return unfilled


def collect_envelope_values(session: Session, envelope_id: int) -> Dict[str, dict]:
    fields = session.exec(select(Field).where(Field.envelope_id == envelope_id)).all()
    return {
        str(f.id): {
            "type": f.type,
            "page": f.page,
            "x": f.x,
            "y": f.y,
            "w": f.w,
            "h": f.h,
            "value": f.value,
        }
        for f in fields
        if f.value is not None and f.value.strip()
    }


# ---------- envelope transitions ----------

def distribute_envelope(session: Session, envelope_id: int) -> bool:
    now = utcnow()
    result = session.exec(
        update(Envelope)
        .where(Envelope.id == envelope_id, Envelope.status == ENVELOPE_DRAFT)
        .values(status=ENVELOPE_PENDING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    append_event(session, envelope_id, "owner", "sent", {}, commit=False)
    session.commit()
    return True


def _expire(session: Session, envelope_id: int, now: datetime) -> bool:
    result = session.exec(
        update(Envelope)
        .where(Envelope.id == envelope_id, Envelope.status == ENVELOPE_PENDING)
        .values(status=ENVELOPE_EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    append_event(session, envelope_id, "system", "expired", {"at": now.isoformat()}, commit=False)
    session.commit()
    logger.info("envelope %s expired with outstanding signers", envelope_id)
    return True


def expire_overdue_envelopes(session: Session, now: Optional[datetime] = None) -> List[int]:
    now = now or utcnow()
    overdue = session.exec(
        select(Envelope.id).where(
            Envelope.status == ENVELOPE_PENDING,
            Envelope.expires_at.is_not(None),
            Envelope.expires_at <= now,
        )
    ).all()
    return [envelope_id for envelope_id in overdue if _expire(session, envelope_id, now)]


def _open_envelope(session: Session, signer: Signer) -> Envelope:
    envelope = session.get(Envelope, signer.envelope_id)
    if envelope is None:
        raise SignerNotFound()
    now = utcnow()
    if envelope.status == ENVELOPE_PENDING and envelope.expires_at and as_utc(envelope.expires_at) <= now:
        _expire(session, envelope.id, now)
        raise SigningUnavailable("this envelope has expired")
    if envelope.status != ENVELOPE_PENDING:
        raise SigningUnavailable(f"this envelope is {envelope.status} and can no longer be signed")
    return envelope


# ---------- signer transitions ----------

def complete_signing(
    session: Session,
    token: str,
    field_values,
    origin: Optional[RequestOrigin] = None,
) -> CompletionResult:
    signer = resolve_signer(session, token)
    if signer.status == SIGNER_SIGNED:
        raise AlreadySigned()
    if signer.status == SIGNER_DECLINED:
        raise SigningUnavailable("you have declined to sign this document")
    envelope = _open_envelope(session, signer)

    values = _normalize_values(field_values)
    fields = session.exec(select(Field).where(Field.signer_id == signer.id)).all()
    unfilled = unfilled_required_fields(fields, values)
    if unfilled:
        raise FieldValidationError(unfilled)

    origin = origin or RequestOrigin()
    signed_at = utcnow()
    signature_hash = signature_commitment(
        envelope.source_hash, signer.id, signer.email, signed_at,
        origin.ip_address, origin.user_agent,
    )
    envelope_id, signer_id = envelope.id, signer.id

    claimed = session.exec(
        update(Signer)
        .where(Signer.id == signer_id, Signer.status == SIGNER_PENDING)
        .values(
            status=SIGNER_SIGNED,
            signed_at=signed_at,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            signature_hash=signature_hash,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        session.rollback()
        raise AlreadySigned()
    for f in fields:
        if f.id in values:
            f.value = values[f.id]
            f.filled_at = signed_at
            session.add(f)
    append_event(
        session, envelope_id, f"signer:{signer_id}", "signed",
        {"signature_hash": signature_hash, "email": signer.email, "fields_count": len(values)},
        ip=origin.ip_address, ua=origin.user_agent, commit=False,
    )
    session.commit()
    logger.info("signer %s signed envelope %s", signer_id, envelope_id)

    remaining = outstanding_signers(session, envelope_id)
    if remaining:
        try:
            _hand_off_signed_notice(session, envelope_id, signer_id, remaining)
        except Exception:
            session.rollback()
            logger.exception("signed notice for signer %s was not sent", signer_id)
        all_completed = False
    else:
        all_completed = _complete_if_last(session, envelope_id)
    return CompletionResult(success=True, all_completed=all_completed, signature_hash=signature_hash)


def decline_signing(
    session: Session,
    token: str,
    reason: Optional[str] = None,
    origin: Optional[RequestOrigin] = None,
) -> Signer:
    signer = resolve_signer(session, token)
    if signer.status == SIGNER_SIGNED:
        raise AlreadySigned()
    if signer.status == SIGNER_DECLINED:
        raise SigningUnavailable("you have already declined this document")
    envelope = _open_envelope(session, signer)
    origin = origin or RequestOrigin()
    now = utcnow()
    result = session.exec(
        update(Signer)
        .where(Signer.id == signer.id, Signer.status == SIGNER_PENDING)
        .values(status=SIGNER_DECLINED, declined_at=now, decline_reason=reason,
                ip_address=origin.ip_address, user_agent=origin.user_agent)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise SigningUnavailable("this signer can no longer decline")
    append_event(
        session, envelope.id, f"signer:{signer.id}", "declined", {"reason": reason or ""},
        ip=origin.ip_address, ua=origin.user_agent, commit=False,
    )
    session.commit()
    session.refresh(signer)
    logger.info("signer %s declined envelope %s", signer.id, envelope.id)
    return signer


# ---------- completion ----------

def _complete_if_last(session: Session, envelope_id: int) -> bool:
    if outstanding_signers(session, envelope_id):
        return False
    completed_at = utcnow()
    won = session.exec(
        update(Envelope)
        .where(Envelope.id == envelope_id, Envelope.status == ENVELOPE_PENDING)
        .values(status=ENVELOPE_COMPLETED, completed_at=completed_at, updated_at=completed_at)
        .execution_options(synchronize_session=False)
    )
    if won.rowcount != 1:
        session.rollback()
        logger.info("envelope %s was completed by a concurrent request", envelope_id)
        return False
    append_event(session, envelope_id, "system", "completed", {"completed_at": completed_at.isoformat()}, commit=False)
    session.commit()
    logger.info("envelope %s completed, sealing", envelope_id)

    envelope = session.get(Envelope, envelope_id)
    session.refresh(envelope)
    # the completion write has already won; nothing below may undo or mask it
    try:
        artifacts = finalize_envelope(session, envelope)
    except Exception as exc:
        logger.exception("finalising envelope %s failed, keeping the source document", envelope_id)
        session.rollback()
        artifacts = _finalize_with_source(session, envelope, f"{type(exc).__name__}: {exc}")
    try:
        _hand_off_notices(session, envelope, artifacts)
    except Exception:
        session.rollback()
        logger.exception("completion notices for envelope %s were not sent", envelope_id)
    return True


def _store(key: str, data: bytes) -> Optional[str]:
    try:
        return storage.put_bytes(key, data, content_type="application/pdf")
    except Exception:
        logger.exception("upload of %s failed", key)
        return None


def _fetch_source(envelope: Envelope) -> Optional[bytes]:
    try:
        return storage.get_bytes(envelope.source_key)
    except Exception:
        logger.exception("could not load source document for envelope %s", envelope.id)
        return None


def _record_final(
    session: Session,
    envelope: Envelope,
    final_key: str,
    final_hash: str,
    audit_key: Optional[str],
    level: SealLevel,
    error: Optional[str],
) -> None:
    session.exec(
        update(Envelope)
        .where(Envelope.id == envelope.id, Envelope.final_hash.is_(None))
        .values(final_key=final_key, final_hash=final_hash, audit_key=audit_key,
                seal_level=level.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    append_event(
        session, envelope.id, "system",
        "sealed" if level is SealLevel.CRYPTOGRAPHIC else "seal_degraded",
        {"final_hash": final_hash, "seal_level": level.value, "audit_trail": bool(audit_key), "error": error},
        commit=False,
    )
    session.commit()
    session.refresh(envelope)
    if level is not SealLevel.CRYPTOGRAPHIC:
        logger.warning("envelope %s sealed at level %s: %s", envelope.id, level.value, error)


def finalize_envelope(session: Session, envelope: Envelope) -> FinalArtifacts:
    """Produce and record the final artifact and audit trail of a completed envelope."""
    signers = session.exec(
        select(Signer).where(Signer.envelope_id == envelope.id).order_by(Signer.routing_order, Signer.id)
    ).all()
    seal = None
    final_key, final_hash, level, error = envelope.source_key, envelope.source_hash, SealLevel.NONE, None

    source = _fetch_source(envelope)
    if source is None:
        error = "source document unavailable"
    else:
        seal = seal_document(
            source,
            collect_envelope_values(session, envelope.id),
            envelope_id=envelope.id,
            signer_names=[s.name for s in signers],
            signed_at=as_utc(envelope.completed_at),
            contact=envelope.owner_email,
        )
        error = seal.error
        if seal.level is SealLevel.NONE:
            final_hash = seal.content_hash
        else:
            stored = _store(storage.final_key(envelope.id), seal.pdf)
            if stored:
                final_key, final_hash, level = stored, seal.content_hash, seal.level
            else:
                error = "final artifact upload failed"

    audit_pdf, audit_key = None, None
    try:
        audit_pdf = render_audit_trail(envelope, signers, final_hash)
    except AuditTrailError as exc:
        logger.error("audit trail for envelope %s failed: %s", envelope.id, exc)
        append_event(session, envelope.id, "system", "audit_trail_failed", {"error": str(exc)}, commit=False)
    if audit_pdf is not None:
        audit_key = _store(storage.audit_key(envelope.id), audit_pdf)

    _record_final(session, envelope, final_key, final_hash, audit_key, level, error)
    return FinalArtifacts(seal=seal, audit_pdf=audit_pdf)


def _finalize_with_source(session: Session, envelope: Envelope, error: str) -> FinalArtifacts:
    _record_final(session, envelope, envelope.source_key, envelope.source_hash, None, SealLevel.NONE, error)
    return FinalArtifacts(seal=None, audit_pdf=None)


# ---------- notice hand-off ----------

def _queue(task_name: str, *args) -> bool:
    """Queue a worker task; False when the broker cannot be reached."""
    from . import worker
    try:
        getattr(worker, task_name).delay(*args)
    except OperationalError:
        logger.exception("could not queue %s%r, sending inline", task_name, args)
        return False
    return True


def _hand_off_notices(session: Session, envelope: Envelope, artifacts: FinalArtifacts) -> None:
    if config.NOTIFY_ASYNC and _queue("send_completion_notices", envelope.id):
        return
    try:
        notify_completion(session, envelope, signed_pdf=artifacts.signed_pdf, audit_pdf=artifacts.audit_pdf)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("recording completion notices for envelope %s failed", envelope.id)


def _hand_off_signed_notice(session: Session, envelope_id: int, signer_id: int, remaining: int) -> None:
    if config.NOTIFY_ASYNC and _queue("send_signed_notice", envelope_id, signer_id, remaining):
        return
    envelope = session.get(Envelope, envelope_id)
    signer = session.get(Signer, signer_id)
    notify_signed(envelope, signer, remaining)


# ---------- reminders ----------

def _due_for_reminder(envelope: Envelope, now: datetime) -> bool:
    last = as_utc(envelope.last_reminder_at or envelope.created_at)
    return now - last >= timedelta(days=envelope.reminder_interval_days)


def send_due_reminders(session: Session, now: Optional[datetime] = None, **dispatch_kwargs) -> Dict[int, List[DeliveryResult]]:
    """Remind outstanding signers of every pending envelope whose reminder interval has elapsed.

    Each envelope is claimed with a conditional write on ``last_reminder_at``
    before anything is sent, so overlapping sweeps remind a signer once.
    """
    now = now or utcnow()
    candidates = session.exec(
        select(Envelope).where(
            Envelope.status == ENVELOPE_PENDING,
            Envelope.reminders_enabled == True,  # noqa: E712
            or_(Envelope.expires_at.is_(None), Envelope.expires_at > now),
        )
    ).all()
    sent: Dict[int, List[DeliveryResult]] = {}
    for envelope in candidates:
        if not _due_for_reminder(envelope, now):
            continue
        envelope_id = envelope.id
        cutoff = now - timedelta(days=envelope.reminder_interval_days)
        claimed = session.exec(
            update(Envelope)
            .where(
                Envelope.id == envelope_id,
                Envelope.status == ENVELOPE_PENDING,
                or_(Envelope.last_reminder_at.is_(None), Envelope.last_reminder_at <= cutoff),
            )
            .values(last_reminder_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            session.rollback()
            continue
        session.commit()
        session.refresh(envelope)
        waiting = session.exec(
            select(Signer).where(Signer.envelope_id == envelope_id, Signer.status == SIGNER_PENDING)
        ).all()
        if not waiting:
            continue
        days_remaining = None
        if envelope.expires_at:
            days_remaining = math.ceil((as_utc(envelope.expires_at) - now) / timedelta(days=1))
        results = send_reminders(envelope, waiting, days_remaining, **dispatch_kwargs)
        append_event(session, envelope_id, "system", "reminded", {
            "delivered": [r.recipient.email for r in results if r.delivered],
            "failed": [r.recipient.email for r in results if not r.delivered],
        })
        sent[envelope_id] = results
    return sent
