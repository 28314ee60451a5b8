import logging
from typing import Optional

from celery import Celery
from sqlmodel import Session

from . import config, db, storage
from .models import ENVELOPE_COMPLETED, ENVELOPE_PENDING, Envelope, Signer
from .notifications import notify_completion, notify_signed
from .sealing import SealLevel

logger = logging.getLogger(__name__)

cel = Celery("esign", broker=config.REDIS_URL, backend=config.REDIS_URL)


def _maybe_fetch(key: Optional[str]) -> Optional[bytes]:
    if not key:
        return None
    try:
        return storage.get_bytes(key)
    except Exception:
        logger.exception("could not load %s for completion notices", key)
        return None


@cel.task(name="send_completion_notices", queue=config.WORKER_QUEUE)
def send_completion_notices(envelope_id: int):
    with Session(db.engine) as session:
        env = session.get(Envelope, envelope_id)
        if env is None or env.status != ENVELOPE_COMPLETED:
            logger.warning("skipping completion notices for envelope %s: not completed", envelope_id)
            return []
        sealed = env.seal_level in (SealLevel.CRYPTOGRAPHIC.value, SealLevel.VISUAL.value)
        signed_pdf = _maybe_fetch(env.final_key) if sealed else None
        audit_pdf = _maybe_fetch(env.audit_key)
        results = notify_completion(session, env, signed_pdf=signed_pdf, audit_pdf=audit_pdf)
        return [
            {"email": r.recipient.email, "role": r.recipient.role, "delivered": r.delivered, "attempts": r.attempts}
            for r in results
        ]


@cel.task(name="send_signed_notice", queue=config.WORKER_QUEUE)
def send_signed_notice(envelope_id: int, signer_id: int, remaining: int):
    with Session(db.engine) as session:
        env = session.get(Envelope, envelope_id)
        signer = session.get(Signer, signer_id)
        if env is None or signer is None or env.status != ENVELOPE_PENDING:
            logger.info("skipping signed notice for envelope %s: no longer pending", envelope_id)
            return None
        result = notify_signed(env, signer, remaining)
        return {"email": result.recipient.email, "delivered": result.delivered, "attempts": result.attempts}
