"""
Outbound notices to envelope owners and signers.

Every recipient gets an independent, bounded delivery attempt. The owner is
notified first; each signer send is preceded by a fixed pause so outbound mail
stays under the provider's rate ceiling. Outcomes are returned as
``DeliveryResult`` values and logged; nothing here raises on a failed send.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session, select

from . import config
from .audit import append_event
from .email import format_sender_name, send_email
from .models import Envelope, Signer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: Optional[str]
    role: str  # owner|signer


@dataclass
class CompletionNotice:
    document_name: str
    completed_at: datetime
    final_hash: Optional[str] = None
    download_link: Optional[str] = None
    attachments: list = field(default_factory=list)


@dataclass(frozen=True)
class DeliveryResult:
    recipient: Recipient
    delivered: bool
    attempts: int
    error: Optional[str] = None


def completion_recipients(envelope: Envelope, signers: Sequence[Signer]) -> List[Recipient]:
    recipients = [Recipient(envelope.owner_email, envelope.owner_name, "owner")]
    for s in sorted(signers, key=lambda s: (s.routing_order, s.id or 0)):
        recipients.append(Recipient(s.email, s.name, "signer"))
    return recipients


def completion_attachments(document_name: str, signed_pdf: Optional[bytes], audit_pdf: Optional[bytes]) -> list:
    base_name = document_name[:-4] if document_name.lower().endswith(".pdf") else document_name
    attachments = []
    if signed_pdf:
        attachments.append({"filename": f"{base_name} - signed.pdf", "content": signed_pdf, "maintype": "application", "subtype": "pdf"})
    if audit_pdf:
        attachments.append({"filename": f"{base_name} - audit trail.pdf", "content": audit_pdf, "maintype": "application", "subtype": "pdf"})
    return attachments


def completion_message(recipient: Recipient, notice: CompletionNotice, link: Optional[str]):
    greeting = f"Hello {recipient.name}," if recipient.name else "Hello,"
    when = f"{notice.completed_at:%Y-%m-%d %H:%M} UTC"
    subject = f"Completed: {notice.document_name}"
    lines = [
        greeting,
        "",
        f"All parties have finished signing {notice.document_name} on {when}.",
    ]
    if notice.final_hash:
        lines += ["", f"Final SHA256: {notice.final_hash}"]
    if notice.attachments:
        lines += ["", "The signed document and its audit trail are attached for your records."]
    if link:
        lines += ["", f"Download: {link}"]
    text = "\n".join(lines) + "\n"
    link_html = (
        f'<p style="margin: 24px 0;"><a href="{escape(link)}" style="display: inline-block; background: #08CF65; '
        f'color: #fff; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600;">'
        f'Download the document</a></p>'
        if link else ""
    )
    hash_html = (
        f'<p style="font-size: 13px; color: #475569; background: #f8fafc; padding: 12px 16px; border-radius: 8px;">'
        f'Final SHA256: {escape(notice.final_hash)}</p>'
        if notice.final_hash else ""
    )
    html = f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Completed</h2>
      <p style="font-size: 14px; color: #1e293b;">{escape(greeting)}</p>
      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">
        All parties have finished signing <strong>{escape(notice.document_name)}</strong> on {escape(when)}.
      </p>
      {hash_html}
      {link_html}
    </div>
  </body>
</html>
"""
    return subject, text, html


@dataclass(frozen=True)
class OutgoingMessage:
    recipient: Recipient
    subject: str
    text: str
    html: Optional[str] = None
    attachments: list = field(default_factory=list)


def dispatch_notices(
    messages: Sequence[OutgoingMessage],
    send: Optional[Callable] = None,
    sleep: Callable[[float], None] = time.sleep,
    interval_ms: Optional[int] = None,
    max_attempts: Optional[int] = None,
    sender_name: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> List[DeliveryResult]:
    """Deliver ``messages`` in order, pausing before every send after the first.

    Each recipient gets at most ``max_attempts`` tries; a failure is logged and
    reported in its ``DeliveryResult``, and the remaining recipients are still
    attempted.
    """
    send = send or send_email
    interval = (config.NOTIFY_SEND_INTERVAL_MS if interval_ms is None else interval_ms) / 1000.0
    attempts_allowed = max(1, config.NOTIFY_MAX_ATTEMPTS if max_attempts is None else max_attempts)
    results: List[DeliveryResult] = []

    for position, message in enumerate(messages, start=1):
        if position > 1:
            sleep(interval)
        recipient = message.recipient
        error = None
        attempts = 0
        delivered = False
        while attempts < attempts_allowed and not delivered:
            if attempts:
                sleep(interval)
            attempts += 1
            try:
                send(
                    recipient.email,
                    message.subject,
                    message.text,
                    html_body=message.html,
                    attachments=message.attachments,
                    sender_name=sender_name,
                    reply_to=reply_to,
                )
                delivered = True
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "[%d/%d] %r to %s failed (attempt %d/%d): %s",
                    position, len(messages), message.subject, recipient.email, attempts, attempts_allowed, error,
                )
        if delivered:
            logger.info("[%d/%d] %r sent to %s %s", position, len(messages), message.subject, recipient.role, recipient.email)
        results.append(DeliveryResult(recipient, delivered, attempts, None if delivered else error))
    return results


def dispatch_completion_notices(
    recipients: Sequence[Recipient],
    notice: CompletionNotice,
    **dispatch_kwargs,
) -> List[DeliveryResult]:
    messages = []
    for recipient in recipients:
        link = notice.download_link if recipient.role == "owner" else None
        subject, text, html = completion_message(recipient, notice, link)
        messages.append(OutgoingMessage(recipient, subject, text, html, notice.attachments))
    return dispatch_notices(messages, **dispatch_kwargs)


def notify_completion(
    session: Session,
    envelope: Envelope,
    signed_pdf: Optional[bytes] = None,
    audit_pdf: Optional[bytes] = None,
    **dispatch_kwargs,
) -> List[DeliveryResult]:
    signers = session.exec(select(Signer).where(Signer.envelope_id == envelope.id)).all()
    notice = CompletionNotice(
        document_name=envelope.name,
        completed_at=envelope.completed_at,
        final_hash=envelope.final_hash,
        download_link=f"{config.APP_URL}/view/{envelope.id}",
        attachments=completion_attachments(envelope.name, signed_pdf, audit_pdf),
    )
    dispatch_kwargs.setdefault("sender_name", format_sender_name(envelope.owner_name))
    dispatch_kwargs.setdefault("reply_to", envelope.owner_email)
    results = dispatch_completion_notices(completion_recipients(envelope, signers), notice, **dispatch_kwargs)
    failed = [r.recipient.email for r in results if not r.delivered]
    if failed:
        logger.error("completion notices for envelope %s failed for: %s", envelope.id, ", ".join(failed))
    append_event(session, envelope.id, "system", "notified", {
        "delivered": sum(1 for r in results if r.delivered),
        "failed": failed,
        "attachments": len(notice.attachments),
    })
    return results


# ---------- progress and reminders ----------

def _simple_html(heading: str, paragraphs: Sequence[str], link: Optional[str], link_label: str) -> str:
    body = "\n".join(
        f'      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{p}</p>' for p in paragraphs
    )
    button = (
        f'      <p style="margin: 24px 0;"><a href="{escape(link)}" style="display: inline-block; background: #2563eb; '
        f'color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">'
        f'{escape(link_label)}</a></p>'
        if link else ""
    )
    return f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{escape(heading)}</h2>
{body}
{button}
    </div>
  </body>
</html>
"""


def signed_message(owner: Recipient, document_name: str, signer: Signer, remaining: int, link: str) -> OutgoingMessage:
    who = signer.name or signer.email
    subject = f"{who} signed {document_name}"
    waiting = f"Waiting on {remaining} more signer{'s' if remaining != 1 else ''}."
    text = f"{who} ({signer.email}) has signed {document_name}.\n{waiting}\n\nView: {link}\n"
    html = _simple_html(
        "Document signed",
        [f"<strong>{escape(who)}</strong> ({escape(signer.email)}) has signed <strong>{escape(document_name)}</strong>.",
         escape(waiting)],
        link, "View the document",
    )
    return OutgoingMessage(owner, subject, text, html)


def notify_signed(envelope: Envelope, signer: Signer, remaining: int, **dispatch_kwargs) -> DeliveryResult:
    """Tell the owner that ``signer`` finished while others are still outstanding."""
    owner = Recipient(envelope.owner_email, envelope.owner_name, "owner")
    message = signed_message(owner, envelope.name, signer, remaining, f"{config.APP_URL}/view/{envelope.id}")
    dispatch_kwargs.setdefault("sender_name", format_sender_name(None))
    result = dispatch_notices([message], **dispatch_kwargs)[0]
    if not result.delivered:
        logger.error("signed notice for envelope %s to %s failed: %s", envelope.id, owner.email, result.error)
    return result


def reminder_message(recipient: Recipient, envelope: Envelope, link: str, days_remaining: Optional[int]) -> OutgoingMessage:
    requester = envelope.owner_name or envelope.owner_email
    subject = f"Reminder: {envelope.name} is waiting for your signature"
    lines = [f"{requester} is still waiting for your signature on {envelope.name}."]
    if days_remaining is not None:
        lines.append(f"The signing link expires in {days_remaining} day{'s' if days_remaining != 1 else ''}.")
    text = "\n".join(lines) + f"\n\nOpen document: {link}\n"
    html = _simple_html("Signature reminder", [escape(line) for line in lines], link, "Review & Sign")
    return OutgoingMessage(recipient, subject, text, html)


def send_reminders(
    envelope: Envelope,
    signers: Sequence[Signer],
    days_remaining: Optional[int] = None,
    **dispatch_kwargs,
) -> List[DeliveryResult]:
    messages = [
        reminder_message(Recipient(s.email, s.name, "signer"), envelope, f"{config.APP_URL}/sign/{s.token}", days_remaining)
        for s in sorted(signers, key=lambda s: (s.routing_order, s.id or 0))
    ]
    dispatch_kwargs.setdefault("sender_name", format_sender_name(envelope.owner_name))
    dispatch_kwargs.setdefault("reply_to", envelope.owner_email)
    return dispatch_notices(messages, **dispatch_kwargs)
