from datetime import datetime

import pytest

from esign.models import Envelope, Signer
from esign.notifications import (
    CompletionNotice,
    Recipient,
    completion_attachments,
    completion_recipients,
    dispatch_completion_notices,
    notify_signed,
    send_reminders,
)

NOTICE = CompletionNotice(
    document_name="Lease.pdf",
    completed_at=datetime(2026, 5, 1, 12, 30),
    final_hash="ab" * 32,
    download_link="http://testserver/view/1",
)

RECIPIENTS = [
    Recipient("owner@example.com", "Olive Owner", "owner"),
    Recipient("ann@example.com", "Ann Lee", "signer"),
    Recipient("bob@example.com", "Bob Stone", "signer"),
]


class Outbox:
    def __init__(self, failing=()):
        self.failing = dict(failing)
        self.calls = []

    def __call__(self, to, subject, text, **kwargs):
        self.calls.append({"to": to, "subject": subject, "text": text, **kwargs})
        remaining = self.failing.get(to, 0)
        if remaining:
            self.failing[to] = remaining - 1
            raise ConnectionError(f"smtp refused {to}")


@pytest.fixture
def pauses():
    return []


def test_owner_first_and_pause_before_each_signer(pauses):
    outbox = Outbox()
    results = dispatch_completion_notices(RECIPIENTS, NOTICE, send=outbox, sleep=pauses.append, interval_ms=600)

    assert [c["to"] for c in outbox.calls] == ["owner@example.com", "ann@example.com", "bob@example.com"]
    assert pauses == [0.6, 0.6]
    assert all(r.delivered and r.attempts == 1 for r in results)


def test_failing_recipient_does_not_stop_the_rest(pauses):
    outbox = Outbox(failing={"ann@example.com": 5})
    results = dispatch_completion_notices(
        RECIPIENTS, NOTICE, send=outbox, sleep=pauses.append, interval_ms=0, max_attempts=2,
    )

    by_email = {r.recipient.email: r for r in results}
    assert by_email["owner@example.com"].delivered
    assert not by_email["ann@example.com"].delivered
    assert by_email["ann@example.com"].attempts == 2
    assert "smtp refused" in by_email["ann@example.com"].error
    assert by_email["bob@example.com"].delivered
    assert [c["to"] for c in outbox.calls] == [
        "owner@example.com", "ann@example.com", "ann@example.com", "bob@example.com",
    ]


def test_transient_failure_is_retried(pauses):
    outbox = Outbox(failing={"owner@example.com": 1})
    results = dispatch_completion_notices(RECIPIENTS[:1], NOTICE, send=outbox, sleep=pauses.append, interval_ms=0)
    assert results[0].delivered
    assert results[0].attempts == 2
    assert results[0].error is None


def test_download_link_goes_to_owner_only(pauses):
    outbox = Outbox()
    dispatch_completion_notices(RECIPIENTS, NOTICE, send=outbox, sleep=pauses.append, interval_ms=0)
    owner, *signers = outbox.calls
    assert NOTICE.download_link in owner["text"]
    assert all(NOTICE.download_link not in c["text"] for c in signers)
    assert all(NOTICE.final_hash in c["text"] for c in outbox.calls)


def test_recipients_ordered_by_routing_order():
    env = Envelope(id=1, name="Lease.pdf", owner_name="Olive", owner_email="owner@example.com",
                   source_key="k", source_hash="h")
    signers = [
        Signer(id=2, envelope_id=1, name="Bob", email="bob@example.com", routing_order=2, token="b"),
        Signer(id=1, envelope_id=1, name="Ann", email="ann@example.com", routing_order=1, token="a"),
    ]
    recipients = completion_recipients(env, signers)
    assert [(r.email, r.role) for r in recipients] == [
        ("owner@example.com", "owner"), ("ann@example.com", "signer"), ("bob@example.com", "signer"),
    ]


def test_attachments_named_after_document():
    attachments = completion_attachments("Lease.pdf", b"%PDF-signed", b"%PDF-audit")
    assert [a["filename"] for a in attachments] == ["Lease - signed.pdf", "Lease - audit trail.pdf"]
    assert completion_attachments("Lease.pdf", None, None) == []


def _pending_envelope():
    env = Envelope(
        id=7, name="Lease.pdf", owner_name="Olive Owner", owner_email="owner@example.com",
        source_key="k", source_hash="h",
    )
    signers = [
        Signer(id=2, envelope_id=7, name="Bob Stone", email="bob@example.com", routing_order=2, token="tok-bob"),
        Signer(id=1, envelope_id=7, name="Ann Lee", email="ann@example.com", routing_order=1, token="tok-ann"),
    ]
    return env, signers


def test_signed_notice_goes_to_owner_only(pauses):
    env, signers = _pending_envelope()
    outbox = Outbox()

    result = notify_signed(env, signers[1], 1, send=outbox, sleep=pauses.append, interval_ms=600)

    assert result.delivered
    assert [c["to"] for c in outbox.calls] == ["owner@example.com"]
    assert outbox.calls[0]["subject"] == "Ann Lee signed Lease.pdf"
    assert "Waiting on 1 more signer." in outbox.calls[0]["text"]
    assert "/view/7" in outbox.calls[0]["text"]
    assert pauses == []


def test_signed_notice_failure_is_reported_not_raised(pauses):
    env, signers = _pending_envelope()
    outbox = Outbox(failing={"owner@example.com": 5})

    result = notify_signed(env, signers[0], 2, send=outbox, sleep=pauses.append, interval_ms=0, max_attempts=2)

    assert not result.delivered
    assert result.attempts == 2
    assert "smtp refused" in result.error


def test_reminders_follow_routing_order_with_personal_links(pauses):
    env, signers = _pending_envelope()
    outbox = Outbox()

    results = send_reminders(env, signers, days_remaining=1, send=outbox, sleep=pauses.append, interval_ms=600)

    assert [c["to"] for c in outbox.calls] == ["ann@example.com", "bob@example.com"]
    assert "/sign/tok-ann" in outbox.calls[0]["text"]
    assert "/sign/tok-bob" in outbox.calls[1]["text"]
    assert "expires in 1 day." in outbox.calls[0]["text"]
    assert all(c["reply_to"] == "owner@example.com" for c in outbox.calls)
    assert pauses == [0.6]
    assert all(r.delivered for r in results)
