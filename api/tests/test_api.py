import base64

from conftest import make_pdf

ADMIN_HEADERS = {"X-Access-Token": "admin-test-token"}
SIMPLE_SIGNATURE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="


def create_envelope(client, signers=None, fields=None, **extra):
    payload = {
        "name": "Lease.pdf",
        "owner_name": "Olive Owner",
        "owner_email": "owner@example.com",
        "document_base64": base64.b64encode(make_pdf()).decode(),
        "signers": signers or [
            {"client_id": "buyer", "name": "Ann Lee", "email": "ann@example.com"},
            {"client_id": "seller", "name": "Bob Stone", "email": "bob@example.com"},
        ],
        "fields": fields if fields is not None else [
            {"signer_key": "buyer", "type": "signature", "x": 72, "y": 120, "w": 120, "h": 40},
            {"signer_key": "seller", "type": "signature", "x": 300, "y": 120, "w": 120, "h": 40},
            {"signer_key": "seller", "type": "text", "x": 300, "y": 100, "w": 120, "h": 14, "required": False},
        ],
    }
    payload.update(extra)
    response = client.post("/api/envelopes", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 200, response.text
    return response.json()["id"]


def send_and_get_links(client, env_id):
    response = client.post(f"/api/envelopes/{env_id}/send", headers=ADMIN_HEADERS)
    assert response.status_code == 200, response.text
    links = client.get(f"/api/envelopes/{env_id}/signing-links", headers=ADMIN_HEADERS).json()["links"]
    return {link["signer"]["email"]: link["token"] for link in links}


def sign(client, token, extra=None):
    opened = client.get(f"/api/sign/{token}")
    assert opened.status_code == 200
    values = {str(f["id"]): SIMPLE_SIGNATURE for f in opened.json()["fields"] if f["type"] == "signature"}
    values.update(extra or {})
    return client.post(f"/api/sign/{token}/complete", json={"values": values})


def test_health(client):
    assert client.get("/").json()["ok"] is True


def test_admin_routes_require_token(client):
    assert client.get("/api/envelopes/1").status_code == 401
    assert client.get("/api/envelopes/1", headers={"X-Access-Token": "nope"}).status_code == 403


def test_create_rejects_unknown_signer_key(client):
    response = client.post("/api/envelopes", json={
        "name": "Lease.pdf",
        "owner_email": "owner@example.com",
        "document_base64": base64.b64encode(make_pdf()).decode(),
        "signers": [{"name": "Ann", "email": "ann@example.com"}],
        "fields": [{"signer_key": "ghost", "type": "signature", "x": 1, "y": 1, "w": 1, "h": 1}],
    }, headers=ADMIN_HEADERS)
    assert response.status_code == 400
    assert "ghost" in response.text


def test_create_rejects_bad_base64(client):
    response = client.post("/api/envelopes", json={
        "name": "Lease.pdf",
        "owner_email": "owner@example.com",
        "document_base64": "***",
        "signers": [{"name": "Ann", "email": "ann@example.com"}],
    }, headers=ADMIN_HEADERS)
    assert response.status_code == 400


def test_send_emails_signing_links_once(client, sent_emails):
    env_id = create_envelope(client)
    tokens = send_and_get_links(client, env_id)

    assert sorted(m["to"] for m in sent_emails) == ["ann@example.com", "bob@example.com"]
    for message in sent_emails:
        assert f"/sign/{tokens[message['to']]}" in message["text"]
    again = client.post(f"/api/envelopes/{env_id}/send", headers=ADMIN_HEADERS)
    assert again.status_code == 409


def test_full_signing_flow(client, sent_emails, mock_storage):
    env_id = create_envelope(client)
    tokens = send_and_get_links(client, env_id)
    sent_emails.clear()

    first = sign(client, tokens["ann@example.com"])
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["all_completed"] is False
    assert client.get(f"/api/sign/{tokens['ann@example.com']}/final-pdf").status_code == 404

    second = sign(client, tokens["bob@example.com"])
    body = second.json()
    assert body["all_completed"] is True
    assert len(body["signature_hash"]) == 64

    envelope = client.get(f"/api/envelopes/{env_id}", headers=ADMIN_HEADERS).json()
    assert envelope["status"] == "completed"
    assert envelope["seal_level"] == "cryptographic"
    assert envelope["audit_chain_valid"] is True
    assert all(s["status"] == "signed" for s in envelope["signers"])

    verified = client.get(f"/api/envelopes/{env_id}/verify", headers=ADMIN_HEADERS).json()
    assert verified["has_signature"] is True
    assert verified["covers_document"] is True
    assert verified["signer_name"] == "Ann Lee, Bob Stone"

    final_pdf = client.get(f"/api/sign/{tokens['ann@example.com']}/final-pdf")
    assert final_pdf.status_code == 200
    assert final_pdf.headers["content-type"] == "application/pdf"
    assert final_pdf.content == mock_storage[envelope["final_key"]]

    assert [m["to"] for m in sent_emails] == ["owner@example.com", "owner@example.com", "ann@example.com", "bob@example.com"]
    assert sent_emails[0]["subject"] == "Ann Lee signed Lease.pdf"


def test_signing_errors_map_to_status_codes(client):
    env_id = create_envelope(client)
    tokens = send_and_get_links(client, env_id)

    assert client.post("/api/sign/bogus/complete", json={"values": {}}).status_code == 404

    missing = client.post(f"/api/sign/{tokens['ann@example.com']}/complete", json={"values": {}})
    assert missing.status_code == 422
    assert len(missing.json()["detail"]["unfilled_fields"]) == 1

    assert sign(client, tokens["ann@example.com"]).status_code == 200
    again = sign(client, tokens["ann@example.com"])
    assert again.status_code == 409


def test_decline_then_sign_is_rejected(client):
    env_id = create_envelope(client)
    tokens = send_and_get_links(client, env_id)
    token = tokens["bob@example.com"]

    declined = client.post(f"/api/sign/{token}/decline", json={"reason": "terms changed"})
    assert declined.status_code == 200
    assert declined.json()["status"] == "declined"
    assert sign(client, token).status_code == 409


def test_signer_origin_recorded_from_forwarded_header(client):
    env_id = create_envelope(client, fields=[])
    tokens = send_and_get_links(client, env_id)
    response = client.post(
        f"/api/sign/{tokens['ann@example.com']}/complete",
        json={"values": {}},
        headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1", "User-Agent": "Browser/1.0"},
    )
    assert response.status_code == 200

    from esign.models import Signer
    from esign import db
    from sqlmodel import Session, select

    with Session(db.engine) as s:
        signer = s.exec(select(Signer).where(Signer.email == "ann@example.com")).one()
    assert signer.ip_address == "198.51.100.7"
    assert signer.user_agent == "Browser/1.0"


def test_expire_overdue_route(client):
    response = client.post("/api/envelopes/expire-overdue", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"expired": []}


def test_upload_filename_cannot_escape_envelope_prefix(client, mock_storage):
    env_id = create_envelope(client, filename="../../etc/passwd\\..\\lease.pdf")
    from esign.models import Envelope
    from esign import db
    from sqlmodel import Session

    with Session(db.engine) as s:
        key = s.get(Envelope, env_id).source_key
    assert key.startswith("envelopes/")
    assert key.endswith("/source/lease.pdf")
    assert ".." not in key
    assert key in mock_storage


def test_send_reminders_route(client, sent_emails):
    create_envelope(client)
    response = client.post("/api/envelopes/send-reminders", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"reminded": {}}


def test_create_rejects_zero_reminder_interval(client):
    response = client.post("/api/envelopes", json={
        "name": "Lease.pdf",
        "owner_email": "owner@example.com",
        "document_base64": base64.b64encode(make_pdf()).decode(),
        "reminder_interval_days": 0,
        "signers": [{"name": "Ann", "email": "ann@example.com"}],
    }, headers=ADMIN_HEADERS)
    assert response.status_code == 422
