import pytest

import ai_flows
import email_service

SMTP_ENV = {
    "EMAIL_PROVIDER": "smtp",
    "SMTP_HOST": "smtp.campus.edu",
    "SMTP_PORT": "587",
    "SMTP_USER": "mailer",
    "SMTP_PASS": "secret",
    "SMTP_FROM_ADDRESS": "Campus ERP <noreply@campus.edu>",
}


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg, from_addr=None, to_addrs=None):
        FakeSMTP.sent.append((msg, from_addr, to_addrs))


@pytest.fixture
def smtp_env(monkeypatch):
    for key, value in SMTP_ENV.items():
        monkeypatch.setenv(key, value)
    FakeSMTP.sent = []
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)


@pytest.fixture
def clear_email_env(monkeypatch):
    for key in list(SMTP_ENV) + ["BREVO_API_KEY", "FROM_EMAIL"]:
        monkeypatch.delenv(key, raising=False)


BULK = {"subject": "Campus closed", "body": "<p>Closed Friday.</p>", "recipients": ["a@campus.edu", "b@campus.edu"]}


def test_bulk_email_sends_one_bcc_dispatch(client, admin, smtp_env):
    _, headers = admin
    resp = client.post("/admin/notifications/email", json=BULK, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Successfully dispatched emails to 2 recipients.",
        "sentCount": 2,
    }

    assert len(FakeSMTP.sent) == 1
    msg, from_addr, to_addrs = FakeSMTP.sent[0]
    assert to_addrs == BULK["recipients"]
    assert from_addr == "noreply@campus.edu"
    assert "a@campus.edu" not in msg["To"]


def test_bulk_email_without_configuration_is_503(client, admin, clear_email_env):
    _, headers = admin
    resp = client.post("/admin/notifications/email", json=BULK, headers=headers)
    assert resp.status_code == 503
    assert "not configured" in resp.json()["detail"]


def test_bulk_email_delivery_failure_is_502(client, admin, smtp_env, monkeypatch):
    def refuse(self, msg, from_addr=None, to_addrs=None):
        raise email_service.smtplib.SMTPRecipientsRefused({})

    monkeypatch.setattr(FakeSMTP, "send_message", refuse)
    _, headers = admin
    resp = client.post("/admin/notifications/email", json=BULK, headers=headers)
    assert resp.status_code == 502


def test_bulk_email_input_validation(client, admin, smtp_env):
    _, headers = admin
    assert client.post("/admin/notifications/email", json={**BULK, "recipients": []}, headers=headers).status_code == 422
    assert client.post("/admin/notifications/email", json={**BULK, "recipients": ["nope"]}, headers=headers).status_code == 422
    assert FakeSMTP.sent == []


def test_bulk_email_admin_only(client, faculty, smtp_env):
    _, headers = faculty
    assert client.post("/admin/notifications/email", json=BULK, headers=headers).status_code == 403


def test_draft_email_falls_back_when_ai_unavailable(client, admin, monkeypatch):
    def broken(prompt, model):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(ai_flows, "generate_structured", broken)
    _, headers = admin
    resp = client.post("/admin/notifications/draft", json={"topic": "Exam schedule"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["draft"]["subject"] == "Exam schedule"


def test_admin_user_directory(client, admin, faculty):
    _, headers = admin
    users = client.get("/admin/users", headers=headers).json()["users"]
    assert {u["role"] for u in users} == {"admin", "faculty"}
    assert all("password" not in u for u in users)
