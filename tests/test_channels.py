from __future__ import annotations

import smtplib

import pytest
import requests

from autopilot.channels import (
    ChannelError,
    SmtpEmailChannel,
    TwilioSmsChannel,
    TwilioWhatsAppChannel,
    build_channels,
    md_to_html,
)


class FakeTwilioResponse:
    def __init__(self, status_code=201, payload=None):
        self.status_code = status_code
        self.payload = payload or {"sid": "SM123"}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}", response=self)

    def json(self):
        return self.payload


@pytest.fixture
def posts(monkeypatch):
    sent = []
    responses = []

    def fake_post(url, data=None, auth=None, timeout=None):
        sent.append((url, data, auth))
        return responses.pop(0) if responses else FakeTwilioResponse()

    monkeypatch.setattr(requests, "post", fake_post)
    return sent, responses


def test_sms_posts_to_twilio(posts):
    sent, _ = posts
    sid = TwilioSmsChannel("AC1", "token", "+15550000000").send_message("+15551112222", "Body", "Title")

    assert sid == "SM123"
    url, data, auth = sent[0]
    assert url.endswith("/Accounts/AC1/Messages.json")
    assert data == {"From": "+15550000000", "To": "+15551112222", "Body": "Title\nBody"}
    assert auth == ("AC1", "token")


def test_whatsapp_prefixes_numbers_and_bolds_title(posts):
    sent, _ = posts
    TwilioWhatsAppChannel("AC1", "token", "+15550000000").send_message("+15551112222", "Body", "Title")
    data = sent[0][1]
    assert data["From"] == "whatsapp:+15550000000"
    assert data["To"] == "whatsapp:+15551112222"
    assert data["Body"] == "*Title*\nBody"


def test_long_bodies_are_truncated(posts):
    sent, _ = posts
    TwilioSmsChannel("AC1", "token", "+1").send_message("+2", "x" * 5000)
    assert len(sent[0][1]["Body"]) == 1600


def test_provider_rejection_is_a_channel_error(posts):
    sent, responses = posts
    responses.append(FakeTwilioResponse(status_code=400))
    with pytest.raises(ChannelError):
        TwilioSmsChannel("AC1", "token", "+1").send_message("+2", "hi")
    assert len(sent) == 1


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def sendmail(self, from_addr, to_addrs, message):
        self.calls.append(("sendmail", from_addr, to_addrs, message))


def test_smtp_email(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    channel = SmtpEmailChannel("smtp.example.com", 587, "bot@example.com", "pw", "")

    message_id = channel.send_message("ada@example.com", "# Digest\n\n- **3** new jobs", "Job search digest")

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.calls[:2] == ["starttls", ("login", "bot@example.com")]
    _, from_addr, to_addrs, raw = server.calls[2]
    assert from_addr == "bot@example.com"
    assert to_addrs == ["ada@example.com"]
    assert "Subject: Job search digest" in raw
    assert message_id.startswith("<")


def test_md_to_html():
    html = md_to_html("# Title\n- **bold** item\n[link](https://x.example)")
    assert "<h1" in html
    assert "<strong>bold</strong>" in html
    assert 'href="https://x.example"' in html


def test_build_channels_from_env():
    env = {
        "TWILIO_ACCOUNT_SID": "AC1", "TWILIO_AUTH_TOKEN": "t", "TWILIO_PHONE_NUMBER": "+1",
        "SMTP_HOST": "smtp.example.com", "SMTP_USER": "u", "SMTP_PASSWORD": "p", "SMTP_PORT": "not-a-port",
    }
    channels = build_channels(lambda key, default="": env.get(key, default))
    assert sorted(channels) == ["email", "sms"]
    assert channels["email"].port == 587
    assert build_channels(lambda key, default="": default) == {}
