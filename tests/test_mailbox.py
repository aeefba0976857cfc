from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import httplib2
import pytest
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from autopilot.errors import ExternalServiceError
from autopilot.mailbox import (
    EmailSyncer,
    GmailConnections,
    GmailMailboxReader,
    MailboxReader,
    MailMessage,
    is_job_related,
)
from autopilot.settings import load_settings, update_settings
from autopilot.storage import emails_index_key, interview_items, interview_key, interviews_index_key, profile_key

from conftest import PROFILE, FakeAI


class FakeReader(MailboxReader):
    def __init__(self, messages):
        self.messages = list(messages)
        self.since = []

    def fetch_since(self, since):
        self.since.append(since)
        return list(self.messages)


def message(external_id, sender, subject, body="", received_at="2026-03-02T09:30:00+00:00"):
    return MailMessage(external_id, sender, subject, body, received_at, thread_id=external_id)


INVITE = {
    "category": "interview_invite",
    "is_job_related": True,
    "urgency": "high",
    "extracted_data": {"company": "Acme", "role": "Backend Engineer", "meeting_link": "https://meet.example/abc"},
    "summary": "Acme would like to schedule a video call.",
    "confidence": 0.93,
}


def syncer_for(engine, store, notifier, locks, clock, reader, ai):
    return EmailSyncer(store, lambda user_id: reader, ai, engine, notifier, locks, clock)


def test_interview_invite_moves_job_and_records_interview(stored_job, store, notifier, locks, clock):
    engine, job = stored_job(company="Acme")
    engine.update_job_status("u1", job["id"], "applied")
    reader = FakeReader([message("<m1@acme.com>", "talent@acme.com", "Interview invitation", "Let's talk")])
    syncer = syncer_for(engine, store, notifier, locks, clock, reader, FakeAI({"EmailAnalysis": INVITE}))

    stats = syncer.sync_user("u1")

    assert stats == {"processed": 1, "job_related": 1, "interviews_detected": 1, "status_updates": 1}
    assert engine.get_job("u1", job["id"])["status"] == "interview"
    [item] = interview_items(store.get(interviews_index_key("u1")))
    assert item["company"] == "Acme"
    assert item["job_id"] == job["id"]
    assert store.get(interview_key("u1", item["id"]))["meeting_link"] == "https://meet.example/abc"
    latest = notifier.list("u1")[0]
    assert latest["type"] == "interview_detected"
    assert latest["priority"] == "high"
    assert load_settings(store, "u1").last_email_sync == clock().isoformat()


def test_already_seen_messages_are_skipped(stored_job, store, notifier, locks, clock):
    engine, _ = stored_job(company="Acme")
    reader = FakeReader([message("<m1@acme.com>", "talent@acme.com", "Your application")])
    ai = FakeAI({"EmailAnalysis": {**INVITE, "category": "other", "urgency": "low"}})
    syncer = syncer_for(engine, store, notifier, locks, clock, reader, ai)

    syncer.sync_user("u1")
    clock.advance(minutes=15)
    second = syncer.sync_user("u1")

    assert second["processed"] == 0
    assert len(store.get(emails_index_key("u1"))) == 1
    assert reader.since[1].isoformat() == "2026-03-02T10:00:00+00:00"


def test_unrelated_mail_is_not_sent_to_the_ai(stored_job, store, notifier, locks, clock):
    engine, _ = stored_job(company="Acme")
    reader = FakeReader([message("<x@gmail.com>", "friend@gmail.com", "Lunch?", "See you at noon")])
    ai = FakeAI()
    syncer = syncer_for(engine, store, notifier, locks, clock, reader, ai)

    stats = syncer.sync_user("u1")

    assert stats["processed"] == 1
    assert stats["job_related"] == 0
    assert ai.calls == []
    assert store.get(emails_index_key("u1"))[0]["is_job_related"] is False


def test_replies_never_move_a_job_backwards(stored_job, store, notifier, locks, clock):
    engine, job = stored_job(company="Acme")
    engine.update_job_status("u1", job["id"], "offer")
    reader = FakeReader([
        message("<1>", "hr@acme.com", "Following up on your application"),
        message("<2>", "hr@acme.com", "Application update"),
    ])
    replies = iter([
        {**INVITE, "category": "follow_up", "urgency": "low"},
        {**INVITE, "category": "rejection", "urgency": "low"},
    ])
    ai = FakeAI({"EmailAnalysis": lambda prompt: next(replies)})
    syncer = syncer_for(engine, store, notifier, locks, clock, reader, ai)

    stats = syncer.sync_user("u1")

    assert stats["status_updates"] == 0
    assert engine.get_job("u1", job["id"])["status"] == "offer"


def test_rejection_after_applying(stored_job, store, notifier, locks, clock):
    engine, job = stored_job(company="Acme")
    engine.update_job_status("u1", job["id"], "applied")
    reader = FakeReader([message("<1>", "no-reply@greenhouse.io", "Your application to Acme")])
    ai = FakeAI({"EmailAnalysis": {**INVITE, "category": "rejection", "urgency": "low"}})

    syncer_for(engine, store, notifier, locks, clock, reader, ai).sync_user("u1")

    assert engine.get_job("u1", job["id"])["status"] == "rejected"
    assert notifier.list("u1")[0]["type"] == "email_response"


def test_is_job_related():
    assert is_job_related(message("1", "bot@lever.co", "Hello"), [])
    assert is_job_related(message("2", "a@b.com", "Phone screen next week?"), [])
    assert is_job_related(message("3", "jane@initech.com", "Coffee"), ["initech"])
    assert not is_job_related(message("4", "mum@family.net", "Dinner", "Sunday roast"), ["initech"])


def test_each_user_reads_only_their_own_mailbox(store, make_engine, notifier, locks, clock):
    for user_id in ("alice", "bob", "carol"):
        store.put(profile_key(user_id), dict(PROFILE))
    mailboxes = {
        "alice": FakeReader([message("<a1@acme.com>", "talent@acme.com", "Your application")]),
        "bob": FakeReader([message("<b1@initech.com>", "hr@initech.com", "Interview next week")]),
    }
    ai = FakeAI({"EmailAnalysis": {**INVITE, "category": "other", "urgency": "low"}})
    syncer = EmailSyncer(store, mailboxes.get, ai, make_engine([]), notifier, locks, clock)

    syncer.sync_user("alice")
    syncer.sync_user("bob")

    assert [e["external_id"] for e in store.get(emails_index_key("alice"))] == ["<a1@acme.com>"]
    assert [e["external_id"] for e in store.get(emails_index_key("bob"))] == ["<b1@initech.com>"]
    assert syncer.sync_user("carol") is None
    assert store.get(emails_index_key("carol")) is None


def b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def gmail_message(msg_id, sender, subject, text, received):
    return {
        "id": msg_id,
        "threadId": f"t-{msg_id}",
        "internalDate": str(int(received.timestamp() * 1000)),
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [{"name": "From", "value": sender}, {"name": "Subject", "value": subject}],
            "parts": [
                {"mimeType": "text/html", "body": {"data": b64("<p>ignored</p>")}},
                {"mimeType": "text/plain", "body": {"data": b64(text)}},
            ],
        },
    }


class _Call:
    def __init__(self, result):
        self.result = result

    def execute(self):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeGmail:
    def __init__(self, pages, by_id=None):
        self.pages = list(pages)
        self.by_id = by_id or {}
        self.queries = []

    def users(self):
        return self

    def messages(self):
        return self

    def list(self, userId, q, maxResults, pageToken=None):
        self.queries.append((q, pageToken))
        return _Call(self.pages.pop(0))

    def get(self, userId, id, format):
        return _Call(self.by_id[id])


def test_gmail_reader_pages_and_parses_messages():
    since = datetime(2026, 3, 1, tzinfo=timezone.utc)
    service = FakeGmail(
        [{"messages": [{"id": "m1"}], "nextPageToken": "p2"}, {"messages": [{"id": "m0"}]}],
        {
            "m1": gmail_message("m1", "Acme Talent <Talent@Acme.com>", "Interview", "Hi Ada", since + timedelta(hours=1)),
            "m0": gmail_message("m0", "old@acme.com", "Old", "stale", since - timedelta(hours=1)),
        },
    )
    reader = GmailMailboxReader(Credentials(token="t"), service=service)

    [msg] = reader.fetch_since(since)

    assert service.queries == [(f"after:{int(since.timestamp())}", None), (f"after:{int(since.timestamp())}", "p2")]
    assert msg.external_id == "m1"
    assert msg.thread_id == "t-m1"
    assert msg.sender == "talent@acme.com"
    assert msg.subject == "Interview"
    assert msg.body == "Hi Ada"
    assert msg.received_at == "2026-03-01T01:00:00+00:00"


def test_gmail_errors_are_external_service_errors():
    denied = HttpError(httplib2.Response({"status": "403"}), b"forbidden")
    reader = GmailMailboxReader(Credentials(token="t"), service=FakeGmail([denied]))
    with pytest.raises(ExternalServiceError):
        reader.fetch_since(None)


def test_gmail_connections_use_each_users_refresh_token(store, clock):
    connections = GmailConnections(store, "client-id", "client-secret")
    assert connections("u1") is None

    update_settings(store, "u1", lambda s: setattr(s, "google_refresh_token", "refresh-u1"), clock)
    reader = connections("u1")

    assert isinstance(reader, GmailMailboxReader)
    assert reader.credentials.refresh_token == "refresh-u1"
    assert reader.credentials.client_id == "client-id"
    assert connections("u2") is None
    assert GmailConnections(store, "", "")("u1") is None
