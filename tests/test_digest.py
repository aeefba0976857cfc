from __future__ import annotations

from datetime import timedelta

import pytest

from autopilot.digest import DailyDigest, build_digest_message, compile_digest, has_activity
from autopilot.models import iso
from autopilot.settings import load_settings
from autopilot.storage import applications_index_key, emails_index_key, interviews_index_key


@pytest.fixture
def digest(store, notifier, channels, locks, clock):
    return DailyDigest(store, notifier, channels, locks, clock)


def test_digest_is_sent_once_per_day(stored_job, digest, notifier, channels, store, clock):
    stored_job()
    notifier.update_preferences("u1", {"email": "ada@example.com"})

    first = digest.run_for_user("u1")
    second = digest.run_for_user("u1")

    assert first == {"sent": True, "emailed": True}
    assert second["sent"] is False
    assert second["reason"] == "already sent today"
    [n] = notifier.list("u1")
    assert n["type"] == "daily_digest"
    assert n["priority"] == "low"
    assert "1 new job found" in n["message"]
    to, body, subject = channels["email"].sent[0]
    assert to == "ada@example.com"
    assert subject.startswith("Job search digest")
    assert load_settings(store, "u1").last_digest_sent_at == clock().isoformat()

    clock.advance(days=1)
    assert digest.run_for_user("u1")["reason"] == "no activity"


def test_waits_for_local_digest_time(stored_job, digest, notifier):
    stored_job()
    # 10:00 UTC is 05:00 in New York.
    notifier.update_preferences("u1", {"timezone": "America/New_York", "daily_digest_time": "08:00"})
    assert digest.run_for_user("u1")["reason"] == "not yet time"


def test_disabled_digest(stored_job, digest, notifier):
    stored_job()
    notifier.update_preferences("u1", {"daily_digest": False})
    assert digest.run_for_user("u1") == {"sent": False, "emailed": False, "reason": "disabled"}


def test_email_failure_still_records_in_app(stored_job, digest, notifier, channels):
    stored_job()
    notifier.update_preferences("u1", {"email": "ada@example.com"})
    channels["email"].fail = True

    result = digest.run_for_user("u1")

    assert result["sent"] is True
    assert result["emailed"] is False
    assert "provider down" in result["error"]


def test_compile_digest_counts_today_only(store, user, clock):
    now = clock()
    yesterday = iso(now - timedelta(days=1))
    store.put("users/u1/jobs/index.json", [
        {"id": "a", "company": "Acme", "title": "Engineer", "match_score": 88, "saved_at": iso(now)},
        {"id": "b", "company": "Globex", "title": "SRE", "match_score": 91, "saved_at": yesterday},
    ])
    store.put(applications_index_key(user), [
        {"id": "x", "applied_at": iso(now - timedelta(hours=2))},
        {"id": "y", "applied_at": None},
    ])
    store.put(emails_index_key(user), [
        {"received_at": iso(now), "is_job_related": True, "category": "rejection"},
        {"received_at": iso(now), "is_job_related": True, "category": "other"},
        {"received_at": iso(now), "is_job_related": False, "category": None},
    ])
    store.put(interviews_index_key(user), [
        {"id": "i1", "status": "confirmed", "scheduled_at": iso(now + timedelta(days=2))},
        {"id": "i2", "status": "confirmed", "scheduled_at": iso(now + timedelta(days=9))},
        {"id": "i3", "status": "scheduled", "scheduled_at": iso(now + timedelta(days=1))},
    ])

    data = compile_digest(store, user, now)

    assert data["new_jobs_today"] == 1
    assert data["applications_sent_today"] == 1
    assert data["responses_received_today"] == 1
    assert data["upcoming_interviews_this_week"] == 1
    assert data["top_match_job"]["company"] == "Acme"
    assert has_activity(data)


def test_build_digest_message():
    data = {
        "new_jobs_today": 3, "applications_sent_today": 1, "responses_received_today": 0,
        "upcoming_interviews_this_week": 2,
        "top_match_job": {"company": "Acme", "title": "Engineer", "match_score": 92, "location": "Remote"},
    }
    assert build_digest_message(data) == (
        "3 new jobs found | 1 application sent | 2 interviews this week"
        "\n\nTop match: Acme - Engineer (92% match)"
    )
    empty = dict.fromkeys(data, 0) | {"top_match_job": None}
    assert build_digest_message(empty) == "No new activity today"
    assert not has_activity(empty)
