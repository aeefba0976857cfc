from __future__ import annotations

from datetime import timedelta

import pytest

from autopilot.errors import NotFoundError
from autopilot.followups import InterviewFollowups
from autopilot.models import iso
from autopilot.storage import interview_key, interviews_index_key

from conftest import FakeAI


@pytest.fixture
def add_interview(store, user, clock):
    def add(interview_id, offset, status="confirmed", **extra):
        doc = {
            "id": interview_id, "company": "Acme", "role": "Backend Engineer", "status": status,
            "scheduled_at": iso(clock() + offset), **extra,
        }
        store.put(interview_key(user, interview_id), doc)
        store.update(
            interviews_index_key(user),
            lambda cur: (cur or []) + [{k: doc[k] for k in ("id", "company", "status", "scheduled_at")}],
        )
        return doc

    return add


def followups(store, notifier, locks, clock, ai=None):
    return InterviewFollowups(store, ai, notifier, locks, clock)


def test_hour_reminder_is_critical_and_sent_once(store, notifier, locks, clock, add_interview):
    add_interview("i1", timedelta(minutes=45), meeting_link="https://meet.example/x")
    runner = followups(store, notifier, locks, clock)

    first = runner.run_for_user("u1")
    second = runner.run_for_user("u1")

    assert first["reminders"] == 1
    assert second["reminders"] == 0
    [n] = notifier.list("u1")
    assert n["priority"] == "critical"
    assert "https://meet.example/x" in n["message"]
    doc = store.get(interview_key("u1", "i1"))
    assert doc["hour_reminder_sent"] and doc["day_reminder_sent"]


def test_day_reminder_then_hour_reminder(store, notifier, locks, clock, add_interview):
    add_interview("i1", timedelta(hours=5))
    runner = followups(store, notifier, locks, clock)

    assert runner.run_for_user("u1")["reminders"] == 1
    assert notifier.list("u1")[0]["priority"] == "high"

    clock.advance(hours=4, minutes=30)
    assert runner.run_for_user("u1")["reminders"] == 1
    assert notifier.list("u1")[0]["priority"] == "critical"


def test_far_future_and_unconfirmed_interviews_are_ignored(store, notifier, locks, clock, add_interview):
    add_interview("later", timedelta(days=3))
    add_interview("tentative", timedelta(minutes=30), status="scheduled")
    stats = followups(store, notifier, locks, clock).run_for_user("u1")
    assert stats == {"reminders": 0, "thank_you_drafts": 0, "errors": []}


def test_thank_you_draft_after_the_interview(store, notifier, locks, clock, add_interview):
    add_interview("i1", -timedelta(hours=3), interviewer_name="Sam")
    ai = FakeAI(text="  Dear Sam, thank you.  ")

    stats = followups(store, notifier, locks, clock, ai).run_for_user("u1")

    assert stats["thank_you_drafts"] == 1
    doc = store.get(interview_key("u1", "i1"))
    assert doc["thank_you_draft"] == "Dear Sam, thank you."
    assert doc["thank_you_reminder_sent"] is True
    assert notifier.list("u1")[0]["type"] == "thank_you_ready"
    assert "Interviewer: Sam" in ai.calls[0][1]


def test_thank_you_template_without_ai(store, notifier, locks, clock, add_interview):
    add_interview("i1", -timedelta(hours=1))
    runner = followups(store, notifier, locks, clock)

    assert runner.run_for_user("u1")["thank_you_drafts"] == 0
    draft = runner.generate_thank_you("u1", "i1")

    assert "Backend Engineer position at Acme" in draft
    assert draft.endswith("Ada Example")
    assert store.get(interview_key("u1", "i1"))["thank_you_draft"] == draft
    with pytest.raises(NotFoundError):
        runner.generate_thank_you("u1", "missing")


def test_index_stored_as_mapping_is_supported(store, notifier, locks, clock, user):
    doc = {"id": "i9", "company": "Acme", "status": "confirmed", "scheduled_at": iso(clock() + timedelta(minutes=10))}
    store.put(interview_key(user, "i9"), doc)
    store.put(interviews_index_key(user), {"interviews": [doc]})
    assert followups(store, notifier, locks, clock).run_for_user(user)["reminders"] == 1
