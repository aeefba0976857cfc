from __future__ import annotations

import threading

import pytest

from autopilot.auto_apply import (
    check_rule,
    count_applications_today,
    get_auto_apply_rule,
    reset_auto_apply_rule,
    run_auto_apply_for_user,
    update_auto_apply_rule,
)
from autopilot.errors import ValidationError
from autopilot.schemas import AutoApplyRule
from autopilot.storage import applications_index_key

from conftest import FakeAI, FakeDriver, FakeSource, make_raw

FORM_OK = {"fields": [{"selector": "#email", "type": "email", "value": "ada@example.com", "confidence": 0.9}]}


def scored_ai(scores: dict[str, int]) -> FakeAI:
    def reply(prompt):
        for company, score in scores.items():
            if f"Company: {company}\n" in prompt:
                return {"match_score": score}
        return {"match_score": 0}

    return FakeAI({"JobMatchAnalysis": reply, "FormAnalysis": FORM_OK})


def test_defaults_when_no_rule_stored(store, user):
    rule = get_auto_apply_rule(store, user)
    assert rule.enabled is False
    assert rule.min_match_score == 70
    assert rule.max_applications_per_day == 10


def test_update_merges_and_validates(store, user, clock, locks):
    rule = update_auto_apply_rule(store, user, {"enabled": True, "min_match_score": 80}, locks, clock=clock)
    assert rule.enabled and rule.min_match_score == 80

    rule = update_auto_apply_rule(store, user, {"platforms": ["remoteok"]}, locks, clock=clock)
    assert rule.min_match_score == 80
    assert get_auto_apply_rule(store, user).platforms == ["remoteok"]

    with pytest.raises(ValidationError):
        update_auto_apply_rule(store, user, {"max_applications_per_day": 51}, locks, clock=clock)
    with pytest.raises(ValidationError):
        update_auto_apply_rule(store, user, {"min_match_score": -1}, locks, clock=clock)
    with pytest.raises(ValidationError):
        update_auto_apply_rule(store, user, {"cover_letters": True}, locks, clock=clock)
    assert get_auto_apply_rule(store, user).min_match_score == 80


def test_reset_restores_defaults(store, user, clock, locks):
    update_auto_apply_rule(store, user, {"enabled": True, "exclude_companies": ["Acme"]}, locks, clock=clock)
    rule = reset_auto_apply_rule(store, user, locks, clock=clock)
    assert rule == AutoApplyRule()


def test_rule_updates_wait_for_the_users_lock(store, user, clock, locks):
    done = threading.Event()

    def update():
        update_auto_apply_rule(store, user, {"enabled": True}, locks, clock=clock)
        done.set()

    with locks(user):
        worker = threading.Thread(target=update)
        worker.start()
        assert not done.wait(0.2)
        assert get_auto_apply_rule(store, user).enabled is False
    worker.join(timeout=2)

    assert done.is_set()
    assert get_auto_apply_rule(store, user).enabled is True


@pytest.mark.parametrize("changes,job,applied_today,allowed", [
    ({}, {"match_score": 90}, 0, True),
    ({"enabled": False}, {"match_score": 90}, 0, False),
    ({}, {"match_score": 65}, 0, False),
    ({}, {"match_score": 70}, 0, True),
    ({}, {"match_score": 90}, 10, False),
    ({"platforms": ["remotive"]}, {"match_score": 90, "platform": "remoteok"}, 0, False),
    ({"exclude_companies": ["acme"]}, {"match_score": 90, "company": "ACME Corp"}, 0, False),
    ({"require_remote": True}, {"match_score": 90, "remote": False}, 0, False),
    ({"min_salary": 150000}, {"match_score": 90, "salary": {"min": 90000, "max": 120000}}, 0, False),
    ({"min_salary": 150000}, {"match_score": 90, "salary": None}, 0, True),
])
def test_check_rule(changes, job, applied_today, allowed):
    rule = AutoApplyRule(**{"enabled": True, **changes})
    assert check_rule(rule, job, applied_today).allowed is allowed


def test_score_below_threshold_blocks_only_the_automatic_path(user, make_engine, make_applicant, store, clock, locks):
    ai = scored_ai({"Acme": 65})
    engine = make_engine([FakeSource("remoteok", [make_raw("1", "remoteok", company="Acme")])], ai=ai)
    job = engine.search_jobs(user, {"keywords": []})["jobs"][0]
    assert job["match_score"] == 65
    update_auto_apply_rule(store, user, {"enabled": True, "min_match_score": 70}, locks, clock=clock)
    driver = FakeDriver()
    applicant = make_applicant(engine, driver, ai)

    summary = run_auto_apply_for_user(applicant, user)

    assert summary["attempted"] == 0
    assert summary["skipped"] == 1
    assert driver.calls == []

    manual = applicant.apply_to_job(user, job["id"])
    assert manual.status.value == "submitted"


def test_daily_cap_and_best_match_first(user, make_engine, make_applicant, store, clock, locks):
    ai = scored_ai({"Acme": 75, "Globex": 95, "Initech": 85})
    jobs = [make_raw("1", "remoteok", company="Acme", title="Platform Engineer"),
            make_raw("2", "remoteok", company="Globex", title="API Developer"),
            make_raw("3", "remoteok", company="Initech", title="Site Reliability")]
    engine = make_engine([FakeSource("remoteok", jobs)], ai=ai)
    engine.search_jobs(user, {"keywords": []})
    update_auto_apply_rule(store, user, {"enabled": True, "max_applications_per_day": 2}, locks, clock=clock)
    applicant = make_applicant(engine, FakeDriver(), ai)
    naps = []

    summary = run_auto_apply_for_user(applicant, user, delay_seconds=5, sleep=naps.append)

    assert summary["attempted"] == 2
    assert summary["submitted"] == 2
    assert naps == [5]
    applied = {j["company"] for j in engine.list_jobs(user, status="applied")}
    assert applied == {"Globex", "Initech"}
    assert count_applications_today(store, user, clock()) == 2

    again = run_auto_apply_for_user(applicant, user)
    assert again["attempted"] == 0


def test_applications_from_yesterday_do_not_count(store, user, clock):
    store.put(applications_index_key(user), [
        {"id": "a1", "job_id": "j1", "status": "submitted", "applied_at": "2026-03-01T23:59:00+00:00"},
        {"id": "a2", "job_id": "j2", "status": "submitted", "applied_at": "2026-03-02T00:01:00+00:00"},
        {"id": "a3", "job_id": "j3", "status": "pending_review", "applied_at": None},
    ])
    assert count_applications_today(store, user, clock()) == 1


def test_disabled_rule_does_nothing(stored_job, make_applicant):
    engine, _ = stored_job()
    driver = FakeDriver()
    summary = run_auto_apply_for_user(make_applicant(engine, driver, FakeAI()), "u1")
    assert summary["attempted"] == 0
    assert driver.calls == []
