from __future__ import annotations

import pytest

from autopilot.errors import NotFoundError, ValidationError

from conftest import FakeSource, make_raw


def test_update_status_stamps_applied_and_response(stored_job, clock):
    engine, job = stored_job()

    applied = engine.update_job_status("u1", job["id"], "applied")
    assert applied["status"] == "applied"
    assert applied["applied_at"] == clock().isoformat()
    assert applied["response_at"] is None

    clock.advance(days=2)
    screening = engine.update_job_status("u1", job["id"], "SCREENING")
    assert screening["status"] == "screening"
    assert screening["response_at"] == clock().isoformat()
    assert screening["applied_at"] == applied["applied_at"]


def test_update_to_same_status_is_a_no_op(stored_job, store):
    engine, job = stored_job()
    engine.update_job_status("u1", job["id"], "saved")
    writes = store.writes

    again = engine.update_job_status("u1", job["id"], "saved")

    assert again["status"] == "saved"
    assert store.writes == writes


def test_any_label_may_follow_any_other(stored_job):
    engine, job = stored_job()
    engine.update_job_status("u1", job["id"], "rejected")
    assert engine.update_job_status("u1", job["id"], "discovered")["status"] == "discovered"


def test_unknown_status_label(stored_job):
    engine, job = stored_job()
    with pytest.raises(ValidationError) as exc:
        engine.update_job_status("u1", job["id"], "ghosted")
    assert "ghosted" in exc.value.message
    assert exc.value.status_code == 400


def test_unknown_job(stored_job):
    engine, _ = stored_job()
    with pytest.raises(NotFoundError):
        engine.update_job_status("u1", "missing", "saved")


def test_toggle_saved_round_trip_and_guard(stored_job):
    engine, job = stored_job()
    assert engine.toggle_saved("u1", job["id"])["status"] == "saved"
    assert engine.toggle_saved("u1", job["id"])["status"] == "discovered"

    engine.update_job_status("u1", job["id"], "interview")
    with pytest.raises(ValidationError):
        engine.toggle_saved("u1", job["id"])


def test_index_follows_status_changes(stored_job):
    engine, job = stored_job()
    engine.update_job_status("u1", job["id"], "applied")

    assert [j["id"] for j in engine.list_jobs("u1", status="applied")] == [job["id"]]
    assert engine.list_jobs("u1", status="discovered") == []
    assert engine.get_pipeline("u1")["applied"][0]["id"] == job["id"]


def test_list_filters(user, make_engine):
    jobs = [
        make_raw("1", "remoteok", company="Acme"),
        make_raw("2", "remotive", company="Globex", title="Designer", description="Figma",
                 tags=[], remote=False, location="Berlin"),
    ]
    engine = make_engine([FakeSource("multi", jobs)])
    engine.search_jobs(user, {"keywords": []})

    assert [j["platform"] for j in engine.list_jobs(user, platform="remotive")] == ["remotive"]
    high = engine.list_jobs(user, min_score=70)
    assert [j["company"] for j in high] == ["Acme"]


def test_stats(user, make_engine):
    jobs = [make_raw(str(i), "remoteok", company=f"Co{i}", title=f"Role number {i * 7}") for i in range(4)]
    engine = make_engine([FakeSource("remoteok", jobs)])
    ids = [j["id"] for j in engine.search_jobs(user, {"keywords": []})["jobs"]]

    engine.update_job_status(user, ids[0], "applied")
    engine.update_job_status(user, ids[1], "applied")
    engine.update_job_status(user, ids[1], "interview")
    engine.update_job_status(user, ids[2], "applied")
    engine.update_job_status(user, ids[2], "rejected")

    stats = engine.get_stats(user)
    assert stats["total_jobs"] == 4
    assert stats["applied"] == 3
    assert stats["interviews"] == 1
    assert stats["response_rate"] == pytest.approx(66.7)
    assert stats["by_platform"] == {"remoteok": 4}
    assert stats["by_status"]["discovered"] == 1
