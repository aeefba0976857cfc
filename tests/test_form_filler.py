from __future__ import annotations

from datetime import datetime, timezone

from autopilot.ai_client import AIResponseError
from autopilot.form_filler import analyze_form, plan_fill, years_of_experience
from autopilot.schemas import FormAnalysis

from conftest import PROFILE, FakeAI


def analysis(*fields, **kw) -> FormAnalysis:
    return FormAnalysis(fields=[dict(f) for f in fields], **kw)


def test_confidence_threshold_is_inclusive():
    plan = plan_fill(analysis(
        {"selector": "#a", "value": "x", "confidence": 0.5},
        {"selector": "#b", "value": "y", "confidence": 0.49},
    ))
    assert [f.selector for f in plan.accepted] == ["#a"]
    assert [f.selector for f in plan.skipped] == ["#b"]
    assert plan.requires_review is True
    assert plan.total == 2


def test_custom_answers_are_filled_as_textareas():
    a = FormAnalysis(custom_answers=[
        {"selector": "#why", "question": "Why us?", "answer": "Because.", "confidence": 0.8},
    ])
    plan = plan_fill(a)
    assert plan.accepted[0].type == "textarea"
    assert plan.accepted[0].label == "Why us?"
    assert plan.requires_review is False


def test_file_inputs_and_empty_values():
    plan = plan_fill(analysis(
        {"selector": "#cv", "type": "file", "value": "cv.pdf", "confidence": 1.0},
        {"selector": "#blank", "value": "", "confidence": 0.9},
    ))
    assert plan.accepted == []
    assert [f.selector for f in plan.skipped] == ["#blank"]


def test_custom_threshold():
    plan = plan_fill(analysis({"selector": "#a", "value": "x", "confidence": 0.7}), min_confidence=0.8)
    assert plan.accepted == []


def test_model_flag_forces_review():
    plan = plan_fill(analysis({"selector": "#a", "value": "x", "confidence": 0.9}, requires_manual_review=True))
    assert plan.requires_review is True
    assert len(plan.accepted) == 1


def test_analyze_without_ai_needs_review():
    result = analyze_form(None, "<form></form>", PROFILE, {"title": "Engineer"})
    assert result.requires_manual_review is True
    assert result.fields == []


def test_analyze_failure_needs_review():
    ai = FakeAI({"FormAnalysis": AIResponseError("not json")})
    result = analyze_form(ai, "<form></form>", PROFILE, {"title": "Engineer"})
    assert result.requires_manual_review is True
    assert "manual application required" in result.warnings[0]


def test_prompt_carries_profile_and_form():
    ai = FakeAI({"FormAnalysis": {"fields": []}})
    analyze_form(ai, "<form id='apply'></form>", PROFILE, {"title": "Engineer", "company": "Acme"})
    _, prompt = ai.calls[0]
    assert "Company: Acme" in prompt
    assert "ada@example.com" in prompt
    assert "<form id='apply'>" in prompt


def test_years_of_experience():
    profile = {"experience": [
        {"start_date": "2018-01", "end_date": "2020-01"},
        {"start_date": "2020-01"},
        {"start_date": None},
    ]}
    now = datetime(2026, 1, 15, tzinfo=timezone.utc)
    assert years_of_experience(profile, now) == 8
