"""
Unit tests for retrying LLM analysis with heuristic fallback.
"""

import hiro.ai.enhanced_analysis as enhanced
from hiro.ai.enhanced_analysis import (
    analyze_with_fallback,
    batch_analyze_with_fallback,
    determine_stage_by_score,
    fix_low_scores,
    stored_conversation,
)
from hiro.ai.llm_gateway import ContactAnalysis
from hiro.db import models

MESSAGES = [
    {"from": "Ana", "text": "hello"},
    {"from": "Shop", "text": "hi there"},
]

STAGES = [
    {"name": "New Lead", "type": "LEAD", "lead_score_min": 0, "lead_score_max": 30},
    {"name": "Qualified", "type": "IN_PROGRESS", "lead_score_min": 31, "lead_score_max": 80},
    {"name": "Won", "type": "WON", "lead_score_min": 81, "lead_score_max": 100},
]


# ─── STAGE BY SCORE ──────────────────────────────────────────

def test_determine_stage_without_stages():
    assert determine_stage_by_score(50, None) == "New Lead"
    assert determine_stage_by_score(50, []) == "New Lead"


def test_determine_stage_by_containing_range():
    assert determine_stage_by_score(50, STAGES) == "Qualified"
    assert determine_stage_by_score(0, STAGES) == "New Lead"


def test_determine_stage_closest_midpoint():
    gapped = [
        {"name": "Low", "lead_score_min": 0, "lead_score_max": 10},
        {"name": "High", "lead_score_min": 90, "lead_score_max": 100},
    ]
    assert determine_stage_by_score(60, gapped) == "High"
    # Equal distance keeps the first stage
    assert determine_stage_by_score(50, gapped) == "Low"


def test_determine_stage_missing_bounds_default_to_full_range():
    assert determine_stage_by_score(70, [{"name": "Any"}]) == "Any"


# ─── ANALYZE WITH FALLBACK ───────────────────────────────────

def test_ai_success_on_first_attempt(fake_gateway, no_sleep):
    analysis = ContactAnalysis(summary="s", recommended_stage="Qualified", lead_score=55,
                               lead_status="QUALIFIED", confidence=80, reasoning="r")
    result = analyze_with_fallback(MESSAGES, STAGES, gateway=fake_gateway(analysis=analysis))
    assert result.used_fallback is False
    assert result.retry_count == 0
    assert result.analysis.lead_score == 55
    assert no_sleep == []


def test_exhausted_retries_fall_back_to_heuristics(fake_gateway, no_sleep):
    gateway = fake_gateway(analysis=None)
    result = analyze_with_fallback(MESSAGES, STAGES, max_retries=3, gateway=gateway)

    assert result.used_fallback is True
    assert result.retry_count == 3
    assert no_sleep == [2, 4]
    assert len(gateway.recommend_calls) == 3
    assert result.analysis.summary.startswith("Analyzed 2 messages.")
    assert result.analysis.lead_score == 45
    assert result.analysis.recommended_stage == "Qualified"


def test_exceptions_count_as_failed_attempts(fake_gateway, no_sleep):
    gateway = fake_gateway(error=RuntimeError("boom"))
    result = analyze_with_fallback(MESSAGES, STAGES, max_retries=2, gateway=gateway)
    assert result.used_fallback is True
    assert result.retry_count == 2
    assert no_sleep == [2]


def test_without_stages_uses_summary_and_fallback_score(fake_gateway, no_sleep):
    result = analyze_with_fallback(MESSAGES, None, gateway=fake_gateway(summary="Wants a quote"))
    assert result.used_fallback is True
    assert result.retry_count == 0
    assert result.analysis.summary == "Wants a quote"
    assert result.analysis.recommended_stage == "New Lead"
    assert result.analysis.lead_score == 45


def test_result_to_dict_uses_camel_case(fake_gateway, no_sleep):
    data = analyze_with_fallback(MESSAGES, None, gateway=fake_gateway()).to_dict()
    assert data["usedFallback"] is True
    assert "leadScore" in data["analysis"]
    assert "recommendedStage" in data["analysis"]


# ─── BATCH ───────────────────────────────────────────────────

def test_batch_uses_emergency_fallback_on_crash(test_db, fake_gateway, no_sleep, monkeypatch):
    real = enhanced.analyze_with_fallback

    def flaky(messages, stages, age, max_retries=3, gateway=None):
        if messages and messages[0]["text"] == "crash":
            raise ValueError("unexpected")
        return real(messages, stages, age, max_retries=max_retries, gateway=gateway)

    monkeypatch.setattr(enhanced, "analyze_with_fallback", flaky)
    items = [
        {"contact_id": "c1", "messages": MESSAGES},
        {"contact_id": "c2", "messages": [{"from": "Bo", "text": "crash"}]},
    ]
    results = batch_analyze_with_fallback(items, STAGES, delay=0,
                                          gateway=fake_gateway(analysis=None))

    assert set(results) == {"c1", "c2"}
    emergency = results["c2"].analysis
    assert emergency.confidence == 30
    assert emergency.summary == "Analysis failed - minimum score assigned"
    assert emergency.recommended_stage == "New Lead"


# ─── STORED CONVERSATIONS / FIX LOW SCORES ───────────────────

def _store(contact, texts):
    for i, text in enumerate(texts):
        models.create_message({
            "contact_id": contact["id"],
            "content": text,
            "is_from_business": i % 2 == 1,
            "status": "SENT" if i % 2 else "RECEIVED",
            "created_at": f"2024-05-01T09:0{i}:00",
        })


def test_stored_conversation_labels_senders(make_contact):
    contact = make_contact(first_name="Ana", last_name="Lopez")
    _store(contact, ["hello", "hi there"])
    assert stored_conversation(contact) == [
        {"from": "Ana Lopez", "text": "hello"},
        {"from": "Business", "text": "hi there"},
    ]


def test_fix_low_scores_updates_contacts_in_range(make_contact, fake_gateway, no_sleep):
    low = make_contact(first_name="Ana", lead_score=5)
    high = make_contact(first_name="Bo", lead_score=70)
    _store(low, ["hello", "hi there"])

    summary = fix_low_scores(low["organization_id"], min_score=0, max_score=15, delay=0,
                             gateway=fake_gateway(summary="Asked about the dress"))

    assert summary["processed"] == 1
    assert summary["updated"] == 1
    assert summary["usedFallback"] == 1
    assert summary["results"][0] == {"contactId": low["id"], "oldScore": 5, "newScore": 45,
                                     "usedFallback": True}

    updated = models.get_contact(low["id"])
    assert updated["lead_score"] == 45
    assert updated["lead_status"] == "CONTACTED"
    assert updated["ai_context"] == "Asked about the dress"
    assert models.get_contact(high["id"])["lead_score"] == 70

    activity = models.list_activities(low["id"])[0]
    assert activity["type"] == "STATUS_CHANGED"
    assert activity["metadata"]["oldScore"] == 5
    assert activity["metadata"]["newScore"] == 45
