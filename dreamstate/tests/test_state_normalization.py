"""Tests for behavioral state normalization."""

import pytest

from dreamstate.models.state import (
    DEFAULT_ARCHETYPE,
    MAX_FACTS,
    MAX_INSIGHTS,
    LearnedFact,
    evict_lowest_confidence,
    normalize_state,
)


def fact(content, confidence=0.5, ts=1.0):
    return {
        "content": content,
        "scope": "Utility",
        "confidence": confidence,
        "source": "dwell",
        "timestamp": ts,
    }


def insight(i):
    return {"id": f"i{i}", "type": "pattern", "message": f"m{i}", "confidence": 0.7, "timestamp": float(i)}


@pytest.mark.parametrize("raw", [None, "garbage", 42, []])
def test_non_document_gives_defaults(raw):
    state = normalize_state(raw)
    assert state.user_archetype == DEFAULT_ARCHETYPE
    assert state.session_score == 0
    assert state.learned_facts == []
    assert state.credits.count == 20


def test_bad_field_falls_back_without_poisoning_others():
    state = normalize_state(
        {
            "sessionScore": "not-a-number",
            "userArchetype": "Writer",
            "keywordWeights": ["wrong", "shape"],
            "telemetryEnabled": False,
            "totalInputChars": float("nan"),
            "activePromptVariant": "Z",
        }
    )
    assert state.session_score == 0
    assert state.user_archetype == "Writer"
    assert state.keyword_weights == {}
    assert state.telemetry_enabled is False
    assert state.total_input_chars == 0
    assert state.active_prompt_variant == "A"


def test_malformed_facts_dropped_individually():
    state = normalize_state(
        {
            "learnedFacts": [
                fact("keep"),
                {"content": "no scope", "confidence": 0.5, "source": "dwell", "timestamp": 1},
                fact("too confident", confidence=1.5),
                "not a dict",
                fact("also keep", confidence=0.9),
            ]
        }
    )
    assert [f.content for f in state.learned_facts] == ["keep", "also keep"]


def test_facts_not_a_list_gives_empty():
    assert normalize_state({"learnedFacts": {"content": "x"}}).learned_facts == []


def test_fact_cap_evicts_lowest_confidence():
    facts = [fact(f"f{i}", confidence=0.9) for i in range(MAX_FACTS)]
    facts.insert(10, fact("weak", confidence=0.1))
    state = normalize_state({"learnedFacts": facts})
    assert len(state.learned_facts) == MAX_FACTS
    assert "weak" not in {f.content for f in state.learned_facts}


def test_insight_cap_keeps_newest_first():
    state = normalize_state({"insights": [insight(i) for i in range(MAX_INSIGHTS + 5)]})
    assert len(state.insights) == MAX_INSIGHTS
    assert state.insights[0].id == "i0"


def test_round_trip_document_uses_camel_case():
    doc = normalize_state({"sessionScore": 12, "learnedFacts": [fact("a")]}).to_document()
    assert doc["sessionScore"] == 12
    assert doc["learnedFacts"][0]["content"] == "a"
    assert "session_score" not in doc
    assert normalize_state(doc).to_document() == doc


def test_evict_removes_earliest_among_equal_confidence():
    facts = [LearnedFact.model_validate(fact(name, confidence=c)) for name, c in [("a", 0.3), ("b", 0.9), ("c", 0.3)]]
    kept = evict_lowest_confidence(facts, limit=2)
    assert [f.content for f in kept] == ["b", "c"]


def test_evict_within_limit_is_noop():
    facts = [LearnedFact.model_validate(fact("a"))]
    assert evict_lowest_confidence(facts) == facts
