"""
Unit tests for link script evaluation.
"""

import pytest
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from linkpulse.schemas import LinkScript, LinkSnapshot, ScriptAction
from linkpulse.scripts import (
    ALWAYS,
    NEVER,
    ScriptCondition,
    ScriptEngine,
    ScriptField,
    parse_condition,
    tokenize,
)

# Monday, 14:30 UTC
NOW = datetime(2026, 10, 19, 14, 30, tzinfo=timezone.utc)

engine = ScriptEngine()


def make_link(*scripts, **counters) -> LinkSnapshot:
    return LinkSnapshot(
        id=1,
        short_code="promo",
        original_url="https://example.com",
        default_target_url="https://example.com",
        scripts=[LinkScript.model_validate(s) for s in scripts],
        **counters,
    )


def script(script_id, condition, action="notify", **params):
    return {"id": script_id, "condition": condition, "action": action, "action_params": params}


class TestParseCondition:
    """Tests for the condition parser."""

    def test_comparison(self):
        assert parse_condition("clicks_today > 100") == ScriptCondition(ScriptField.CLICKS_TODAY, ">", 100)

    def test_whitespace_is_optional(self):
        assert parse_condition("hour>=18") == ScriptCondition(ScriptField.HOUR, ">=", 18)

    def test_identifiers_are_case_insensitive(self):
        assert parse_condition("Trust_Score < 50") == ScriptCondition(ScriptField.TRUST_SCORE, "<", 50)

    @pytest.mark.parametrize("op", [">", "<", ">=", "<=", "==", "!="])
    def test_all_operators(self, op):
        assert parse_condition(f"day {op} 3").op == op

    def test_literals(self):
        assert parse_condition("always") is ALWAYS
        assert parse_condition("NEVER") is NEVER

    @pytest.mark.parametrize("text", [
        "",
        "clicks_today >",
        "clicks_today > 10 and hour > 3",
        "visitors > 10",
        "clicks_today > -1",
        "clicks_today => 10",
        "10 < clicks_today",
        "sometimes",
        "__import__('os')",
    ])
    def test_unparseable(self, text):
        assert parse_condition(text) is None

    def test_tokenize_rejects_stray_characters(self):
        assert tokenize("hour > 3;") is None
        assert tokenize("hour > 3") == [("ident", "hour"), ("op", ">"), ("int", "3")]


class TestScriptEngine:
    """Tests for ScriptEngine.evaluate."""

    def test_threshold_fires(self):
        link = make_link(script("busy", "clicks_today > 100", webhook="ops"), clicks_today=150)
        results = engine.evaluate(link, now=NOW)
        assert len(results) == 1
        assert results[0].script_id == "busy"
        assert results[0].action is ScriptAction.NOTIFY
        assert results[0].params == {"webhook": "ops"}

    def test_threshold_not_reached(self):
        link = make_link(script("busy", "clicks_today > 100"), clicks_today=100)
        assert engine.evaluate(link, now=NOW) == []

    def test_unparseable_script_is_inert(self):
        link = make_link(
            script("broken", "clicks_today >>> 1"),
            script("ok", "always", action="pause"),
        )
        results = engine.evaluate(link, now=NOW)
        assert [r.script_id for r in results] == ["ok"]

    def test_never_does_not_fire(self):
        link = make_link(script("off", "never"))
        assert engine.evaluate(link, now=NOW) == []

    def test_results_keep_script_order(self):
        link = make_link(
            script("b", "always"),
            script("a", "total_clicks >= 0", action="switch_target", url="https://example.com/b"),
        )
        assert [r.script_id for r in engine.evaluate(link, now=NOW)] == ["b", "a"]

    def test_clicks_this_hour_defaults_to_zero(self):
        link = make_link(script("spike", "clicks_hour > 5"))
        assert engine.evaluate(link, now=NOW) == []

    def test_stats_override(self):
        link = make_link(script("spike", "clicks_hour > 5"))
        results = engine.evaluate(link, stats_override={"clicks_this_hour": 6}, now=NOW)
        assert [r.script_id for r in results] == ["spike"]

    def test_unknown_override_keys_are_ignored(self):
        stats = engine.build_stats(make_link(), {"bogus": 1, "health_score": 20}, NOW)
        assert stats.health_score == 20
        assert not hasattr(stats, "bogus")

    def test_hour_and_day_come_from_clock(self):
        link = make_link(
            script("afternoon", "hour == 14"),
            script("monday", "day == 1"),
            script("weekend", "day == 0"),
        )
        assert [r.script_id for r in engine.evaluate(link, now=NOW)] == ["afternoon", "monday"]

    def test_health_and_trust_scores(self):
        link = make_link(script("unhealthy", "health_score < 50"), health_score=30, trust_score=90)
        assert [r.script_id for r in engine.evaluate(link, now=NOW)] == ["unhealthy"]

    def test_evaluation_does_not_mutate_link(self):
        link = make_link(script("busy", "always"), clicks_today=3)
        before = link.model_dump()
        engine.evaluate(link, now=NOW)
        assert link.model_dump() == before
