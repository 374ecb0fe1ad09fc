"""
Unit tests for pricing and usage accounting.

Tests cover:
- LLM and image cost calculation
- Completed and partial cost breakdowns
- Usage ledger events for successful and failed runs
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from src.cover_art.pricing import (
    DEFAULT_IMAGE_COST,
    RunCosts,
    build_cost_breakdown,
    calculate_image_cost,
    calculate_llm_cost,
)
from src.cover_art.usage import (
    ACTION_CONVERGENCE,
    ACTION_EXTRACTION,
    ACTION_IMAGE,
    ACTION_LIGHT_EXTRACTION,
    UsageLedger,
)


class TestCalculateCosts:
    """Tests for calculate_llm_cost() and calculate_image_cost()."""

    def test_llm_cost_per_million(self):
        cost = calculate_llm_cost("gpt-4o-mini", 1_000_000, 1_000_000)

        assert cost == Decimal("0.75")

    def test_llm_cost_small_counts(self):
        assert calculate_llm_cost("gpt-4o-mini", 1000, 500) == Decimal("0.00045")

    def test_unknown_llm_model_costs_zero(self):
        assert calculate_llm_cost("mystery-model", 1000, 1000) == Decimal("0")

    def test_image_cost(self):
        assert calculate_image_cost("stability-ai/stable-diffusion-3.5-large") == Decimal("0.035")
        assert calculate_image_cost("someone/custom-lora") == DEFAULT_IMAGE_COST


class TestRunCosts:
    """Tests for RunCosts breakdowns."""

    def test_completed_breakdown_has_three_steps(self):
        costs = RunCosts("gpt-4o-mini", "someone/model", 1000, 200, 500, 100, image_generated=True)

        breakdown = build_cost_breakdown(costs.completed_steps())

        assert [s["step"] for s in breakdown["steps"]] == ["extract_themes", "convergence", "image_generation"]
        assert breakdown["steps"][0]["input_tokens"] == 1000
        assert "input_tokens" not in breakdown["steps"][2]
        assert breakdown["total_usd"] == pytest.approx(0.00027 + 0.000135 + 0.04)

    def test_partial_breakdown_only_bills_spent_steps(self):
        costs = RunCosts("gpt-4o-mini", "someone/model", extraction_input_tokens=800,
                         extraction_output_tokens=100)

        breakdown = build_cost_breakdown(costs.partial_steps())

        assert [s["step"] for s in breakdown["steps"]] == ["extract_themes"]

    def test_nothing_spent(self):
        assert build_cost_breakdown(RunCosts("gpt-4o-mini", "m").partial_steps()) is None

    def test_token_totals(self):
        costs = RunCosts("gpt-4o-mini", "m", 10, 2, 30, 4)

        assert (costs.input_tokens, costs.output_tokens) == (40, 6)


class TestUsageLedger:
    """Tests for UsageLedger."""

    RUN = dict(user_id="u1", generation_id="g1", playlist_id="p1", style_id="s1",
               job_id=None, trigger_source="cron")

    def test_successful_run_records_each_step(self, db):
        ledger = UsageLedger(db)
        costs = RunCosts("gpt-4o-mini", "m", 1000, 200, 500, 100, image_generated=True)

        written = ledger.record_run(costs, duration_ms=1234, **self.RUN)

        events = db.list_usage_events("g1")
        assert written == 3
        assert [e["action_type"] for e in events] == [ACTION_EXTRACTION, ACTION_CONVERGENCE, ACTION_IMAGE]
        assert all(e["status"] == "success" for e in events)
        assert events[2]["duration_ms"] == 1234
        assert events[0]["tokens_in"] == 1000
        assert events[0]["model_unit_cost"] == pytest.approx(0.15)

    def test_light_extraction_action(self, db):
        ledger = UsageLedger(db)
        costs = RunCosts("gpt-4o-mini", "m", convergence_input_tokens=50,
                         convergence_output_tokens=20, image_generated=True,
                         used_light_extraction=True)

        ledger.record_run(costs, **self.RUN)

        actions = [e["action_type"] for e in db.list_usage_events("g1")]
        assert actions == [ACTION_LIGHT_EXTRACTION, ACTION_IMAGE]

    def test_failed_run_without_image_bills_no_image(self, db):
        ledger = UsageLedger(db)
        costs = RunCosts("gpt-4o-mini", "m", 1000, 200)

        written = ledger.record_run(costs, error_message="Convergence failed: x" * 100, **self.RUN)

        events = db.list_usage_events("g1")
        assert written == 1
        assert events[0]["action_type"] == ACTION_EXTRACTION
        assert events[0]["status"] == "failed"
        assert len(events[0]["error_message"]) == 500

    def test_failed_run_after_image_bills_image(self, db):
        ledger = UsageLedger(db)
        costs = RunCosts("gpt-4o-mini", "m", image_generated=True)

        ledger.record_run(costs, error_message="upload failed", duration_ms=99, **self.RUN)

        events = db.list_usage_events("g1")
        assert [e["action_type"] for e in events] == [ACTION_IMAGE]
        assert events[0]["duration_ms"] is None

    def test_write_failure_is_swallowed(self):
        db = Mock()
        db.insert_usage_event.side_effect = RuntimeError("disk full")

        ok = UsageLedger(db).record(user_id="u", action_type=ACTION_IMAGE, model="m",
                                    cost_usd=Decimal("0.04"))

        assert ok is False
