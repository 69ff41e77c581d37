"""
Tests for the usage accounting service.

Covers transaction lifecycle, subcall attribution, aggregation and the
best-effort failure policy.
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from quota_ledger.core.accounting import (
    AccountingStatus,
    UsageAccountingService,
)
from quota_ledger.core.categories import UsageCategory
from quota_ledger.storage.repository import LedgerRepository


class FakeClock:
    """Settable clock for deterministic time buckets."""
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestUsageAccounting:
    """Test transaction and subcall accounting."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = LedgerRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()
        self.clock = FakeClock(datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc))
        self.service = UsageAccountingService(self.repository, clock=self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_requires_repository(self):
        with pytest.raises(ValueError, match="repository is required"):
            UsageAccountingService(None)

    def test_initialize_creates_zeroed_record(self):
        """Verify a new transaction starts at zero in the current month."""
        result = self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        assert result.ok
        assert result.status == AccountingStatus.RECORDED
        assert result.transaction_id == "t"

        record = self.service.get_transaction_usage("u", "t")
        assert record.category == UsageCategory.CHAT
        assert record.model == "gemini-pro"
        assert record.month == "2025-03"
        assert record.total_tokens == 0
        assert record.estimated_cost == 0
        assert record.completed is False

    def test_initialize_generates_transaction_id(self):
        result = self.service.initialize_transaction_usage("u", None, UsageCategory.JOURNAL, "gemini-pro")
        assert result.ok
        assert result.transaction_id
        assert self.service.get_transaction_usage("u", result.transaction_id) is not None

    def test_initialize_twice_resets_counters(self):
        """Verify re-initialization zeroes the counters each time."""
        for _ in range(2):
            self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
            self.service.record_transaction_subcall("u", "t", "generate_response", 100, 50, 150, "gemini-pro")
            assert self.service.get_transaction_usage("u", "t").total_tokens == 150

        self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        record = self.service.get_transaction_usage("u", "t")
        assert record.total_tokens == 0
        assert record.total_prompt_tokens == 0
        assert record.estimated_cost == 0
        assert self.service.get_monthly_usage("u").category_counts[UsageCategory.CHAT] == 1

    def test_unknown_category_fails_without_raising(self):
        result = self.service.initialize_transaction_usage("u", "t", "karaoke", "gemini-pro")
        assert not result.ok
        assert result.error.operation == "initialize_transaction_usage"
        assert self.service.get_transaction_usage("u", "t") is None

    def test_same_subcall_type_overwrites_but_totals_accumulate(self):
        """Verify 150 then 15 under one subcall type sums to 165 on the parent."""
        self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        self.service.record_transaction_subcall("u", "t", "chat", 100, 50, 150, "gemini-pro")
        self.service.record_transaction_subcall("u", "t", "chat", 10, 5, 15, "gemini-pro")

        record = self.service.get_transaction_usage("u", "t")
        assert record.total_tokens == 165
        assert record.total_prompt_tokens == 110
        assert record.total_completion_tokens == 55

        subcalls = self.service.get_subcalls("u", "t")
        assert len(subcalls) == 1
        assert (subcalls[0].prompt_tokens, subcalls[0].completion_tokens, subcalls[0].total_tokens) == (10, 5, 15)

    def test_totals_stay_consistent(self):
        """Verify total == prompt + completion and cost never decreases."""
        self.service.initialize_transaction_usage("u", "t", "emotional_support", "gemini-pro")
        last_cost = 0.0
        for subcall_type, prompt, completion in [
            ("emotion_analysis", 40, 20),
            ("generate_response", 300, 120),
            ("emotion_analysis", 5, 0),
        ]:
            self.service.record_transaction_subcall(
                "u", "t", subcall_type, prompt, completion, prompt + completion, "gemini-pro"
            )
            record = self.service.get_transaction_usage("u", "t")
            assert record.total_tokens == record.total_prompt_tokens + record.total_completion_tokens
            assert record.estimated_cost >= last_cost
            last_cost = record.estimated_cost

    def test_cost_uses_price_table(self):
        self.service.initialize_transaction_usage("u", "t", "chat", "gpt-4")
        self.service.record_transaction_subcall("u", "t", "generate_response", 1000, 500, 1500, "gpt-4")
        assert self.service.get_transaction_usage("u", "t").estimated_cost == pytest.approx(0.06)
        assert self.service.get_subcalls("u", "t")[0].estimated_cost == pytest.approx(0.06)

    def test_monthly_aggregate_sums_across_transactions(self):
        """Verify the month's total equals the sum of all subcalls in it."""
        calls = [("t1", 100, 50), ("t1", 10, 5), ("t2", 7, 3), ("t3", 1000, 1)]
        for transaction_id in {"t1", "t2", "t3"}:
            self.service.initialize_transaction_usage("u", transaction_id, "chat", "gemini-pro")
        for transaction_id, prompt, completion in calls:
            self.service.record_transaction_subcall(
                "u", transaction_id, "generate_response", prompt, completion, prompt + completion, "gemini-pro"
            )

        monthly = self.service.get_monthly_usage("u", "2025-03")
        assert monthly.total_tokens == sum(p + c for _, p, c in calls)
        assert monthly.request_count == 4
        assert monthly.category_counts[UsageCategory.CHAT] == 3
        assert monthly.category_tokens[UsageCategory.CHAT] == monthly.total_tokens
        assert self.service.get_lifetime_usage("u").total_tokens == monthly.total_tokens

    def test_subcall_attributed_to_transaction_month(self):
        """Verify a subcall landing after a month boundary stays in the transaction's month."""
        self.clock.now = datetime(2025, 3, 31, 23, 59, 0, tzinfo=timezone.utc)
        self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        self.clock.now = datetime(2025, 4, 1, 0, 1, 0, tzinfo=timezone.utc)
        self.service.record_transaction_subcall("u", "t", "generate_response", 10, 5, 15, "gemini-pro")

        assert self.service.get_monthly_usage("u", "2025-03").total_tokens == 15
        assert self.service.get_monthly_usage("u", "2025-04").total_tokens == 0
        assert self.repository.get_daily_usage("u", "2025-04-01").total_tokens == 15

    def test_subcall_before_initialize_creates_parent(self, caplog):
        """Verify a missing parent is upserted and a warning logged."""
        with caplog.at_level(logging.WARNING, logger="quota_ledger.core.accounting"):
            result = self.service.record_transaction_subcall("u", "late", "chat", 1, 2, 3, "gemini-pro")
        assert result.ok
        assert "was not initialized" in caplog.text
        record = self.service.get_transaction_usage("u", "late")
        assert record.total_tokens == 3
        assert record.category is None

    def test_negative_tokens_fail_without_writing(self):
        self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        result = self.service.record_transaction_subcall("u", "t", "chat", -1, 5, 4, "gemini-pro")
        assert result.status == AccountingStatus.FAILED
        assert self.service.get_transaction_usage("u", "t").total_tokens == 0

    def test_non_integer_tokens_fail_without_raising(self):
        self.service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        for counts in [(None, 5, 5), (1, "2", 3), (1, 2, 3.0), (True, 0, 1)]:
            result = self.service.record_transaction_subcall("u", "t", "chat", *counts, "gemini-pro")
            assert result.status == AccountingStatus.FAILED
            assert "must be integers" in str(result.error)
        assert self.service.get_transaction_usage("u", "t").total_tokens == 0

    def test_anonymous_usage_is_skipped(self):
        """Verify no records are written without a user id."""
        init = self.service.initialize_transaction_usage(None, "t", "chat", "gemini-pro")
        subcall = self.service.record_transaction_subcall("", "t", "chat", 1, 1, 2, "gemini-pro")
        history = self.service.save_conversation_history(None, "s", {}, {}, "gemini-pro", "t")
        assert init.status == AccountingStatus.SKIPPED
        assert subcall.status == AccountingStatus.SKIPPED
        assert history.status == AccountingStatus.SKIPPED
        assert self.repository.sum_transactions_for_month("", "2025-03")["transactions"] == 0

    def test_store_failure_is_logged_and_returned(self, caplog):
        """Verify store errors never propagate from write operations."""
        import sqlite3

        with patch.object(self.repository, "apply_subcall", side_effect=sqlite3.OperationalError("database is locked")):
            with caplog.at_level(logging.ERROR, logger="quota_ledger.core.accounting"):
                result = self.service.record_transaction_subcall("u", "t", "chat", 1, 1, 2, "gemini-pro")

        assert result.status == AccountingStatus.FAILED
        assert isinstance(result.error.cause, sqlite3.OperationalError)
        assert "database is locked" in caplog.text

    def test_missing_schema_is_swallowed(self):
        """Verify accounting against an uninitialized database fails softly."""
        service = UsageAccountingService(LedgerRepository(os.path.join(self.temp_dir, "empty.db")))
        result = service.initialize_transaction_usage("u", "t", "chat", "gemini-pro")
        assert not result.ok

    def test_complete_transaction(self):
        self.service.initialize_transaction_usage("u", "t", "summary", "gemini-pro")
        assert self.service.complete_transaction("u", "t").ok
        assert self.service.get_transaction_usage("u", "t").completed is True
        assert not self.service.complete_transaction("u", "missing").ok

    def test_conversation_history_round_trip(self):
        """Verify saved turns replay in order with their transaction ids."""
        self.service.save_conversation_history(
            "u", "s", {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"text": "hello"}]}, "gemini-pro", "t1"
        )
        self.clock.now = datetime(2025, 3, 14, 12, 5, 0, tzinfo=timezone.utc)
        self.service.save_conversation_history(
            "u", "s", {"role": "user", "parts": [{"text": "again"}]},
            {"role": "model", "parts": [{"text": "sure"}]}, "gemini-pro", "t2"
        )
        turns = self.service.get_conversation_history("u", "s")
        assert [turn.transaction_id for turn in turns] == ["t1", "t2"]
        assert turns[1].assistant_message["parts"][0]["text"] == "sure"

    def test_unserializable_message_fails_softly(self):
        result = self.service.save_conversation_history("u", "s", object(), {}, "gemini-pro", "t")
        assert not result.ok

    def test_usage_breakdown_defaults_to_current_month(self):
        self.service.initialize_transaction_usage("u", "t", "chat", "gpt-4")
        self.service.record_transaction_subcall("u", "t", "generate_response", 1000, 500, 1500, "gpt-4")
        self.service.record_transaction_subcall("u", "t", "emotion_analysis", 10, 5, 15, "gemini-pro")

        breakdown = {(e.dimension.value, e.key): e for e in self.service.get_usage_breakdown("u")}
        assert set(breakdown) == {
            ("model", "gpt-4"), ("model", "gemini-pro"),
            ("source", "generate_response"), ("source", "emotion_analysis"),
        }
        assert breakdown[("model", "gpt-4")].estimated_cost == pytest.approx(0.06)
        assert breakdown[("source", "emotion_analysis")].total_tokens == 15
