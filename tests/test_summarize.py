"""
Tests for codexmem.summarize — extractive summaries.
"""

from datetime import datetime, timedelta, timezone

from codexmem.config import SummarizationConfig
from codexmem.summarize import needs_summary, summarize_content, summarize_item
from codexmem.types import MemoryItem

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _item(content, days_old, tags=(), summary=None):
    ts = (NOW - timedelta(days=days_old)).isoformat()
    return MemoryItem(id="a", created_at=ts, updated_at=ts, scope="p",
                      tags=list(tags), content=content, summary=summary)


class TestSummarizeContent:
    def test_short_unchanged(self):
        assert summarize_content("short.", 100) == "short."

    def test_cut_at_late_sentence_end(self):
        content = "A" * 70 + ". " + "B" * 50
        assert summarize_content(content, 100) == "A" * 70 + "."

    def test_early_sentence_end_ignored(self):
        content = "Hi. " + "x" * 200
        out = summarize_content(content, 50)
        assert out.endswith("...")
        assert out == ("Hi. " + "x" * 46).strip() + "..."

    def test_question_and_exclamation(self):
        content = "y" * 80 + "? " + "z" * 40
        assert summarize_content(content, 100) == "y" * 80 + "?"


class TestNeedsSummary:
    def test_old_and_long(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        assert needs_summary(_item("x" * 20, 40), config, NOW)

    def test_recent(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        assert not needs_summary(_item("x" * 20, 5), config, NOW)

    def test_short(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        assert not needs_summary(_item("x" * 5, 40), config, NOW)


class TestSummarizeItem:
    def test_returns_stored_when_not_needed(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        assert summarize_item(_item("x" * 5, 40, summary="keep"), config, NOW) == "keep"

    def test_tags_prefix(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        out = summarize_item(_item("abcdefghijklmnop", 40, tags=["db", "api"]), config, NOW)
        assert out == "Tags: db, api. abcdefghij..."

    def test_no_tags_no_prefix(self):
        config = SummarizationConfig(max_content_length=10, older_than_days=30)
        out = summarize_item(_item("abcdefghijklmnop", 40), config, NOW)
        assert out == "abcdefghij..."
