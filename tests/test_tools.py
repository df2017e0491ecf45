"""Tests for the continuity tools."""

import sqlite3
from contextlib import closing

import pytest

from amplifier_module_tool_continuity.errors import StorageError
from amplifier_module_tool_continuity.tools import (
    BootstrapTool,
    LogDepthTool,
    RecentConversationsTool,
    SearchConversationsTool,
    StoreConversationTool,
    StoreInsightTool,
)


class TestStoreConversationTool:
    """Tests for StoreConversationTool."""

    @pytest.mark.asyncio
    async def test_store_success(self, store):
        tool = StoreConversationTool(store)

        result = await tool.execute({
            "summary": "Talked about boundaries",
            "topics": ["boundaries", "family"],
            "depth_reached": 6,
        })

        assert result.success is True
        assert result.output["text"] == (
            f"Stored conversation {result.output['id']} at depth 6/10. "
            "Topics: boundaries, family"
        )
        assert store.count_conversations() == 1

    @pytest.mark.asyncio
    async def test_missing_summary(self, store):
        tool = StoreConversationTool(store)

        result = await tool.execute({"topics": ["x"], "depth_reached": 3})

        assert result.success is False
        assert result.error["type"] == "validation"
        assert "summary is required" in result.error["message"]
        assert store.count_conversations() == 0

    @pytest.mark.asyncio
    async def test_depth_out_of_range(self, store):
        tool = StoreConversationTool(store)

        result = await tool.execute({"summary": "s", "topics": [], "depth_reached": 12})

        assert result.success is False
        assert result.error["type"] == "validation"
        assert store.count_conversations() == 0

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, store):
        tool = StoreConversationTool(store)

        result = await tool.execute({
            "summary": "s", "topics": [], "depth_reached": 1, "id": "chosen-by-caller"
        })

        assert result.success is False
        assert "Unknown input fields: id" in result.error["message"]

    @pytest.mark.asyncio
    async def test_storage_failure_reported_separately(self, store, temp_db):
        with closing(sqlite3.connect(temp_db)) as conn:
            conn.execute("DROP TABLE conversations_fts")
            conn.commit()
        tool = StoreConversationTool(store)

        result = await tool.execute({"summary": "s", "topics": [], "depth_reached": 1})

        assert result.success is False
        assert result.error["type"] == "storage"
        assert store.count_conversations() == 0


class TestSearchConversationsTool:
    """Tests for SearchConversationsTool."""

    @pytest.mark.asyncio
    async def test_search_finds_matches(self, store):
        store.store_conversation(
            summary="Grief after the move",
            topics=["loss"],
            depth_reached=7,
            key_quotes=["It still hurts"],
            breakthroughs=["Grief is love"],
            user_observations="You stayed with it",
            raw_exchange="secret archival text",
        )
        tool = SearchConversationsTool(store)

        result = await tool.execute({"query": "grief"})

        assert result.success is True
        assert result.output["count"] == 1
        text = result.output["text"]
        assert text.startswith("Found 1 relevant conversations:")
        assert "(depth: 7/10, model: unknown)" in text
        assert "**Topics:** loss" in text
        assert "- Grief is love" in text
        assert "> It still hurts" in text
        assert "**User observed:** You stayed with it" in text
        assert "secret archival text" not in text
        assert "raw_exchange" not in result.output["conversations"][0]

    @pytest.mark.asyncio
    async def test_no_matches(self, store):
        tool = SearchConversationsTool(store)

        result = await tool.execute({"query": "xylophone"})

        assert result.success is True
        assert result.output["count"] == 0
        assert result.output["text"] == 'No past conversations found matching "xylophone"'

    @pytest.mark.asyncio
    async def test_missing_query(self, store):
        tool = SearchConversationsTool(store)

        result = await tool.execute({})

        assert result.success is False
        assert result.error["type"] == "validation"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 21, "5"])
    async def test_limit_bounds(self, store, limit):
        tool = SearchConversationsTool(store)

        result = await tool.execute({"query": "anything", "limit": limit})

        assert result.success is False
        assert "limit must be an integer between 1 and 20" in result.error["message"]


class TestRecentConversationsTool:
    """Tests for RecentConversationsTool."""

    @pytest.mark.asyncio
    async def test_no_history(self, store):
        tool = RecentConversationsTool(store)

        result = await tool.execute({})

        assert result.success is True
        assert result.output["text"].startswith("No conversation history yet.")

    @pytest.mark.asyncio
    async def test_default_limit_and_order(self, store):
        for i in range(5):
            store.store_conversation(summary=f"talk {i}", topics=["t"], depth_reached=i)
        tool = RecentConversationsTool(store)

        result = await tool.execute({})

        assert result.output["count"] == 3
        assert [c["summary"] for c in result.output["conversations"]] == ["talk 4", "talk 3", "talk 2"]
        assert result.output["text"].startswith("Recent conversations:\n\n")

    @pytest.mark.asyncio
    async def test_limit_above_maximum(self, store):
        tool = RecentConversationsTool(store)

        result = await tool.execute({"limit": 11})

        assert result.success is False
        assert result.error["type"] == "validation"


class TestLogDepthTool:
    """Tests for LogDepthTool."""

    @pytest.mark.asyncio
    async def test_historical_average(self, store):
        tool = LogDepthTool(store)

        for depth in (3, 7):
            await tool.execute({"topic": "boundaries", "depth": depth})
        result = await tool.execute({"topic": "boundaries", "depth": 9})

        assert result.success is True
        assert result.output["text"] == (
            'Logged depth 9/10 on "boundaries". '
            "Historical average: 6.3/10 across 3 entries."
        )
        assert result.output["sample_count"] == 3

    @pytest.mark.asyncio
    async def test_history_failure_still_reports_stored_entry(self, store, monkeypatch):
        def broken_average(*args, **kwargs):
            raise StorageError("get depth history failed: disk I/O error")

        monkeypatch.setattr(store, "historical_average", broken_average)
        tool = LogDepthTool(store)

        result = await tool.execute({"topic": "boundaries", "depth": 4})

        assert result.success is True
        assert result.output["text"] == (
            'Logged depth 4/10 on "boundaries". Historical average unavailable.'
        )
        assert [e.id for e in store.get_depth_history("boundaries", limit=5)] == [result.output["id"]]

    @pytest.mark.asyncio
    async def test_missing_depth(self, store):
        tool = LogDepthTool(store)

        result = await tool.execute({"topic": "boundaries"})

        assert result.success is False
        assert "depth is required" in result.error["message"]


class TestStoreInsightTool:
    """Tests for StoreInsightTool."""

    @pytest.mark.asyncio
    async def test_long_content_truncated(self, store):
        content = "a" * 100 + "b" * 50
        tool = StoreInsightTool(store)

        result = await tool.execute({"content": content})

        assert result.success is True
        assert result.output["text"] == f'Stored insight: "{"a" * 100}..."'
        assert result.output["category"] == "general"
        assert store.list_recent_insights(1)[0].content == content

    @pytest.mark.asyncio
    async def test_short_content_not_truncated(self, store):
        tool = StoreInsightTool(store)

        result = await tool.execute({"content": "Short", "category": "technical"})

        assert result.output["text"] == 'Stored insight: "Short"'
        assert result.output["category"] == "technical"


class TestBootstrapTool:
    """Tests for BootstrapTool."""

    @pytest.mark.asyncio
    async def test_combines_document_and_history(self, store, tmp_path):
        path = tmp_path / "bootstrap.md"
        path.write_text("# Prelude\n", encoding="utf-8")
        store.store_conversation(summary="Recent talk", topics=[], depth_reached=4)
        tool = BootstrapTool(store, bootstrap_path=path)

        result = await tool.execute({})

        assert result.success is True
        assert result.output["text"].startswith("# Prelude\n")
        assert "Recent talk" in result.output["text"]

    @pytest.mark.asyncio
    async def test_missing_document_fallback(self, store, tmp_path):
        path = tmp_path / "absent.md"
        tool = BootstrapTool(store, bootstrap_path=path)

        result = await tool.execute({"include_recent": 0, "include_insights": 0})

        assert result.success is True
        assert result.output["text"] == f"# Bootstrap document not found\n\nCreate one at {path}"

    @pytest.mark.asyncio
    async def test_badly_encoded_document(self, store, tmp_path):
        path = tmp_path / "bootstrap.md"
        path.write_bytes(b"# Prelude \xff\xfe\n")
        tool = BootstrapTool(store, bootstrap_path=path)

        result = await tool.execute({})

        assert result.success is True
        assert result.output["text"].startswith("# Prelude ")

    @pytest.mark.asyncio
    async def test_include_bounds(self, store):
        tool = BootstrapTool(store)

        result = await tool.execute({"include_recent": 6})

        assert result.success is False
        assert result.error["type"] == "validation"
