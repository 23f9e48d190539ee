"""测试会话存储：只追加、历史幂等、摘要区间连续"""

import asyncio
import gc
import json
import sqlite3

import pytest
import pytest_asyncio

from conftest import FakeProvider
from tubeguide.core.exceptions import PersistenceError, ReasoningError, ValidationError
from tubeguide.memory.models import EnrichedHistory
from tubeguide.memory.store import ConversationStore
from tubeguide.memory.summarizer import ConversationSummarizer


def summary_json(topics: list[str], sentiment: str = "neutral") -> str:
    return json.dumps({
        "summary": "The user asked about Underground services.",
        "topics": topics,
        "sentiment": sentiment,
        "insights": ["Travels in central London"],
    })


@pytest_asyncio.fixture
async def summarizing_store(db_path):
    provider = FakeProvider(summary=summary_json(["circle line"]))
    conversation_store = ConversationStore(
        db_path,
        summarizer=ConversationSummarizer(provider),
        summary_threshold=20,
    )
    yield conversation_store
    await conversation_store.close()


class SlowSummaryProvider(FakeProvider):
    """摘要推理较慢，期间继续有消息写入"""

    async def invoke(self, system_prompt, user_message, *, timeout=None):
        await asyncio.sleep(0.02)
        return await super().invoke(system_prompt, user_message, timeout=timeout)


async def append_many(store: ConversationStore, thread_id: str, count: int) -> list[int]:
    ids = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        ids.append(await store.append(thread_id, role, f"message {i} about the Circle line"))
    return ids


class TestAppend:
    """追加写入"""

    @pytest.mark.asyncio
    async def test_thread_created_lazily(self, store):
        assert await store.get_thread("t1") is None
        await store.append("t1", "user", "Circle line status")
        thread = await store.get_thread("t1")
        assert thread is not None
        assert thread.thread_id == "t1"

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, store):
        await store.append(
            "t1",
            "assistant",
            "Good service on the Circle line.",
            handler_id="circle",
            confidence=0.95,
            structured_data={"status": {"severity": "Good Service"}},
        )
        [message] = await store.history("t1")
        assert message.handler_id == "circle"
        assert message.confidence == 0.95
        assert message.structured_data == {"status": {"severity": "Good Service"}}

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increasing(self, store):
        await append_many(store, "t1", 30)
        thread = await store.get_thread("t1")
        messages = await store.history("t1", limit=100)
        stamps = [m.created_at for m in messages]
        assert thread.created_at < stamps[0]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_order(self, store):
        await asyncio.gather(*(store.append("t1", "user", f"q{i}") for i in range(20)))
        messages = await store.history("t1")
        assert len(messages) == 20
        assert len({m.created_at for m in messages}) == 20

    @pytest.mark.asyncio
    async def test_idle_thread_locks_are_released(self, store):
        for i in range(50):
            await store.append(f"t{i}", "user", "Circle line status")
        gc.collect()
        assert len(store._thread_locks) == 0
        assert await store.message_count("t49") == 1

    @pytest.mark.asyncio
    async def test_invalid_role(self, store):
        with pytest.raises(ValidationError):
            await store.append("t1", "robot", "hello")

    @pytest.mark.asyncio
    async def test_closed_store_raises_persistence_error(self, db_path):
        closed = ConversationStore(db_path)
        await closed.close()
        with pytest.raises(PersistenceError):
            await closed.append("t1", "user", "hello")


class TestAppendOnly:
    """已持久化的消息和摘要不可修改、不可删除"""

    @pytest.mark.asyncio
    async def test_messages_cannot_be_updated_or_deleted(self, store):
        await store.append("t1", "user", "original")
        with pytest.raises(sqlite3.DatabaseError):
            store._conn.execute("UPDATE messages SET content = 'changed'")
        with pytest.raises(sqlite3.DatabaseError):
            store._conn.execute("DELETE FROM messages")
        [message] = await store.history("t1")
        assert message.content == "original"

    @pytest.mark.asyncio
    async def test_summaries_cannot_be_deleted(self, summarizing_store):
        await append_many(summarizing_store, "t1", 20)
        await summarizing_store.wait_for_background_tasks()
        with pytest.raises(sqlite3.DatabaseError):
            summarizing_store._conn.execute("DELETE FROM summaries")


class TestHistory:
    """历史检索"""

    @pytest.mark.asyncio
    async def test_idempotent(self, store):
        await append_many(store, "t1", 6)
        first = await store.history("t1", limit=4)
        second = await store.history("t1", limit=4)
        assert first == second

    @pytest.mark.asyncio
    async def test_latest_messages_oldest_first(self, store):
        await append_many(store, "t1", 6)
        messages = await store.history("t1", limit=3)
        assert [m.content.split()[1] for m in messages] == ["3", "4", "5"]

    @pytest.mark.asyncio
    async def test_negative_limit_returns_nothing(self, store):
        await append_many(store, "t1", 5)
        assert await store.history("t1", limit=-1) == []
        assert await store.history("t1", limit=0) == []

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, store):
        await store.append("t1", "user", "one")
        await store.append("t2", "user", "two")
        assert [m.content for m in await store.history("t1")] == ["one"]

    @pytest.mark.asyncio
    async def test_unknown_thread(self, store):
        assert await store.history("nobody") == []
        enriched = await store.history("nobody", enrich=True)
        assert enriched.total_messages == 0
        assert enriched.conversation_started is None

    @pytest.mark.asyncio
    async def test_enriched(self, summarizing_store):
        await append_many(summarizing_store, "t1", 24)
        await summarizing_store.wait_for_background_tasks()
        enriched = await summarizing_store.history("t1", limit=5, enrich=True)
        assert isinstance(enriched, EnrichedHistory)
        assert len(enriched.summaries) == 1
        assert len(enriched.recent_messages) == 5
        assert enriched.total_messages == 24
        assert enriched.conversation_started is not None


class TestSummarization:
    """阈值触发的后台摘要"""

    @pytest.mark.asyncio
    async def test_below_threshold_no_summary(self, summarizing_store):
        await append_many(summarizing_store, "t1", 19)
        await summarizing_store.wait_for_background_tasks()
        assert await summarizing_store.summaries("t1") == []
        assert await summarizing_store.unsummarized_count("t1") == 19

    @pytest.mark.asyncio
    async def test_threshold_creates_exactly_one_summary(self, summarizing_store):
        """20 条未摘要消息：恰好一条摘要，区间精确覆盖这 20 条"""
        await append_many(summarizing_store, "t1", 20)
        await summarizing_store.wait_for_background_tasks()

        thread = await summarizing_store.get_thread("t1")
        messages = await summarizing_store.history("t1", limit=100)
        [summary] = await summarizing_store.summaries("t1")
        assert summary.message_count == 20
        assert summary.start_ts == thread.created_at
        assert summary.end_ts == messages[-1].created_at
        assert all(summary.start_ts < m.created_at <= summary.end_ts for m in messages)
        assert summary.topics == ["circle line"]
        assert await summarizing_store.unsummarized_count("t1") == 0

    @pytest.mark.asyncio
    async def test_summaries_are_contiguous(self, summarizing_store):
        for count in (20, 20, 5):
            await append_many(summarizing_store, "t1", count)
            await summarizing_store.wait_for_background_tasks()

        summaries = await summarizing_store.summaries("t1")
        thread = await summarizing_store.get_thread("t1")
        messages = await summarizing_store.history("t1", limit=100)
        assert len(summaries) == 2
        assert summaries[0].start_ts == thread.created_at
        assert summaries[0].end_ts == summaries[1].start_ts

        # 每条消息恰好被一个摘要覆盖，或位于未摘要尾部
        tail = [m for m in messages if m.created_at > summaries[-1].end_ts]
        for message in messages:
            covering = [s for s in summaries if s.start_ts < message.created_at <= s.end_ts]
            assert len(covering) == (0 if message in tail else 1)
        assert sum(s.message_count for s in summaries) + len(tail) == len(messages)
        assert len(tail) == 5

    @pytest.mark.asyncio
    async def test_concurrent_appends_during_background_summary(self, db_path):
        """摘要推理期间并发追加：区间仍首尾相接，每条消息至多被覆盖一次"""
        provider = SlowSummaryProvider(summary=summary_json(["circle line"]))
        busy = ConversationStore(
            db_path, summarizer=ConversationSummarizer(provider), summary_threshold=5
        )
        try:
            for batch in range(6):
                await asyncio.gather(
                    *(busy.append("t1", "user", f"batch {batch} message {i}") for i in range(7))
                )
            await busy.wait_for_background_tasks()

            summaries = await busy.summaries("t1")
            thread = await busy.get_thread("t1")
            messages = await busy.history("t1", limit=100)
        finally:
            await busy.close()

        assert len(messages) == 42
        assert summaries
        assert summaries[0].start_ts == thread.created_at
        for previous, current in zip(summaries, summaries[1:]):
            assert previous.end_ts == current.start_ts

        covered = [m for m in messages if m.created_at <= summaries[-1].end_ts]
        for message in messages:
            covering = [s for s in summaries if s.start_ts < message.created_at <= s.end_ts]
            assert len(covering) == (1 if message in covered else 0)
        assert sum(s.message_count for s in summaries) == len(covered)

    @pytest.mark.asyncio
    async def test_reasoning_failure_still_produces_summary(self, db_path):
        provider = FakeProvider(invoke_error=ReasoningError("provider unavailable"))
        failing = ConversationStore(
            db_path, summarizer=ConversationSummarizer(provider), summary_threshold=4
        )
        try:
            await append_many(failing, "t1", 4)
            await failing.wait_for_background_tasks()
            [summary] = await failing.summaries("t1")
            assert summary.message_count == 4
            assert summary.sentiment == "neutral"
            assert "circle line" in summary.topics
        finally:
            await failing.close()

    @pytest.mark.asyncio
    async def test_background_crash_does_not_reach_caller(self, db_path):
        provider = FakeProvider(invoke_error=RuntimeError("provider exploded"))
        crashing = ConversationStore(
            db_path, summarizer=ConversationSummarizer(provider), summary_threshold=4
        )
        try:
            await append_many(crashing, "t1", 4)
            await crashing.wait_for_background_tasks()
            assert await crashing.summaries("t1") == []
            assert await crashing.message_count("t1") == 4
        finally:
            await crashing.close()

    @pytest.mark.asyncio
    async def test_disabled(self, db_path):
        provider = FakeProvider(summary=summary_json(["x"]))
        disabled = ConversationStore(
            db_path,
            summarizer=ConversationSummarizer(provider),
            summary_threshold=2,
            enable_summarization=False,
        )
        try:
            await append_many(disabled, "t1", 4)
            await disabled.wait_for_background_tasks()
            assert await disabled.summaries("t1") == []
            assert provider.invoke_calls == []
        finally:
            await disabled.close()

    @pytest.mark.asyncio
    async def test_trigger_summary(self, summarizing_store):
        await append_many(summarizing_store, "t1", 3)
        summary_id = await summarizing_store.trigger_summary("t1")
        assert summary_id is not None
        [summary] = await summarizing_store.summaries("t1")
        assert summary.message_count == 3
        assert await summarizing_store.trigger_summary("t1") is None


class TestInsights:
    """会话洞察"""

    @pytest.mark.asyncio
    async def test_no_summaries(self, store):
        await store.append("t1", "user", "hi")
        assert await store.insights("t1") is None

    @pytest.mark.asyncio
    async def test_aggregates_summaries(self, db_path):
        provider = FakeProvider(summary=summary_json(["circle line", "delays"], "negative"))
        insight_store = ConversationStore(db_path, summarizer=ConversationSummarizer(provider))
        try:
            await append_many(insight_store, "t1", 2)
            await insight_store.trigger_summary("t1")
            provider.summary = summary_json(["circle line"], "positive")
            await append_many(insight_store, "t1", 2)
            await insight_store.trigger_summary("t1")
            provider.summary = summary_json(["bank station"], "negative")
            await append_many(insight_store, "t1", 2)
            await insight_store.trigger_summary("t1")

            insights = await insight_store.insights("t1")
            assert insights.summary_count == 3
            assert insights.messages_summarized == 6
            assert insights.top_topics[0].topic == "circle line"
            assert insights.top_topics[0].count == 2
            assert insights.overall_sentiment == "negative"
            summaries = await insight_store.summaries("t1")
            assert insights.conversation_start == summaries[0].start_ts
            assert insights.conversation_end == summaries[-1].end_ts
        finally:
            await insight_store.close()

    @pytest.mark.asyncio
    async def test_health_check(self, store):
        assert await store.health_check()
