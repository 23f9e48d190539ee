"""测试会话摘要生成"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProvider
from tubeguide.core.exceptions import ReasoningError, ReasoningTimeoutError
from tubeguide.memory.models import Message
from tubeguide.memory.summarizer import (
    ConversationSummarizer,
    build_transcript,
    extract_topics,
    parse_summary,
    template_summary,
)


def make_messages(*contents: str) -> list[Message]:
    start = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    return [
        Message(
            id=i + 1,
            thread_id="t1",
            role="user" if i % 2 == 0 else "assistant",
            content=content,
            created_at=start + timedelta(seconds=i),
        )
        for i, content in enumerate(contents)
    ]


class TestTopicExtraction:
    """固定词表关键词提取"""

    def test_lines_and_themes(self):
        topics = extract_topics("Delays on the Central line, next arrival at Bank station")
        assert topics == ["central line", "service disruptions", "station information", "arrival times"]

    def test_at_most_five(self):
        text = "central circle bakerloo district northern piccadilly victoria"
        assert len(extract_topics(text)) == 5

    def test_nothing_found(self):
        assert extract_topics("hello there") == []


class TestParseSummary:
    """JSON 摘要解析"""

    def test_plain_json(self):
        raw = json.dumps({
            "summary": "User asked about the Circle line.",
            "topics": ["circle line"],
            "sentiment": "positive",
            "insights": ["Commutes via Victoria"],
        })
        draft = parse_summary(raw)
        assert draft.summary == "User asked about the Circle line."
        assert draft.sentiment == "positive"
        assert draft.insights == ["Commutes via Victoria"]
        assert draft.structured

    def test_fenced_json(self):
        raw = '```json\n{"summary": "Short chat.", "topics": [], "sentiment": "neutral"}\n```'
        assert parse_summary(raw).summary == "Short chat."

    def test_unknown_sentiment_becomes_neutral(self):
        draft = parse_summary('{"summary": "ok", "sentiment": "ecstatic"}')
        assert draft.sentiment == "neutral"

    @pytest.mark.parametrize("raw", ["not json at all", "[1, 2]", '{"topics": ["x"]}', '{"summary": ""}'])
    def test_invalid(self, raw):
        assert parse_summary(raw) is None


class TestConversationSummarizer:
    """摘要生成器"""

    @pytest.mark.asyncio
    async def test_structured_summary(self):
        provider = FakeProvider(summary=json.dumps({
            "summary": "Asked about Circle line delays.",
            "topics": ["circle line", "delays"],
            "sentiment": "negative",
            "insights": [],
        }))
        messages = make_messages("Circle line status?", "Minor delays on the Circle line.")
        draft = await ConversationSummarizer(provider).summarize(messages)
        assert draft.structured
        assert draft.sentiment == "negative"
        system_prompt, _ = provider.invoke_calls[0]
        assert build_transcript(messages) in system_prompt

    @pytest.mark.asyncio
    async def test_unparseable_output_uses_template(self):
        provider = FakeProvider(summary="The user talked about trains.")
        messages = make_messages("Central line delays?", "Yes, severe delays.")
        draft = await ConversationSummarizer(provider).summarize(messages)
        assert not draft.structured
        assert "2 messages" in draft.summary
        assert "central line" in draft.topics
        assert draft.sentiment == "neutral"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ReasoningError("boom"), ReasoningTimeoutError(1.0)])
    async def test_reasoning_failure_uses_template(self, error):
        provider = FakeProvider(invoke_error=error)
        messages = make_messages("Journey from Bank to Stratford", "Take the Central line.")
        draft = await ConversationSummarizer(provider).summarize(messages)
        assert draft == template_summary(messages, build_transcript(messages))
        assert "journey planning" in draft.topics
