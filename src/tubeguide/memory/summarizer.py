"""会话摘要生成

调用推理服务生成结构化摘要；解析失败或调用失败时使用模板摘要和
固定词表关键词提取，保证总能产出一条摘要。
"""

import json
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger

from tubeguide.core.exceptions import ReasoningError
from tubeguide.memory.models import Message, SummaryDraft
from tubeguide.prompts import build_summary_prompt

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider

LINE_TOPICS = (
    "central", "circle", "bakerloo", "district", "northern", "piccadilly",
    "victoria", "jubilee", "metropolitan", "elizabeth",
)

THEME_TOPICS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("delay", "disruption"), "service disruptions"),
    (("journey", "travel"), "journey planning"),
    (("station",), "station information"),
    (("arrival", "time"), "arrival times"),
    (("status",), "service status"),
)

MAX_TOPICS = 5
SENTIMENTS = ("positive", "neutral", "negative")
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def build_transcript(messages: Sequence[Message]) -> str:
    """构建 'role: content' 形式的对话文本"""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def extract_topics(text: str) -> list[str]:
    """基于固定词表提取主题（最多 5 个）"""
    lowered = text.lower()
    topics = [f"{line} line" for line in LINE_TOPICS if line in lowered]
    for keywords, topic in THEME_TOPICS:
        if any(kw in lowered for kw in keywords):
            topics.append(topic)
    return topics[:MAX_TOPICS]


def template_summary(messages: Sequence[Message], transcript: str) -> SummaryDraft:
    """模板摘要"""
    topics = extract_topics(transcript)
    about = ", ".join(topics) if topics else "general London Underground services"
    return SummaryDraft(
        summary=(
            f"Conversation with {len(messages)} messages about London Underground "
            f"services. Topics discussed include {about}."
        ),
        topics=topics,
        sentiment="neutral",
    )


def parse_summary(raw: str) -> SummaryDraft | None:
    """解析推理输出的 JSON 摘要

    Returns:
        SummaryDraft；不是合法 JSON 对象或缺少 summary 时返回 None
    """
    try:
        data = json.loads(_FENCE.sub("", raw.strip()))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        return None

    sentiment = str(data.get("sentiment", "neutral")).lower()
    return SummaryDraft(
        summary=summary.strip(),
        topics=[str(t) for t in data.get("topics") or [] if t][:MAX_TOPICS],
        sentiment=sentiment if sentiment in SENTIMENTS else "neutral",
        insights=[str(i) for i in data.get("insights") or [] if i],
        structured=True,
    )


class ConversationSummarizer:
    """会话摘要生成器"""

    def __init__(self, provider: "ReasoningProvider", timeout: float | None = None):
        """
        Args:
            provider: 推理服务
            timeout: 推理调用超时（秒）
        """
        self.provider = provider
        self.timeout = timeout

    async def summarize(self, messages: Sequence[Message]) -> SummaryDraft:
        """为一组消息生成摘要（不会抛出推理相关异常）"""
        transcript = build_transcript(messages)
        try:
            raw = await self.provider.invoke(
                build_summary_prompt(transcript),
                "Please summarize this conversation.",
                timeout=self.timeout,
            )
        except ReasoningError as e:
            logger.warning(f"摘要推理失败，使用模板摘要: {e}")
            return template_summary(messages, transcript)

        draft = parse_summary(raw)
        if draft is None:
            logger.debug("摘要输出无法解析为 JSON，使用模板摘要")
            return template_summary(messages, transcript)
        return draft
