"""会话存储数据模型

定义线程、消息、摘要以及检索结果的数据结构。
所有时间戳均为带时区的 UTC 时间。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]
Sentiment = Literal["positive", "neutral", "negative"]


class ConversationThread(BaseModel):
    """会话线程（首条消息时懒创建，之后不再修改）"""

    thread_id: str = Field(description="线程标识（不透明键）")
    created_at: datetime = Field(description="创建时间")


class Message(BaseModel):
    """会话消息（只追加，不修改不删除）"""

    id: int = Field(description="消息自增 ID")
    thread_id: str = Field(description="所属线程")
    role: Role = Field(description="角色")
    content: str = Field(description="消息内容")
    handler_id: str | None = Field(default=None, description="回答的专家标识")
    confidence: float | None = Field(default=None, description="置信度")
    structured_data: dict[str, Any] | None = Field(default=None, description="结构化数据")
    created_at: datetime = Field(description="创建时间（线程内严格递增）")

    def to_prompt_dict(self) -> dict[str, str]:
        """转换为提示词使用的 role/content 字典"""
        return {"role": self.role, "content": self.content}


class ConversationSummary(BaseModel):
    """会话摘要

    覆盖区间为 (start_ts, end_ts]。同一线程的摘要首尾相接：
    第一条从线程创建时间开始，之后每条从上一条的 end_ts 开始。
    """

    id: int = Field(description="摘要自增 ID")
    thread_id: str = Field(description="所属线程")
    summary: str = Field(description="摘要文本")
    topics: list[str] = Field(default_factory=list, description="主题")
    sentiment: Sentiment = Field(default="neutral", description="整体情绪")
    insights: list[str] = Field(default_factory=list, description="关键洞察")
    message_count: int = Field(description="覆盖的消息数")
    start_ts: datetime = Field(description="区间起点（不含）")
    end_ts: datetime = Field(description="区间终点（含）")
    created_at: datetime = Field(description="创建时间")


class EnrichedHistory(BaseModel):
    """增强历史：长程摘要 + 近期原文消息"""

    thread_id: str
    summaries: list[ConversationSummary] = Field(
        default_factory=list, description="全部摘要（旧 → 新）"
    )
    recent_messages: list[Message] = Field(
        default_factory=list, description="最近的原文消息（旧 → 新）"
    )
    total_messages: int = Field(default=0, description="线程总消息数")
    conversation_started: datetime | None = Field(default=None, description="会话开始时间")


class TopicCount(BaseModel):
    """主题计数"""

    topic: str
    count: int


class ConversationInsights(BaseModel):
    """会话洞察（由摘要聚合得出）"""

    thread_id: str
    top_topics: list[TopicCount] = Field(default_factory=list, description="最常讨论的主题（最多 5 个）")
    overall_sentiment: Sentiment = Field(default="neutral", description="整体情绪")
    summary_count: int = Field(default=0, description="摘要数量")
    conversation_start: datetime | None = Field(default=None, description="首个摘要起点")
    conversation_end: datetime | None = Field(default=None, description="最后摘要终点")
    messages_summarized: int = Field(default=0, description="已摘要的消息总数")


class SummaryDraft(BaseModel):
    """摘要生成结果（尚未持久化）"""

    summary: str
    topics: list[str] = Field(default_factory=list)
    sentiment: Sentiment = "neutral"
    insights: list[str] = Field(default_factory=list)
    structured: bool = Field(default=False, description="是否来自结构化 JSON 输出")
