"""会话存储：只追加的消息日志与阈值触发的摘要"""

from tubeguide.memory.models import (
    ConversationInsights,
    ConversationSummary,
    ConversationThread,
    EnrichedHistory,
    Message,
    SummaryDraft,
    TopicCount,
)
from tubeguide.memory.store import ConversationStore
from tubeguide.memory.summarizer import ConversationSummarizer, extract_topics, template_summary

__all__ = [
    "ConversationStore",
    "ConversationSummarizer",
    "ConversationThread",
    "Message",
    "ConversationSummary",
    "EnrichedHistory",
    "ConversationInsights",
    "TopicCount",
    "SummaryDraft",
    "extract_topics",
    "template_summary",
]
