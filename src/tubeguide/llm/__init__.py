"""推理服务"""

from tubeguide.llm.provider import ChatOpenAIProvider, ReasoningProvider, normalize_token

__all__ = ["ReasoningProvider", "ChatOpenAIProvider", "normalize_token"]
