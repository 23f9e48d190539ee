"""专家抽象基类

定义统一的专家接口：所有线路专家和状态专家都实现同一个 handle 契约，
核心流程只按标识从注册表选取专家，不区分具体类型。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider
    from tubeguide.specialists.config import SpecialistConfig


@dataclass
class HandlerContext:
    """专家执行上下文

    由请求流程传递给专家，包含执行所需的上下文信息。
    """

    user_context: dict[str, Any] = field(default_factory=dict)
    """经过清洗的用户上下文（location、preferences 等）"""

    routing_confidence: float | None = None
    """路由置信度（协作专家为 None）"""

    history: list[dict[str, str]] = field(default_factory=list)
    """最近的对话消息（role/content）"""

    collaborative: bool = False
    """是否处于多专家协作中"""

    collaboration_pattern: str | None = None
    """协作模式（journey/network/comparison/station_lines）"""

    primary_handler: str | None = None
    """协作中的主专家标识"""


@dataclass
class HandlerResponse:
    """专家响应

    Attributes:
        handler_id: 产生此响应的专家标识
        text: 回答文本
        structured_data: 结构化数据（线路状态、到站信息等）
        confidence: 回答置信度
        error: 错误信息（仅失败时）
    """

    handler_id: str
    """产生此响应的专家标识"""

    text: str
    """回答文本"""

    structured_data: dict[str, Any] | None = None
    """结构化数据（不透明对象）"""

    confidence: float | None = None
    """回答置信度（0.0-1.0），None 表示未给出"""

    error: str | None = None
    """错误信息"""

    @property
    def ok(self) -> bool:
        """是否成功"""
        return self.error is None and bool(self.text and self.text.strip())

    @classmethod
    def failure(cls, handler_id: str, error: str) -> "HandlerResponse":
        """构造失败响应"""
        return cls(handler_id=handler_id, text="", error=error)


class BaseSpecialist(ABC):
    """专家抽象基类

    Attributes:
        config: 专家配置
    """

    def __init__(self, config: "SpecialistConfig"):
        """初始化专家

        Args:
            config: 专家配置（名称、关键词、车站等）
        """
        self.config = config

    @property
    def specialist_id(self) -> str:
        """专家标识"""
        return self.config.specialist_id.value

    @property
    def name(self) -> str:
        """显示名称"""
        return self.config.name

    @abstractmethod
    async def handle(
        self,
        query: str,
        provider: "ReasoningProvider",
        context: HandlerContext,
    ) -> HandlerResponse:
        """处理查询

        Args:
            query: 用户查询
            provider: 推理服务（由调用方注入）
            context: 执行上下文

        Returns:
            HandlerResponse

        Raises:
            HandlerError: 专家无法给出回答
        """
        pass
