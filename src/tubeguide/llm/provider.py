"""推理服务提供者

定义推理调用的窄接口，并提供基于 langchain-openai 的实现。
所有调用都带有超时，超时统一转换为 ReasoningTimeoutError。
"""

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from loguru import logger

from tubeguide.config import TubeGuideSettings, get_settings
from tubeguide.core.exceptions import ReasoningError, ReasoningTimeoutError

_TOKEN_STRIP = re.compile(r"[^A-Za-z0-9_]")


def normalize_token(text: str) -> str:
    """规范化受约束输出：取第一个词，去掉标点并转为大写"""
    words = text.strip().split()
    if not words:
        return ""
    return _TOKEN_STRIP.sub("", words[0]).upper()


class ReasoningProvider(ABC):
    """推理服务抽象

    由调用方显式传入（依赖注入），便于测试替身。
    """

    @abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_message: str,
        *,
        timeout: float | None = None,
    ) -> str:
        """执行一次推理调用

        Args:
            system_prompt: 系统提示词
            user_message: 用户消息
            timeout: 超时（秒），None 使用默认配置

        Returns:
            模型输出文本

        Raises:
            ReasoningTimeoutError: 超时
            ReasoningError: 其他传输或响应错误
        """
        pass

    async def choose(
        self,
        system_prompt: str,
        user_message: str,
        choices: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> str:
        """受约束输出模式：要求模型只回答 choices 中的一个词

        返回规范化后的词，是否属于 choices 由调用方判断。
        """
        options = ", ".join(choices)
        constrained_prompt = (
            f"{system_prompt}\n\n"
            f"Respond with exactly one of: {options}. No other words."
        )
        raw = await self.invoke(constrained_prompt, user_message, timeout=timeout)
        return normalize_token(raw)


class ChatOpenAIProvider(ReasoningProvider):
    """基于 ChatOpenAI 的推理服务

    Attributes:
        model_name: 模型名称
        default_timeout: 默认超时（秒）
    """

    def __init__(
        self,
        settings: TubeGuideSettings | None = None,
        llm: ChatOpenAI | None = None,
    ):
        """初始化推理服务

        Args:
            settings: 配置（默认全局配置）
            llm: 预先构造的 ChatOpenAI 实例（可选）
        """
        settings = settings or get_settings()
        self.model_name = settings.llm_model_name
        self.default_timeout = settings.reasoning_timeout
        self._llm = llm or ChatOpenAI(
            model=settings.llm_model_name,
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=1024,
        )
        logger.debug(f"ChatOpenAIProvider initialized: model={self.model_name}")

    async def invoke(
        self,
        system_prompt: str,
        user_message: str,
        *,
        timeout: float | None = None,
    ) -> str:
        limit = timeout if timeout is not None else self.default_timeout
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_message),
        ]
        try:
            response = await asyncio.wait_for(self._llm.ainvoke(messages), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ReasoningTimeoutError(limit) from e
        except Exception as e:
            raise ReasoningError(f"推理调用失败: {e}") from e

        content = response.content
        if isinstance(content, list):
            # 多段内容只保留文本段
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        if not content or not content.strip():
            raise ReasoningError("推理调用返回空内容")
        return content
