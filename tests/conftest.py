"""测试公共夹具：推理服务替身、专家替身、会话存储"""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest
import pytest_asyncio

from tubeguide.config import TubeGuideSettings
from tubeguide.llm.provider import ReasoningProvider
from tubeguide.memory.store import ConversationStore
from tubeguide.router.tables import RoutingTables, load_routing_tables
from tubeguide.specialists.base import BaseSpecialist, HandlerContext, HandlerResponse
from tubeguide.specialists.config import SPECIALIST_CONFIGS, SpecialistConfig
from tubeguide.specialists.registry import SpecialistRegistry

DEFAULT_ANSWER = (
    "Trains are running with a good service. The next departures are every few "
    "minutes from all platforms."
)


class FakeProvider(ReasoningProvider):
    """推理服务替身

    Attributes:
        response: invoke 返回的文本
        choice: choose 返回的词
        choose_error: choose 抛出的异常
        invoke_error: invoke 抛出的异常
        summary: 摘要提示词对应的返回文本
    """

    def __init__(
        self,
        response: str = DEFAULT_ANSWER,
        choice: str = "CENTRAL",
        choose_error: Exception | None = None,
        invoke_error: Exception | None = None,
        summary: str | None = None,
    ):
        self.response = response
        self.choice = choice
        self.choose_error = choose_error
        self.invoke_error = invoke_error
        self.summary = summary
        self.invoke_calls: list[tuple[str, str]] = []
        self.choose_calls: list[tuple[str, Sequence[str]]] = []

    async def invoke(self, system_prompt, user_message, *, timeout=None):
        self.invoke_calls.append((system_prompt, user_message))
        if self.invoke_error is not None:
            raise self.invoke_error
        if self.summary is not None and "summarise conversations" in system_prompt:
            return self.summary
        return self.response

    async def choose(self, system_prompt, user_message, choices, *, timeout=None):
        self.choose_calls.append((user_message, list(choices)))
        if self.choose_error is not None:
            raise self.choose_error
        return self.choice


class FakeSpecialist(BaseSpecialist):
    """专家替身：返回固定回答，可配置延迟、异常和置信度"""

    def __init__(
        self,
        config: SpecialistConfig,
        text: str | None = None,
        confidence: float | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        data: dict | None = None,
    ):
        super().__init__(config)
        self.text = text
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.data = data
        self.calls: list[tuple[str, HandlerContext]] = []

    async def handle(self, query, provider, context):
        self.calls.append((query, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        confidence = self.confidence
        if confidence is None:
            confidence = context.routing_confidence
        return HandlerResponse(
            handler_id=self.specialist_id,
            text=self.text or f"{self.name}: {DEFAULT_ANSWER}",
            structured_data=self.data,
            confidence=confidence,
        )


def make_fake_registry(*overrides: FakeSpecialist) -> SpecialistRegistry:
    """全部专家使用替身，可按标识覆盖"""
    registry = SpecialistRegistry(FakeSpecialist(config) for config in SPECIALIST_CONFIGS.values())
    for specialist in overrides:
        registry.register(specialist)
    return registry


@pytest.fixture
def tables() -> RoutingTables:
    return load_routing_tables()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_registry() -> SpecialistRegistry:
    return make_fake_registry()


@pytest.fixture
def line_registry() -> SpecialistRegistry:
    """真实的线路专家（无数据提供者）"""
    return SpecialistRegistry.create_default()


@pytest.fixture
def configs() -> dict[str, SpecialistConfig]:
    return {sid.value: config for sid, config in SPECIALIST_CONFIGS.items()}


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "conversations.sqlite"


@pytest_asyncio.fixture
async def store(db_path: Path):
    conversation_store = ConversationStore(db_path, enable_summarization=False)
    yield conversation_store
    await conversation_store.close()


@pytest.fixture
def settings(db_path: Path) -> TubeGuideSettings:
    return TubeGuideSettings(
        db_path=db_path,
        reasoning_timeout=1.0,
        enable_summarization=False,
    )

