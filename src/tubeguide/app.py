"""TubeGuide 应用入口

组装分类器、专家注册表、协作协调器、会话存储和工作流，
对外提供 process / history / insights 等操作。

Usage:
    async with TubeGuide() as guide:
        result = await guide.process("Circle line status")
        print(result["response"])
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from tubeguide import __version__
from tubeguide.config import TubeGuideSettings, get_settings
from tubeguide.core.exceptions import ConfigurationError, TubeGuideError
from tubeguide.llm.provider import ChatOpenAIProvider, ReasoningProvider
from tubeguide.memory.models import EnrichedHistory
from tubeguide.memory.store import ConversationStore
from tubeguide.memory.summarizer import ConversationSummarizer
from tubeguide.orchestrator.coordinator import CollaborationCoordinator
from tubeguide.orchestrator.synthesis import ResponseSynthesizer
from tubeguide.orchestrator.workflow import (
    FALLBACK_MESSAGE,
    NOTHING_USABLE_CONFIDENCE,
    RequestWorkflow,
    sanitize_thread_id,
)
from tubeguide.router.classifier import QueryClassifier
from tubeguide.router.tables import RoutingTables, load_routing_tables
from tubeguide.specialists.config import FALLBACK_HANDLER, line_color
from tubeguide.specialists.registry import SpecialistRegistry
from tubeguide.tfl.client import LineDataProvider, TflClient


class TubeGuide:
    """TubeGuide 应用

    Attributes:
        settings: 配置
        provider: 默认推理服务（process 可按调用覆盖）
        registry: 专家注册表
        classifier: 查询分类器
        coordinator: 协作协调器
        store: 会话存储
        workflow: 请求处理工作流
    """

    def __init__(
        self,
        settings: TubeGuideSettings | None = None,
        provider: ReasoningProvider | None = None,
        registry: SpecialistRegistry | None = None,
        tables: RoutingTables | None = None,
        store: ConversationStore | None = None,
        data_provider: LineDataProvider | None = None,
    ):
        """组装应用

        Args:
            settings: 配置（默认全局配置）
            provider: 推理服务（默认 ChatOpenAIProvider）
            registry: 专家注册表（默认全部启用的专家）
            tables: 路由数据表（默认按配置加载）
            store: 会话存储（默认按配置创建 SQLite 存储）
            data_provider: 线路数据提供者（默认 TflClient）

        Raises:
            ConfigurationError: 推理服务或路由数据无法初始化
        """
        self.settings = settings or get_settings()
        self.provider = provider or self._create_provider()
        self.tables = tables or load_routing_tables(self.settings.routing_tables_path)

        self._tfl: TflClient | None = None
        if registry is None:
            if data_provider is None:
                self._tfl = TflClient(self.settings)
                data_provider = self._tfl
            registry = SpecialistRegistry.create_default(
                data_provider=data_provider, tables=self.tables
            )
        self.registry = registry

        self.classifier = QueryClassifier(
            registry,
            self.tables,
            default_handler=self.settings.default_handler,
            timeout=self.settings.reasoning_timeout,
        )
        self.coordinator = CollaborationCoordinator(
            registry,
            self.tables,
            max_collaborators=self.settings.max_collaborators,
            timeout=self.settings.reasoning_timeout,
            synthesizer=ResponseSynthesizer(self.settings.collaborator_snippet_length),
        )
        self.store = store or ConversationStore(
            self.settings.db_path,
            summarizer=ConversationSummarizer(self.provider, timeout=self.settings.reasoning_timeout),
            summary_threshold=self.settings.summary_threshold,
            enable_summarization=self.settings.enable_summarization,
        )
        self.workflow = RequestWorkflow(
            self.classifier,
            registry,
            coordinator=self.coordinator,
            store=self.store,
            enable_confirmation=self.settings.enable_confirmation,
            max_query_length=self.settings.max_query_length,
            history_window=self.settings.history_window,
        )
        logger.info(f"TubeGuide 初始化完成: {len(registry)} 个专家")

    def _create_provider(self) -> ReasoningProvider:
        try:
            return ChatOpenAIProvider(self.settings)
        except Exception as e:
            raise ConfigurationError(f"无法初始化推理服务: {e}") from e

    async def __aenter__(self) -> "TubeGuide":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def process(
        self,
        query: str,
        thread_id: str | None = None,
        context: dict[str, Any] | None = None,
        confirmation: str | bool | None = None,
        provider: ReasoningProvider | None = None,
        confirmed_handler: str | None = None,
    ) -> dict[str, Any]:
        """处理一次查询（除取消外不会抛出异常）

        Args:
            query: 用户查询
            thread_id: 会话线程（为空时自动生成）
            context: 用户上下文（location、preferences 等）
            confirmation: 对多步骤行程的确认答复
            provider: 本次调用使用的推理服务
            confirmed_handler: 上一轮等待确认的专家（跳过重新分类）

        Returns:
            结果字典：response / handler_id / confidence / structured_data /
            thread_id / requires_confirmation / awaiting_confirmation /
            collaborative / handlers_used / is_fallback / rejected / metadata
        """
        try:
            return await self.workflow.run(
                query,
                provider or self.provider,
                thread_id=thread_id,
                context=context,
                confirmation=confirmation,
                confirmed_handler=confirmed_handler,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"请求处理异常: {e}")
            return {
                "response": FALLBACK_MESSAGE,
                "handler_id": FALLBACK_HANDLER,
                "confidence": NOTHING_USABLE_CONFIDENCE,
                "structured_data": None,
                "thread_id": sanitize_thread_id(thread_id),
                "requires_confirmation": False,
                "awaiting_confirmation": False,
                "collaborative": False,
                "handlers_used": [],
                "is_fallback": True,
                "rejected": False,
                "metadata": {
                    "stage_trace": [],
                    "processing_time_ms": 0.0,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "fallback_reason": "internal_error",
                    "line_color": line_color(FALLBACK_HANDLER),
                },
            }

    async def history(
        self,
        thread_id: str,
        limit: int = 50,
        enrich: bool = False,
    ) -> list[dict[str, Any]] | dict[str, Any]:
        """获取会话历史（JSON 友好格式）"""
        result = await self.store.history(thread_id, limit=limit, enrich=enrich)
        if isinstance(result, EnrichedHistory):
            return result.model_dump(mode="json")
        return [m.model_dump(mode="json") for m in result]

    async def insights(self, thread_id: str) -> dict[str, Any] | None:
        """获取会话洞察；尚无摘要时返回 None"""
        insights = await self.store.insights(thread_id)
        return insights.model_dump(mode="json") if insights else None

    async def trigger_summary(self, thread_id: str) -> int | None:
        """手动为未摘要消息生成摘要"""
        return await self.store.trigger_summary(thread_id)

    async def health(self) -> dict[str, Any]:
        """健康检查"""
        store_ok = await self.store.health_check()
        return {
            "status": "healthy" if store_ok else "degraded",
            "store": store_ok,
            "specialists": len(self.registry),
            "summarization": self.store.enable_summarization,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def info(self) -> dict[str, Any]:
        """系统信息"""
        return {
            "name": "TubeGuide",
            "version": __version__,
            "default_handler": self.classifier.default_handler,
            "specialists": [
                {
                    "id": config.specialist_id.value,
                    "name": config.name,
                    "color": config.color,
                    "description": config.description,
                }
                for config in self.registry.configs()
            ],
            "features": {
                "confirmation": self.settings.enable_confirmation,
                "summarization": self.settings.enable_summarization,
                "max_collaborators": self.settings.max_collaborators,
                "summary_threshold": self.settings.summary_threshold,
            },
        }

    async def close(self) -> None:
        """等待后台摘要并释放资源"""
        try:
            await self.store.close()
        except TubeGuideError as e:
            logger.warning(f"关闭会话存储失败: {e}")
        if self._tfl is not None:
            await self._tfl.close()
