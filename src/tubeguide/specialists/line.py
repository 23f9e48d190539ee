"""线路专家与状态专家

LineSpecialist 是所有线路共用的实现，差异由 SpecialistConfig 提供；
StatusSpecialist 仅覆盖数据获取方式。
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

from tubeguide.core.exceptions import HandlerError, ReasoningError
from tubeguide.prompts import build_specialist_prompt
from tubeguide.router.tables import RoutingTables, load_routing_tables
from tubeguide.specialists.base import BaseSpecialist, HandlerContext, HandlerResponse

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider
    from tubeguide.specialists.config import SpecialistConfig
    from tubeguide.tfl.client import LineDataProvider

DEFAULT_CONFIDENCE = 0.7


class LineSpecialist(BaseSpecialist):
    """线路专家

    工作流程：
    1. 获取线路状态（及到站查询时的到站数据）
    2. 构建提示词
    3. 调用推理服务生成回答

    数据获取失败不会中断回答；推理失败抛出 HandlerError 并附带已获取的数据。

    Attributes:
        config: 专家配置
        data_provider: 线路数据提供者（可选）
        tables: 路由数据表（到站查询模式），默认内置数据
    """

    def __init__(
        self,
        config: "SpecialistConfig",
        data_provider: "LineDataProvider | None" = None,
        tables: RoutingTables | None = None,
    ):
        super().__init__(config)
        self.data_provider = data_provider
        self.tables = tables or load_routing_tables()

    def detect_station(self, query: str) -> str | None:
        """从查询中找出本线路关键词里的车站名"""
        lowered = query.lower()
        line_words = {self.config.specialist_id.value, self.config.name.lower()}
        for keyword in self.config.keywords:
            if keyword in line_words or keyword.endswith(" line"):
                continue
            if keyword in lowered:
                return keyword
        return None

    async def fetch_data(self, query: str) -> dict[str, Any] | None:
        """获取结构化数据

        Returns:
            结构化数据；无数据提供者或获取失败时返回 None
        """
        if self.data_provider is None or self.config.tfl_line_id is None:
            return None

        line_id = self.config.tfl_line_id
        try:
            data: dict[str, Any] = {"status": await self.data_provider.line_status(line_id)}
            station = self.detect_station(query)
            if station and self.tables.is_urgent(query):
                data["arrivals"] = await self.data_provider.arrivals(line_id, station)
        except Exception as e:
            logger.warning(f"[{self.specialist_id}] 获取线路数据失败: {e}")
            return None

        data["last_updated"] = datetime.now(timezone.utc).isoformat()
        return data

    async def handle(
        self,
        query: str,
        provider: "ReasoningProvider",
        context: HandlerContext,
    ) -> HandlerResponse:
        logger.debug(f"[{self.specialist_id}] 处理查询: {query[:100]}")
        data = await self.fetch_data(query)

        prompt = build_specialist_prompt(
            name=self.name,
            description=self.config.description,
            data=data,
            history=context.history,
            primary=context.primary_handler if context.collaborative else None,
        )
        try:
            text = await provider.invoke(prompt, query)
        except ReasoningError as e:
            raise HandlerError(self.specialist_id, str(e), partial_data=data) from e

        confidence = context.routing_confidence
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE
        return HandlerResponse(
            handler_id=self.specialist_id,
            text=text.strip(),
            structured_data=data,
            confidence=confidence,
        )


class StatusSpecialist(LineSpecialist):
    """全网状态专家"""

    DISRUPTION_KEYWORDS = (
        "disruption", "delay", "problem", "issue", "suspended", "closed",
        "fault", "not running", "disrupted",
    )
    GOOD_SERVICE_KEYWORDS = ("good service", "running normally", "no problems", "normal")

    def detect_query_type(self, query: str) -> str:
        """识别状态查询类型：disrupted / good_service / all_lines"""
        lowered = query.lower()
        if any(kw in lowered for kw in self.DISRUPTION_KEYWORDS):
            return "disrupted"
        if any(kw in lowered for kw in self.GOOD_SERVICE_KEYWORDS):
            return "good_service"
        return "all_lines"

    async def fetch_data(self, query: str) -> dict[str, Any] | None:
        if self.data_provider is None:
            return None

        query_type = self.detect_query_type(query)
        try:
            lines = await self.data_provider.all_line_status()
        except Exception as e:
            logger.warning(f"[{self.specialist_id}] 获取全网状态失败: {e}")
            return None

        if query_type == "disrupted":
            lines = [line for line in lines if line.get("severity") != "Good Service"]
        elif query_type == "good_service":
            lines = [line for line in lines if line.get("severity") == "Good Service"]

        return {
            "query_type": query_type,
            "lines": lines,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
