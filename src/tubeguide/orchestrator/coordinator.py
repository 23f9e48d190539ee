"""协作协调器

识别需要多专家协作的查询，选择协作专家并发执行，再交给合成器合并结果。

执行顺序：
1. 主专家先执行
2. 协作专家并发执行（asyncio.gather），每个都有独立超时
3. 单个协作专家失败只记录错误条目，不影响其他专家
4. 主专家失败时降级为第一个成功的协作专家；全部失败则抛出 HandlerError
"""

import asyncio
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from loguru import logger

from tubeguide.core.exceptions import CollaborationError, HandlerError
from tubeguide.orchestrator.synthesis import ResponseSynthesizer, SynthesizedResponse
from tubeguide.specialists.base import HandlerContext, HandlerResponse
from tubeguide.specialists.config import SpecialistId

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider
    from tubeguide.router.tables import RoutingTables
    from tubeguide.specialists.registry import SpecialistRegistry

JOURNEY = "journey"
NETWORK = "network"
COMPARISON = "comparison"
STATION_LINES = "station_lines"


def _patterns(*expressions: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(expr, re.IGNORECASE) for expr in expressions)


# 按顺序匹配，先命中者生效
COLLABORATION_PATTERNS: tuple[tuple[str, tuple[re.Pattern, ...]], ...] = (
    (
        JOURNEY,
        _patterns(
            r"\bfrom\s+\S.*\s+to\s+\S",
            r"\bjourney\s+from\b",
            r"\broute\s+from\b",
            r"\binterchange\b",
            r"\bchange\s+at\b",
        ),
    ),
    (
        NETWORK,
        _patterns(
            r"\ball\s+(the\s+)?lines\b",
            r"\bnetwork\s+status\b",
            r"\boverall\s+service\b",
            r"\bmultiple\s+lines\b",
        ),
    ),
    (
        COMPARISON,
        _patterns(
            r"\bcompare\b",
            r"\bbetter\s+route\b",
            r"\balternative\b",
            r"\bfastest\s+way\b",
            r"\bquickest\s+route\b",
        ),
    ),
    (
        STATION_LINES,
        _patterns(
            r"\bwhich\s+lines\s+serve\b",
            r"\bfacilities\s+at\b",
            r"\baccessibility\b",
            r"\bstep[\s-]free\b",
        ),
    ),
)


@dataclass
class CollaborationPlan:
    """协作计划

    Attributes:
        pattern: 协作模式
        primary: 主专家标识
        collaborators: 协作专家标识（不含主专家，保持顺序）
    """

    pattern: str
    primary: str
    collaborators: list[str] = field(default_factory=list)

    @property
    def participants(self) -> list[str]:
        return [self.primary, *self.collaborators]


@dataclass
class CollaborationResult:
    """协作执行结果

    Attributes:
        plan: 协作计划
        responses: 专家标识 → 响应（失败专家为错误条目），主专家在前
        effective_primary: 实际作为主回答的专家（主专家失败时降级）
        synthesized: 合成结果
    """

    plan: CollaborationPlan
    responses: dict[str, HandlerResponse]
    effective_primary: str
    synthesized: SynthesizedResponse

    @property
    def errors(self) -> dict[str, str]:
        return {hid: r.error for hid, r in self.responses.items() if r.error}

    @property
    def degraded(self) -> bool:
        return self.effective_primary != self.plan.primary


class CollaborationCoordinator:
    """协作协调器

    Attributes:
        registry: 专家注册表
        tables: 路由数据表（车站 → 服务线路）
        max_collaborators: 最大协作专家数
        timeout: 单个协作专家的超时（秒）
        synthesizer: 响应合成器
    """

    def __init__(
        self,
        registry: "SpecialistRegistry",
        tables: "RoutingTables",
        max_collaborators: int = 3,
        timeout: float | None = None,
        synthesizer: ResponseSynthesizer | None = None,
    ):
        self.registry = registry
        self.tables = tables
        self.max_collaborators = max_collaborators
        self.timeout = timeout
        self.synthesizer = synthesizer or ResponseSynthesizer()

    # ==================== 计划 ====================

    def detect_pattern(self, query: str) -> str | None:
        """识别协作模式（先命中者生效）"""
        for name, patterns in COLLABORATION_PATTERNS:
            if any(p.search(query) for p in patterns):
                return name
        return None

    def _serving(self, stations: list[str]) -> list[str]:
        handlers: list[str] = []
        for station in stations:
            handlers.extend(self.tables.shared_stations.get(station, ()))
        return handlers

    def _keyword_lines(self, query: str) -> list[str]:
        """关键词（线路名或车站名）出现在查询中的线路专家"""
        return [
            c.specialist_id.value
            for c in self.registry.configs()
            if c.specialist_id != SpecialistId.STATUS and c.keyword_matches(query)
        ]

    def _candidates(self, query: str, pattern: str) -> list[str]:
        if pattern == NETWORK:
            return [SpecialistId.STATUS.value, *self.tables.network_collaborators]

        if pattern == COMPARISON:
            return self._keyword_lines(query) or [SpecialistId.STATUS.value]

        if pattern == JOURNEY:
            serving = self._serving(self.tables.stations_in(query))
            return serving or list(self.tables.journey_default_collaborators)

        if pattern == STATION_LINES:
            # 非共享车站：按线路关键词中的车站名查找
            return self._serving(self.tables.stations_in(query)) or self._keyword_lines(query)

        return []

    def select_collaborators(
        self,
        query: str,
        pattern: str,
        primary: str,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        """选择协作专家：去重、排除主专家和被排除的专家、必须已注册，最多 max_collaborators 个"""
        skipped = {primary, *exclude}
        selected: list[str] = []
        for handler_id in self._candidates(query, pattern):
            if handler_id in skipped or handler_id in selected or handler_id not in self.registry:
                continue
            selected.append(handler_id)
            if len(selected) >= self.max_collaborators:
                break
        return selected

    def plan(self, query: str, primary: str, exclude: Iterable[str] = ()) -> CollaborationPlan | None:
        """生成协作计划；不需要协作或没有协作专家时返回 None

        Args:
            query: 用户查询
            primary: 主专家标识
            exclude: 不参与协作的专家（用户否定过的专家）
        """
        pattern = self.detect_pattern(query)
        if pattern is None:
            return None
        collaborators = self.select_collaborators(query, pattern, primary, exclude)
        if not collaborators:
            logger.debug(f"协作模式 {pattern} 没有可用的协作专家，按单专家处理")
            return None
        return CollaborationPlan(pattern=pattern, primary=primary, collaborators=collaborators)

    def focused_query(self, query: str, handler_id: str, pattern: str) -> str:
        """为协作专家生成聚焦查询"""
        name = self.registry.get(handler_id).name
        if pattern == NETWORK:
            return f"What is the current status of the {name}?"
        if pattern == JOURNEY:
            return f"{query} - focus on {name} connectivity"
        return query

    # ==================== 执行 ====================

    async def _invoke_collaborator(
        self,
        handler_id: str,
        query: str,
        provider: "ReasoningProvider",
        context: HandlerContext,
    ) -> HandlerResponse:
        try:
            specialist = self.registry.get(handler_id)
            response = await asyncio.wait_for(
                specialist.handle(query, provider, context), timeout=self.timeout
            )
            if not response.ok:
                raise CollaborationError(handler_id, response.error or "empty response")
            return response
        except CollaborationError as e:
            error = e
        except asyncio.TimeoutError:
            error = CollaborationError(handler_id, f"timed out after {self.timeout}s")
        except Exception as e:
            error = CollaborationError(handler_id, str(e))

        logger.warning(str(error))
        return HandlerResponse.failure(handler_id, error.reason)

    async def _invoke_primary(
        self,
        plan: CollaborationPlan,
        query: str,
        provider: "ReasoningProvider",
        context: HandlerContext,
    ) -> tuple[HandlerResponse, HandlerError | None]:
        try:
            response = await self.registry.get(plan.primary).handle(query, provider, context)
        except HandlerError as e:
            logger.warning(f"主专家失败: {e}")
            return HandlerResponse.failure(plan.primary, e.reason), e
        except Exception as e:
            logger.warning(f"主专家 '{plan.primary}' 执行异常: {e}")
            return HandlerResponse.failure(plan.primary, str(e)), HandlerError(plan.primary, str(e))

        if not response.ok:
            error = HandlerError(
                plan.primary, response.error or "empty response", partial_data=response.structured_data
            )
            return response, error
        return response, None

    async def execute(
        self,
        query: str,
        plan: CollaborationPlan,
        provider: "ReasoningProvider",
        context: HandlerContext,
    ) -> CollaborationResult:
        """执行协作计划

        Args:
            query: 用户查询
            plan: 协作计划
            provider: 推理服务
            context: 主专家上下文

        Returns:
            CollaborationResult

        Raises:
            HandlerError: 主专家和全部协作专家都失败
        """
        logger.info(
            f"协作执行: pattern={plan.pattern}, primary={plan.primary}, "
            f"collaborators={plan.collaborators}"
        )
        primary_context = replace(
            context,
            collaborative=True,
            collaboration_pattern=plan.pattern,
        )
        primary_response, primary_error = await self._invoke_primary(
            plan, query, provider, primary_context
        )

        primary_name = self.registry.get(plan.primary).name
        collaborator_context = replace(
            context,
            routing_confidence=None,
            collaborative=True,
            collaboration_pattern=plan.pattern,
            primary_handler=primary_name,
        )
        outcomes = await asyncio.gather(
            *(
                self._invoke_collaborator(
                    handler_id,
                    self.focused_query(query, handler_id, plan.pattern),
                    provider,
                    collaborator_context,
                )
                for handler_id in plan.collaborators
            )
        )

        responses: dict[str, HandlerResponse] = {plan.primary: primary_response}
        for response in outcomes:
            responses[response.handler_id] = response

        effective = plan.primary
        if primary_error is not None:
            effective = next((r.handler_id for r in outcomes if r.ok), None)
            if effective is None:
                raise primary_error
            logger.warning(f"主专家 '{plan.primary}' 失败，降级为协作专家 '{effective}'")

        synthesized = self.synthesizer.synthesize_validated(responses, effective)
        return CollaborationResult(
            plan=plan,
            responses=responses,
            effective_primary=effective,
            synthesized=synthesized,
        )
