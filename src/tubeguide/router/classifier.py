"""查询分类器（路由器）

两阶段路由：
1. 内容过滤：拒绝域外和不当内容
2. 主题分类：确定性规则优先，其余交给受约束的推理调用

置信度始终由 confidence 模块在本地重新计算，与推理调用结果无关。
推理调用失败或超时时回退到默认专家，不向调用方抛出。
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from tubeguide.core.exceptions import ClassificationError, ReasoningError, ReasoningTimeoutError
from tubeguide.prompts import build_router_prompt
from tubeguide.router.confidence import DEFAULT_CONFIDENCE, match_rules, score_confidence
from tubeguide.router.content_filter import ContentFilter
from tubeguide.specialists.config import FILTER_HANDLER, SpecialistId

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider
    from tubeguide.router.tables import RoutingTables
    from tubeguide.specialists.config import SpecialistConfig
    from tubeguide.specialists.registry import SpecialistRegistry


@dataclass(frozen=True)
class RoutingDecision:
    """路由决策

    Attributes:
        handler_id: 专家标识（或 'filter'）
        confidence: 置信度
        rationale: 决策依据
        is_fallback: 是否走了回退（推理失败）
        filter_type: 过滤类型（off_topic / inappropriate）
        message: 过滤时的固定回复
    """

    handler_id: str
    confidence: float
    rationale: str
    is_fallback: bool = False
    filter_type: str | None = None
    message: str | None = None

    @property
    def is_filtered(self) -> bool:
        """是否被内容过滤拦截"""
        return self.handler_id == FILTER_HANDLER

    def to_dict(self) -> dict[str, Any]:
        return {
            "handler_id": self.handler_id,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "is_fallback": self.is_fallback,
            "filter_type": self.filter_type,
        }


class QueryClassifier:
    """查询分类器

    Attributes:
        registry: 专家注册表
        tables: 路由数据表
        default_handler: 默认专家标识
        timeout: 推理调用超时
    """

    def __init__(
        self,
        registry: "SpecialistRegistry",
        tables: "RoutingTables",
        default_handler: str = SpecialistId.CENTRAL.value,
        timeout: float | None = None,
    ):
        """初始化分类器

        Args:
            registry: 专家注册表
            tables: 路由数据表
            default_handler: 默认专家（必须已注册）
            timeout: 推理调用超时（秒）
        """
        if default_handler not in registry:
            raise ClassificationError(f"默认专家 '{default_handler}' 未注册")
        self.registry = registry
        self.tables = tables
        self.default_handler = default_handler
        self.timeout = timeout
        self._configs: dict[str, "SpecialistConfig"] = {
            c.specialist_id.value: c for c in registry.configs()
        }
        self._filter = ContentFilter(self._configs.values())

    def _allowed(self, exclude: Iterable[str]) -> dict[str, "SpecialistConfig"]:
        excluded = set(exclude)
        return {hid: c for hid, c in self._configs.items() if hid not in excluded}

    def _default_for(self, allowed: dict[str, "SpecialistConfig"]) -> str:
        if self.default_handler in allowed:
            return self.default_handler
        return next(iter(allowed))

    def score(self, query: str, handler_id: str) -> float:
        """计算置信度（纯函数，供测试和外部调用）"""
        return score_confidence(query, handler_id, self._configs, self.tables)

    def resume(self, query: str, handler_id: str) -> RoutingDecision:
        """沿用用户已确认的专家，不再调用推理服务"""
        decision = RoutingDecision(
            handler_id=handler_id,
            confidence=self.score(query, handler_id),
            rationale=f"Resumed with confirmed handler {handler_id}",
        )
        logger.info(f"沿用已确认的专家: {handler_id} ({decision.confidence})")
        return decision

    async def classify(
        self,
        query: str,
        provider: "ReasoningProvider",
        context: dict[str, Any] | None = None,
        exclude: Iterable[str] = (),
    ) -> RoutingDecision:
        """分类查询

        Args:
            query: 用户查询
            provider: 推理服务
            context: 用户上下文（目前仅用于日志）
            exclude: 排除的专家标识（用户否定后重试时使用）

        Returns:
            RoutingDecision

        Raises:
            ClassificationError: 没有可用的专家
        """
        verdict = self._filter.check(query)
        if verdict is not None:
            logger.info(f"查询被过滤: {verdict.filter_type}")
            return RoutingDecision(
                handler_id=FILTER_HANDLER,
                confidence=1.0,
                rationale=f"Query filtered as {verdict.filter_type}",
                filter_type=verdict.filter_type,
                message=verdict.message,
            )

        allowed = self._allowed(exclude)
        if not allowed:
            raise ClassificationError("没有可用的专家")

        rule = match_rules(query, allowed.values(), self.tables)
        if rule is not None and rule.handler_id in allowed:
            decision = RoutingDecision(
                handler_id=rule.handler_id,
                confidence=self.score(query, rule.handler_id),
                rationale=f"Routed to {rule.handler_id} by {rule.rule}"
                + (f" ({rule.station})" if rule.station else ""),
            )
            logger.info(f"路由决策: {decision.handler_id} ({decision.confidence}) [{rule.rule}]")
            return decision

        return await self._classify_with_reasoning(query, provider, allowed)

    async def _classify_with_reasoning(
        self,
        query: str,
        provider: "ReasoningProvider",
        allowed: dict[str, "SpecialistConfig"],
    ) -> RoutingDecision:
        default = self._default_for(allowed)
        tokens = [c.specialist_id.token for c in allowed.values()]
        prompt = build_router_prompt(
            [(c.specialist_id.token, c.description) for c in allowed.values()],
            SpecialistId(default).token,
        )

        try:
            token = await provider.choose(prompt, query, tokens, timeout=self.timeout)
        except ReasoningTimeoutError as e:
            logger.warning(f"路由推理超时，回退到默认专家 {default}: {e}")
            return self._fallback_decision(default, "timeout")
        except ReasoningError as e:
            logger.warning(f"路由推理失败，回退到默认专家 {default}: {e}")
            return self._fallback_decision(default, "reasoning error")

        chosen = SpecialistId.from_token(token)
        if chosen is None or chosen.value not in allowed:
            logger.debug(f"分类输出 '{token}' 不在候选集中，使用默认专家 {default}")
            handler_id = default
            rationale = f"Unrecognised classification '{token}', using default {default}"
        else:
            handler_id = chosen.value
            rationale = f"Query routed to {handler_id} based on content analysis"

        decision = RoutingDecision(
            handler_id=handler_id,
            confidence=self.score(query, handler_id),
            rationale=rationale,
        )
        logger.info(f"路由决策: {decision.handler_id} ({decision.confidence})")
        return decision

    def _fallback_decision(self, default: str, reason: str) -> RoutingDecision:
        return RoutingDecision(
            handler_id=default,
            confidence=DEFAULT_CONFIDENCE,
            rationale=f"Fallback routing to {default} due to {reason}",
            is_fallback=True,
        )
