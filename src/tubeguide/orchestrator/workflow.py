"""请求处理工作流

基于 LangGraph StateGraph 的请求处理流程。每个阶段是一个异步节点，
节点之间的条件边全部委托给纯函数 next_stage。

节点只返回状态增量；trace 字段由 operator.add 归并，形成只追加的阶段轨迹。
"""

import re
import secrets
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from langgraph.graph import END, START, StateGraph
from loguru import logger

from tubeguide.core.exceptions import (
    ClassificationError,
    HandlerError,
    PersistenceError,
    TubeGuideError,
    ValidationError,
)
from tubeguide.orchestrator.states import (
    MAX_CONFIRMATION_RETRIES,
    ConfirmationOutcome,
    Stage,
    WorkflowState,
    next_stage,
)
from tubeguide.specialists.base import HandlerContext, HandlerResponse
from tubeguide.specialists.config import FALLBACK_HANDLER, FILTER_HANDLER, line_color

if TYPE_CHECKING:
    from tubeguide.llm.provider import ReasoningProvider
    from tubeguide.memory.store import ConversationStore
    from tubeguide.orchestrator.coordinator import CollaborationCoordinator
    from tubeguide.router.classifier import QueryClassifier
    from tubeguide.specialists.registry import SpecialistRegistry

MAX_THREAD_ID_LENGTH = 100
MAX_CONTEXT_VALUE_LENGTH = 200
ALLOWED_CONTEXT_KEYS = ("location", "preferences", "accessibility", "travel_time", "line")
FALLBACK_CONFIDENCE_CAP = 0.5
NOTHING_USABLE_CONFIDENCE = 0.1

MULTI_STEP_PATTERN = re.compile(
    r"\b(interchange|change\s+at|changing\s+lines|multiple\s+lines|alternative\s+route|"
    r"multi[\s-]step)\b",
    re.IGNORECASE,
)

AFFIRMATIVE = frozenset({"yes", "y", "yeah", "yep", "ok", "okay", "sure", "confirm", "proceed"})
NEGATIVE = frozenset({"no", "n", "nope", "nah", "cancel", "reject", "different"})

VALIDATION_MESSAGE = "Please ask a question about the London Underground."
FALLBACK_MESSAGE = (
    "Sorry, I couldn't get a complete answer for that right now. "
    "Please try again in a moment, or check tfl.gov.uk for live service information."
)
CONFIRMATION_PROMPT = (
    "This journey involves more than one step. Would you like me to go ahead with "
    "this route? Reply yes to confirm or no to try a different line."
)
_THREAD_ID_STRIP = re.compile(r"[^A-Za-z0-9_-]")


# ==================== 输入清洗 ====================


def validate_query(query: Any, max_length: int = 1000) -> str:
    """校验并规范化查询：合并空白、截断

    Raises:
        ValidationError: 查询为空或不是字符串
    """
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query must be a non-empty string")
    return " ".join(query.split())[:max_length]


def generate_thread_id() -> str:
    return f"thread_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def sanitize_thread_id(thread_id: Any) -> str:
    """清洗线程标识；为空或清洗后为空时生成新标识"""
    if isinstance(thread_id, str):
        cleaned = _THREAD_ID_STRIP.sub("", thread_id)[:MAX_THREAD_ID_LENGTH]
        if cleaned:
            return cleaned
    return generate_thread_id()


def sanitize_context(context: Any) -> dict[str, Any]:
    """只保留白名单键和简单值"""
    if not isinstance(context, dict):
        return {}
    cleaned: dict[str, Any] = {}
    for key in ALLOWED_CONTEXT_KEYS:
        value = context.get(key)
        if isinstance(value, str):
            cleaned[key] = value.strip()[:MAX_CONTEXT_VALUE_LENGTH]
        elif isinstance(value, (bool, int, float)):
            cleaned[key] = value
        elif isinstance(value, (list, tuple)):
            cleaned[key] = [str(v)[:MAX_CONTEXT_VALUE_LENGTH] for v in value][:10]
    return cleaned


def parse_confirmation(answer: str | bool | None) -> bool | None:
    """解析确认答复：肯定 True，否定 False，无法识别 None"""
    if isinstance(answer, bool):
        return answer
    if not isinstance(answer, str):
        return None
    words = answer.strip().lower().split()
    if not words:
        return None
    word = words[0].strip(".,!?")
    if word in AFFIRMATIVE:
        return True
    if word in NEGATIVE:
        return False
    return None


# ==================== 工作流 ====================


class RequestWorkflow:
    """请求处理工作流

    Attributes:
        classifier: 查询分类器
        registry: 专家注册表
        coordinator: 协作协调器（为 None 时不做多专家协作）
        store: 会话存储（为 None 时不持久化）
    """

    def __init__(
        self,
        classifier: "QueryClassifier",
        registry: "SpecialistRegistry",
        coordinator: "CollaborationCoordinator | None" = None,
        store: "ConversationStore | None" = None,
        *,
        enable_confirmation: bool = True,
        max_query_length: int = 1000,
        history_window: int = 10,
    ):
        self.classifier = classifier
        self.registry = registry
        self.coordinator = coordinator
        self.store = store
        self.enable_confirmation = enable_confirmation
        self.max_query_length = max_query_length
        self.history_window = history_window
        self._graph = self._build_graph()

    def _build_graph(self):
        """构建 StateGraph"""
        nodes = {
            Stage.VALIDATE: self._validate_node,
            Stage.CLASSIFY: self._classify_node,
            Stage.INVOKE: self._invoke_node,
            Stage.CONFIRM: self._confirm_node,
            Stage.FALLBACK: self._fallback_node,
            Stage.PERSIST: self._persist_node,
            Stage.FINALIZE: self._finalize_node,
        }
        names = [stage.value for stage in nodes]

        builder = StateGraph(WorkflowState)
        for stage, node in nodes.items():
            builder.add_node(stage.value, node)

        builder.add_edge(START, Stage.VALIDATE.value)
        for stage in nodes:
            if stage == Stage.FINALIZE:
                continue
            builder.add_conditional_edges(
                stage.value,
                lambda state, stage=stage: next_stage(stage, state).value,
                names,
            )
        builder.add_edge(Stage.FINALIZE.value, END)
        return builder.compile()

    async def run(
        self,
        query: str,
        provider: "ReasoningProvider",
        thread_id: str | None = None,
        context: dict[str, Any] | None = None,
        confirmation: str | bool | None = None,
        confirmed_handler: str | None = None,
    ) -> dict[str, Any]:
        """处理一次请求

        Args:
            query: 用户查询
            provider: 推理服务
            thread_id: 会话线程
            context: 用户上下文
            confirmation: 对多步骤行程的确认答复
            confirmed_handler: 上一轮等待确认的专家；与 confirmation 一起传入时跳过分类

        Returns:
            结果字典（见 _finalize_node）
        """
        initial: WorkflowState = {
            "query": query,
            "thread_id": thread_id,
            "context": context,
            "confirmation": confirmation,
            "confirmed_handler": confirmed_handler,
            "confirmation_enabled": self.enable_confirmation,
            "provider": provider,
            "started": time.perf_counter(),
            "excluded": [],
            "retry_count": 0,
            "trace": [],
        }
        final_state = await self._graph.ainvoke(initial)
        return final_state["result"]

    # ==================== 节点 ====================

    async def _validate_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.debug("进入 validate 阶段")
        thread_id = sanitize_thread_id(state.get("thread_id"))
        try:
            query = validate_query(state.get("query"), self.max_query_length)
        except ValidationError as e:
            logger.info(f"查询校验失败: {e}")
            return {
                "thread_id": thread_id,
                "rejected": True,
                "error": str(e),
                "error_stage": Stage.VALIDATE.value,
                "trace": [Stage.VALIDATE.value],
            }
        updates: dict[str, Any] = {
            "query": query,
            "thread_id": thread_id,
            "context": sanitize_context(state.get("context")),
            "rejected": False,
            "trace": [Stage.VALIDATE.value],
        }
        confirmed = state.get("confirmed_handler")
        if confirmed and state.get("confirmation") is not None:
            if confirmed in self.registry:
                updates["decision"] = self.classifier.resume(query, confirmed)
            else:
                logger.warning(f"已确认的专家 '{confirmed}' 未注册，重新分类")
        return updates

    async def _classify_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.debug(f"进入 classify 阶段（排除: {state.get('excluded')}）")
        # 确认重试时清空上一轮的结果
        updates: dict[str, Any] = {
            "error": None,
            "response": None,
            "responses": {},
            "requires_collaboration": False,
            "collaboration_pattern": None,
            "collaborators": [],
            "handlers_used": [],
            "collaboration_errors": {},
            "requires_confirmation": False,
            "confirmation_outcome": None,
            "trace": [Stage.CLASSIFY.value],
        }
        try:
            decision = await self.classifier.classify(
                state["query"],
                state["provider"],
                state.get("context"),
                exclude=state.get("excluded", []),
            )
        except ClassificationError as e:
            logger.warning(f"分类失败: {e}")
            updates.update(
                error=str(e),
                error_stage=Stage.CLASSIFY.value,
                fallback_reason="classification_error",
            )
            return updates

        updates["decision"] = decision
        if decision.is_filtered:
            updates["response"] = HandlerResponse(
                handler_id=FILTER_HANDLER,
                text=decision.message or "",
                confidence=decision.confidence,
            )
        return updates

    async def _recent_history(self, thread_id: str) -> list[dict[str, str]]:
        if self.store is None or self.history_window <= 0:
            return []
        try:
            messages = await self.store.history(thread_id, limit=self.history_window)
        except PersistenceError as e:
            logger.warning(f"读取会话历史失败: {e}")
            return []
        return [m.to_prompt_dict() for m in messages]

    async def _invoke_node(self, state: WorkflowState) -> dict[str, Any]:
        decision = state["decision"]
        query = state["query"]
        provider = state["provider"]
        logger.debug(f"进入 invoke 阶段: {decision.handler_id}")

        context = HandlerContext(
            user_context=state.get("context") or {},
            routing_confidence=decision.confidence,
            history=await self._recent_history(state["thread_id"]),
        )
        updates: dict[str, Any] = {
            "trace": [Stage.INVOKE.value],
            "requires_confirmation": bool(MULTI_STEP_PATTERN.search(query)),
        }

        plan = None
        if self.coordinator is not None:
            plan = self.coordinator.plan(
                query, decision.handler_id, exclude=state.get("excluded", [])
            )
        try:
            if plan is not None:
                result = await self.coordinator.execute(query, plan, provider, context)
                synthesized = result.synthesized
                updates.update(
                    response=HandlerResponse(
                        handler_id=result.effective_primary,
                        text=synthesized.text,
                        structured_data=synthesized.structured_data,
                        confidence=synthesized.confidence,
                    ),
                    responses=result.responses,
                    requires_collaboration=True,
                    collaboration_pattern=plan.pattern,
                    collaborators=plan.collaborators,
                    handlers_used=synthesized.handlers_used,
                    collaboration_errors=result.errors,
                )
            else:
                specialist = self.registry.get(decision.handler_id)
                response = await specialist.handle(query, provider, context)
                if not response.ok:
                    raise HandlerError(
                        decision.handler_id,
                        response.error or "empty response",
                        partial_data=response.structured_data,
                    )
                # 单专家路径的置信度即路由置信度
                response.confidence = decision.confidence
                updates.update(
                    response=response,
                    responses={response.handler_id: response},
                    handlers_used=[response.handler_id],
                )
        except HandlerError as e:
            logger.warning(f"专家执行失败: {e}")
            updates.update(
                error=str(e),
                error_stage=Stage.INVOKE.value,
                partial_data=e.partial_data,
                fallback_reason="handler_error",
            )
        except TubeGuideError as e:
            logger.warning(f"专家调用失败: {e}")
            updates.update(
                error=str(e),
                error_stage=Stage.INVOKE.value,
                fallback_reason="handler_error",
            )
        except Exception as e:
            logger.exception(f"专家 '{decision.handler_id}' 执行异常")
            updates.update(
                error=str(e),
                error_stage=Stage.INVOKE.value,
                fallback_reason="handler_exception",
            )
        return updates

    async def _confirm_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.debug("进入 confirm 阶段")
        answer = parse_confirmation(state.get("confirmation"))
        updates: dict[str, Any] = {"trace": [Stage.CONFIRM.value]}

        if answer is None:
            response = state["response"]
            updates.update(
                confirmation_outcome=ConfirmationOutcome.AWAITING,
                awaiting_confirmation=True,
                response=HandlerResponse(
                    handler_id=response.handler_id,
                    text=f"{response.text}\n\n{CONFIRMATION_PROMPT}",
                    structured_data=response.structured_data,
                    confidence=response.confidence,
                ),
            )
        elif answer:
            updates["confirmation_outcome"] = ConfirmationOutcome.ACCEPTED
        elif state.get("retry_count", 0) < MAX_CONFIRMATION_RETRIES:
            previous = state["decision"].handler_id
            logger.info(f"用户否定了 '{previous}' 的回答，排除后重新分类")
            updates.update(
                confirmation_outcome=ConfirmationOutcome.RETRY,
                excluded=[*state.get("excluded", []), previous],
                retry_count=state.get("retry_count", 0) + 1,
            )
        else:
            updates["confirmation_outcome"] = ConfirmationOutcome.EXHAUSTED
        return updates

    async def _fallback_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.debug(f"进入 fallback 阶段（来自 {state.get('error_stage')}）")
        if state.get("rejected"):
            text, data, confidence = VALIDATION_MESSAGE, None, 0.0
        else:
            data = state.get("partial_data")
            text = FALLBACK_MESSAGE
            confidence = FALLBACK_CONFIDENCE_CAP if data else NOTHING_USABLE_CONFIDENCE

        return {
            "response": HandlerResponse(
                handler_id=FALLBACK_HANDLER,
                text=text,
                structured_data=data,
                confidence=confidence,
            ),
            "fallback_reason": state.get("fallback_reason") or state.get("error_stage"),
            "trace": [Stage.FALLBACK.value],
        }

    async def _persist_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.debug("进入 persist 阶段")
        if self.store is None:
            return {"persisted": False, "trace": [Stage.PERSIST.value]}

        response = state["response"]
        thread_id = state["thread_id"]
        try:
            await self.store.append(thread_id, "user", state["query"])
            await self.store.append(
                thread_id,
                "assistant",
                response.text,
                handler_id=response.handler_id,
                confidence=self._final_confidence(state),
                structured_data=response.structured_data,
            )
        except TubeGuideError as e:
            logger.error(f"持久化失败（线程 {thread_id}）: {e}")
            return {"persisted": False, "trace": ["persist_failed"]}
        return {"persisted": True, "trace": [Stage.PERSIST.value]}

    @staticmethod
    def _is_fallback(state: WorkflowState) -> bool:
        decision = state.get("decision")
        response = state.get("response")
        return bool(
            (decision is not None and decision.is_fallback)
            or (response is not None and response.handler_id == FALLBACK_HANDLER)
        )

    def _final_confidence(self, state: WorkflowState) -> float:
        response = state.get("response")
        confidence = response.confidence if response and response.confidence is not None else 0.0
        if self._is_fallback(state):
            confidence = min(confidence, FALLBACK_CONFIDENCE_CAP)
        return confidence

    async def _finalize_node(self, state: WorkflowState) -> dict[str, Any]:
        trace = [*state.get("trace", []), Stage.FINALIZE.value]
        response = state.get("response")
        decision = state.get("decision")
        handler_id = response.handler_id if response else FALLBACK_HANDLER
        is_fallback = self._is_fallback(state)

        metadata: dict[str, Any] = {
            "stage_trace": trace,
            "processing_time_ms": round((time.perf_counter() - state["started"]) * 1000, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "line_color": line_color(handler_id),
            "persisted": state.get("persisted", False),
        }
        if decision is not None:
            metadata["routing"] = decision.to_dict()
            if decision.filter_type:
                metadata["filter_type"] = decision.filter_type
            if decision.is_fallback:
                metadata["fallback_reason"] = decision.rationale
        if state.get("fallback_reason"):
            metadata["fallback_reason"] = state["fallback_reason"]
        if state.get("requires_collaboration"):
            metadata["collaboration_pattern"] = state.get("collaboration_pattern")
            metadata["collaborators"] = state.get("collaborators", [])
            if state.get("collaboration_errors"):
                metadata["collaboration_errors"] = state["collaboration_errors"]
        if state.get("retry_count"):
            metadata["confirmation_retries"] = state["retry_count"]
            metadata["excluded_handlers"] = state.get("excluded", [])

        result: dict[str, Any] = {
            "response": response.text if response else FALLBACK_MESSAGE,
            "handler_id": handler_id,
            "confidence": self._final_confidence(state),
            "structured_data": response.structured_data if response else None,
            "thread_id": state["thread_id"],
            "requires_confirmation": bool(state.get("requires_confirmation")),
            "awaiting_confirmation": bool(state.get("awaiting_confirmation")),
            "collaborative": bool(state.get("requires_collaboration")),
            "handlers_used": state.get("handlers_used", []),
            "is_fallback": is_fallback,
            "rejected": bool(state.get("rejected")),
            "metadata": metadata,
        }
        if state.get("rejected"):
            result["error"] = state.get("error")

        logger.info(
            f"请求完成: handler={handler_id}, confidence={result['confidence']}, "
            f"trace={'→'.join(trace)}"
        )
        return {"result": result, "trace": [Stage.FINALIZE.value]}
