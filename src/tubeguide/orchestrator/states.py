"""请求处理状态机

Stage 枚举定义处理阶段，next_stage 是纯转移函数：
只读取状态，不产生副作用，所有回退边和确认重试环都可以单独测试。

    validate → classify → invoke → [confirm] → persist → finalize

    validate  失败 → fallback → finalize（不持久化）；带已确认专家 → invoke
    classify  失败 → fallback；被过滤 → persist
    invoke    失败 → fallback；多步骤行程 → confirm
    confirm   未答复 → finalize；否定 → classify（最多重试一次）
"""

import operator
from enum import Enum
from typing import Annotated, Any, TypedDict

from tubeguide.llm.provider import ReasoningProvider
from tubeguide.router.classifier import RoutingDecision
from tubeguide.specialists.base import HandlerResponse

MAX_CONFIRMATION_RETRIES = 1


class Stage(str, Enum):
    """处理阶段"""

    VALIDATE = "validate"
    CLASSIFY = "classify"
    INVOKE = "invoke"
    CONFIRM = "confirm"
    FALLBACK = "fallback"
    PERSIST = "persist"
    FINALIZE = "finalize"
    END = "end"


class ConfirmationOutcome(str, Enum):
    """确认阶段的结果"""

    AWAITING = "awaiting"
    ACCEPTED = "accepted"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


class WorkflowState(TypedDict, total=False):
    """单次请求的处理状态（不持久化）"""

    query: str
    thread_id: str
    context: dict[str, Any]
    confirmation: str | bool | None
    confirmed_handler: str | None
    confirmation_enabled: bool
    provider: ReasoningProvider
    started: float

    decision: RoutingDecision | None
    responses: dict[str, HandlerResponse]
    response: HandlerResponse | None
    """最终回答（单专家响应或合成响应）"""

    error: str | None
    error_stage: str | None
    rejected: bool
    partial_data: dict[str, Any] | None

    requires_collaboration: bool
    collaboration_pattern: str | None
    collaborators: list[str]
    handlers_used: list[str]
    collaboration_errors: dict[str, str]

    requires_confirmation: bool
    awaiting_confirmation: bool
    confirmation_outcome: ConfirmationOutcome | None
    excluded: list[str]
    retry_count: int

    fallback_reason: str | None
    persisted: bool

    trace: Annotated[list[str], operator.add]
    """阶段轨迹（只追加）"""

    result: dict[str, Any]


def next_stage(stage: Stage, state: WorkflowState) -> Stage:
    """状态转移函数

    Args:
        stage: 刚完成的阶段
        state: 当前状态

    Returns:
        下一个阶段
    """
    if stage == Stage.VALIDATE:
        if state.get("rejected"):
            return Stage.FALLBACK
        # 确认答复沿用上一轮的专家，从 invoke 继续
        return Stage.INVOKE if state.get("decision") is not None else Stage.CLASSIFY

    if stage == Stage.CLASSIFY:
        if state.get("error"):
            return Stage.FALLBACK
        decision = state.get("decision")
        if decision is not None and decision.is_filtered:
            return Stage.PERSIST
        return Stage.INVOKE

    if stage == Stage.INVOKE:
        if state.get("error"):
            return Stage.FALLBACK
        if state.get("requires_confirmation") and state.get("confirmation_enabled", True):
            return Stage.CONFIRM
        return Stage.PERSIST

    if stage == Stage.CONFIRM:
        outcome = state.get("confirmation_outcome")
        if outcome == ConfirmationOutcome.AWAITING:
            return Stage.FINALIZE
        if outcome == ConfirmationOutcome.RETRY:
            return Stage.CLASSIFY
        return Stage.PERSIST

    if stage == Stage.FALLBACK:
        # 校验失败的请求不持久化
        return Stage.FINALIZE if state.get("rejected") else Stage.PERSIST

    if stage == Stage.PERSIST:
        return Stage.FINALIZE

    return Stage.END
