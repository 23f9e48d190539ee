"""请求编排：状态机工作流、多专家协作与响应合成"""

from tubeguide.orchestrator.coordinator import (
    COMPARISON,
    JOURNEY,
    NETWORK,
    STATION_LINES,
    CollaborationCoordinator,
    CollaborationPlan,
    CollaborationResult,
)
from tubeguide.orchestrator.states import ConfirmationOutcome, Stage, WorkflowState, next_stage
from tubeguide.orchestrator.synthesis import ResponseSynthesizer, SynthesizedResponse
from tubeguide.orchestrator.workflow import RequestWorkflow

__all__ = [
    "RequestWorkflow",
    "Stage",
    "ConfirmationOutcome",
    "WorkflowState",
    "next_stage",
    "CollaborationCoordinator",
    "CollaborationPlan",
    "CollaborationResult",
    "ResponseSynthesizer",
    "SynthesizedResponse",
    "JOURNEY",
    "NETWORK",
    "COMPARISON",
    "STATION_LINES",
]
