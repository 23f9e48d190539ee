"""响应合成器

合并主专家与协作专家的响应，并校验合成结果。
校验不通过时只用主专家响应重试一次。
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tubeguide.core.exceptions import SynthesisError
from tubeguide.specialists.base import HandlerResponse

ADDITIONAL_INFO_HEADER = "**Additional Information:**"
ERROR_MARKERS = ("Error:", "Traceback", "Exception")
MIN_RESPONSE_LENGTH = 50
MIN_CONFIDENCE = 0.3
MISSING_CONFIDENCE = 0.5


@dataclass
class SynthesizedResponse:
    """合成结果

    Attributes:
        text: 合成后的回答
        structured_data: 合并后的结构化数据
        confidence: 置信度（参与者平均值）
        handlers_used: 参与合成的专家（主专家在前）
        synthesis_type: single / multi / primary_only
        valid: 是否通过校验
    """

    text: str
    structured_data: dict[str, Any] | None
    confidence: float
    handlers_used: list[str] = field(default_factory=list)
    synthesis_type: str = "single"
    valid: bool = True

    @property
    def collaborative(self) -> bool:
        return self.synthesis_type == "multi"


def response_confidence(response: HandlerResponse) -> float:
    """未给出置信度的响应按 0.5 计"""
    return MISSING_CONFIDENCE if response.confidence is None else response.confidence


class ResponseSynthesizer:
    """响应合成器

    合成策略：
    1. 只有一个成功响应：原样返回
    2. 多个成功响应：主专家回答 + 附加信息（协作回答截断）
    3. 结构化数据合并，键冲突时主专家优先，并记录来源
    """

    def __init__(self, snippet_length: int = 200):
        """
        Args:
            snippet_length: 协作回答在附加信息中的最大长度
        """
        self.snippet_length = snippet_length

    def _snippet(self, text: str) -> str:
        text = text.strip()
        if len(text) <= self.snippet_length:
            return text
        return text[: self.snippet_length] + "..."

    def synthesize(
        self,
        responses: Mapping[str, HandlerResponse],
        primary_id: str,
    ) -> SynthesizedResponse:
        """合成多个专家的响应

        Args:
            responses: 专家标识 → 响应（含失败条目）
            primary_id: 主专家标识

        Returns:
            SynthesizedResponse

        Raises:
            SynthesisError: 主专家没有成功响应
        """
        primary = responses.get(primary_id)
        if primary is None or not primary.ok:
            raise SynthesisError(f"主专家 '{primary_id}' 没有可用响应")

        collaborators = [r for hid, r in responses.items() if hid != primary_id and r.ok]
        if not collaborators:
            return SynthesizedResponse(
                text=primary.text,
                structured_data=primary.structured_data,
                confidence=response_confidence(primary),
                handlers_used=[primary_id],
            )

        parts = [primary.text, "", ADDITIONAL_INFO_HEADER]
        parts.extend(f"- {self._snippet(r.text)}" for r in collaborators)

        contributing = [primary, *collaborators]
        confidence = sum(response_confidence(r) for r in contributing) / len(contributing)

        return SynthesizedResponse(
            text="\n".join(parts),
            structured_data=self._merge_data(primary, collaborators),
            confidence=round(confidence, 4),
            handlers_used=[r.handler_id for r in contributing],
            synthesis_type="multi",
        )

    def _merge_data(
        self,
        primary: HandlerResponse,
        collaborators: list[HandlerResponse],
    ) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        sources: list[str] = []
        for response in [*reversed(collaborators), primary]:
            if response.structured_data:
                merged.update(response.structured_data)
        for response in [primary, *collaborators]:
            if response.structured_data:
                sources.append(response.handler_id)
        merged["sources"] = sources
        merged["collaborative"] = True
        return merged

    def validate(self, synthesized: SynthesizedResponse) -> bool:
        """校验合成结果：长度、错误标记、置信度"""
        text = synthesized.text or ""
        return (
            len(text) > MIN_RESPONSE_LENGTH
            and not any(marker in text for marker in ERROR_MARKERS)
            and synthesized.confidence > MIN_CONFIDENCE
        )

    def primary_only(self, primary: HandlerResponse) -> SynthesizedResponse:
        """只使用主专家响应"""
        synthesized = SynthesizedResponse(
            text=primary.text,
            structured_data=primary.structured_data,
            confidence=response_confidence(primary),
            handlers_used=[primary.handler_id],
            synthesis_type="primary_only",
        )
        synthesized.valid = self.validate(synthesized)
        return synthesized

    def synthesize_validated(
        self,
        responses: Mapping[str, HandlerResponse],
        primary_id: str,
    ) -> SynthesizedResponse:
        """合成并校验，不通过时只用主专家响应重试一次"""
        synthesized = self.synthesize(responses, primary_id)
        if self.validate(synthesized):
            return synthesized

        error = SynthesisError(
            f"合成结果未通过校验（长度 {len(synthesized.text)}，置信度 {synthesized.confidence}）"
        )
        logger.warning(f"{error}，改用主专家响应")
        retried = self.primary_only(responses[primary_id])
        if not retried.valid:
            logger.warning(f"主专家 '{primary_id}' 的响应同样未通过校验，按原样返回")
        return retried
