"""TubeGuide 自定义异常类"""

from typing import Any


class TubeGuideError(Exception):
    """TubeGuide 基础异常类"""

    pass


class ConfigurationError(TubeGuideError):
    """配置错误"""

    pass


class ValidationError(TubeGuideError):
    """输入校验失败（不会到达任何专家）"""

    pass


class ReasoningError(TubeGuideError):
    """推理调用失败（传输错误、空响应等）"""

    pass


class ReasoningTimeoutError(ReasoningError):
    """推理调用超时"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"推理调用超时（{timeout}s）")


class ClassificationError(TubeGuideError):
    """路由分类失败"""

    pass


class SpecialistNotFoundError(TubeGuideError):
    """专家不存在"""

    def __init__(self, handler_id: str):
        self.handler_id = handler_id
        super().__init__(f"专家 '{handler_id}' 不存在")


class HandlerError(TubeGuideError):
    """专家执行失败

    partial_data 保存失败前已获取的结构化数据，供回退消息保留。
    """

    def __init__(
        self,
        handler_id: str,
        reason: str,
        partial_data: dict[str, Any] | None = None,
    ):
        self.handler_id = handler_id
        self.reason = reason
        self.partial_data = partial_data
        super().__init__(f"专家 '{handler_id}' 执行失败: {reason}")


class CollaborationError(TubeGuideError):
    """协作专家执行失败"""

    def __init__(self, handler_id: str, reason: str):
        self.handler_id = handler_id
        self.reason = reason
        super().__init__(f"协作专家 '{handler_id}' 执行失败: {reason}")


class SynthesisError(TubeGuideError):
    """多专家结果合成或校验失败"""

    pass


class PersistenceError(TubeGuideError):
    """会话存储失败"""

    pass
