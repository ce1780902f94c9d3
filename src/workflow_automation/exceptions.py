"""
工作流自动化引擎异常定义
"""
from typing import Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流定义解析异常"""
    pass


class ValidationError(WorkflowEngineError):
    """工作流图结构非法，阻止激活"""
    def __init__(self, message: str, step_key: Optional[str] = None):
        self.step_key = step_key
        super().__init__(message)


class ConfigurationError(WorkflowEngineError):
    """步骤配置缺少必填字段，运行直接失败，不重试"""
    def __init__(self, step_key: str, message: str):
        self.step_key = step_key
        super().__init__(f"Step '{step_key}' is misconfigured: {message}")


class EvaluationError(WorkflowEngineError):
    """条件字段在记录上不存在"""
    def __init__(self, field: str, message: str = None):
        self.field = field
        msg = f"Field '{field}' is not present on the record"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class DeliveryError(WorkflowEngineError):
    """外部调用失败基础异常"""
    pass


class TransientDeliveryError(DeliveryError):
    """网络或限流等临时失败，按退避策略重试"""
    pass


class PermanentDeliveryError(DeliveryError):
    """协作方直接拒绝调用，不重试"""
    pass


class RetryExhaustedError(WorkflowEngineError):
    """重试耗尽错误"""
    def __init__(self, step_key: str, attempts: int, last_error: Exception = None):
        self.step_key = step_key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step '{step_key}' failed after {attempts} attempts: {last_error}"
        )


class StateTransitionError(WorkflowEngineError):
    """状态转换异常"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    pass


class RunNotFoundError(WorkflowEngineError):
    """运行实例不存在"""
    pass

