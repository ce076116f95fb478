"""
引擎错误类型：由 API 层统一转换为响应。
"""
from __future__ import annotations
from typing import List, Optional


class OrchestrationError(Exception):
    code = 400
    error_type = "OPERATION_FAILED"

    def __init__(self, message: str, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(OrchestrationError):
    code = 400
    error_type = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[dict] = None):
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(OrchestrationError):
    code = 404
    error_type = "NOT_FOUND"


class ConflictError(OrchestrationError):
    """请求区间与已有预约重叠，conflicts 为重叠窗口列表"""
    code = 409
    error_type = "CONFLICT"

    def __init__(self, message: str, conflicts: List[dict]):
        super().__init__(message, data={"conflicts": conflicts})
        self.conflicts = conflicts


class InvalidStateTransition(OrchestrationError):
    code = 409
    error_type = "INVALID_STATE_TRANSITION"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, data={"status": current_status} if current_status else None)
        self.current_status = current_status
