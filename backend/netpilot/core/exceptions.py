"""
业务异常模块 (Business Exception Module)

定义 NetPilot 核心组件抛给调用方的业务异常类，提供统一的错误结构。
调用边界（HTTP 层、CLI）通过 to_dict() 将异常转换为用户可见的消息。

Defines the business exceptions that core components raise to callers, with a
uniform error structure. Boundary layers (HTTP, CLI) convert them via to_dict().
"""
from typing import Optional


class BusinessError(Exception):
    """业务异常基类 (Base Business Exception)"""
    status_code: int = 400
    error: str = "business_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.error,
            "message": self.message,
            "detail": self.detail,
            "status_code": self.status_code,
        }


class NotFoundError(BusinessError):
    """资源不存在 (Resource Not Found)"""
    status_code = 404
    error = "not_found"


class PermissionDeniedError(BusinessError):
    """操作不被允许，例如删除内置故障模式 (Operation Not Permitted)"""
    status_code = 403
    error = "permission_denied"


class ValidationError(BusinessError):
    """数据校验失败 (Validation Error)"""
    status_code = 422
    error = "validation_error"


class ConflictError(BusinessError):
    """资源冲突 (Resource Conflict)"""
    status_code = 409
    error = "conflict"


class DeliveryError(BusinessError):
    """通知渠道投递失败，由重试循环吸收并记录 (Channel Delivery Failure)"""
    status_code = 502
    error = "delivery_error"
