from __future__ import annotations

import asyncio
import subprocess
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

import httpx
from fastapi import HTTPException
from pydantic import ValidationError


class ErrorCategory(str, Enum):
    """
    统一错误分类。

    中文注释:
    - Validation/Permission 永不重试，直接返回给调用方；
    - Network/ExternalService/Timeout 交给 RetryExecutor 在上限内重试；
    - Unknown 默认不重试：未知错误更可能是代码缺陷，而不是瞬时故障。
    """

    NETWORK = "network"
    EXTERNAL_SERVICE = "external_service"
    VALIDATION = "validation"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.EXTERNAL_SERVICE, ErrorCategory.TIMEOUT}
)

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.PERMISSION: 403,
    ErrorCategory.NETWORK: 502,
    ErrorCategory.EXTERNAL_SERVICE: 502,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.UNKNOWN: 500,
}


class AppError(Exception):
    """
    结构化错误（创建后不可变）。

    UI 层依据 category/retryable 渲染“重试按钮 / 权限提示 / 联系支持”。
    """

    def __init__(
        self,
        category: ErrorCategory | str,
        message: str,
        *,
        context: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self._category = ErrorCategory(category)
        self._message = str(message)
        self._context = MappingProxyType(dict(context or {}))
        self._operation = operation
        self._status_code = status_code

    @property
    def category(self) -> ErrorCategory:
        return self._category

    @property
    def message(self) -> str:
        return self._message

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def operation(self) -> Optional[str]:
        return self._operation

    @property
    def retryable(self) -> bool:
        return self._category in RETRYABLE_CATEGORIES

    @property
    def status_code(self) -> int:
        if self._status_code is not None:
            return self._status_code
        return _STATUS_BY_CATEGORY[self._category]

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self._category.value,
            "message": self._message,
            "retryable": self.retryable,
            "context": dict(self._context),
        }

    def __repr__(self) -> str:
        return f"AppError(category={self._category.value!r}, message={self._message!r})"


def validation_error(message: str, **context: Any) -> AppError:
    return AppError(ErrorCategory.VALIDATION, message, context=context)


def permission_error(message: str, **context: Any) -> AppError:
    return AppError(ErrorCategory.PERMISSION, message, context=context)


def conflict_error(message: str, **context: Any) -> AppError:
    return AppError(ErrorCategory.VALIDATION, message, context=context, status_code=409)


def not_found_error(message: str, **context: Any) -> AppError:
    return AppError(ErrorCategory.VALIDATION, message, context=context, status_code=404)


class MalformedPayloadError(ValueError):
    """外部引擎返回的结果缺字段/格式不对。"""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class EngineProcessError(RuntimeError):
    """查重子进程以非 0 退出码结束。"""

    def __init__(self, returncode: int, stderr: str = "") -> None:
        super().__init__(f"analysis process exited with code {returncode}")
        self.returncode = returncode
        self.stderr = stderr


def _category_for_status(status_code: int) -> Optional[ErrorCategory]:
    if 200 <= status_code < 300:
        return None
    if status_code in (401, 403):
        return ErrorCategory.PERMISSION
    if status_code == 408:
        return ErrorCategory.TIMEOUT
    if status_code == 429 or status_code >= 500:
        return ErrorCategory.EXTERNAL_SERVICE
    if 400 <= status_code < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


class ErrorClassifier:
    """
    将原始异常/响应归类为 AppError。

    纯函数语义：不写日志、不上报，日志由调用方（RetryExecutor/Coordinator）负责。
    """

    def classify(self, raw: Any, operation: str, **context: Any) -> AppError:
        if isinstance(raw, AppError):
            return raw

        ctx: dict[str, Any] = {"operation": operation, **context}
        category, message = self._categorize(raw, ctx)
        return AppError(category, message, context=ctx, operation=operation)

    __call__ = classify

    def _categorize(self, raw: Any, ctx: dict[str, Any]) -> tuple[ErrorCategory, str]:
        # 顺序有意义：httpx.TimeoutException 也是 TransportError 的子类
        if isinstance(raw, ValidationError):
            ctx["errors"] = [
                {"loc": list(err.get("loc") or ()), "type": err.get("type"), "msg": err.get("msg")}
                for err in raw.errors()
            ]
            return ErrorCategory.VALIDATION, "Invalid input"
        if isinstance(raw, MalformedPayloadError):
            return ErrorCategory.VALIDATION, str(raw) or "Malformed payload"
        if isinstance(raw, PermissionError):
            return ErrorCategory.PERMISSION, str(raw) or "Permission denied"

        if isinstance(raw, (httpx.TimeoutException, asyncio.TimeoutError, subprocess.TimeoutExpired, TimeoutError)):
            return ErrorCategory.TIMEOUT, str(raw) or "Operation timed out"

        if isinstance(raw, (httpx.ConnectError, ConnectionRefusedError)):
            return ErrorCategory.EXTERNAL_SERVICE, str(raw) or "Connection to external service failed"
        if isinstance(raw, EngineProcessError):
            ctx["returncode"] = raw.returncode
            return ErrorCategory.EXTERNAL_SERVICE, str(raw)
        if isinstance(raw, subprocess.CalledProcessError):
            ctx["returncode"] = raw.returncode
            return ErrorCategory.EXTERNAL_SERVICE, f"analysis process exited with code {raw.returncode}"

        if isinstance(raw, httpx.HTTPStatusError):
            return self._categorize_response(raw.response, ctx)
        if isinstance(raw, httpx.Response):
            return self._categorize_response(raw, ctx)
        if isinstance(raw, HTTPException):
            ctx["status_code"] = raw.status_code
            category = _category_for_status(raw.status_code) or ErrorCategory.UNKNOWN
            return category, str(raw.detail)

        if isinstance(raw, (httpx.TransportError, ConnectionError)):
            return ErrorCategory.NETWORK, str(raw) or "Network failure"

        # ValueError 放在最后：很多库的异常都继承它
        if isinstance(raw, ValueError):
            return ErrorCategory.VALIDATION, str(raw) or "Invalid value"

        if isinstance(raw, BaseException):
            ctx["exception_type"] = type(raw).__name__
            return ErrorCategory.UNKNOWN, str(raw) or type(raw).__name__
        return ErrorCategory.UNKNOWN, f"Unrecognized failure: {raw!r}"

    def _categorize_response(self, response: httpx.Response, ctx: dict[str, Any]) -> tuple[ErrorCategory, str]:
        ctx["status_code"] = response.status_code
        category = _category_for_status(response.status_code)
        if category is None:
            return ErrorCategory.UNKNOWN, f"Unexpected success response {response.status_code}"
        return category, f"External service responded with HTTP {response.status_code}"


default_classifier = ErrorClassifier()
