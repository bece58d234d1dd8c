import logging
import time

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from reviewflow.core.errors import AppError, ErrorCategory, validation_error

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("reviewflow")


def error_action(error: AppError) -> str:
    """前端据此渲染：重试按钮 / 权限提示 / 修改请求 / 联系支持。"""
    if error.category == ErrorCategory.PERMISSION:
        return "permission"
    if error.retryable:
        return "retry"
    if error.category == ErrorCategory.VALIDATION:
        return "fix_request"
    return "contact_support"


def render_app_error(error: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"error": {**error.to_dict(), "action": error_action(error)}},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.category == ErrorCategory.UNKNOWN:
        logger.error("Unknown AppError on %s %s: %s", request.method, request.url.path, exc.message)
        sentry_sdk.capture_exception(exc)
    else:
        logger.info(
            "AppError on %s %s: %s (%s)",
            request.method,
            request.url.path,
            exc.message,
            exc.category.value,
        )
    return render_app_error(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    请求体校验失败统一转为 Validation（400），并列出全部缺失字段，而不是 FastAPI 默认的 422。
    """
    missing: list[str] = []
    invalid: list[dict[str, str]] = []
    for err in exc.errors():
        loc = [str(p) for p in (err.get("loc") or ()) if p != "body"]
        field = ".".join(loc) or "body"
        if err.get("type") == "missing":
            missing.append(field)
        else:
            invalid.append({"field": field, "reason": str(err.get("msg") or "")})
    error = validation_error("Invalid request", missing=missing, invalid=invalid)
    return render_app_error(error)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件
    所有请求记录 method/path/status/耗时；未处理异常统一 500，不泄露内部细节
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                f"Method: {request.method} Path: {request.url.path} Status: {response.status_code} Time: {process_time:.4f}s"
            )
            return response
        except AppError as exc:
            return render_app_error(exc)
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"},
            )
        except Exception as e:
            logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
            sentry_sdk.capture_exception(e)
            return JSONResponse(
                status_code=500,
                content={"detail": "内部系统错误，请联系管理员", "type": "server_error"},
            )
