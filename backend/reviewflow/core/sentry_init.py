from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from reviewflow.core.config import SentryConfig

FILTERED = "[Filtered]"

# 凭据类字段
_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "access_token",
        "refresh_token",
        "token",
        "jwt",
        "authorization",
        "cookie",
        "set-cookie",
        "supabase_key",
        "service_role_key",
        "api_key",
        "x-api-key",
    }
)
# 稿件全文不得上报
_TEXT_KEYS = frozenset({"text", "manuscript_text"})
_MAX_VALUE_LENGTH = 5000
_REQUEST_PAYLOAD_KEYS = ("cookies", "data", "body")


def _is_sensitive(key: Any) -> bool:
    k = str(key).strip().lower()
    return k in _SENSITIVE_KEYS or k in _TEXT_KEYS


def _scrub(value: Any) -> Any:
    """
    递归清洗 extra/contexts：凭据、稿件全文、超长字符串一律替换为 [Filtered]。
    """
    if isinstance(value, dict):
        return {str(k): FILTERED if _is_sensitive(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    if isinstance(value, str) and len(value) > _MAX_VALUE_LENGTH:
        return FILTERED
    return value


def _filter_request(request: dict[str, Any]) -> dict[str, Any]:
    headers = request.get("headers")
    if isinstance(headers, dict):
        request["headers"] = {k: v for k, v in headers.items() if not _is_sensitive(k)}
    # 中文注释: 请求体里就是稿件全文/审稿意见，整体丢弃而不是逐字段清洗。
    for key in _REQUEST_PAYLOAD_KEYS:
        if key in request:
            request[key] = FILTERED
    return request


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    request = event.get("request")
    if isinstance(request, dict):
        event["request"] = _filter_request(request)

    for section in ("extra", "contexts"):
        data = event.get(section)
        if isinstance(data, dict):
            event[section] = _scrub(data)
    return event


def init_sentry(cfg: Optional[SentryConfig] = None) -> bool:
    """
    初始化 Sentry，返回是否启用。

    未配置 DSN 或 SENTRY_ENABLED=false 时不初始化，此时 sentry_sdk.capture_* 都是空操作，
    Unknown 类错误仍会照常写 ERROR 日志。
    """
    cfg = cfg or SentryConfig.from_env()
    if not (cfg.enabled and cfg.dsn):
        return False

    sentry_sdk.init(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
        # 不记录请求体（稿件全文）
        max_request_body_size="never",
        before_send=_before_send,
    )
    return True
