import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    store_backend: str  # 'memory', 'supabase'
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        store_backend = (os.environ.get("REVIEWFLOW_STORE") or "memory").strip().lower()
        if store_backend not in {"memory", "supabase"}:
            store_backend = "memory"

        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            store_backend=store_backend,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
        )


@dataclass(frozen=True)
class PipelineConfig:
    """
    查重 + 审稿流水线的策略参数。

    中文注释:
    1) 所有阈值/重试/轮询参数都在这里集中定义，组件只接收该对象，不直接读环境变量。
    2) similarity_threshold 使用 0..1 小数（0.30 即 30%），与查重报告模型保持一致。
    3) 非法的环境变量值回退为默认值，并做最小值钳制，避免 0 次重试或 0 秒轮询。
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    poll_interval: float = 3.0
    poll_budget: float = 120.0
    similarity_threshold: float = 0.30
    review_quorum: int = 1
    max_text_length: int = 50000
    auto_finalize: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if self.poll_interval <= 0 or self.poll_budget <= 0:
            raise ValueError("poll interval and budget must be > 0")
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within (0, 1]")
        if self.review_quorum < 1:
            raise ValueError("review_quorum must be >= 1")

    @staticmethod
    def from_env() -> "PipelineConfig":
        threshold = _env_float("PLAGIARISM_SIMILARITY_THRESHOLD", 0.30)
        if not 0.0 < threshold <= 1.0:
            threshold = 0.30

        return PipelineConfig(
            max_attempts=max(1, _env_int("PLAGIARISM_MAX_ATTEMPTS", 3)),
            base_delay=max(0.0, _env_float("PLAGIARISM_RETRY_BASE_DELAY_SEC", 0.5)),
            max_delay=max(0.0, _env_float("PLAGIARISM_RETRY_MAX_DELAY_SEC", 8.0)),
            poll_interval=max(0.2, _env_float("PLAGIARISM_POLL_INTERVAL_SEC", 3.0)),
            poll_budget=max(1.0, _env_float("PLAGIARISM_POLL_BUDGET_SEC", 120.0)),
            similarity_threshold=threshold,
            review_quorum=max(1, _env_int("REVIEW_QUORUM", 1)),
            max_text_length=max(1, _env_int("PLAGIARISM_MAX_TEXT_LENGTH", 50000)),
            auto_finalize=_env_bool("REVIEW_AUTO_FINALIZE", True),
        )


@dataclass(frozen=True)
class AnalysisEngineConfig:
    """
    外部查重引擎接入配置

    中文注释:
    - mode=http: 独立的查重 HTTP 服务；
    - mode=subprocess: 本机/容器内命令行工具（stdin 输入全文，stdout 输出 JSON）；
    - mode=mock: 本地演示，固定返回低相似度。
    """

    mode: str
    base_url: str
    api_key: Optional[str]
    request_timeout: float
    command: tuple[str, ...]

    @staticmethod
    def from_env() -> "AnalysisEngineConfig":
        mode = (os.environ.get("PLAGIARISM_ENGINE") or "mock").strip().lower()
        if mode not in {"http", "subprocess", "mock"}:
            mode = "mock"

        base_url = (
            os.environ.get("PLAGIARISM_ENGINE_URL") or "http://localhost:8080"
        ).strip().rstrip("/")
        api_key = (os.environ.get("PLAGIARISM_ENGINE_API_KEY") or "").strip() or None
        request_timeout = max(1.0, _env_float("PLAGIARISM_ENGINE_TIMEOUT_SEC", 60.0))

        raw_command = (os.environ.get("PLAGIARISM_ENGINE_COMMAND") or "").strip()
        command = tuple(part for part in raw_command.split() if part)

        return AnalysisEngineConfig(
            mode=mode,
            base_url=base_url,
            api_key=api_key,
            request_timeout=request_timeout,
            command=command,
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    Sentry 错误上报配置
    """

    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        enabled = _env_bool("SENTRY_ENABLED", dsn is not None)
        environment = (
            os.environ.get("SENTRY_ENVIRONMENT") or os.environ.get("APP_ENV") or "development"
        ).strip()
        rate = _env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0)
        rate = min(1.0, max(0.0, rate))
        return SentryConfig(
            enabled=enabled,
            dsn=dsn,
            environment=environment,
            traces_sample_rate=rate,
        )


def get_admin_emails() -> set[str]:
    """
    ADMIN_EMAILS（逗号分隔）中的邮箱在首次访问时自动获得 editor/admin 角色，便于本地演示。
    """
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}
