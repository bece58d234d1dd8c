import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

from reviewflow.api.v1 import manuscripts, plagiarism  # noqa: E402
from reviewflow.core.middleware import ExceptionHandlerMiddleware, register_exception_handlers  # noqa: E402
from reviewflow.core.sentry_init import init_sentry  # noqa: E402
from reviewflow.services.pipeline import get_pipeline  # noqa: E402

logger = logging.getLogger("reviewflow")

_SENTRY_ENABLED = init_sentry()
if _SENTRY_ENABLED:
    logger.info("[sentry] enabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline = get_pipeline()
    logger.info(
        "ReviewFlow pipeline ready: engine=%s threshold=%.2f quorum=%d",
        type(pipeline.engine).__name__,
        pipeline.config.similarity_threshold,
        pipeline.config.review_quorum,
    )
    yield
    # 关闭时取消仍在轮询的后台查重任务
    await pipeline.shutdown()


app = FastAPI(
    title="ReviewFlow API",
    description="Manuscript plagiarism screening and peer review lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins。

    中文注释:
    - 本地默认: http://localhost:3000
    - 生产/预发: 通过 FRONTEND_ORIGINS 注入（逗号分隔）
    """
    origins: list[str] = []
    for part in (os.environ.get("FRONTEND_ORIGINS") or "").split(","):
        o = (part or "").strip().rstrip("/")
        if o and o not in origins:
            origins.append(o)
    return origins or ["http://localhost:3000"]


# === 中间件配置 ===
# 1. 跨域资源共享 (CORS) - 允许前端访问
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 2. 统一异常处理
app.add_middleware(ExceptionHandlerMiddleware)
register_exception_handlers(app)

# === 路由注册 ===
app.include_router(manuscripts.router, prefix="/api/v1")
app.include_router(plagiarism.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "ReviewFlow API is running", "docs": "/docs"}
