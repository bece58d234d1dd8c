from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pipeline_fakes import (
    AUTHOR_ID,
    EDITOR_ID,
    REVIEWER2_ID,
    REVIEWER_ID,
    TEST_JWT_SECRET,
    ScriptedEngine,
    auth_headers,
    fast_config,
    seed_roles,
)
from reviewflow.lib.store import InMemoryDocumentStore
from reviewflow.services.pipeline import Pipeline, build_pipeline, set_pipeline

# === 全局测试配置 ===
# 中文注释:
# 1. 显式使用 pytest_asyncio.fixture，兼容 STRICT 模式。
# 2. 所有组件都走内存文档库 + 假查重引擎，不访问任何外部服务。
# 3. JWT 令牌使用与后端相同的 HS256 secret 签发。


@pytest.fixture(autouse=True)
def _jwt_secret(monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def pipeline(store, engine) -> Pipeline:
    return build_pipeline(pipeline_config=fast_config(), store=store, engine=engine)


@pytest_asyncio.fixture
async def client(pipeline) -> AsyncGenerator:
    """
    提供一个异步测试客户端（ASGITransport 不触发 lifespan，流水线通过 set_pipeline 注入）
    """
    from main import app

    seed_roles(pipeline.store, AUTHOR_ID, ["author"])
    seed_roles(pipeline.store, REVIEWER_ID, ["reviewer"])
    seed_roles(pipeline.store, REVIEWER2_ID, ["reviewer"])
    seed_roles(pipeline.store, EDITOR_ID, ["editor"])

    set_pipeline(pipeline)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            yield ac
    finally:
        await pipeline.coordinator.shutdown()
        set_pipeline(None)


@pytest.fixture
def author_headers() -> dict[str, str]:
    return auth_headers(AUTHOR_ID)


@pytest.fixture
def reviewer_headers() -> dict[str, str]:
    return auth_headers(REVIEWER_ID)


@pytest.fixture
def editor_headers() -> dict[str, str]:
    return auth_headers(EDITOR_ID)
