from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from reviewflow.core.config import AnalysisEngineConfig, AppConfig, PipelineConfig
from reviewflow.core.errors import ErrorClassifier, default_classifier
from reviewflow.core.retry import RetryExecutor
from reviewflow.lib.api_client import create_admin_client
from reviewflow.lib.store import DocumentStore, InMemoryDocumentStore, SupabaseDocumentStore
from reviewflow.services.analysis_engine import AnalysisEngine, build_analysis_engine
from reviewflow.services.job_store import PlagiarismJobStore
from reviewflow.services.manuscript_store import ManuscriptRepository
from reviewflow.services.plagiarism_coordinator import PlagiarismJobCoordinator
from reviewflow.services.review_lifecycle import ReviewLifecycle

logger = logging.getLogger("reviewflow")


@dataclass
class Pipeline:
    """一次装配好的组件集合（store -> coordinator -> lifecycle），由路由层通过依赖注入取用。"""

    config: PipelineConfig
    store: DocumentStore
    engine: AnalysisEngine
    jobs: PlagiarismJobStore
    manuscripts: ManuscriptRepository
    coordinator: PlagiarismJobCoordinator
    lifecycle: ReviewLifecycle

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()
        aclose = getattr(self.engine, "aclose", None)
        if aclose is not None:
            await aclose()


def build_store(app_config: AppConfig) -> DocumentStore:
    if app_config.store_backend == "supabase":
        logger.info("使用 Supabase 文档存储")
        return SupabaseDocumentStore(create_admin_client(app_config))
    return InMemoryDocumentStore()


def build_pipeline(
    *,
    app_config: Optional[AppConfig] = None,
    pipeline_config: Optional[PipelineConfig] = None,
    engine_config: Optional[AnalysisEngineConfig] = None,
    store: Optional[DocumentStore] = None,
    engine: Optional[AnalysisEngine] = None,
    classifier: Optional[ErrorClassifier] = None,
    retry: Optional[RetryExecutor] = None,
) -> Pipeline:
    """
    装配流水线。

    中文注释: 组件本身不读环境变量；未显式传入的配置在这里统一 from_env()。
    """
    config = pipeline_config or PipelineConfig.from_env()
    if store is None:
        store = build_store(app_config or AppConfig.from_env())
    if engine is None:
        engine = build_analysis_engine(engine_config or AnalysisEngineConfig.from_env())

    jobs = PlagiarismJobStore(store)
    manuscripts = ManuscriptRepository(store)
    coordinator = PlagiarismJobCoordinator(
        jobs=jobs,
        engine=engine,
        config=config,
        retry=retry,
        classifier=classifier or default_classifier,
    )
    lifecycle = ReviewLifecycle(manuscripts=manuscripts, coordinator=coordinator, config=config)
    return Pipeline(
        config=config,
        store=store,
        engine=engine,
        jobs=jobs,
        manuscripts=manuscripts,
        coordinator=coordinator,
        lifecycle=lifecycle,
    )


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    global _pipeline
    _pipeline = pipeline


# === FastAPI 依赖 ===
def get_document_store() -> DocumentStore:
    return get_pipeline().store


def get_review_lifecycle() -> ReviewLifecycle:
    return get_pipeline().lifecycle


def get_coordinator() -> PlagiarismJobCoordinator:
    return get_pipeline().coordinator
