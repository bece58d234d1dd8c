from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

# === 查重任务实体模型 (Pydantic v2) ===


class PlagiarismJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @classmethod
    def active(cls) -> set["PlagiarismJobStatus"]:
        return {cls.QUEUED, cls.RUNNING}

    @classmethod
    def terminal(cls) -> set["PlagiarismJobStatus"]:
        return {cls.SUCCEEDED, cls.FAILED, cls.TIMED_OUT}


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class RiskLevel(str, Enum):
    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    PLAGIARIZED = "plagiarized"


CLEAN_SIMILARITY_CEILING = 0.10


def risk_level_for(score: float, threshold: float) -> RiskLevel:
    if score >= threshold:
        return RiskLevel.PLAGIARIZED
    if score < CLEAN_SIMILARITY_CEILING:
        return RiskLevel.CLEAN
    return RiskLevel.SUSPICIOUS


class MatchedSection(BaseModel):
    """稿件中与来源重合的片段（字符区间）"""

    start_index: int = Field(..., ge=0)
    end_index: int = Field(..., ge=0)
    text: str = ""

    @model_validator(mode="after")
    def _ordered(self) -> "MatchedSection":
        if self.end_index < self.start_index:
            raise ValueError("end_index must not precede start_index")
        return self


class SimilarityMatch(BaseModel):
    """引擎报告中的单个命中来源"""

    source_id: str = "unknown"
    source_title: str = "Unknown Source"
    similarity: float = Field(0.0, ge=0.0, le=1.0)
    matched_sections: list[MatchedSection] = Field(default_factory=list)


class EngineResult(BaseModel):
    """解析后的引擎结果（completed 状态）"""

    similarity_score: float = Field(..., ge=0.0, le=1.0)
    report_url: Optional[str] = None
    matches: list[SimilarityMatch] = Field(default_factory=list)


class PlagiarismJob(BaseModel):
    """
    查重任务。

    中文注释:
    - similarity_score 当且仅当 status=succeeded 时存在；
    - error_detail 为 AppError.to_dict()，仅在 failed/timed_out 时存在；
    - 终态后只读，保留用于审计。
    """

    id: str
    manuscript_id: str = Field(..., description="关联的稿件 ID")
    status: PlagiarismJobStatus = PlagiarismJobStatus.QUEUED
    attempt: int = Field(0, ge=0, description="单次外部调用所用的最大尝试次数")
    similarity_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="相似度得分 (0.0 - 1.0)")
    risk_level: Optional[RiskLevel] = None
    error_detail: Optional[dict[str, Any]] = None
    external_id: Optional[str] = Field(None, description="外部查重引擎的任务句柄")
    report_url: Optional[str] = None
    matches: list[SimilarityMatch] = Field(default_factory=list)
    superseded: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _score_iff_succeeded(self) -> "PlagiarismJob":
        succeeded = self.status == PlagiarismJobStatus.SUCCEEDED
        if succeeded != (self.similarity_score is not None):
            raise ValueError("similarity_score must be set iff status is succeeded")
        if self.status in {PlagiarismJobStatus.FAILED, PlagiarismJobStatus.TIMED_OUT} and not self.error_detail:
            raise ValueError("error_detail is required for failed/timed_out jobs")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in PlagiarismJobStatus.active()

    @property
    def is_terminal(self) -> bool:
        return self.status in PlagiarismJobStatus.terminal()

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "status": self.status.value}


class PlagiarismOutcome(BaseModel):
    """
    Coordinator -> ReviewLifecycle 的结果事件。

    verdict 为 None 表示没有结论（重试耗尽的 failed），需要人工复核，不做默认判定。
    """

    manuscript_id: str
    job_id: str
    job_status: PlagiarismJobStatus
    verdict: Optional[Verdict] = None
    similarity_score: Optional[float] = None
    error: Optional[dict[str, Any]] = None


class PlagiarismSubmitRequest(BaseModel):
    """查重提交请求模型"""

    manuscript_id: str = Field(..., min_length=1)
    text: str
    title: str = ""
