from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from reviewflow.core.errors import AppError, ErrorCategory
from reviewflow.lib.store import PLAGIARISM_JOBS, DocumentStore
from reviewflow.models.plagiarism import (
    PlagiarismJob,
    PlagiarismJobStatus,
    RiskLevel,
    SimilarityMatch,
)

logger = logging.getLogger("plagiarism_job_store")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PlagiarismJobStore:
    """
    查重任务存储服务。

    中文注释:
    - 统一负责 plagiarism_jobs 的落库与读取，其他组件不直接访问该集合；
    - 终态任务只读（审计保留），任何写入都会被拒绝；
    - 每次写入都通过 PlagiarismJob 模型校验，保证“得分当且仅当 succeeded”。
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, job_id: str) -> Optional[PlagiarismJob]:
        row = self.store.get(PLAGIARISM_JOBS, job_id)
        return PlagiarismJob.model_validate(row) if row else None

    def list_for_manuscript(self, manuscript_id: str) -> list[PlagiarismJob]:
        rows = self.store.find(PLAGIARISM_JOBS, manuscript_id=manuscript_id)
        jobs = [PlagiarismJob.model_validate(r) for r in rows]
        return sorted(jobs, key=lambda j: j.created_at)

    def latest_for_manuscript(self, manuscript_id: str) -> Optional[PlagiarismJob]:
        jobs = self.list_for_manuscript(manuscript_id)
        return jobs[-1] if jobs else None

    def active_for_manuscript(self, manuscript_id: str) -> Optional[PlagiarismJob]:
        for job in self.list_for_manuscript(manuscript_id):
            if job.is_active:
                return job
        return None

    def create(self, manuscript_id: str) -> PlagiarismJob:
        job = PlagiarismJob(id=str(uuid.uuid4()), manuscript_id=manuscript_id)
        self.store.insert(PLAGIARISM_JOBS, job.model_dump(mode="json"))
        logger.info("创建查重任务 %s (manuscript=%s)", job.id, manuscript_id)
        return job

    def _update(self, job_id: str, changes: dict[str, Any]) -> PlagiarismJob:
        current = self.get(job_id)
        if current is None:
            raise AppError(ErrorCategory.VALIDATION, "Plagiarism job not found", context={"job_id": job_id})
        if current.is_terminal:
            raise AppError(
                ErrorCategory.VALIDATION,
                "Plagiarism job is already terminal",
                context={"job_id": job_id, "status": current.status.value},
                status_code=409,
            )

        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = _now()
        updated = PlagiarismJob.model_validate(merged)
        self.store.update(PLAGIARISM_JOBS, job_id, updated.model_dump(mode="json"))
        return updated

    def mark_running(self, job_id: str, *, external_id: str, attempt: int) -> PlagiarismJob:
        return self._update(
            job_id,
            {"status": PlagiarismJobStatus.RUNNING, "external_id": external_id, "attempt": attempt},
        )

    def record_attempt(self, job_id: str, attempt: int) -> PlagiarismJob:
        current = self.get(job_id)
        if current is not None and attempt <= current.attempt:
            return current
        return self._update(job_id, {"attempt": attempt})

    def mark_succeeded(
        self,
        job_id: str,
        *,
        similarity_score: float,
        risk_level: RiskLevel,
        report_url: Optional[str],
        matches: list[SimilarityMatch],
        attempt: int,
    ) -> PlagiarismJob:
        return self._update(
            job_id,
            {
                "status": PlagiarismJobStatus.SUCCEEDED,
                "similarity_score": similarity_score,
                "risk_level": risk_level,
                "report_url": report_url,
                "matches": matches,
                "attempt": attempt,
                "completed_at": _now(),
            },
        )

    def mark_failed(self, job_id: str, *, error: AppError, attempt: int, superseded: bool = False) -> PlagiarismJob:
        return self._update(
            job_id,
            {
                "status": PlagiarismJobStatus.FAILED,
                "error_detail": error.to_dict(),
                "attempt": attempt,
                "superseded": superseded,
                "completed_at": _now(),
            },
        )

    def mark_timed_out(self, job_id: str, *, error: AppError, attempt: int) -> PlagiarismJob:
        return self._update(
            job_id,
            {
                "status": PlagiarismJobStatus.TIMED_OUT,
                "error_detail": error.to_dict(),
                "attempt": attempt,
                "completed_at": _now(),
            },
        )

    def supersede(self, job_id: str) -> Optional[PlagiarismJob]:
        """
        重新提交时作废旧任务：标记 superseded 并以 failed 收尾，释放“单稿件单活跃任务”名额。
        """
        current = self.get(job_id)
        if current is None or current.is_terminal:
            return current
        error = AppError(
            ErrorCategory.VALIDATION,
            "Superseded by resubmission",
            context={"job_id": job_id, "reason": "superseded"},
        )
        return self.mark_failed(job_id, error=error, attempt=current.attempt, superseded=True)
