from typing import Any

from fastapi import APIRouter, Depends, Query

from reviewflow.core.errors import not_found_error
from reviewflow.core.roles import get_current_actor
from reviewflow.models.plagiarism import PlagiarismJob, PlagiarismSubmitRequest
from reviewflow.models.user import Actor
from reviewflow.services.pipeline import get_coordinator, get_review_lifecycle
from reviewflow.services.plagiarism_coordinator import PlagiarismJobCoordinator
from reviewflow.services.review_lifecycle import ReviewLifecycle

router = APIRouter(prefix="/plagiarism", tags=["Plagiarism"])


def _job_data(job: PlagiarismJob, coordinator: PlagiarismJobCoordinator) -> dict[str, Any]:
    data = job.model_dump(mode="json")
    threshold = coordinator.config.similarity_threshold
    data["threshold"] = threshold
    data["verdict"] = (
        coordinator.verdict_for(job.similarity_score).value if job.similarity_score is not None else None
    )
    return data


@router.post("/submit", status_code=201)
async def submit_plagiarism_check(
    request: PlagiarismSubmitRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    """
    提交稿件全文进行查重，返回任务摘要 {id, status}。

    中文注释: 走 ReviewLifecycle 而不是直接调用 coordinator，保证稿件状态与查重任务一致；同一稿件已有活跃任务时返回 409。
    """
    _, job = await lifecycle.submit_manuscript(
        actor,
        text=request.text,
        title=request.title,
        manuscript_id=request.manuscript_id,
    )
    return {"success": True, "data": job.summary()}


@router.get("/status/{manuscript_id}")
async def get_plagiarism_status(
    manuscript_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: PlagiarismJobCoordinator = Depends(get_coordinator),
):
    """
    获取稿件最近一次查重任务状态。
    """
    job = coordinator.jobs.latest_for_manuscript(manuscript_id)
    if job is None:
        return {
            "success": True,
            "data": {"manuscript_id": manuscript_id, "status": "not_started"},
        }
    return {"success": True, "data": _job_data(job, coordinator)}


@router.get("/jobs/{job_id}")
async def get_plagiarism_job(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: PlagiarismJobCoordinator = Depends(get_coordinator),
):
    job = coordinator.jobs.get(job_id)
    if job is None:
        raise not_found_error("Plagiarism job not found", job_id=job_id)
    return {"success": True, "data": _job_data(job, coordinator)}


@router.get("/jobs")
async def list_plagiarism_jobs(
    manuscript_id: str = Query(..., min_length=1),
    actor: Actor = Depends(get_current_actor),
    coordinator: PlagiarismJobCoordinator = Depends(get_coordinator),
):
    """
    稿件的全部查重任务（含已作废/失败的历史任务，用于审计）。
    """
    jobs = coordinator.jobs.list_for_manuscript(manuscript_id)
    return {"success": True, "data": [_job_data(j, coordinator) for j in jobs]}
