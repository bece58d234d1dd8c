from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from reviewflow.core.roles import get_current_actor
from reviewflow.models.user import Actor
from reviewflow.schemas.manuscript import EditorOverride, ManuscriptCreate, ManuscriptResubmit
from reviewflow.services.pipeline import get_review_lifecycle
from reviewflow.services.review_lifecycle import ReviewLifecycle

router = APIRouter(prefix="/manuscripts", tags=["Manuscripts"])


def _manuscript_data(lifecycle: ReviewLifecycle, actor: Actor, manuscript_id: str) -> dict[str, Any]:
    ms = lifecycle.get_manuscript(manuscript_id)
    return {
        **ms.summary(),
        "reviews": [r.model_dump(mode="json") for r in ms.reviews],
        "capabilities": lifecycle.available_transitions(actor, ms),
    }


@router.post("", status_code=201)
async def create_manuscript(
    payload: ManuscriptCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    """
    作者投稿：创建稿件并自动进入查重（plagiarism_pending）。
    """
    ms, job = await lifecycle.submit_manuscript(
        actor,
        text=payload.text,
        title=payload.title,
        manuscript_id=payload.id,
    )
    return {"success": True, "data": {"manuscript": ms.summary(), "job": job.summary()}}


@router.get("/{manuscript_id}")
async def get_manuscript(
    manuscript_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    return {"success": True, "data": _manuscript_data(lifecycle, actor, manuscript_id)}


@router.get("/{manuscript_id}/capabilities")
async def get_capabilities(
    manuscript_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    """
    当前用户在该稿件上可执行的动作（前端只渲染这些按钮）。
    """
    ms = lifecycle.get_manuscript(manuscript_id)
    return {
        "success": True,
        "data": {
            "manuscript_id": ms.id,
            "status": ms.status.value,
            "roles": sorted(actor.roles),
            "allowed": lifecycle.available_transitions(actor, ms),
        },
    }


@router.get("/{manuscript_id}/history")
async def get_transition_history(
    manuscript_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    logs = lifecycle.history(manuscript_id)
    return {"success": True, "data": [log.model_dump(mode="json") for log in logs]}


@router.post("/{manuscript_id}/resubmit")
async def resubmit_manuscript(
    manuscript_id: str,
    payload: Optional[ManuscriptResubmit] = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    """
    重新提交（作者修改后重投，或 editor/admin 用已保存全文重跑查重）。
    """
    payload = payload or ManuscriptResubmit()
    ms, job = await lifecycle.resubmit(actor, manuscript_id, text=payload.text, title=payload.title)
    return {"success": True, "data": {"manuscript": ms.summary(), "job": job.summary()}}


@router.post("/{manuscript_id}/force-publish")
async def force_publish(
    manuscript_id: str,
    payload: Optional[EditorOverride] = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    payload = payload or EditorOverride()
    ms = await lifecycle.force_publish(actor, manuscript_id, comment=payload.comment)
    return {"success": True, "data": ms.summary()}


@router.post("/{manuscript_id}/force-reject")
async def force_reject(
    manuscript_id: str,
    payload: Optional[EditorOverride] = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    payload = payload or EditorOverride()
    ms = await lifecycle.force_reject(actor, manuscript_id, comment=payload.comment)
    return {"success": True, "data": ms.summary()}


@router.post("/{manuscript_id}/finalize")
async def finalize_manuscript(
    manuscript_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    ms = await lifecycle.finalize(actor, manuscript_id)
    return {"success": True, "data": ms.summary()}


@router.post("/{manuscript_id}/reviews", status_code=201)
async def submit_review(
    manuscript_id: str,
    payload: Any = Body(None),
    actor: Actor = Depends(get_current_actor),
    lifecycle: ReviewLifecycle = Depends(get_review_lifecycle),
):
    """
    审稿提交。

    中文注释: 载荷不走 FastAPI 自动校验（否则只会得到 422），由 parse_review_submission 统一返回 400 并列出全部缺失字段。
    """
    ms = await lifecycle.record_review(actor, manuscript_id, payload)
    return {"success": True, "data": ms.summary()}
