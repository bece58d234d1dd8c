from __future__ import annotations

import logging
import uuid
from collections import Counter
from typing import Any, Optional

from reviewflow.core.capabilities import Role, Transition, allowed_transitions, authorize, authorize_any
from reviewflow.core.config import PipelineConfig
from reviewflow.core.errors import (
    conflict_error,
    not_found_error,
    permission_error,
    validation_error,
)
from reviewflow.lib.store import KeyedLock
from reviewflow.models.manuscript import Manuscript, ManuscriptStatus, StatusTransition
from reviewflow.models.plagiarism import PlagiarismJob, PlagiarismOutcome, Verdict
from reviewflow.models.review import Recommendation, Review
from reviewflow.models.user import SYSTEM_ACTOR, Actor
from reviewflow.schemas.review import ReviewSubmission, parse_review_submission
from reviewflow.services.manuscript_store import ManuscriptRepository
from reviewflow.services.plagiarism_coordinator import PlagiarismJobCoordinator

logger = logging.getLogger("review_lifecycle")

RESUBMITTABLE = {ManuscriptStatus.PLAGIARISM_FAILED, ManuscriptStatus.REJECTED}
REVIEWED = {ManuscriptStatus.REVIEWED_ACCEPT, ManuscriptStatus.REVIEWED_REJECT}


def aggregate_recommendations(reviews: list[Review], quorum: int) -> Optional[Recommendation]:
    """
    汇总审稿结论：未达法定人数返回 None；简单多数决定 accept/reject；
    平票或多数为 revise 时返回 REVISE（不触发流转，等待追加审稿）。
    """
    if len(reviews) < max(1, quorum):
        return None
    counts = Counter(r.recommendation for r in reviews)
    total = len(reviews)
    for choice in (Recommendation.ACCEPT, Recommendation.REJECT):
        if counts[choice] * 2 > total:
            return choice
    return Recommendation.REVISE


class ReviewLifecycle:
    """
    稿件生命周期状态机。

    中文注释:
    - 所有流转先经过 CapabilityGate（authorize），拒绝即抛 Permission，状态不变；
    - 同一稿件的读改写由 KeyedLock 串行化，不同稿件互不影响；
    - 每次流转都按 ManuscriptStatus.allowed_next 校验，并写入 status_transition_logs。
    """

    def __init__(
        self,
        *,
        manuscripts: ManuscriptRepository,
        coordinator: PlagiarismJobCoordinator,
        config: PipelineConfig,
    ) -> None:
        self.manuscripts = manuscripts
        self.coordinator = coordinator
        self.config = config
        self._locks = KeyedLock()
        coordinator.set_outcome_handler(self.on_plagiarism_outcome)

    # === helpers ===
    def _require(self, actor: Actor, transition: Transition, *, manuscript_id: Optional[str] = None) -> None:
        if not authorize_any(actor.roles, transition):
            logger.warning("拒绝操作 %s: actor=%s roles=%s", transition.value, actor.id, actor.roles)
            raise permission_error(
                f"Role not permitted to {transition.value}",
                transition=transition.value,
                roles=sorted(actor.roles),
                manuscript_id=manuscript_id,
            )

    def _load(self, manuscript_id: str) -> Manuscript:
        ms = self.manuscripts.get(manuscript_id)
        if ms is None:
            raise not_found_error("Manuscript not found", manuscript_id=manuscript_id)
        return ms

    def _transition(
        self,
        ms: Manuscript,
        to_status: ManuscriptStatus,
        *,
        changed_by: Optional[str],
        comment: Optional[str] = None,
    ) -> Manuscript:
        from_status = ms.status
        allowed = ManuscriptStatus.allowed_next(from_status.value)
        if to_status.value not in allowed:
            raise validation_error(
                f"Invalid transition: {from_status.value} -> {to_status.value}",
                from_status=from_status.value,
                to_status=to_status.value,
                allowed=sorted(allowed),
            )
        ms.status = to_status
        self.manuscripts.save(ms)
        self.manuscripts.log_transition(
            StatusTransition(
                manuscript_id=ms.id,
                from_status=from_status.value,
                to_status=to_status.value,
                changed_by=changed_by,
                comment=comment,
            )
        )
        logger.info("稿件 %s 状态流转: %s -> %s (%s)", ms.id, from_status.value, to_status.value, comment or "")
        return ms

    async def _start_screening(self, ms: Manuscript, *, changed_by: Optional[str], comment: str) -> PlagiarismJob:
        # 先创建查重任务：若已有活跃任务会抛 409，此时稿件状态保持不变
        job = await self.coordinator.submit(ms.id, ms.text)
        ms.plagiarism_job_id = job.id
        self._transition(ms, ManuscriptStatus.PLAGIARISM_PENDING, changed_by=changed_by, comment=comment)
        return job

    # === queries ===
    def get_manuscript(self, manuscript_id: str) -> Manuscript:
        return self._load(manuscript_id)

    def history(self, manuscript_id: str) -> list[StatusTransition]:
        self._load(manuscript_id)
        return self.manuscripts.list_transitions(manuscript_id)

    def available_transitions(self, actor: Actor, manuscript: Manuscript) -> list[str]:
        """当前操作人对该稿件真正可执行的动作（权限矩阵 ∩ 状态机 ∩ 归属）。"""
        status = manuscript.status
        out: list[str] = []
        for name in allowed_transitions(actor.roles, status.value):
            t = Transition(name)
            if t in (Transition.SUBMIT, Transition.ADVANCE_AFTER_PLAGIARISM):
                continue
            if t in (Transition.FORCE_PUBLISH, Transition.FORCE_REJECT) and status.value in ManuscriptStatus.terminal():
                continue
            if t == Transition.RESUBMIT and (
                status not in RESUBMITTABLE or not self._may_resubmit(actor, manuscript)
            ):
                continue
            if t == Transition.FINALIZE and status not in REVIEWED:
                continue
            if t == Transition.SUBMIT_REVIEW and actor.id == manuscript.author_id:
                continue
            out.append(t.value)
        return sorted(out)

    # === submission ===
    async def submit_manuscript(
        self,
        actor: Actor,
        *,
        text: str,
        title: str = "",
        manuscript_id: Optional[str] = None,
    ) -> tuple[Manuscript, PlagiarismJob]:
        """
        作者投稿：创建稿件（submitted）并自动进入 plagiarism_pending。

        manuscript_id 可由客户端指定（幂等键）：已存在且查重中 -> 409；
        已存在且处于 plagiarism_failed/rejected -> 按重新提交处理。
        """
        self._require(actor, Transition.SUBMIT, manuscript_id=manuscript_id)
        text = self.coordinator.validate_text(text)

        ms = Manuscript(
            id=manuscript_id or str(uuid.uuid4()),
            title=(title or "").strip(),
            text=text,
            author_id=actor.id,
        )
        async with self._locks.hold(ms.id):
            existing = self.manuscripts.get(ms.id) if manuscript_id else None
            if existing is not None:
                if existing.status == ManuscriptStatus.PLAGIARISM_PENDING:
                    raise conflict_error(
                        "Plagiarism job already active",
                        manuscript_id=ms.id,
                        job_id=existing.plagiarism_job_id,
                    )
                if existing.status not in RESUBMITTABLE:
                    raise conflict_error(
                        f"Manuscript already submitted (status={existing.status.value})",
                        manuscript_id=ms.id,
                        status=existing.status.value,
                    )
            else:
                self.manuscripts.create(ms)
                self.manuscripts.log_transition(
                    StatusTransition(
                        manuscript_id=ms.id,
                        from_status="",
                        to_status=ManuscriptStatus.SUBMITTED.value,
                        changed_by=actor.id,
                        comment="submission",
                    )
                )
                job = await self._start_screening(ms, changed_by=None, comment="plagiarism check queued")

        if existing is not None:
            # plagiarism_failed / rejected 的同 id 投稿按重新提交处理
            return await self.resubmit(actor, ms.id, text=text, title=title or None)
        logger.info("稿件 %s 已投稿，查重任务 %s", ms.id, job.id)
        return ms, job

    async def on_plagiarism_outcome(self, outcome: PlagiarismOutcome) -> None:
        """查重结论 -> plagiarism_pending 推进到 under_review / plagiarism_failed（系统内部流转）。"""
        if not authorize(Role.SYSTEM, Transition.ADVANCE_AFTER_PLAGIARISM):
            raise permission_error("System actor may not advance after plagiarism")

        async with self._locks.hold(outcome.manuscript_id):
            ms = self.manuscripts.get(outcome.manuscript_id)
            if ms is None:
                logger.error("查重结论对应的稿件不存在: %s", outcome.manuscript_id)
                return
            if ms.plagiarism_job_id != outcome.job_id or ms.status != ManuscriptStatus.PLAGIARISM_PENDING:
                logger.info(
                    "忽略过期查重结论 job=%s (当前 job=%s, status=%s)",
                    outcome.job_id,
                    ms.plagiarism_job_id,
                    ms.status.value,
                )
                return

            if outcome.verdict == Verdict.PASS:
                target = ManuscriptStatus.UNDER_REVIEW
            else:
                target = ManuscriptStatus.PLAGIARISM_FAILED
            verdict = outcome.verdict.value if outcome.verdict else "none"
            self._transition(
                ms,
                target,
                changed_by=SYSTEM_ACTOR.id,
                comment=f"plagiarism {outcome.job_status.value}, verdict={verdict}",
            )

    # === reviews ===
    async def record_review(self, actor: Actor, manuscript_id: str, payload: Any) -> Manuscript:
        self._require(actor, Transition.SUBMIT_REVIEW, manuscript_id=manuscript_id)
        submission = payload if isinstance(payload, ReviewSubmission) else parse_review_submission(payload)

        async with self._locks.hold(manuscript_id):
            ms = self._load(manuscript_id)
            if ms.status != ManuscriptStatus.UNDER_REVIEW:
                raise validation_error(
                    "Reviews can only be recorded while the manuscript is under review",
                    manuscript_id=manuscript_id,
                    status=ms.status.value,
                )
            if not authorize_any(actor.roles, Transition.SUBMIT_REVIEW, ms.status.value):
                raise permission_error("Role not permitted to submit_review", manuscript_id=manuscript_id)
            if actor.id == ms.author_id:
                raise permission_error("Authors cannot review their own manuscript", manuscript_id=manuscript_id)
            if any(r.reviewer_id == actor.id for r in ms.reviews):
                raise validation_error(
                    "Reviewer has already reviewed this revision",
                    manuscript_id=manuscript_id,
                    reviewer_id=actor.id,
                )

            review = Review(
                id=str(uuid.uuid4()),
                manuscript_id=ms.id,
                reviewer_id=actor.id,
                ratings=submission.ratings,
                recommendation=submission.recommendation,
                comments=submission.comments,
            )
            ms.reviews.append(review)

            decision = aggregate_recommendations(ms.reviews, self.config.review_quorum)
            if decision == Recommendation.ACCEPT:
                self._transition(ms, ManuscriptStatus.REVIEWED_ACCEPT, changed_by=actor.id, comment="review quorum: accept")
            elif decision == Recommendation.REJECT:
                self._transition(ms, ManuscriptStatus.REVIEWED_REJECT, changed_by=actor.id, comment="review quorum: reject")
            else:
                self.manuscripts.save(ms)
                return ms

            if self.config.auto_finalize:
                self._finalize(ms, changed_by=SYSTEM_ACTOR.id)
            return ms

    def _finalize(self, ms: Manuscript, *, changed_by: Optional[str]) -> Manuscript:
        if ms.status == ManuscriptStatus.REVIEWED_ACCEPT:
            return self._transition(ms, ManuscriptStatus.PUBLISHED, changed_by=changed_by, comment="finalize: publish")
        if ms.status == ManuscriptStatus.REVIEWED_REJECT:
            return self._transition(ms, ManuscriptStatus.REJECTED, changed_by=changed_by, comment="finalize: reject")
        raise validation_error(
            "Only reviewed manuscripts can be finalized",
            manuscript_id=ms.id,
            status=ms.status.value,
        )

    async def finalize(self, actor: Actor, manuscript_id: str) -> Manuscript:
        self._require(actor, Transition.FINALIZE, manuscript_id=manuscript_id)
        async with self._locks.hold(manuscript_id):
            return self._finalize(self._load(manuscript_id), changed_by=actor.id)

    # === editor overrides ===
    async def _force(
        self, actor: Actor, manuscript_id: str, transition: Transition, target: ManuscriptStatus, comment: Optional[str]
    ) -> Manuscript:
        self._require(actor, transition, manuscript_id=manuscript_id)
        async with self._locks.hold(manuscript_id):
            ms = self._load(manuscript_id)
            if ms.status.value in ManuscriptStatus.terminal():
                raise validation_error(
                    "Manuscript is already in a terminal state",
                    manuscript_id=manuscript_id,
                    status=ms.status.value,
                )
            if ms.status == ManuscriptStatus.PLAGIARISM_PENDING:
                await self.coordinator.supersede_active(ms.id)
            return self._transition(
                ms,
                target,
                changed_by=actor.id,
                comment=comment or transition.value,
            )

    async def force_publish(self, actor: Actor, manuscript_id: str, *, comment: Optional[str] = None) -> Manuscript:
        return await self._force(actor, manuscript_id, Transition.FORCE_PUBLISH, ManuscriptStatus.PUBLISHED, comment)

    async def force_reject(self, actor: Actor, manuscript_id: str, *, comment: Optional[str] = None) -> Manuscript:
        return await self._force(actor, manuscript_id, Transition.FORCE_REJECT, ManuscriptStatus.REJECTED, comment)

    # === resubmission ===
    def _may_resubmit(self, actor: Actor, ms: Manuscript) -> bool:
        if authorize_any([r for r in actor.roles if r != Role.AUTHOR.value], Transition.RESUBMIT):
            return True
        return actor.id == ms.author_id and authorize(Role.AUTHOR, Transition.RESUBMIT)

    async def resubmit(
        self,
        actor: Actor,
        manuscript_id: str,
        *,
        text: Optional[str] = None,
        title: Optional[str] = None,
    ) -> tuple[Manuscript, PlagiarismJob]:
        """
        重新提交（作者修改后重投，或 editor/admin 对 plagiarism_failed 稿件重跑查重）。

        中文注释:
        - 只允许从 plagiarism_failed / rejected 发起；
        - 作废旧任务（轮询循环在写入前会发现已作废），清空上一轮审稿意见。
        """
        self._require(actor, Transition.RESUBMIT, manuscript_id=manuscript_id)
        if text is not None:
            text = self.coordinator.validate_text(text)

        async with self._locks.hold(manuscript_id):
            ms = self._load(manuscript_id)
            if not self._may_resubmit(actor, ms):
                raise permission_error("Only the owning author may resubmit", manuscript_id=manuscript_id)
            if ms.status not in RESUBMITTABLE:
                raise validation_error(
                    f"Manuscript cannot be resubmitted from status {ms.status.value}",
                    manuscript_id=manuscript_id,
                    status=ms.status.value,
                )

            await self.coordinator.supersede_active(ms.id)
            if text is not None:
                ms.text = text
            if title:
                ms.title = title.strip()
            ms.reviews = []
            ms.revision += 1
            job = await self._start_screening(ms, changed_by=actor.id, comment=f"resubmission (revision {ms.revision})")
        return ms, job
