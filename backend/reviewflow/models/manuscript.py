from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from reviewflow.models.review import Review


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - submitted 只是瞬时态：创建后立即进入 plagiarism_pending；
    - plagiarism_failed 是死胡同，只能由 editor/admin 强制发布/拒稿，或重新提交；
    - published 为终态；rejected 允许作者修改后重新提交。
    """

    SUBMITTED = "submitted"
    PLAGIARISM_PENDING = "plagiarism_pending"
    PLAGIARISM_FAILED = "plagiarism_failed"
    UNDER_REVIEW = "under_review"
    REVIEWED_ACCEPT = "reviewed_accept"
    REVIEWED_REJECT = "reviewed_reject"
    PUBLISHED = "published"
    REJECTED = "rejected"

    @classmethod
    def terminal(cls) -> set[str]:
        return {cls.PUBLISHED.value, cls.REJECTED.value}

    @classmethod
    def allowed_next(cls, current: str) -> set[str]:
        """
        状态机规则必须显性可见：

        - submitted -> plagiarism_pending
        - plagiarism_pending -> under_review / plagiarism_failed
        - plagiarism_failed -> plagiarism_pending (resubmission)
        - under_review -> reviewed_accept / reviewed_reject
        - reviewed_accept -> published
        - reviewed_reject -> rejected
        - rejected -> plagiarism_pending (resubmission)
        - 任意非终态 -> published / rejected (editor/admin force)
        """
        c = (current or "").strip().lower()
        forced = {cls.PUBLISHED.value, cls.REJECTED.value}
        if c == cls.SUBMITTED.value:
            return {cls.PLAGIARISM_PENDING.value} | forced
        if c == cls.PLAGIARISM_PENDING.value:
            return {cls.UNDER_REVIEW.value, cls.PLAGIARISM_FAILED.value} | forced
        if c == cls.PLAGIARISM_FAILED.value:
            return {cls.PLAGIARISM_PENDING.value} | forced
        if c == cls.UNDER_REVIEW.value:
            return {cls.REVIEWED_ACCEPT.value, cls.REVIEWED_REJECT.value} | forced
        if c in {cls.REVIEWED_ACCEPT.value, cls.REVIEWED_REJECT.value}:
            return set(forced)
        if c == cls.REJECTED.value:
            return {cls.PLAGIARISM_PENDING.value}
        return set()


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


class Manuscript(BaseModel):
    """稿件实体（按 id 存储为文档）"""

    id: str
    title: str = ""
    text: str = Field(..., description="最近一次提交的全文，用于查重与重新提交")
    author_id: str
    status: ManuscriptStatus = ManuscriptStatus.SUBMITTED
    plagiarism_job_id: Optional[str] = None
    reviews: list[Review] = Field(default_factory=list)
    revision: int = Field(1, ge=1, description="每次重新提交 +1")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "author_id": self.author_id,
            "plagiarism_job_id": self.plagiarism_job_id,
            "review_count": len(self.reviews),
            "revision": self.revision,
        }


class StatusTransition(BaseModel):
    """status_transition_logs 审计记录"""

    manuscript_id: str
    from_status: str
    to_status: str
    changed_by: Optional[str] = None
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
