from __future__ import annotations

import uuid
from typing import Optional

from reviewflow.lib.store import MANUSCRIPTS, STATUS_TRANSITION_LOGS, DocumentStore
from reviewflow.models.manuscript import Manuscript, StatusTransition, utcnow


class ManuscriptRepository:
    """
    manuscripts / status_transition_logs 的唯一读写入口（只由 ReviewLifecycle 调用写方法）。
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, manuscript_id: str) -> Optional[Manuscript]:
        row = self.store.get(MANUSCRIPTS, manuscript_id)
        return Manuscript.model_validate(row) if row else None

    def create(self, manuscript: Manuscript) -> Manuscript:
        self.store.insert(MANUSCRIPTS, manuscript.model_dump(mode="json"))
        return manuscript

    def save(self, manuscript: Manuscript) -> Manuscript:
        manuscript.updated_at = utcnow()
        self.store.update(MANUSCRIPTS, manuscript.id, manuscript.model_dump(mode="json"))
        return manuscript

    def log_transition(self, log: StatusTransition) -> None:
        """
        写入 status_transition_logs。

        中文注释: 审计日志与状态写入同等重要，这里不做降级忽略，写失败直接向上抛出。
        """
        self.store.insert(
            STATUS_TRANSITION_LOGS,
            {"id": str(uuid.uuid4()), **log.model_dump(mode="json")},
        )

    def list_transitions(self, manuscript_id: str) -> list[StatusTransition]:
        rows = self.store.find(STATUS_TRANSITION_LOGS, manuscript_id=manuscript_id)
        logs = [StatusTransition.model_validate(r) for r in rows]
        return sorted(logs, key=lambda t: t.created_at)
