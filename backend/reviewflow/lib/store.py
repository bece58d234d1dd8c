from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from postgrest.exceptions import APIError

MANUSCRIPTS = "manuscripts"
PLAGIARISM_JOBS = "plagiarism_jobs"
USER_PROFILES = "user_profiles"
STATUS_TRANSITION_LOGS = "status_transition_logs"


class DocumentNotFound(LookupError):
    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class DocumentStore:
    """
    按 id 存取的文档库抽象；不假设任何关联查询，跨实体引用只用 id。
    """

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryDocumentStore(DocumentStore):
    """进程内文档库（本地运行与测试使用）；返回深拷贝，调用方不能绕过 update 修改存储。"""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        doc_id = str(doc.get("id") or "")
        if not doc_id:
            raise ValueError("document id is required")
        if doc_id in self._collections[collection]:
            raise ValueError(f"{collection}/{doc_id} already exists")
        self._collections[collection][doc_id] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        existing = self._collections[collection].get(doc_id)
        if existing is None:
            raise DocumentNotFound(collection, doc_id)
        existing.update(copy.deepcopy(changes))
        return copy.deepcopy(existing)

    def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        rows = []
        for doc in self._collections[collection].values():
            if all(doc.get(k) == v for k, v in equals.items()):
                rows.append(copy.deepcopy(doc))
        return rows


def _error_text(exc: Exception) -> str:
    # APIError 在不同版本里 str() 内容不一致，code/message 字段一起拼上
    code = getattr(exc, "code", None) or ""
    message = getattr(exc, "message", None) or ""
    return f"{code} {message} {exc}"


def _is_single_no_rows_error(error_text: str) -> bool:
    lowered = (error_text or "").lower()
    return (
        "pgrst116" in lowered
        or "cannot coerce the result to a single json object" in lowered
        or "0 rows" in lowered
    )


def _is_missing_table_error(error_text: str) -> bool:
    lowered = (error_text or "").lower()
    return "pgrst205" in lowered or "schema cache" in lowered or "does not exist" in lowered


class SupabaseDocumentStore(DocumentStore):
    """
    Supabase(PostgREST) 实现：每个 collection 对应一张以 id 为主键的表，文档字段按 JSON 写入。

    中文注释:
    - 使用 service_role client，兼容云端 RLS；
    - 表未迁移时抛出清晰的 RuntimeError，而不是吞掉异常。
    """

    def __init__(self, client: Any) -> None:
        self.client = client

    def _raise_for(self, collection: str, exc: Exception) -> None:
        if _is_missing_table_error(_error_text(exc)):
            raise RuntimeError(f"DB not migrated: {collection} table missing") from exc
        raise exc

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        try:
            resp = self.client.table(collection).select("*").eq("id", doc_id).single().execute()
            return getattr(resp, "data", None) or None
        except APIError as e:
            if _is_single_no_rows_error(_error_text(e)):
                return None
            self._raise_for(collection, e)
        return None

    def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self.client.table(collection).insert(doc).execute()
        except APIError as e:
            self._raise_for(collection, e)
            raise
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else dict(doc)

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self.client.table(collection).update(changes).eq("id", doc_id).execute()
        except APIError as e:
            self._raise_for(collection, e)
            raise
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise DocumentNotFound(collection, doc_id)
        return rows[0]

    def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        query = self.client.table(collection).select("*")
        for key, value in equals.items():
            query = query.eq(key, value)
        try:
            resp = query.execute()
        except APIError as e:
            self._raise_for(collection, e)
            raise
        return list(getattr(resp, "data", None) or [])


class KeyedLock:
    """
    按 key（稿件 id）划分的 asyncio 互斥锁。

    中文注释:
    - 同一稿件的“检查是否有活跃任务 + 创建任务”、以及状态读改写必须串行；
    - 不同稿件之间互不阻塞，没有全局锁。
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())
