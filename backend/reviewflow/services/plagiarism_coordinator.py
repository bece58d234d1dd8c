from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional

import sentry_sdk
from pydantic import ValidationError

from reviewflow.core.config import PipelineConfig
from reviewflow.core.errors import (
    AppError,
    ErrorCategory,
    ErrorClassifier,
    MalformedPayloadError,
    conflict_error,
    default_classifier,
    validation_error,
)
from reviewflow.core.retry import RetryExecutor
from reviewflow.lib.store import KeyedLock
from reviewflow.models.plagiarism import (
    EngineResult,
    PlagiarismJob,
    PlagiarismOutcome,
    Verdict,
    risk_level_for,
)
from reviewflow.services.analysis_engine import AnalysisEngine
from reviewflow.services.job_store import PlagiarismJobStore

# === 结构化日志配置 ===
logger = logging.getLogger("plagiarism_coordinator")

OutcomeHandler = Callable[[PlagiarismOutcome], Awaitable[None]]

_IN_PROGRESS_MARKERS = {"queued", "pending", "running", "processing"}
_PERCENT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%\s*$")


def _parse_score(raw: Any) -> float:
    if isinstance(raw, bool):
        raise MalformedPayloadError("similarity_score must be numeric", payload=raw)
    if isinstance(raw, (int, float)):
        score = float(raw)
    elif isinstance(raw, str):
        match = _PERCENT_PATTERN.match(raw)
        if match:
            score = float(match.group(1)) / 100.0
        else:
            try:
                score = float(raw)
            except ValueError as e:
                raise MalformedPayloadError("similarity_score is not a number", payload=raw) from e
    else:
        raise MalformedPayloadError("similarity_score is missing", payload=raw)
    if score != score or not 0.0 <= score <= 1.0:
        raise MalformedPayloadError("similarity_score must be within 0..1", payload=raw)
    return score


def _parse_sections(raw: Any) -> list[dict[str, Any]]:
    sections = raw or []
    if not isinstance(sections, list):
        raise MalformedPayloadError("matched_sections must be a list", payload=raw)
    # 区间合法性交给 MatchedSection 校验；空文本片段直接丢弃
    return [
        {
            "start_index": s.get("start_index", s.get("startIndex")),
            "end_index": s.get("end_index", s.get("endIndex")),
            "text": str(s.get("text") or ""),
        }
        for s in sections
        if isinstance(s, dict) and s.get("text")
    ]


def parse_result_payload(payload: Any) -> Optional[EngineResult]:
    """
    解析引擎状态载荷。

    返回 None 表示任务仍在进行中；completed 时返回 EngineResult；
    缺字段/格式错误一律抛 MalformedPayloadError（Validation，不重试）。
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Engine payload must be an object", payload=payload)

    status = payload.get("status")
    if not isinstance(status, str) or not status.strip():
        raise MalformedPayloadError("Engine payload has no status marker", payload=payload)
    status = status.strip().lower()

    if status in _IN_PROGRESS_MARKERS:
        return None
    if status == "failed":
        raise AppError(
            ErrorCategory.EXTERNAL_SERVICE,
            str(payload.get("error") or "Analysis engine reported failure"),
            context={"engine_status": status},
        )
    if status != "completed":
        raise MalformedPayloadError(f"Unknown engine status marker: {status}", payload=payload)

    score = _parse_score(payload.get("similarity_score"))
    report_url = payload.get("report_url")
    if report_url is not None and not isinstance(report_url, str):
        raise MalformedPayloadError("report_url must be a string", payload=payload)
    matches = payload.get("matches") or []
    if not isinstance(matches, list):
        raise MalformedPayloadError("matches must be a list", payload=payload)

    try:
        return EngineResult(
            similarity_score=score,
            report_url=(report_url or "").strip() or None,
            matches=[
                {
                    "source_id": str(m.get("source_id") or m.get("sourceId") or "unknown"),
                    "source_title": str(m.get("source_title") or m.get("sourceTitle") or "Unknown Source"),
                    "similarity": _parse_score(m.get("similarity", 0.0)),
                    "matched_sections": _parse_sections(m.get("matched_sections", m.get("matchedSections"))),
                }
                for m in matches
                if isinstance(m, dict)
            ],
        )
    except ValidationError as e:
        raise MalformedPayloadError("Engine result failed validation", payload=payload) from e


class PlagiarismJobCoordinator:
    """
    查重任务协调器：提交 -> 派发到外部引擎 -> 轮询 -> 结论。

    中文注释:
    - 同一稿件同一时刻最多一个活跃任务（queued/running），并发提交直接 409，不排队；
    - 派发与每次轮询都经由 RetryExecutor，本模块不自己写重试循环；
    - 轮询总时长是硬上限，超出即 timed_out，并给出 Fail 结论；
    - 重试耗尽 -> failed（附带终态 AppError），不给默认结论，等待人工复核；
    - 重新提交会作废旧任务，轮询在写入前必须检查是否已被作废。
    """

    def __init__(
        self,
        *,
        jobs: PlagiarismJobStore,
        engine: AnalysisEngine,
        config: PipelineConfig,
        retry: Optional[RetryExecutor] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self.engine = engine
        self.config = config
        self.classifier = classifier or default_classifier
        self.retry = retry or RetryExecutor.from_config(config, classifier=self.classifier, sleep=sleep)
        self._sleep = sleep
        self._clock = clock
        self._locks = KeyedLock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._on_outcome: Optional[OutcomeHandler] = None

    def set_outcome_handler(self, handler: Optional[OutcomeHandler]) -> None:
        self._on_outcome = handler

    def verdict_for(self, score: float) -> Verdict:
        return Verdict.FAIL if score >= self.config.similarity_threshold else Verdict.PASS

    # === 提交 ===
    def validate_text(self, text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise validation_error("Manuscript text is required", field="text")
        if len(text) > self.config.max_text_length:
            raise validation_error(
                f"Text exceeds maximum length of {self.config.max_text_length} characters",
                field="text",
                max_length=self.config.max_text_length,
                length=len(text),
            )
        return text

    async def submit(self, manuscript_id: str, text: str, *, background: bool = True) -> PlagiarismJob:
        text = self.validate_text(text)

        # 中文注释: 检查 + 创建必须对同一稿件原子执行，否则并发提交会产生两个活跃任务。
        async with self._locks.hold(manuscript_id):
            active = self.jobs.active_for_manuscript(manuscript_id)
            if active is not None:
                raise conflict_error(
                    "Plagiarism job already active",
                    manuscript_id=manuscript_id,
                    job_id=active.id,
                    status=active.status.value,
                )
            job = self.jobs.create(manuscript_id)

        if background:
            task = asyncio.create_task(self.run(job.id, text), name=f"plagiarism:{job.id}")
            self._tasks[job.id] = task
            task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return job

    async def supersede_active(self, manuscript_id: str) -> Optional[PlagiarismJob]:
        async with self._locks.hold(manuscript_id):
            active = self.jobs.active_for_manuscript(manuscript_id)
            if active is None:
                return None
            superseded = self.jobs.supersede(active.id)

        task = self._tasks.get(active.id)
        if task is not None and not task.done():
            task.cancel()
        logger.info("查重任务 %s 已被重新提交作废 (manuscript=%s)", active.id, manuscript_id)
        return superseded

    # === 派发 + 轮询 ===
    def _is_stale(self, job_id: str) -> bool:
        current = self.jobs.get(job_id)
        return current is None or current.superseded or current.is_terminal

    async def run(self, job_id: str, text: str) -> Optional[PlagiarismJob]:
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return job
        manuscript_id = job.manuscript_id
        logger.info("开始为稿件 %s 执行查重任务 %s", manuscript_id, job_id)

        try:
            return await self._dispatch_and_poll(job, text)
        except asyncio.CancelledError:
            logger.info("查重任务 %s 已取消", job_id)
            raise
        except Exception as exc:
            error = self.classifier.classify(exc, "plagiarism.run", job_id=job_id)
            logger.error("查重任务 %s 异常: %s", job_id, error.message, exc_info=exc)
            sentry_sdk.capture_exception(exc)
            if self._is_stale(job_id):
                return self.jobs.get(job_id)
            current = self.jobs.get(job_id)
            failed = self.jobs.mark_failed(job_id, error=error, attempt=current.attempt if current else 0)
            await self._emit(failed, verdict=None)
            return failed

    async def _dispatch_and_poll(self, job: PlagiarismJob, text: str) -> Optional[PlagiarismJob]:
        job_id = job.id

        dispatch = await self.retry.execute(
            lambda: self.engine.submit(text),
            operation_name="plagiarism.dispatch",
        )
        attempt = dispatch.attempts
        if self._is_stale(job_id):
            return self.jobs.get(job_id)
        if not dispatch.ok:
            return await self._fail(job_id, dispatch.error, attempt)

        handle = str(dispatch.value)
        self.jobs.mark_running(job_id, external_id=handle, attempt=attempt)

        # 中文注释: wait_for 是轮询总预算的硬上限（与内部重试延迟无关）；终态写入放在 wait_for 之外，避免被中途取消。
        try:
            result, error = await asyncio.wait_for(
                self._poll_until_done(job_id, handle, attempt),
                timeout=self.config.poll_budget,
            )
        except asyncio.TimeoutError:
            result, error = None, None

        if self._is_stale(job_id):
            return self.jobs.get(job_id)
        attempt = self.jobs.get(job_id).attempt
        if result is not None:
            return await self._succeed(job_id, result, attempt)
        if error is not None:
            return await self._fail(job_id, error, attempt)
        return await self._time_out(job_id, attempt)

    async def _poll_until_done(
        self, job_id: str, handle: str, attempt: int
    ) -> tuple[Optional[EngineResult], Optional[AppError]]:
        """轮询直到 completed / 终态错误 / 预算耗尽；(None, None) 表示超时或任务已作废。"""
        interval = self.config.poll_interval
        deadline = self._clock() + self.config.poll_budget

        while True:
            if self._clock() + interval > deadline:
                return None, None
            await self._sleep(interval)
            if self._is_stale(job_id):
                return None, None

            polled = await self.retry.execute(
                lambda: self._poll_once(handle),
                operation_name="plagiarism.poll",
            )
            if self._is_stale(job_id):
                return None, None
            if polled.attempts > attempt:
                attempt = polled.attempts
                self.jobs.record_attempt(job_id, attempt)
            if not polled.ok:
                return None, polled.error
            if polled.value is not None:
                return polled.value, None

    async def _poll_once(self, handle: str) -> Optional[EngineResult]:
        payload = await self.engine.poll(handle)
        return parse_result_payload(payload)

    # === 终态写入 ===
    async def _succeed(self, job_id: str, result: EngineResult, attempt: int) -> PlagiarismJob:
        score = result.similarity_score
        verdict = self.verdict_for(score)
        job = self.jobs.mark_succeeded(
            job_id,
            similarity_score=score,
            risk_level=risk_level_for(score, self.config.similarity_threshold),
            report_url=result.report_url,
            matches=result.matches,
            attempt=attempt,
        )
        logger.info("查重完成: %s, 得分: %.4f, 结论: %s", job.manuscript_id, score, verdict.value)
        await self._emit(job, verdict=verdict)
        return job

    async def _fail(self, job_id: str, error: Optional[AppError], attempt: int) -> PlagiarismJob:
        error = error or AppError(ErrorCategory.UNKNOWN, "Plagiarism job failed without error detail")
        job = self.jobs.mark_failed(job_id, error=error, attempt=attempt)
        if error.category == ErrorCategory.UNKNOWN:
            logger.error("查重任务 %s 出现未知错误（疑似缺陷）: %s", job_id, error.message)
            sentry_sdk.capture_message(f"plagiarism job {job_id} failed with unknown error: {error.message}", level="error")
        else:
            logger.error("查重任务 %s 失败 (%s): %s", job_id, error.category.value, error.message)
        await self._emit(job, verdict=None)
        return job

    async def _time_out(self, job_id: str, attempt: int) -> PlagiarismJob:
        error = AppError(
            ErrorCategory.TIMEOUT,
            "Plagiarism check exceeded its wait budget",
            context={"job_id": job_id, "poll_budget": self.config.poll_budget},
            operation="plagiarism.poll",
        )
        job = self.jobs.mark_timed_out(job_id, error=error, attempt=attempt)
        logger.error("查重任务 %s 轮询超时", job_id)
        await self._emit(job, verdict=Verdict.FAIL)
        return job

    async def _emit(self, job: PlagiarismJob, *, verdict: Optional[Verdict]) -> None:
        outcome = PlagiarismOutcome(
            manuscript_id=job.manuscript_id,
            job_id=job.id,
            job_status=job.status,
            verdict=verdict,
            similarity_score=job.similarity_score,
            error=job.error_detail,
        )
        if self._on_outcome is None:
            logger.warning("未注册查重结论处理器，丢弃结论: %s", outcome.model_dump(mode="json"))
            return
        try:
            await self._on_outcome(outcome)
        except Exception as exc:
            # 中文注释: 后台任务里没有调用方可以接住异常，这里记录并上报，任务本身的终态已落库。
            logger.exception("查重结论处理失败 (job=%s)", job.id)
            sentry_sdk.capture_exception(exc)

    # === 任务管理 ===
    async def wait(self, job_id: str) -> Optional[PlagiarismJob]:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.jobs.get(job_id)

    async def drain(self) -> None:
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
