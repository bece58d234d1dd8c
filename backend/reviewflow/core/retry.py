from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from reviewflow.core.config import PipelineConfig
from reviewflow.core.errors import AppError, ErrorClassifier, default_classifier

logger = logging.getLogger("retry_executor")

T = TypeVar("T")

Classify = Callable[[BaseException, str], AppError]


@dataclass
class RetryOutcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[AppError] = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class RetryExecutor:
    """
    全系统唯一的重试/退避实现（基于 tenacity）。

    中文注释:
    - 第 1 次调用前不等待；第 k 次失败后等待 base_delay * 2^(k-1)，并以 max_delay 封顶；
    - 只重试 retryable 的错误（Network/ExternalService/Timeout）；
    - 返回 RetryOutcome 而不是抛异常，由调用方决定如何落库终态错误。
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(0.0, float(max_delay))
        self.classifier = classifier or default_classifier
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: PipelineConfig, **kwargs: Any) -> "RetryExecutor":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            **kwargs,
        )

    def delay_for(self, failed_attempts: int, *, base_delay: float | None = None) -> float:
        if failed_attempts <= 0:
            return 0.0
        base = self.base_delay if base_delay is None else max(0.0, float(base_delay))
        return min(self.max_delay, base * (2 ** (failed_attempts - 1)))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
        classify: Classify | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> RetryOutcome[T]:
        limit = self.max_attempts if max_attempts is None else max(1, min(int(max_attempts), self.max_attempts))
        base = self.base_delay if base_delay is None else max(0.0, float(base_delay))
        classify_fn = classify or self.classifier.classify
        outcome: RetryOutcome[T] = RetryOutcome()

        def should_retry(exc: BaseException) -> bool:
            # CancelledError 等 BaseException 不归类、不重试，原样向上传播
            if not isinstance(exc, Exception):
                return False
            outcome.error = classify_fn(exc, operation_name)
            return outcome.error.retryable

        def before_sleep(state: RetryCallState) -> None:
            delay = state.next_action.sleep if state.next_action else 0.0
            outcome.delays.append(delay)
            logger.warning(
                "%s 失败，%.2fs 后重试 (attempt %d/%d, category=%s): %s",
                operation_name,
                delay,
                state.attempt_number,
                limit,
                outcome.error.category.value if outcome.error else "unknown",
                outcome.error.message if outcome.error else "",
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(limit),
            wait=wait_exponential(multiplier=base, max=self.max_delay),
            retry=retry_if_exception(should_retry),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    outcome.attempts = attempt.retry_state.attempt_number
                    outcome.error = None
                    outcome.value = await operation()
        except Exception as exc:
            error = outcome.error or classify_fn(exc, operation_name)
            outcome.error = error
            outcome.value = None
            if not error.retryable:
                logger.warning(
                    "%s 失败且不可重试 (attempt %d/%d, category=%s): %s",
                    operation_name,
                    outcome.attempts,
                    limit,
                    error.category.value,
                    error.message,
                )
            else:
                logger.error("%s 重试次数耗尽 (%d 次): %s", operation_name, outcome.attempts, error.message)
            return outcome

        return outcome
