from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Optional, Protocol

import httpx

from reviewflow.core.config import AnalysisEngineConfig
from reviewflow.core.errors import EngineProcessError, MalformedPayloadError

logger = logging.getLogger("analysis_engine")


class AnalysisEngine(Protocol):
    """
    外部查重引擎的窄接口：submit(text) -> 任务句柄，poll(句柄) -> 状态载荷。

    载荷约定：{"status": "queued"|"running"|"completed"|"failed", "similarity_score": ..., ...}
    """

    async def submit(self, text: str) -> str: ...

    async def poll(self, handle: str) -> dict[str, Any]: ...


class HttpAnalysisEngine:
    """
    独立部署的查重 HTTP 服务。

    中文注释:
    - 非 2xx 直接 raise_for_status()，由 ErrorClassifier 按状态码归类（5xx 可重试，4xx 不重试）；
    - 可注入 httpx.AsyncClient（测试里用 MockTransport）。
    """

    def __init__(self, config: AnalysisEngineConfig, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.request_timeout,
        )

    async def submit(self, text: str) -> str:
        resp = await self._client.post("/checks", json={"text": text})
        resp.raise_for_status()
        data = resp.json()
        handle = str((data or {}).get("id") or (data or {}).get("job_id") or "").strip()
        if not handle:
            raise MalformedPayloadError("Engine submit response has no job id", payload=data)
        return handle

    async def poll(self, handle: str) -> dict[str, Any]:
        resp = await self._client.get(f"/checks/{handle}")
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedPayloadError("Engine status response is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedPayloadError("Engine status response must be an object", payload=data)
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


class SubprocessAnalysisEngine:
    """
    命令行查重工具（例如容器内的 JPlag 包装脚本）。

    中文注释:
    - 全文经 stdin 传入，工具在 stdout 输出一段 JSON 结果；
    - 工具是同步执行的：submit 时跑完进程并缓存 stdout，poll 时再交给上层解析；
    - 非 0 退出码 -> EngineProcessError；超时会 kill 子进程并抛 asyncio.TimeoutError。
    """

    def __init__(self, config: AnalysisEngineConfig) -> None:
        if not config.command:
            raise ValueError("PLAGIARISM_ENGINE_COMMAND is required for subprocess mode")
        self.config = config
        self._results: dict[str, str] = {}

    async def submit(self, text: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            *self.config.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(text.encode("utf-8")),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise EngineProcessError(proc.returncode or -1, stderr.decode("utf-8", errors="replace")[:2000])

        handle = f"proc-{uuid.uuid4()}"
        self._results[handle] = stdout.decode("utf-8", errors="replace")
        return handle

    async def poll(self, handle: str) -> dict[str, Any]:
        # 每个句柄的输出只解析一次，取出即删除
        raw = self._results.pop(handle, None)
        if raw is None:
            raise MalformedPayloadError(f"Unknown analysis handle: {handle}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedPayloadError("Analysis process output is not JSON") from e
        if not isinstance(data, dict):
            raise MalformedPayloadError("Analysis process output must be an object", payload=data)
        data.setdefault("status", "completed")
        return data


class MockAnalysisEngine:
    """本地演示用：立即完成，固定返回低相似度。"""

    def __init__(self, similarity_score: float = 0.15) -> None:
        self.similarity_score = similarity_score

    async def submit(self, text: str) -> str:
        return f"mock-{uuid.uuid4()}"

    async def poll(self, handle: str) -> dict[str, Any]:
        return {
            "status": "completed",
            "similarity_score": self.similarity_score,
            "report_url": f"https://reports.invalid/{handle}.pdf",
            "matches": [],
        }


def build_analysis_engine(config: AnalysisEngineConfig) -> AnalysisEngine:
    if config.mode == "http":
        logger.info("查重引擎: HTTP %s", config.base_url)
        return HttpAnalysisEngine(config)
    if config.mode == "subprocess":
        logger.info("查重引擎: 子进程 %s", " ".join(config.command))
        return SubprocessAnalysisEngine(config)
    logger.info("查重引擎: mock")
    return MockAnalysisEngine()
