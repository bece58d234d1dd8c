import asyncio

import httpx
import pytest

from pipeline_fakes import API_PREFIX, REVIEWER2_ID, auth_headers, fast_config
from reviewflow.services.pipeline import Pipeline, build_pipeline

# 端到端场景：投稿 -> 查重 -> 审稿 -> 终态，全部经由 HTTP 接口驱动。

TEXT = "An entirely original contribution on peer review pipelines."
ACCEPT = {"ratings": {"originality": 5}, "recommendation": "accept", "comments": "Ready."}
REJECT = {"ratings": {"originality": 1}, "recommendation": "reject", "comments": "Not novel."}


@pytest.fixture
def pipeline(store, engine) -> Pipeline:
    # 两位审稿人达成法定人数
    return build_pipeline(pipeline_config=fast_config(review_quorum=2), store=store, engine=engine)


async def _status(client, manuscript_id, headers):
    resp = await client.get(f"{API_PREFIX}/manuscripts/{manuscript_id}", headers=headers)
    assert resp.status_code == 200
    return resp.json()["data"]["status"]


async def _latest_job(client, manuscript_id, headers):
    resp = await client.get(f"{API_PREFIX}/plagiarism/status/{manuscript_id}", headers=headers)
    assert resp.status_code == 200
    return resp.json()["data"]


@pytest.mark.asyncio
async def test_clean_manuscript_is_published_after_review_quorum(
    client, pipeline, author_headers, reviewer_headers
):
    created = await client.post(
        f"{API_PREFIX}/manuscripts", json={"id": "ms-clean", "text": TEXT}, headers=author_headers
    )
    assert created.status_code == 201
    await pipeline.coordinator.drain()

    job = await _latest_job(client, "ms-clean", author_headers)
    assert job["status"] == "succeeded"
    assert job["verdict"] == "pass"
    assert await _status(client, "ms-clean", author_headers) == "under_review"

    url = f"{API_PREFIX}/manuscripts/ms-clean/reviews"
    first = await client.post(url, json=ACCEPT, headers=reviewer_headers)
    assert first.status_code == 201
    assert first.json()["data"]["status"] == "under_review"

    # 同一审稿人同一轮只能提交一次
    dup = await client.post(url, json=ACCEPT, headers=reviewer_headers)
    assert dup.status_code == 400

    second = await client.post(url, json=ACCEPT, headers=auth_headers(REVIEWER2_ID))
    assert second.status_code == 201
    assert second.json()["data"]["status"] == "published"

    history = (await client.get(f"{API_PREFIX}/manuscripts/ms-clean/history", headers=author_headers)).json()["data"]
    assert history[-1]["changed_by"] == "system"


@pytest.mark.asyncio
async def test_malformed_engine_payload_fails_screening_without_retry(
    client, pipeline, engine, author_headers, editor_headers
):
    engine.poll_script = [{"status": "completed", "report_url": "https://r.invalid/x"}]

    await client.post(f"{API_PREFIX}/manuscripts", json={"id": "ms-bad", "text": TEXT}, headers=author_headers)
    await pipeline.coordinator.drain()

    job = await _latest_job(client, "ms-bad", author_headers)
    assert job["status"] == "failed"
    assert job["similarity_score"] is None
    assert job["error_detail"]["category"] == "validation"
    assert job["error_detail"]["retryable"] is False
    # 缺 similarity_score 属于 Validation，不可重试：只轮询一次，不会等到第三次尝试才失败
    assert engine.poll_calls == 1
    assert await _status(client, "ms-bad", author_headers) == "plagiarism_failed"

    caps = (await client.get(f"{API_PREFIX}/manuscripts/ms-bad/capabilities", headers=editor_headers)).json()
    assert "force_publish" in caps["data"]["allowed"]


@pytest.mark.asyncio
async def test_engine_outage_exhausts_retries_then_editor_reruns(
    client, pipeline, engine, author_headers, editor_headers
):
    engine.submit_script = [httpx.ConnectError("connection refused") for _ in range(3)]

    await client.post(f"{API_PREFIX}/manuscripts", json={"id": "ms-outage", "text": TEXT}, headers=author_headers)
    await pipeline.coordinator.drain()

    job = await _latest_job(client, "ms-outage", author_headers)
    assert job["status"] == "failed"
    assert job["attempt"] == pipeline.config.max_attempts
    assert job["error_detail"]["category"] == "external_service"
    assert engine.submit_calls == 3
    assert await _status(client, "ms-outage", author_headers) == "plagiarism_failed"

    # 引擎恢复后 editor 用已保存全文重跑查重
    rerun = await client.post(f"{API_PREFIX}/manuscripts/ms-outage/resubmit", headers=editor_headers)
    assert rerun.status_code == 200
    await pipeline.coordinator.drain()

    assert engine.texts[-1] == TEXT
    assert await _status(client, "ms-outage", author_headers) == "under_review"

    jobs = (
        await client.get(f"{API_PREFIX}/plagiarism/jobs", params={"manuscript_id": "ms-outage"}, headers=author_headers)
    ).json()["data"]
    assert [j["status"] for j in jobs] == ["failed", "succeeded"]

    forced = await client.post(
        f"{API_PREFIX}/manuscripts/ms-outage/force-publish", json={"comment": "editor override"}, headers=editor_headers
    )
    assert forced.json()["data"]["status"] == "published"


@pytest.mark.asyncio
async def test_concurrent_submissions_then_rejection_and_resubmission(
    client, pipeline, engine, author_headers, reviewer_headers
):
    engine.default_payload = {"status": "running"}
    body = {"manuscript_id": "ms-race", "text": TEXT}

    responses = await asyncio.gather(
        *[client.post(f"{API_PREFIX}/plagiarism/submit", json=body, headers=author_headers) for _ in range(8)]
    )
    assert sorted(r.status_code for r in responses) == [201] + [409] * 7

    engine.default_payload = {"status": "completed", "similarity_score": 0.02}
    await pipeline.coordinator.drain()
    assert await _status(client, "ms-race", author_headers) == "under_review"

    url = f"{API_PREFIX}/manuscripts/ms-race/reviews"
    await client.post(url, json=REJECT, headers=reviewer_headers)
    rejected = await client.post(url, json=REJECT, headers=auth_headers(REVIEWER2_ID))
    assert rejected.json()["data"]["status"] == "rejected"

    again = await client.post(
        f"{API_PREFIX}/manuscripts/ms-race/resubmit", json={"text": TEXT + " Revised."}, headers=author_headers
    )
    assert again.status_code == 200
    assert again.json()["data"]["manuscript"]["revision"] == 2
    await pipeline.coordinator.drain()

    detail = (await client.get(f"{API_PREFIX}/manuscripts/ms-race", headers=author_headers)).json()["data"]
    assert detail["status"] == "under_review"
    assert detail["reviews"] == []

    # 上一轮的审稿人可以对新一轮再次审稿
    assert (await client.post(url, json=ACCEPT, headers=reviewer_headers)).status_code == 201


@pytest.mark.asyncio
async def test_admin_email_gets_editor_capabilities(client, pipeline, engine, author_headers, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAILS", "chief@journal.org")
    engine.poll_script = [{"status": "completed", "similarity_score": 0.9}]

    await client.post(f"{API_PREFIX}/manuscripts", json={"id": "ms-admin", "text": TEXT}, headers=author_headers)
    await pipeline.coordinator.drain()

    chief = auth_headers("00000000-0000-0000-0000-0000000000ff", email="Chief@Journal.org")
    caps = (await client.get(f"{API_PREFIX}/manuscripts/ms-admin/capabilities", headers=chief)).json()["data"]
    assert "admin" in caps["roles"]
    assert caps["allowed"] == ["force_publish", "force_reject", "resubmit"]

    resp = await client.post(f"{API_PREFIX}/manuscripts/ms-admin/force-reject", headers=chief)
    assert resp.json()["data"]["status"] == "rejected"
