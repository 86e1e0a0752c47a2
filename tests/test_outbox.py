"""Tests for the outbound task queue and its worker."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from cascade.config import OutboxSettings, SyncSettings
from cascade.core.outbox import (
    OutboxQueue,
    OutboxWorker,
    TaskStatus,
    default_handlers,
    make_http_post_handler,
)
from cascade.core.state import Database
from cascade.metrics.usage import UsageAggregator


@pytest.fixture
def queue(temp_db: Database) -> OutboxQueue:
    # Zero delays so failed tasks are due again immediately
    return OutboxQueue(temp_db, OutboxSettings(max_attempts=3, base_delay=0.0, max_delay=0.0))


class TestOutboxQueue:
    """Enqueue, claim, acknowledge and retry."""

    def test_enqueue_and_claim(self, queue):
        task_id = queue.enqueue("usage_log", {"model": "m"})
        tasks = queue.claim_due()
        assert [t.id for t in tasks] == [task_id]
        assert tasks[0].attempts == 1
        assert tasks[0].payload == {"model": "m"}
        assert queue.get(task_id).status == TaskStatus.PROCESSING

    def test_claimed_task_not_claimed_again_while_leased(self, queue):
        queue.enqueue("usage_log", {})
        assert len(queue.claim_due()) == 1
        assert queue.claim_due() == []

    def test_dedupe_key(self, queue):
        first = queue.enqueue("output_sync", {"v": 1}, dedupe_key="k")
        second = queue.enqueue("output_sync", {"v": 2}, dedupe_key="k")
        assert first == second
        assert queue.counts() == {"pending": 1}

    def test_delivered(self, queue):
        task_id = queue.enqueue("usage_log", {})
        queue.claim_due()
        queue.mark_delivered(task_id)
        assert queue.get(task_id).status == TaskStatus.DELIVERED
        assert queue.claim_due() == []

    def test_failure_retries_then_dies(self, queue):
        task_id = queue.enqueue("usage_log", {})
        for _ in range(2):
            queue.claim_due()
            assert queue.mark_failed(task_id, "nope") == TaskStatus.PENDING
        queue.claim_due()
        assert queue.mark_failed(task_id, "still nope") == TaskStatus.DEAD
        task = queue.get(task_id)
        assert task.attempts == 3
        assert task.last_error == "still nope"
        assert queue.claim_due() == []

    def test_backoff_is_exponential_and_capped(self, temp_db):
        queue = OutboxQueue(temp_db, OutboxSettings(base_delay=2.0, max_delay=10.0))
        assert [queue.retry_delay(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]

    def test_failed_task_waits_for_backoff(self, temp_db):
        queue = OutboxQueue(temp_db, OutboxSettings(base_delay=60.0))
        task_id = queue.enqueue("usage_log", {})
        queue.claim_due()
        queue.mark_failed(task_id, "later")
        assert queue.claim_due() == []


class TestOutboxWorker:
    def test_drain_delivers_and_records_failures(self, queue):
        delivered_payloads = []

        async def ok(task):
            delivered_payloads.append(task.payload)

        async def broken(task):
            raise RuntimeError("endpoint down")

        good = queue.enqueue("good", {"n": 1})
        bad = queue.enqueue("bad", {})
        unknown = queue.enqueue("mystery", {})

        worker = OutboxWorker(queue, {"good": ok, "bad": broken})
        assert asyncio.run(worker.drain()) == 1

        assert delivered_payloads == [{"n": 1}]
        assert queue.get(good).status == TaskStatus.DELIVERED
        assert queue.get(bad).last_error == "endpoint down"
        assert "No handler" in queue.get(unknown).last_error

    def test_redelivery_after_failure(self, queue):
        calls = []

        async def flaky(task):
            calls.append(task.attempts)
            if len(calls) == 1:
                raise RuntimeError("first try fails")

        task_id = queue.enqueue("flaky", {})
        worker = OutboxWorker(queue, {"flaky": flaky})
        asyncio.run(worker.drain())
        asyncio.run(worker.drain())
        assert calls == [1, 2]
        assert queue.get(task_id).status == TaskStatus.DELIVERED

    def test_stop(self, queue):
        worker = OutboxWorker(queue, {}, poll_interval=0.01)

        async def run_briefly():
            daemon = asyncio.create_task(worker.start_daemon())
            await asyncio.sleep(0.05)
            worker.stop()
            await asyncio.wait_for(daemon, timeout=1.0)

        asyncio.run(run_briefly())
        assert worker.running is False


class TestHandlers:
    """Built-in delivery handlers."""

    def test_usage_log_handler_records_cost_once(self, temp_db, queue):
        handlers = default_handlers(temp_db, SyncSettings(), httpx.AsyncClient())
        queue.enqueue(
            "usage_log",
            {
                "model": "openai/gpt-5-mini",
                "prompt_tokens": 1_000_000,
                "completion_tokens": 0,
                "usage_category": "generation",
                "workflow_id": "wf",
            },
        )
        task = queue.claim_due()[0]
        asyncio.run(handlers["usage_log"](task))
        asyncio.run(handlers["usage_log"](task))

        summary = UsageAggregator(temp_db).summary(days=1)
        assert summary["total_calls"] == 1
        assert summary["total_tokens"] == 1_000_000
        assert summary["estimated_cost"] == pytest.approx(0.30)

    def test_http_post_handler_sends_idempotency_key(self, queue):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers["Idempotency-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200)

        async def deliver():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await make_http_post_handler(client, "https://sync.test/hook", "output_sync")(task)

        queue.enqueue("output_sync", {"node_id": "n1"})
        task = queue.claim_due()[0]
        asyncio.run(deliver())
        assert seen == {"key": task.id, "body": {"node_id": "n1"}}

    def test_http_post_handler_failures(self, queue):
        queue.enqueue("output_sync", {})
        task = queue.claim_due()[0]

        async def deliver(url, status):
            transport = httpx.MockTransport(lambda request: httpx.Response(status, text="err"))
            async with httpx.AsyncClient(transport=transport) as client:
                await make_http_post_handler(client, url, "output_sync")(task)

        with pytest.raises(Exception, match="No endpoint configured"):
            asyncio.run(deliver(None, 200))
        with pytest.raises(Exception, match="HTTP 503"):
            asyncio.run(deliver("https://sync.test/hook", 503))
