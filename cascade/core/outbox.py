"""Outbound side-effect queue and its background worker.

Side effects that leave the process (usage logging, output sync webhooks,
change plans for the schema service) are written to ``outbox_tasks`` inside the
cascade and delivered later by OutboxWorker. Delivery is at-least-once: a
claimed task that is never acknowledged becomes due again when its lease runs
out, so handlers must be idempotent on the task id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from cascade.config import OutboxSettings, SyncSettings
from cascade.core.state import Database, _json_loads, _safe_json_dumps, _utc_now, _utc_now_iso
from cascade.metrics.usage import calculate_cost

logger = logging.getLogger(__name__)

LEASE_SECONDS = 300


class TaskStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    DEAD = "dead"


class OutboxDeliveryError(Exception):
    """A handler could not deliver its task."""

    pass


@dataclass
class OutboxTask:
    id: str
    task_type: str
    payload: dict[str, Any]
    attempts: int
    dedupe_key: str | None = None
    status: str = TaskStatus.PENDING
    last_error: str | None = None


def _iso_in(seconds: float) -> str:
    return (_utc_now() + timedelta(seconds=seconds)).isoformat(timespec="microseconds")


class OutboxQueue:
    """Durable task queue on top of the state database."""

    def __init__(self, db: Database, settings: OutboxSettings | None = None):
        self.db = db
        self.settings = settings or OutboxSettings()

    def enqueue(
        self, task_type: str, payload: dict[str, Any], dedupe_key: str | None = None
    ) -> str:
        """Add a task. With a ``dedupe_key`` already queued, returns the existing task id."""
        task_id = str(uuid.uuid4())
        now = _utc_now_iso()
        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO outbox_tasks (
                    id, task_type, payload, dedupe_key, status, attempts,
                    next_attempt_at, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(dedupe_key) DO NOTHING
                """,
                (
                    task_id,
                    task_type,
                    _safe_json_dumps(payload),
                    dedupe_key,
                    TaskStatus.PENDING,
                    now,
                    now,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT id FROM outbox_tasks WHERE dedupe_key = ?", (dedupe_key,)
                ).fetchone()
                logger.debug(f"Outbox task {task_type} deduplicated on {dedupe_key}")
                return row["id"]
        logger.debug(f"Enqueued outbox task {task_type} ({task_id})")
        return task_id

    def claim_due(self, limit: int = 20) -> list[OutboxTask]:
        """Lease up to ``limit`` due tasks; each claim counts as one attempt."""
        now = _utc_now_iso()
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox_tasks
                WHERE status IN (?, ?) AND next_attempt_at <= ?
                ORDER BY next_attempt_at, created_at
                LIMIT ?
                """,
                (TaskStatus.PENDING, TaskStatus.PROCESSING, now, limit),
            ).fetchall()
            tasks = []
            for row in rows:
                conn.execute(
                    """
                    UPDATE outbox_tasks
                    SET status = ?, attempts = attempts + 1, next_attempt_at = ?
                    WHERE id = ?
                    """,
                    (TaskStatus.PROCESSING, _iso_in(LEASE_SECONDS), row["id"]),
                )
                tasks.append(
                    OutboxTask(
                        id=row["id"],
                        task_type=row["task_type"],
                        payload=_json_loads(row["payload"], {}),
                        attempts=row["attempts"] + 1,
                        dedupe_key=row["dedupe_key"],
                        status=TaskStatus.PROCESSING,
                        last_error=row["last_error"],
                    )
                )
        return tasks

    def mark_delivered(self, task_id: str) -> None:
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE outbox_tasks SET status = ?, delivered_at = ?, last_error = NULL WHERE id = ?",
                (TaskStatus.DELIVERED, _utc_now_iso(), task_id),
            )

    def retry_delay(self, attempts: int) -> float:
        """Exponential backoff after ``attempts`` failed deliveries."""
        delay = self.settings.base_delay * (2 ** max(attempts - 1, 0))
        return min(delay, self.settings.max_delay)

    def mark_failed(self, task_id: str, error: str) -> str:
        """Record a failed delivery; returns the task's new status."""
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT attempts FROM outbox_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if not row:
                raise KeyError(task_id)
            attempts = row["attempts"]
            if attempts >= self.settings.max_attempts:
                status = TaskStatus.DEAD
                next_attempt_at = _utc_now_iso()
                logger.error(f"Outbox task {task_id} dead after {attempts} attempts: {error}")
            else:
                status = TaskStatus.PENDING
                next_attempt_at = _iso_in(self.retry_delay(attempts))
            conn.execute(
                """
                UPDATE outbox_tasks SET status = ?, next_attempt_at = ?, last_error = ?
                WHERE id = ?
                """,
                (status, next_attempt_at, error[:1000], task_id),
            )
        return status

    def get(self, task_id: str) -> OutboxTask | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM outbox_tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return OutboxTask(
            id=row["id"],
            task_type=row["task_type"],
            payload=_json_loads(row["payload"], {}),
            attempts=row["attempts"],
            dedupe_key=row["dedupe_key"],
            status=row["status"],
            last_error=row["last_error"],
        )

    def counts(self) -> dict[str, int]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM outbox_tasks GROUP BY status"
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}


TaskHandler = Callable[[OutboxTask], Awaitable[None]]


class OutboxWorker:
    """
    Background worker that delivers outbox tasks.

    Design:
    - Polls the queue for due tasks
    - One handler per task type; unknown types fail like any other delivery error
    - Sleeps only when a pass delivered nothing
    """

    def __init__(
        self,
        queue: OutboxQueue,
        handlers: dict[str, TaskHandler],
        poll_interval: float | None = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.poll_interval = (
            poll_interval if poll_interval is not None else queue.settings.poll_interval
        )
        self.running = False

    async def drain(self, limit: int = 20) -> int:
        """Process currently due tasks once. Returns the number delivered."""
        delivered = 0
        for task in self.queue.claim_due(limit):
            handler = self.handlers.get(task.task_type)
            if handler is None:
                self.queue.mark_failed(task.id, f"No handler for task type '{task.task_type}'")
                continue
            try:
                await handler(task)
            except Exception as e:
                logger.warning(f"Outbox task {task.task_type} ({task.id}) failed: {e}")
                self.queue.mark_failed(task.id, str(e))
                continue
            self.queue.mark_delivered(task.id)
            delivered += 1
        return delivered

    async def start_daemon(self):
        """
        Start daemon mode - deliver tasks until stop() is called.
        """
        self.running = True

        while self.running:
            delivered = 0
            try:
                delivered = await self.drain()
            except Exception:
                logger.exception("Outbox worker error")

            if delivered == 0:
                await asyncio.sleep(self.poll_interval)

    def stop(self):
        """Stop the worker daemon"""
        self.running = False


# --- Built-in handlers ---


def make_usage_log_handler(
    db: Database, pricing_overrides: dict[str, dict[str, float]] | None = None
) -> TaskHandler:
    async def handle(task: OutboxTask) -> None:
        payload = task.payload
        prompt_tokens = int(payload.get("prompt_tokens") or 0)
        completion_tokens = int(payload.get("completion_tokens") or 0)
        db.record_usage(
            model=payload["model"],
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(payload.get("total_tokens") or prompt_tokens + completion_tokens),
            estimated_cost=calculate_cost(
                payload["model"], prompt_tokens, completion_tokens, pricing_overrides
            ),
            usage_category=payload.get("usage_category", "generation"),
            company_id=payload.get("company_id"),
            workflow_id=payload.get("workflow_id"),
            node_id=payload.get("node_id"),
            task_id=task.id,
        )

    return handle


def make_http_post_handler(client: httpx.AsyncClient, url: str | None, name: str) -> TaskHandler:
    """Handler that POSTs the payload to ``url`` with the task id as idempotency key."""

    async def handle(task: OutboxTask) -> None:
        if not url:
            raise OutboxDeliveryError(f"No endpoint configured for {name}")
        try:
            response = await client.post(
                url, json=task.payload, headers={"Idempotency-Key": task.id}
            )
        except httpx.HTTPError as e:
            raise OutboxDeliveryError(f"{name} request failed: {e}") from e
        if response.status_code >= 400:
            raise OutboxDeliveryError(
                f"{name} endpoint returned HTTP {response.status_code}: {response.text[:200]}"
            )

    return handle


def default_handlers(
    db: Database,
    sync: SyncSettings,
    client: httpx.AsyncClient,
    pricing_overrides: dict[str, dict[str, float]] | None = None,
) -> dict[str, TaskHandler]:
    return {
        "usage_log": make_usage_log_handler(db, pricing_overrides),
        "output_sync": make_http_post_handler(client, sync.webhook_url, "output_sync"),
        "ssot_change_plan": make_http_post_handler(client, sync.ssot_endpoint, "ssot_change_plan"),
    }
