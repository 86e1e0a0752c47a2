"""SQLite state management for the cascade engine.

node_execution_records is the cache: one row per (company, workflow, node),
updated in place on every re-execution. Everything else (workflow definitions,
companies, submissions, alerts, evaluation history, the outbox) lives next to
it so a single file holds the whole engine state.
"""

import hashlib
import json
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cascade.core.graph_schema import WorkflowGraph


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _utc_now_iso() -> str:
    return _utc_now().isoformat(timespec="microseconds")


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models.

    Prevents TypeError when serializing payloads containing:
    - datetime objects (converted to ISO format strings)
    - Pydantic BaseModel instances (converted via model_dump)
    - Path objects (converted to strings)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _json_loads(value: str | None, default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def hash_api_key(api_key: str) -> str:
    """API keys are stored as SHA-256 digests, never in clear text."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class RunStatus(str, Enum):
    """Lifecycle of a cascade run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"  # Cancellation requested, engine has not stopped yet
    CANCELLED = "cancelled"


class NodeExecutionRecord(BaseModel):
    """Cached output of one node for one company/workflow pair."""

    company_id: str
    workflow_id: str
    node_id: str
    node_type: str
    node_label: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    content_hash: str | None = None
    dependency_hashes: dict[str, str] | None = None  # None when the stored map is malformed
    version: int = 1
    last_executed_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def output(self) -> Any:
        return self.data.get("output")


class Company(BaseModel):
    id: str
    name: str
    rate_limit_rpm: int = 60
    assigned_workflow_id: str | None = None
    is_active: bool = True


class Submission(BaseModel):
    id: str
    company_id: str
    source_type: str
    raw_data: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: str
    created_at: datetime


class CascadeRun(BaseModel):
    id: str
    company_id: str
    workflow_id: str
    trigger: str
    status: RunStatus
    executed: list[str] = Field(default_factory=list)
    cached: list[str] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    execution_time_ms: int | None = None


class Database:
    """SQLite database holding cascade state."""

    SCHEMA = """
    -- Workflow definitions (JSON documents)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Companies feeding data in through the ingestion API
    CREATE TABLE IF NOT EXISTS companies (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        api_key_hash TEXT UNIQUE,
        rate_limit_rpm INTEGER NOT NULL DEFAULT 60,
        assigned_workflow_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL
    );

    -- Node output cache (one row per company/workflow/node)
    CREATE TABLE IF NOT EXISTS node_execution_records (
        company_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        node_type TEXT NOT NULL,
        node_label TEXT,
        data JSON NOT NULL,
        content_hash TEXT,
        dependency_hashes JSON,
        version INTEGER NOT NULL DEFAULT 1,
        last_executed_at TIMESTAMP,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (company_id, workflow_id, node_id)
    );

    -- Evaluation history (append-only)
    CREATE TABLE IF NOT EXISTS evaluation_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        hallucination_score INTEGER,
        hallucination_reasoning TEXT,
        data_quality_score INTEGER,
        data_quality_reasoning TEXT,
        complexity_score INTEGER,
        complexity_reasoning TEXT,
        overall_score INTEGER NOT NULL,
        flags JSON,
        evaluation_model TEXT,
        evaluated_at TIMESTAMP NOT NULL
    );

    -- Nodes flagged for insufficient data quality
    CREATE TABLE IF NOT EXISTS low_quality_fields (
        company_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        node_label TEXT,
        score INTEGER NOT NULL,
        reasoning TEXT,
        flagged_at TIMESTAMP NOT NULL,
        PRIMARY KEY (company_id, workflow_id, node_id)
    );

    -- Operational alerts, deduplicated by (alert_type, identity_key)
    CREATE TABLE IF NOT EXISTS system_alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_type TEXT NOT NULL,
        identity_key TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        affected_model TEXT,
        company_id TEXT,
        workflow_id TEXT,
        node_id TEXT,
        affected_nodes JSON,
        details JSON,
        occurrence_count INTEGER NOT NULL DEFAULT 1,
        first_seen_at TIMESTAMP NOT NULL,
        last_seen_at TIMESTAMP NOT NULL,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TIMESTAMP
    );

    -- External data submissions
    CREATE TABLE IF NOT EXISTS submissions (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        source_type TEXT NOT NULL,
        raw_data JSON,
        metadata JSON,
        status TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    );

    -- Shared cache partitions (many nodes publish into one named cache)
    CREATE TABLE IF NOT EXISTS shared_cache_data (
        shared_cache_id TEXT NOT NULL,
        company_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        node_label TEXT,
        data JSON NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (shared_cache_id, company_id, workflow_id, node_id)
    );

    -- Reference data used by prompt assembly
    CREATE TABLE IF NOT EXISTS frameworks (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        type TEXT NOT NULL DEFAULT 'rating_scale',
        schema TEXT
    );

    CREATE TABLE IF NOT EXISTS system_prompts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        prompt TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS datasets (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        dependencies JSON
    );

    -- Structured-schema store (read-only for the engine)
    CREATE TABLE IF NOT EXISTS domain_definitions (
        domain TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        description TEXT,
        sort_order INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS field_definitions (
        id TEXT PRIMARY KEY,
        domain TEXT NOT NULL,
        field_key TEXT NOT NULL,
        display_name TEXT NOT NULL,
        description TEXT,
        field_type TEXT NOT NULL DEFAULT 'text',
        is_required INTEGER NOT NULL DEFAULT 0,
        level TEXT,
        parent_field_id TEXT,
        sort_order INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS context_fact_definitions (
        fact_key TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        description TEXT,
        fact_type TEXT NOT NULL DEFAULT 'text',
        category TEXT,
        default_domains JSON,
        sort_order INTEGER NOT NULL DEFAULT 0
    );

    -- Cascade runs (status flag doubles as the cancellation signal)
    CREATE TABLE IF NOT EXISTS cascade_runs (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        trigger TEXT NOT NULL,
        status TEXT NOT NULL,
        executed JSON,
        cached JSON,
        errors JSON,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        execution_time_ms INTEGER
    );

    -- Outbound side-effect queue (at-least-once delivery)
    CREATE TABLE IF NOT EXISTS outbox_tasks (
        id TEXT PRIMARY KEY,
        task_type TEXT NOT NULL,
        payload JSON NOT NULL,
        dedupe_key TEXT UNIQUE,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        next_attempt_at TIMESTAMP NOT NULL,
        last_error TEXT,
        created_at TIMESTAMP NOT NULL,
        delivered_at TIMESTAMP
    );

    -- Text-generation usage, written by the outbox usage handler
    CREATE TABLE IF NOT EXISTS ai_usage_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT UNIQUE,
        company_id TEXT,
        workflow_id TEXT,
        node_id TEXT,
        model TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        usage_category TEXT NOT NULL DEFAULT 'generation',
        created_at TIMESTAMP NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_identity
        ON system_alerts(alert_type, identity_key) WHERE is_resolved = 0;
    CREATE INDEX IF NOT EXISTS idx_submissions_company_time
        ON submissions(company_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_outbox_due ON outbox_tasks(status, next_attempt_at);
    CREATE INDEX IF NOT EXISTS idx_eval_node
        ON evaluation_history(company_id, workflow_id, node_id);
    CREATE INDEX IF NOT EXISTS idx_usage_time ON ai_usage_logs(created_at);
    """

    def __init__(self, db_path: str | Path = ".cascade/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Workflows ---

    def save_workflow(self, graph: WorkflowGraph) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, definition, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    updated_at = excluded.updated_at
                """,
                (graph.id, graph.name, graph.model_dump_json(by_alias=True), now, now),
            )

    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
        if not row:
            return None
        return WorkflowGraph.model_validate_json(row["definition"])

    def list_workflows(self) -> list[WorkflowGraph]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY id").fetchall()
        return [WorkflowGraph.model_validate_json(row["definition"]) for row in rows]

    # --- Companies ---

    def create_company(
        self,
        name: str,
        api_key: str | None = None,
        rate_limit_rpm: int = 60,
        assigned_workflow_id: str | None = None,
        company_id: str | None = None,
    ) -> Company:
        company_id = company_id or str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO companies (
                    id, name, api_key_hash, rate_limit_rpm, assigned_workflow_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    company_id,
                    name,
                    hash_api_key(api_key) if api_key else None,
                    rate_limit_rpm,
                    assigned_workflow_id,
                    _utc_now_iso(),
                ),
            )
        return Company(
            id=company_id,
            name=name,
            rate_limit_rpm=rate_limit_rpm,
            assigned_workflow_id=assigned_workflow_id,
        )

    def get_company(self, company_id: str) -> Company | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM companies WHERE id = ?", (company_id,)).fetchone()
        return self._row_to_company(row) if row else None

    def get_company_by_api_key(self, api_key: str) -> Company | None:
        """Active company owning ``api_key``, if any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM companies WHERE api_key_hash = ? AND is_active = 1",
                (hash_api_key(api_key),),
            ).fetchone()
        return self._row_to_company(row) if row else None

    def list_companies(self) -> list[Company]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM companies ORDER BY name").fetchall()
        return [self._row_to_company(row) for row in rows]

    def _row_to_company(self, row: sqlite3.Row) -> Company:
        return Company(
            id=row["id"],
            name=row["name"],
            rate_limit_rpm=row["rate_limit_rpm"],
            assigned_workflow_id=row["assigned_workflow_id"],
            is_active=bool(row["is_active"]),
        )

    # --- Node execution records ---

    def get_node_record(
        self, company_id: str, workflow_id: str, node_id: str
    ) -> NodeExecutionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM node_execution_records
                WHERE company_id = ? AND workflow_id = ? AND node_id = ?
                """,
                (company_id, workflow_id, node_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_node_records(self, company_id: str, workflow_id: str) -> dict[str, NodeExecutionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM node_execution_records WHERE company_id = ? AND workflow_id = ?",
                (company_id, workflow_id),
            ).fetchall()
        return {row["node_id"]: self._row_to_record(row) for row in rows}

    def get_company_workflow_ids(self, company_id: str) -> list[str]:
        """Workflows that have produced at least one record for the company."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT workflow_id FROM node_execution_records
                WHERE company_id = ? ORDER BY workflow_id
                """,
                (company_id,),
            ).fetchall()
        return [row["workflow_id"] for row in rows]

    def upsert_node_record(
        self,
        company_id: str,
        workflow_id: str,
        node_id: str,
        node_type: str,
        node_label: str | None,
        data: dict[str, Any],
        content_hash: str,
        dependency_hashes: dict[str, str],
    ) -> NodeExecutionRecord:
        """Write a node's output; the version increments by exactly one per write."""
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO node_execution_records (
                    company_id, workflow_id, node_id, node_type, node_label, data,
                    content_hash, dependency_hashes, version, last_executed_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(company_id, workflow_id, node_id) DO UPDATE SET
                    node_type = excluded.node_type,
                    node_label = excluded.node_label,
                    data = excluded.data,
                    content_hash = excluded.content_hash,
                    dependency_hashes = excluded.dependency_hashes,
                    version = node_execution_records.version + 1,
                    last_executed_at = excluded.last_executed_at,
                    updated_at = excluded.updated_at
                """,
                (
                    company_id,
                    workflow_id,
                    node_id,
                    node_type,
                    node_label,
                    _safe_json_dumps(data),
                    content_hash,
                    _safe_json_dumps(dependency_hashes),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM node_execution_records
                WHERE company_id = ? AND workflow_id = ? AND node_id = ?
                """,
                (company_id, workflow_id, node_id),
            ).fetchone()
        return self._row_to_record(row)

    def _row_to_record(self, row: sqlite3.Row) -> NodeExecutionRecord:
        dependency_hashes = _json_loads(row["dependency_hashes"], None)
        if dependency_hashes is not None and not (
            isinstance(dependency_hashes, dict)
            and all(isinstance(v, str) for v in dependency_hashes.values())
        ):
            dependency_hashes = None
        data = _json_loads(row["data"], {})
        return NodeExecutionRecord(
            company_id=row["company_id"],
            workflow_id=row["workflow_id"],
            node_id=row["node_id"],
            node_type=row["node_type"],
            node_label=row["node_label"],
            data=data if isinstance(data, dict) else {"output": data},
            content_hash=row["content_hash"],
            dependency_hashes=dependency_hashes,
            version=row["version"],
            last_executed_at=row["last_executed_at"],
            updated_at=row["updated_at"],
        )

    # --- Evaluation history ---

    def append_evaluation(
        self,
        company_id: str,
        workflow_id: str,
        node_id: str,
        evaluation: dict[str, Any],
    ) -> int:
        """Append one evaluation (as produced by EvaluationRecord.to_dict())."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO evaluation_history (
                    company_id, workflow_id, node_id,
                    hallucination_score, hallucination_reasoning,
                    data_quality_score, data_quality_reasoning,
                    complexity_score, complexity_reasoning,
                    overall_score, flags, evaluation_model, evaluated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    company_id,
                    workflow_id,
                    node_id,
                    evaluation["hallucination"]["score"],
                    evaluation["hallucination"]["reasoning"],
                    evaluation["data_quality"]["score"],
                    evaluation["data_quality"]["reasoning"],
                    evaluation["complexity"]["score"],
                    evaluation["complexity"]["reasoning"],
                    evaluation["overall_score"],
                    _safe_json_dumps(evaluation.get("flags", [])),
                    evaluation.get("evaluation_model"),
                    evaluation.get("evaluated_at") or _utc_now_iso(),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_evaluation_history(
        self, company_id: str, workflow_id: str, node_id: str, limit: int = 20
    ) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evaluation_history
                WHERE company_id = ? AND workflow_id = ? AND node_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (company_id, workflow_id, node_id, limit),
            ).fetchall()
        history = []
        for row in rows:
            entry = dict(row)
            entry["flags"] = _json_loads(row["flags"], [])
            history.append(entry)
        return history

    def flag_low_quality(
        self,
        company_id: str,
        workflow_id: str,
        node_id: str,
        node_label: str | None,
        score: int,
        reasoning: str,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO low_quality_fields (
                    company_id, workflow_id, node_id, node_label, score, reasoning, flagged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(company_id, workflow_id, node_id) DO UPDATE SET
                    node_label = excluded.node_label,
                    score = excluded.score,
                    reasoning = excluded.reasoning,
                    flagged_at = excluded.flagged_at
                """,
                (company_id, workflow_id, node_id, node_label, score, reasoning, _utc_now_iso()),
            )

    def get_low_quality_fields(self, company_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM low_quality_fields WHERE company_id = ? ORDER BY score",
                (company_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # --- Submissions ---

    def create_submission(
        self,
        company_id: str,
        raw_data: Any,
        metadata: dict[str, Any] | None = None,
        source_type: str = "api",
        status: str = "processing",
    ) -> str:
        submission_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO submissions (
                    id, company_id, source_type, raw_data, metadata, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    submission_id,
                    company_id,
                    source_type,
                    _safe_json_dumps(raw_data),
                    _safe_json_dumps(metadata or {}),
                    status,
                    _utc_now_iso(),
                ),
            )
        return submission_id

    def update_submission_status(self, submission_id: str, status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE submissions SET status = ? WHERE id = ?", (status, submission_id)
            )

    def count_recent_submissions(self, company_id: str, window_seconds: int = 60) -> int:
        since = (_utc_now() - timedelta(seconds=window_seconds)).isoformat(timespec="microseconds")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM submissions WHERE company_id = ? AND created_at >= ?",
                (company_id, since),
            ).fetchone()
        return row[0]

    def get_recent_submissions(self, company_id: str, limit: int = 20) -> list[Submission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM submissions WHERE company_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (company_id, limit),
            ).fetchall()
        return [
            Submission(
                id=row["id"],
                company_id=row["company_id"],
                source_type=row["source_type"],
                raw_data=_json_loads(row["raw_data"], None),
                metadata=_json_loads(row["metadata"], {}),
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # --- Shared caches ---

    def upsert_shared_cache_entry(
        self,
        shared_cache_id: str,
        company_id: str,
        workflow_id: str,
        node_id: str,
        node_label: str | None,
        output: Any,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO shared_cache_data (
                    shared_cache_id, company_id, workflow_id, node_id, node_label, data, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shared_cache_id, company_id, workflow_id, node_id) DO UPDATE SET
                    node_label = excluded.node_label,
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (
                    shared_cache_id,
                    company_id,
                    workflow_id,
                    node_id,
                    node_label,
                    _safe_json_dumps({"output": output}),
                    _utc_now_iso(),
                ),
            )

    def get_shared_cache_entries(self, shared_cache_id: str, company_id: str) -> list[dict[str, Any]]:
        """Entries of a cache partition, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM shared_cache_data
                WHERE shared_cache_id = ? AND company_id = ?
                ORDER BY updated_at DESC
                """,
                (shared_cache_id, company_id),
            ).fetchall()
        return [
            {
                "workflow_id": row["workflow_id"],
                "node_id": row["node_id"],
                "node_label": row["node_label"],
                "data": _json_loads(row["data"], {}),
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    # --- Reference data ---

    def save_framework(
        self,
        framework_id: str,
        name: str,
        schema: str,
        framework_type: str = "rating_scale",
        description: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO frameworks (id, name, description, type, schema)
                VALUES (?, ?, ?, ?, ?)
                """,
                (framework_id, name, description, framework_type, schema),
            )

    def get_framework(self, framework_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM frameworks WHERE id = ?", (framework_id,)).fetchone()
        return dict(row) if row else None

    def save_system_prompt(self, prompt_id: str, name: str, prompt: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO system_prompts (id, name, prompt) VALUES (?, ?, ?)",
                (prompt_id, name, prompt),
            )

    def get_system_prompt(self, prompt_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM system_prompts WHERE id = ?", (prompt_id,)
            ).fetchone()
        return dict(row) if row else None

    def get_system_prompts_by_name(self, names: list[str]) -> dict[str, str]:
        placeholders = ",".join("?" for _ in names)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT name, prompt FROM system_prompts WHERE name IN ({placeholders})",
                names,
            ).fetchall()
        return {row["name"]: row["prompt"] for row in rows}

    def save_dataset(self, dataset_id: str, name: str, dependencies: list[dict[str, Any]]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO datasets (id, name, dependencies) VALUES (?, ?, ?)",
                (dataset_id, name, _safe_json_dumps(dependencies)),
            )

    def get_dataset(self, dataset_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)).fetchone()
        if not row:
            return None
        return {
            "id": row["id"],
            "name": row["name"],
            "dependencies": _json_loads(row["dependencies"], []),
        }

    # --- Structured-schema store ---

    def save_domain(
        self, domain: str, display_name: str, description: str | None = None, sort_order: int = 0
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO domain_definitions (domain, display_name, description, sort_order)
                VALUES (?, ?, ?, ?)
                """,
                (domain, display_name, description, sort_order),
            )

    def save_field(
        self,
        field_id: str,
        domain: str,
        field_key: str,
        display_name: str,
        level: str | None = None,
        field_type: str = "text",
        description: str | None = None,
        is_required: bool = False,
        parent_field_id: str | None = None,
        sort_order: int = 0,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO field_definitions (
                    id, domain, field_key, display_name, description, field_type,
                    is_required, level, parent_field_id, sort_order
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    field_id,
                    domain,
                    field_key,
                    display_name,
                    description,
                    field_type,
                    int(is_required),
                    level,
                    parent_field_id,
                    sort_order,
                ),
            )

    def save_context_fact(
        self,
        fact_key: str,
        display_name: str,
        default_domains: list[str] | None = None,
        fact_type: str = "text",
        category: str | None = None,
        description: str | None = None,
        sort_order: int = 0,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO context_fact_definitions (
                    fact_key, display_name, description, fact_type, category,
                    default_domains, sort_order
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fact_key,
                    display_name,
                    description,
                    fact_type,
                    category,
                    _safe_json_dumps(default_domains or []),
                    sort_order,
                ),
            )

    def get_schema_definitions(
        self,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]], list[dict[str, Any]]]:
        """(domains, fields, context facts) in display order."""
        with self._connect() as conn:
            domains = [
                dict(row)
                for row in conn.execute(
                    "SELECT * FROM domain_definitions ORDER BY sort_order, domain"
                ).fetchall()
            ]
            fields = []
            for row in conn.execute(
                "SELECT * FROM field_definitions ORDER BY domain, level, sort_order"
            ).fetchall():
                entry = dict(row)
                entry["is_required"] = bool(entry["is_required"])
                fields.append(entry)
            facts = []
            for row in conn.execute(
                "SELECT * FROM context_fact_definitions ORDER BY sort_order, fact_key"
            ).fetchall():
                entry = dict(row)
                entry["default_domains"] = _json_loads(row["default_domains"], [])
                facts.append(entry)
        return domains, fields, facts

    # --- Cascade runs ---

    def create_run(self, company_id: str, workflow_id: str, trigger: str) -> str:
        run_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cascade_runs (id, company_id, workflow_id, trigger, status, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, company_id, workflow_id, trigger, RunStatus.RUNNING.value, _utc_now_iso()),
            )
        return run_id

    def get_run(self, run_id: str) -> CascadeRun | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM cascade_runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return CascadeRun(
            id=row["id"],
            company_id=row["company_id"],
            workflow_id=row["workflow_id"],
            trigger=row["trigger"],
            status=RunStatus(row["status"]),
            executed=_json_loads(row["executed"], []),
            cached=_json_loads(row["cached"], []),
            errors=_json_loads(row["errors"], []),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            execution_time_ms=row["execution_time_ms"],
        )

    def get_run_status(self, run_id: str) -> RunStatus | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM cascade_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return RunStatus(row["status"]) if row else None

    def request_run_cancel(self, run_id: str) -> bool:
        """Flag a running cascade for cancellation. False if it is not running."""
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE cascade_runs SET status = ? WHERE id = ? AND status = ?",
                (RunStatus.CANCELLING.value, run_id, RunStatus.RUNNING.value),
            )
            return result.rowcount > 0

    def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        executed: list[str],
        cached: list[str],
        errors: list[dict[str, str]],
        execution_time_ms: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE cascade_runs
                SET status = ?, executed = ?, cached = ?, errors = ?,
                    completed_at = ?, execution_time_ms = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    _safe_json_dumps(executed),
                    _safe_json_dumps(cached),
                    _safe_json_dumps(errors),
                    _utc_now_iso(),
                    execution_time_ms,
                    run_id,
                ),
            )

    # --- Usage ---

    def record_usage(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        estimated_cost: float,
        usage_category: str = "generation",
        company_id: str | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
        task_id: str | None = None,
    ) -> bool:
        """Record one generation call. Returns False if ``task_id`` was already logged."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ai_usage_logs (
                    task_id, company_id, workflow_id, node_id, model,
                    prompt_tokens, completion_tokens, total_tokens,
                    estimated_cost, usage_category, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO NOTHING
                """,
                (
                    task_id,
                    company_id,
                    workflow_id,
                    node_id,
                    model,
                    prompt_tokens,
                    completion_tokens,
                    total_tokens,
                    estimated_cost,
                    usage_category,
                    _utc_now_iso(),
                ),
            )
            return cursor.rowcount > 0
