"""Deduplicated operational alerts.

At most one unresolved alert exists per (alert_type, identity_key); repeated
occurrences bump its counter instead of opening new rows. Resolving an alert
lets the next occurrence start a fresh one.
"""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cascade.core.llm import is_model_unavailable
from cascade.core.state import Database, _json_loads, _safe_json_dumps, _utc_now_iso

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertDetails(BaseModel):
    """Everything about an occurrence except its identity."""

    severity: AlertSeverity = AlertSeverity.WARNING
    title: str
    description: str | None = None
    affected_model: str | None = None
    company_id: str | None = None
    workflow_id: str | None = None
    node_id: str | None = None
    affected_nodes: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class Alert(BaseModel):
    id: int
    alert_type: str
    identity_key: str
    severity: AlertSeverity
    title: str
    description: str | None = None
    affected_model: str | None = None
    company_id: str | None = None
    workflow_id: str | None = None
    node_id: str | None = None
    affected_nodes: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    occurrence_count: int = 1
    first_seen_at: str
    last_seen_at: str
    is_resolved: bool = False
    resolved_at: str | None = None


QUALITY_METRIC_LABELS = {
    "hallucination": "Hallucination Risk",
    "data_quality": "Low Data Quality",
    "complexity": "High Complexity",
}


class AlertDeduplicator:
    """Upserts alerts into ``system_alerts``."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, alert_type: str, identity_key: str, details: AlertDetails) -> Alert:
        now = _utc_now_iso()
        with self.db._connect() as conn:
            existing = conn.execute(
                """
                SELECT * FROM system_alerts
                WHERE alert_type = ? AND identity_key = ? AND is_resolved = 0
                """,
                (alert_type, identity_key),
            ).fetchone()

            if existing:
                merged = list(_json_loads(existing["affected_nodes"], []))
                for node_id in details.affected_nodes:
                    if node_id not in merged:
                        merged.append(node_id)
                conn.execute(
                    """
                    UPDATE system_alerts
                    SET occurrence_count = occurrence_count + 1,
                        last_seen_at = ?, severity = ?, title = ?, description = ?,
                        affected_nodes = ?, details = ?
                    WHERE id = ?
                    """,
                    (
                        now,
                        details.severity.value,
                        details.title,
                        details.description,
                        _safe_json_dumps(merged),
                        _safe_json_dumps(details.details),
                        existing["id"],
                    ),
                )
                alert_id = existing["id"]
                logger.debug(f"Alert {alert_type}/{identity_key} seen again (id={alert_id})")
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO system_alerts (
                        alert_type, identity_key, severity, title, description,
                        affected_model, company_id, workflow_id, node_id,
                        affected_nodes, details, occurrence_count,
                        first_seen_at, last_seen_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        alert_type,
                        identity_key,
                        details.severity.value,
                        details.title,
                        details.description,
                        details.affected_model,
                        details.company_id,
                        details.workflow_id,
                        details.node_id,
                        _safe_json_dumps(details.affected_nodes),
                        _safe_json_dumps(details.details),
                        now,
                        now,
                    ),
                )
                alert_id = cursor.lastrowid
                logger.info(f"New {details.severity.value} alert: {details.title}")

            row = conn.execute("SELECT * FROM system_alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row)

    def resolve(self, alert_id: int) -> bool:
        with self.db._connect() as conn:
            result = conn.execute(
                """
                UPDATE system_alerts SET is_resolved = 1, resolved_at = ?
                WHERE id = ? AND is_resolved = 0
                """,
                (_utc_now_iso(), alert_id),
            )
            return result.rowcount > 0

    def get(self, alert_id: int) -> Alert | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM system_alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def list_alerts(self, include_resolved: bool = False, limit: int = 100) -> list[Alert]:
        query = "SELECT * FROM system_alerts"
        if not include_resolved:
            query += " WHERE is_resolved = 0"
        query += " ORDER BY last_seen_at DESC LIMIT ?"
        with self.db._connect() as conn:
            rows = conn.execute(query, (limit,)).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def _row_to_alert(self, row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            alert_type=row["alert_type"],
            identity_key=row["identity_key"],
            severity=AlertSeverity(row["severity"]),
            title=row["title"],
            description=row["description"],
            affected_model=row["affected_model"],
            company_id=row["company_id"],
            workflow_id=row["workflow_id"],
            node_id=row["node_id"],
            affected_nodes=_json_loads(row["affected_nodes"], []),
            details=_json_loads(row["details"], {}),
            occurrence_count=row["occurrence_count"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            is_resolved=bool(row["is_resolved"]),
            resolved_at=row["resolved_at"],
        )

    # --- Typed helpers ---

    def model_unavailable(
        self,
        model: str,
        status_code: int,
        error_text: str,
        node_id: str | None = None,
        node_label: str | None = None,
        workflow_id: str | None = None,
    ) -> Alert | None:
        """Record a model the provider no longer serves. Other failures are ignored."""
        if not is_model_unavailable(status_code, error_text):
            return None

        if status_code == 404:
            title = "Model Not Found"
        elif status_code == 410:
            title = "Model Deprecated"
        else:
            title = "Model Error"
        return self.upsert(
            "model_unavailable",
            model,
            AlertDetails(
                severity=(
                    AlertSeverity.CRITICAL if status_code in (404, 410) else AlertSeverity.WARNING
                ),
                title=f"{title}: {model}",
                description=(error_text or "")[:500],
                affected_model=model,
                workflow_id=workflow_id,
                node_id=node_id,
                affected_nodes=[node_label or node_id] if (node_label or node_id) else [],
                details={"status_code": status_code},
            ),
        )

    def max_tokens_hit(
        self,
        workflow_id: str,
        node_id: str,
        model: str,
        max_tokens: int,
        node_label: str | None = None,
        company_id: str | None = None,
    ) -> Alert:
        return self.upsert(
            "max_tokens_hit",
            f"{workflow_id}:{node_id}:max_tokens_hit",
            AlertDetails(
                severity=AlertSeverity.WARNING,
                title=f"Output truncated: {node_label or node_id}",
                description=(
                    f"Generation stopped at the {max_tokens} token limit; "
                    "raise max tokens for this node."
                ),
                affected_model=model,
                company_id=company_id,
                workflow_id=workflow_id,
                node_id=node_id,
                affected_nodes=[node_label or node_id],
                details={"max_tokens": max_tokens},
            ),
        )

    def quality(
        self,
        metric: str,
        company_id: str,
        company_name: str,
        workflow_id: str,
        node_id: str,
        node_label: str,
        score: int,
        reasoning: str,
    ) -> Alert:
        label = QUALITY_METRIC_LABELS.get(metric, metric)
        return self.upsert(
            f"quality_{metric}",
            f"{company_id}:{node_id}:{metric}",
            AlertDetails(
                severity=AlertSeverity.CRITICAL if score < 30 else AlertSeverity.WARNING,
                title=f"{label}: {company_name} - {node_label}",
                description=reasoning,
                company_id=company_id,
                workflow_id=workflow_id,
                node_id=node_id,
                affected_nodes=[node_label],
                details={"metric": metric, "score": score},
            ),
        )

    def execution_errors(
        self,
        company_id: str,
        workflow_id: str,
        errors: list[dict[str, str]],
        workflow_name: str | None = None,
    ) -> Alert:
        """Summary alert for a cascade run that finished with node errors."""
        return self.upsert(
            "execution_errors",
            f"{company_id}:{workflow_id}",
            AlertDetails(
                severity=AlertSeverity.WARNING,
                title=f"Execution errors: {workflow_name or workflow_id} ({len(errors)} nodes)",
                description="; ".join(f"{e['node_id']}: {e['error']}" for e in errors)[:1000],
                company_id=company_id,
                workflow_id=workflow_id,
                affected_nodes=[e["node_id"] for e in errors],
                details={"error_count": len(errors)},
            ),
        )
