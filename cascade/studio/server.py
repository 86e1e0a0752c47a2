"""FastAPI surface for the cascade engine.

Endpoints:
- POST /ingest: external submissions, authenticated by ``X-API-Key``
- POST /test-nodes: re-test selected nodes and everything they touch
- GET /runs/{run_id}, POST /runs/{run_id}/cancel: run status and cancellation
- GET /alerts, POST /alerts/{id}/resolve: operational alerts
- GET /health

Engine and database are created lazily from the project configuration found
from the working directory; ``configure()`` injects them instead.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cascade import __version__
from cascade.config import CascadeConfig, find_project_root, load_config
from cascade.core.engine import (
    CascadeEngine,
    CascadeRequest,
    WorkflowNotFoundError,
    build_engine,
)
from cascade.core.ingestion import IngestionError, IngestionService
from cascade.core.llm import QuotaExceededError, RateLimitError
from cascade.core.run_lock import CascadeBusyError
from cascade.core.scheduler import SchedulerError
from cascade.core.state import Database

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cascade Engine API",
    description="Ingestion and re-test endpoints for reactive workflow cascades",
    version=__version__,
)

# Global instances - initialized lazily
_config: CascadeConfig | None = None
_engine: CascadeEngine | None = None
_project_root: Path | None = None


def configure(engine: CascadeEngine, config: CascadeConfig | None = None) -> None:
    """Use an existing engine (and its database) for all requests."""
    global _engine, _config
    _engine = engine
    _config = config or engine.config


def get_config() -> CascadeConfig:
    global _config, _project_root
    if _config is None:
        _project_root = find_project_root()
        _config = load_config(_project_root)
    return _config


def get_engine() -> CascadeEngine:
    """Get or create the engine instance."""
    global _engine, _project_root
    if _engine is None:
        config = get_config()
        _project_root = _project_root or find_project_root()
        _engine = build_engine(config, _project_root)
    return _engine


def get_db() -> Database:
    return get_engine().db


# ========== API Models ==========


class TestNodesRequest(BaseModel):
    """Request to re-test nodes of a workflow"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    workflow_id: str
    node_ids: list[str] = Field(min_length=1)
    company_id: str | None = None


def _busy_response(e: CascadeBusyError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"error": str(e), "retry_after": e.retry_after},
        headers={"Retry-After": str(e.retry_after)},
    )


# ========== Cascade Endpoints ==========


@app.post("/ingest", status_code=201)
async def ingest(
    request: Request, x_api_key: str | None = Header(default=None)
) -> Any:
    """Store a submission and cascade it through the company's workflow."""
    try:
        body = await request.json()
    except ValueError:
        body = None

    service = IngestionService(get_db(), get_engine())
    try:
        return await service.ingest(x_api_key, body)
    except IngestionError as e:
        return JSONResponse(status_code=e.status_code, content=e.payload, headers=e.headers)


@app.post("/test-nodes")
async def test_nodes(request: TestNodesRequest) -> Any:
    """Re-run the requested nodes plus their upstream inputs and downstream dependents."""
    company_id = request.company_id or get_config().default_company_id
    if not company_id:
        raise HTTPException(status_code=400, detail="companyId is required (no default company)")

    engine = get_engine()
    try:
        result = await engine.run(
            CascadeRequest(
                company_id=company_id,
                workflow_id=request.workflow_id,
                trigger="retest",
                target_node_ids=request.node_ids,
            )
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except SchedulerError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except CascadeBusyError as e:
        return _busy_response(e)
    except (RateLimitError, QuotaExceededError) as e:
        return JSONResponse(status_code=e.status_code, content={"error": str(e), "details": e.body})
    except Exception as e:
        logger.exception(f"Re-test failed for workflow {request.workflow_id}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    results = {}
    for node_id in request.node_ids:
        node_result = result.results.get(node_id)
        if node_result is None:
            continue
        results[node_id] = {
            "output": node_result.output,
            "executedAt": node_result.executed_at.isoformat() if node_result.executed_at else None,
            "cached": node_result.cached,
        }

    response: dict[str, Any] = {
        "success": True,
        "runId": result.run_id,
        "results": results,
        "stats": {
            "executed": len(result.executed),
            "cached": len(result.cached),
            "errors": len(result.errors),
            "executionTimeMs": result.execution_time_ms,
        },
    }
    if result.errors:
        response["errors"] = [
            {"nodeId": e["node_id"], "error": e["error"]} for e in result.errors
        ]
    return response


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    """Get cascade run status."""
    run = get_db().get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str) -> dict[str, str]:
    """
    Request cancellation of a running cascade.

    NOTE: The node being executed when the request arrives still completes;
    the engine stops before the next one.
    """
    if get_engine().cancel_run(run_id):
        return {"status": "cancelling", "run_id": run_id}

    status = get_db().get_run_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    raise HTTPException(status_code=400, detail=f"Cannot cancel run in '{status.value}' state")


# ========== Alerts ==========


@app.get("/alerts")
def list_alerts(include_resolved: bool = False, limit: int = 100) -> list[dict[str, Any]]:
    alerts = get_engine().alerts.list_alerts(include_resolved=include_resolved, limit=limit)
    return [alert.model_dump(mode="json") for alert in alerts]


@app.post("/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: int) -> dict[str, Any]:
    alerts = get_engine().alerts
    if alerts.resolve(alert_id):
        return {"status": "resolved", "id": alert_id}
    if alerts.get(alert_id) is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    raise HTTPException(status_code=400, detail="Alert already resolved")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
