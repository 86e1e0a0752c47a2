"""External data ingestion.

A company posts ``{"data": {...}, "metadata": {...}}`` with its API key. The
submission is stored, written to the source node of the company's assigned
workflow, and the cascade runs from there. Posting the same data twice runs
nothing the second time.
"""

from __future__ import annotations

import logging
from typing import Any

from cascade.core.engine import CascadeEngine, CascadeRequest
from cascade.core.graph_model import GraphModel
from cascade.core.llm import QuotaExceededError, RateLimitError
from cascade.core.run_lock import CascadeBusyError
from cascade.core.state import Company, Database

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60


class IngestionError(Exception):
    """Ingestion failure with the HTTP status and body to answer with."""

    def __init__(
        self, status_code: int, payload: dict[str, Any], headers: dict[str, str] | None = None
    ):
        self.status_code = status_code
        self.payload = payload
        self.headers = headers or {}
        super().__init__(payload.get("error", f"HTTP {status_code}"))


class IngestionService:
    """Validates, stores and processes submissions.

    USAGE:
        service = IngestionService(db, engine)
        response = await service.ingest(api_key, body)  # 201 body

    Raises IngestionError for every non-201 outcome.
    """

    def __init__(self, db: Database, engine: CascadeEngine):
        self.db = db
        self.engine = engine

    async def ingest(self, api_key: str | None, body: Any) -> dict[str, Any]:
        if not api_key:
            raise IngestionError(401, {"error": "Missing API key"})
        company = self.db.get_company_by_api_key(api_key)
        if company is None:
            raise IngestionError(401, {"error": "Invalid API key"})
        return await self.submit(company, body)

    async def submit(
        self, company: Company, body: Any, source_type: str = "api"
    ) -> dict[str, Any]:
        """Process a submission for an already authenticated company."""
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise IngestionError(400, {"error": "Request body must contain a 'data' object"})
        data = body["data"]
        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}

        recent = self.db.count_recent_submissions(company.id, RATE_LIMIT_WINDOW_SECONDS)
        if recent >= company.rate_limit_rpm:
            logger.warning(f"Rate limit hit for company {company.id}: {recent} submissions/min")
            raise IngestionError(
                429,
                {
                    "error": "Rate limit exceeded",
                    "limit": company.rate_limit_rpm,
                    "retry_after": RATE_LIMIT_WINDOW_SECONDS,
                },
                headers={"Retry-After": str(RATE_LIMIT_WINDOW_SECONDS)},
            )

        submission_id = self.db.create_submission(company.id, data, metadata, source_type=source_type)
        logger.info(f"Stored submission {submission_id} for company {company.id}")

        if not company.assigned_workflow_id:
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(
                404, {"error": "No workflow assigned to this company", "submission_id": submission_id}
            )
        graph = self.db.get_workflow(company.assigned_workflow_id)
        if graph is None:
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(
                404,
                {
                    "error": f"Workflow not found: {company.assigned_workflow_id}",
                    "submission_id": submission_id,
                },
            )
        source = GraphModel(graph).source_node()
        if source is None:
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(
                400, {"error": "Workflow has no source node", "submission_id": submission_id}
            )

        try:
            result = await self.engine.run(
                CascadeRequest(
                    company_id=company.id,
                    workflow_id=graph.id,
                    trigger="ingest",
                    source_node_id=source.id,
                    source_output=data,
                )
            )
        except CascadeBusyError as e:
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(
                409,
                {"error": str(e), "retry_after": e.retry_after, "submission_id": submission_id},
                headers={"Retry-After": str(e.retry_after)},
            ) from e
        except (RateLimitError, QuotaExceededError) as e:
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(
                e.status_code,
                {
                    "error": "Text generation rate limit exceeded"
                    if isinstance(e, RateLimitError)
                    else "Text generation quota exceeded",
                    "details": e.body,
                    "submission_id": submission_id,
                },
            ) from e
        except Exception as e:
            logger.exception(f"Cascade failed for submission {submission_id}")
            self.db.update_submission_status(submission_id, "failed")
            raise IngestionError(500, {"error": str(e), "submission_id": submission_id}) from e

        self.db.update_submission_status(submission_id, "completed")
        if result.executed:
            message = (
                f"Data processed: {len(result.executed)} nodes executed, "
                f"{len(result.cached)} cached"
            )
        else:
            message = "Data unchanged; all nodes served from cache"

        return {
            "success": True,
            "submission_id": submission_id,
            "status": "completed",
            "message": message,
            "cascade": {
                "executed": result.executed,
                "cached": result.cached,
                "execution_time_ms": result.execution_time_ms,
            },
            "results": {node_id: r.output for node_id, r in result.results.items() if not r.cached},
        }
