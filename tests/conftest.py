# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the cascade test suite.

This module provides foundational fixtures used across all test modules:
- Temporary state databases
- A scripted text-generation client (no network)
- Sample workflow graphs and a registered company
- An engine wired to all of the above

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cascade.config import CascadeConfig, EvaluationSettings
from cascade.core.engine import CascadeEngine
from cascade.core.evaluation import EVALUATOR_SYSTEM_PROMPT
from cascade.core.graph_schema import WorkflowGraph
from cascade.core.llm import GenerationRequest, GenerationResult, GenerationUsage, TextGenerationClient
from cascade.core.state import Company, Database

COMPANY_ID = "acme"
API_KEY = "csk_test_key"


# =============================================================================
# Text generation
# =============================================================================


class FakeTextGenerationClient(TextGenerationClient):
    """Records every request and answers from a responder.

    The default responder echoes the user prompt, so a changed input always
    produces a changed output. A responder may return a string, a full
    GenerationResult, or raise.
    """

    def __init__(self, responder: Callable[[GenerationRequest], Any] | None = None):
        self.responder = responder or self.echo
        self.requests: list[GenerationRequest] = []
        self.closed = False

    @staticmethod
    def echo(request: GenerationRequest) -> str:
        return f"Summary of: {request.messages[-1]['content']}"

    @property
    def generation_requests(self) -> list[GenerationRequest]:
        """Requests excluding evaluator calls."""
        return [r for r in self.requests if r.messages[0]["content"] != EVALUATOR_SYSTEM_PROMPT]

    async def complete(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        answer = self.responder(request)
        if isinstance(answer, GenerationResult):
            return answer
        return GenerationResult(
            content=answer,
            model=request.model,
            usage=GenerationUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120),
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_llm() -> FakeTextGenerationClient:
    """Text-generation client that echoes prompts back."""
    return FakeTextGenerationClient()


# =============================================================================
# Database and configuration
# =============================================================================


@pytest.fixture
def temp_db(tmp_path: Path) -> Database:
    """Create a temporary state database.

    Returns:
        Database instance backed by a file in tmp_path.
    """
    return Database(tmp_path / "state.db")


@pytest.fixture
def cascade_config() -> CascadeConfig:
    """Configuration with evaluation off, so only node generations hit the client."""
    return CascadeConfig(evaluation=EvaluationSettings(enabled=False))


# =============================================================================
# Workflows
# =============================================================================


def linear_workflow_definition(workflow_id: str = "wf-linear") -> dict[str, Any]:
    """A (ingest dataset) -> B (prompt) -> C (prompt).

    Editor-style camelCase keys, the way exported documents arrive.
    """
    return {
        "id": workflow_id,
        "name": "Linear workflow",
        "nodes": [
            {
                "id": "A",
                "type": "dataset",
                "label": "Company Data",
                "config": {"sourceType": "company_ingest"},
            },
            {
                "id": "B",
                "type": "promptTemplate",
                "label": "Summary",
                "config": {
                    "promptParts": [
                        {"type": "text", "value": "Summarize:"},
                        {"type": "dependency", "value": "A"},
                    ],
                },
            },
            {
                "id": "C",
                "type": "promptTemplate",
                "label": "Headline",
                "config": {
                    "promptParts": [
                        {"type": "text", "value": "Headline for:"},
                        {"type": "dependency", "value": "B"},
                    ],
                },
            },
        ],
    }


@pytest.fixture
def linear_workflow() -> WorkflowGraph:
    """A -> B -> C workflow graph (not stored)."""
    return WorkflowGraph.model_validate(linear_workflow_definition())


@pytest.fixture
def company(temp_db: Database, linear_workflow: WorkflowGraph) -> Company:
    """Stored linear workflow plus a company assigned to it.

    The company's API key is ``API_KEY``.
    """
    temp_db.save_workflow(linear_workflow)
    return temp_db.create_company(
        "Acme Corp",
        api_key=API_KEY,
        rate_limit_rpm=60,
        assigned_workflow_id=linear_workflow.id,
        company_id=COMPANY_ID,
    )


@pytest.fixture
def engine(
    temp_db: Database, fake_llm: FakeTextGenerationClient, cascade_config: CascadeConfig
) -> CascadeEngine:
    """Engine over the temporary database and the fake client."""
    return CascadeEngine(temp_db, fake_llm, cascade_config)
