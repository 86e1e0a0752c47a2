"""Live snapshot of the structured-schema store (domains, fields, context facts)."""

from __future__ import annotations

import logging
from typing import Any

from cascade.core.state import Database, _utc_now_iso

logger = logging.getLogger(__name__)

FIELD_LEVELS = ("L1C", "L2", "L3", "L4")


def build_schema_snapshot(db: Database, company_id: str) -> dict[str, Any]:
    """Hierarchical view of the schema, grouped by domain and field level.

    Always read fresh; nodes that depend on it are never served from cache.
    """
    domains, fields, facts = db.get_schema_definitions()

    domain_entries = []
    for domain in domains:
        domain_fields = [f for f in fields if f["domain"] == domain["domain"]]
        domain_entries.append(
            {
                **domain,
                "fields": domain_fields,
                "fields_by_level": {
                    level: [f for f in domain_fields if f.get("level") == level]
                    for level in FIELD_LEVELS
                },
                "field_count": len(domain_fields),
                "context_facts": [
                    fact for fact in facts if domain["domain"] in (fact.get("default_domains") or [])
                ],
            }
        )

    logger.debug(
        f"Schema snapshot: {len(domains)} domains, {len(fields)} fields, {len(facts)} context facts"
    )
    return {
        "company_id": company_id,
        "domains": domain_entries,
        "context_fact_definitions": facts,
        "total_domains": len(domains),
        "total_fields": len(fields),
        "total_context_facts": len(facts),
        "generated_at": _utc_now_iso(),
    }
