"""Pause handling: paused nodes and everything downstream of them are skipped."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cascade.core.graph_model import GraphModel

logger = logging.getLogger(__name__)


class PauseController:
    """Computes the set of nodes a cascade must not run."""

    def __init__(self, model: GraphModel):
        self.model = model

    def paused_nodes(self) -> set[str]:
        return {node.id for node in self.model.nodes() if node.config.paused}

    def blocked_nodes(self, extra_paused: Iterable[str] = ()) -> set[str]:
        """Paused nodes plus every node transitively fed by one of them."""
        paused = self.paused_nodes() | {n for n in extra_paused if n in self.model}
        if not paused:
            return set()

        blocked = self.model.downstream_closure(paused)
        if len(blocked) > len(paused):
            logger.info(
                f"Paused nodes: {len(paused)}, downstream blocked: {len(blocked) - len(paused)}"
            )
        return blocked
