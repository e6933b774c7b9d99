from __future__ import annotations

import logging
import random
from typing import List, Optional

from ..domain.models import ConceptNode
from ..domain.personas import Speaker
from ..infrastructure.store import BrainstormStore
from .completion import CompletionService
from .tasks import TaskRecord, TaskRunner


logger = logging.getLogger(__name__)

CANVAS_WIDTH = 600
CANVAS_HEIGHT = 400
PARENT_SPREAD = 100


class ConceptExtractor:
    """Turns a persona reply into mind-map nodes and parent edges."""

    def __init__(
        self,
        store: BrainstormStore,
        completion: CompletionService,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._completion = completion
        self._rng = rng or random.Random()

    def _free_position(self) -> tuple[float, float]:
        return self._rng.random() * CANVAS_WIDTH, self._rng.random() * CANVAS_HEIGHT

    def _near(self, parent: ConceptNode) -> tuple[float, float]:
        dx = self._rng.random() * 2 * PARENT_SPREAD - PARENT_SPREAD
        dy = self._rng.random() * 2 * PARENT_SPREAD - PARENT_SPREAD
        return parent.x + dx, parent.y + dy

    async def extract(
        self,
        session_id: str,
        text: str,
        speaker: Optional[Speaker],
        message_id: Optional[str] = None,
    ) -> List[ConceptNode]:
        existing = await self._store.list_nodes(session_id)
        labels = [n.label for n in existing]
        result = await self._completion.extract_concepts(text, labels)

        created: List[ConceptNode] = []
        for concept in result.concepts:
            label = concept.label.strip()
            if not label:
                continue
            x, y = self._free_position()
            parents: List[ConceptNode] = []
            if concept.connections:
                # Live lookup: a concept may elaborate on one created earlier in this batch.
                parents = await self._store.find_nodes_by_labels(session_id, concept.connections)
                if parents:
                    x, y = self._near(parents[0])
            node = await self._store.create_node(
                session_id, label, x, y, speaker=speaker, message_id=message_id
            )
            for parent in parents:
                await self._store.create_edge(session_id, parent.node_id, node.node_id)
            created.append(node)

        logger.info(
            "concepts_extracted",
            extra={"session_id": session_id, "count": len(created), "speaker": speaker.value if speaker else None},
        )
        return created

    def schedule(
        self,
        runner: TaskRunner,
        session_id: str,
        text: str,
        speaker: Optional[Speaker],
        message_id: Optional[str] = None,
    ) -> TaskRecord:
        return runner.submit(
            "concept_extraction",
            self.extract(session_id, text, speaker, message_id),
        )
