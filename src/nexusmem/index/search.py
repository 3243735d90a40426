"""Semantic search over architecture content."""

from __future__ import annotations

import logging
from typing import List, Sequence

from nexusmem.index.storage import QdrantVectorStore
from nexusmem.models import ARCHITECTURE_LAYERS, ArchitectureSnippet, Embedding, Layer

LOGGER = logging.getLogger(__name__)

RELEVANCE_THRESHOLD = 0.75


def filter_relevant(
    snippets: Sequence[ArchitectureSnippet], threshold: float = RELEVANCE_THRESHOLD
) -> List[ArchitectureSnippet]:
    """Keep snippets scoring at or above the threshold, preserving order."""
    return [snippet for snippet in snippets if snippet.score >= threshold]


class Searcher:
    """High-level API to query the vector store."""

    def __init__(
        self,
        store: QdrantVectorStore,
        *,
        top_k: int = 3,
        relevance_threshold: float = RELEVANCE_THRESHOLD,
        layers: Sequence[Layer] = ARCHITECTURE_LAYERS,
    ) -> None:
        self.store = store
        self.top_k = top_k
        self.relevance_threshold = relevance_threshold
        self.layers = tuple(layers)

    def search_architecture(self, embedding: Embedding, project_id: str) -> List[ArchitectureSnippet]:
        if not embedding.available:
            LOGGER.debug("No query embedding available, skipping architecture search")
            return []

        hits = self.store.search(
            embedding.vector,
            limit=self.top_k,
            filters={"project_id": project_id, "layer": list(self.layers)},
        )
        snippets = [ArchitectureSnippet.from_hit(hit) for hit in hits]
        relevant = filter_relevant(snippets, self.relevance_threshold)
        LOGGER.debug(
            "Architecture search: %d hits, %d above %.2f",
            len(snippets),
            len(relevant),
            self.relevance_threshold,
        )
        return relevant
