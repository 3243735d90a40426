"""Context assembly for prompt builders.

Retrieves relevant architecture snippets from the vector store and the active
sprint state from disk concurrently, then renders them around the user's
request in a fixed, clearly delimited layout.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence

from nexusmem.embedding.encoder import Embedder
from nexusmem.errors import NotInitializedError, SchedulingError
from nexusmem.index.search import Searcher
from nexusmem.models import ArchitectureSnippet, AssembledContext, Embedding, SprintState
from nexusmem.context.sprint import SprintSource, read_sprint_state

LOGGER = logging.getLogger(__name__)


class ContextAssembler:
    """Builds an :class:`AssembledContext` for a query.

    Retrieval failures degrade to empty results with a warning; only a failure
    to schedule the retrieval work at all raises :class:`SchedulingError`.
    """

    def __init__(
        self,
        embedder: Embedder,
        searcher: Searcher,
        sprint_source: SprintSource,
        *,
        max_workers: int = 2,
    ) -> None:
        self.embedder = embedder
        self.searcher = searcher
        self.sprint_source = sprint_source
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="nexusmem-context"
        )

    def __enter__(self) -> "ContextAssembler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def embed_query(self, user_query: str) -> Embedding:
        try:
            return Embedding.of(self.embedder.embed(user_query))
        except NotInitializedError:
            LOGGER.warning(
                "Embedding generator not initialized; semantic search disabled for this query"
            )
        except Exception as e:
            LOGGER.warning(f"Failed to embed query, semantic search disabled: {e}")
        return Embedding.unavailable()

    def _retrieve_architecture(self, embedding: Embedding, project_id: str) -> List[ArchitectureSnippet]:
        try:
            return self.searcher.search_architecture(embedding, project_id)
        except Exception as e:
            LOGGER.warning(f"Failed to retrieve architecture context: {e}")
            return []

    def _retrieve_sprint(
        self, project_id: str, roots: Sequence[Path], source: SprintSource
    ) -> Optional[SprintState]:
        try:
            location = source.locate(project_id, roots)
            if location is None:
                return None
            return read_sprint_state(location)
        except Exception as e:
            LOGGER.warning(f"Failed to retrieve sprint context: {e}")
            return None

    def get_context(
        self,
        user_query: str,
        project_id: str,
        roots: Sequence[Path] = (),
        sprint_source: Optional[SprintSource] = None,
    ) -> AssembledContext:
        embedding = self.embed_query(user_query)
        source = sprint_source or self.sprint_source
        roots = tuple(Path(root) for root in roots)

        try:
            architecture_future: Future = self._executor.submit(
                self._retrieve_architecture, embedding, project_id
            )
            sprint_future: Future = self._executor.submit(
                self._retrieve_sprint, project_id, roots, source
            )
        except RuntimeError as exc:
            raise SchedulingError(f"Unable to schedule context retrieval: {exc}") from exc

        snippets = _result_or(architecture_future, [], "architecture")
        sprint = _result_or(sprint_future, None, "sprint")
        return AssembledContext(user_request=user_query, snippets=snippets, sprint=sprint)


def _result_or(future: Future, default, label: str):
    try:
        return future.result()
    except Exception as e:
        LOGGER.warning(f"{label} retrieval failed: {e}")
        return default


def render(context: AssembledContext) -> str:
    """Format context as the text block handed to the prompt builder."""
    parts: List[str] = []

    if context.snippets:
        parts.append("[SYSTEM ARCHITECTURE RULES]\n")
        for idx, snippet in enumerate(context.snippets, start=1):
            parts.append(f"\n--- Architecture Reference {idx} ---\n")
            parts.append(f"From {snippet.file_name}:\n{snippet.content}\n")
        parts.append("\n")

    if context.sprint is not None:
        sprint = context.sprint
        parts.append("[CURRENT SPRINT STATE]\n")
        parts.append(f"Sprint: {sprint.sprint_id}\n\n")
        parts.append(f"Unfinished Tasks:\n{sprint.unfinished_tasks}\n\n")
        parts.append(f"Sprint Context:\n{sprint.narrative}\n\n")

    parts.append("[USER REQUEST]\n")
    parts.append(f"{context.user_request}\n")
    return "".join(parts)
