"""File indexing pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from nexusmem.embedding.encoder import Embedder
from nexusmem.index.storage import QdrantVectorStore
from nexusmem.models import IndexedPoint, PointMetadata
from nexusmem.utils.files import (
    DEFAULT_EXTENSIONS,
    classify_layer,
    file_type,
    get_machine_id,
    iter_indexable_paths,
    point_id,
    read_text_file,
)
from nexusmem.utils.text import chunk_text

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    chunks: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def record(self, path: Path, chunk_count: int | None) -> None:
        """Record one file; ``None`` marks a failure, 0 an empty file."""
        if chunk_count is None:
            self.failed += 1
        elif chunk_count == 0:
            self.skipped += 1
        else:
            self.indexed += 1
            self.chunks += chunk_count
        self.processed_files.append(path)


class Indexer:
    """Chunks, embeds and upserts files into the vector store."""

    def __init__(
        self,
        embedder: Embedder,
        store: QdrantVectorStore,
        *,
        chunk_chars: int = 1000,
        overlap: int = 100,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self.extensions = tuple(extensions)
        self._machine_id = get_machine_id()

    def index_file(self, path: Path, project_id: str) -> int:
        """Index a single file and return the number of chunks written.

        Raises FileReadError/EncodingError if the file is not UTF-8 text and
        store/embedding errors if a chunk cannot be written. Re-indexing the same
        file overwrites its points because ids depend only on (path, chunk index).
        """
        path = Path(path).absolute()
        content = read_text_file(path)
        if not content.strip():
            LOGGER.warning("No text in %s", path)
            return 0

        self.store.ensure_collection()

        layer = classify_layer(path)
        suffix = file_type(path)
        chunks = chunk_text(
            content, max_chars=self.chunk_chars, overlap=self.overlap, source_path=path
        )
        for chunk in chunks:
            vector = self.embedder.embed(chunk.text)
            metadata = PointMetadata(
                project_id=project_id,
                file_path=str(path),
                layer=layer,
                machine_id=self._machine_id,
                chunk_index=chunk.index,
                file_type=suffix,
                content=chunk.text,
                char_start=chunk.start,
                char_end=chunk.end,
            )
            self.store.upsert(
                IndexedPoint(id=point_id(path, chunk.index), vector=vector, metadata=metadata)
            )

        LOGGER.info("Indexed %d chunks from %s (layer: %s)", len(chunks), path, layer.value)
        return len(chunks)

    def index(self, paths: Sequence[Path], project_id: str) -> IndexStats:
        """Index all allow-listed files found under the given paths."""
        files = list(iter_indexable_paths(paths, self.extensions))
        stats = IndexStats()
        if not files:
            LOGGER.warning("No indexable files found")
            return stats

        for path in files:
            try:
                LOGGER.debug(f"Processing: {path}")
                stats.record(path, self.index_file(path, project_id))
            except Exception as e:
                LOGGER.error(f"Failed to index {path}: {e}")
                stats.record(path, None)

        return stats

    def index_roots(self, project_id: str, roots: Sequence[Path]) -> IndexStats:
        """Full re-index of every existing root of a project."""
        existing = [root for root in roots if Path(root).exists()]
        LOGGER.info("Re-indexing project %s (%d roots)", project_id, len(existing))
        return self.index(existing, project_id)
