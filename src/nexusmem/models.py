"""Core nexusmem data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np


class Layer(str, Enum):
    """Content category of an indexed file, used for search filtering."""

    GLOBAL_STANDARD = "GlobalStandard"
    PROJECT_ARCHITECTURE = "ProjectArchitecture"
    SOURCE_CODE = "SourceCode"
    SPRINT_MEMORY = "SprintMemory"


ARCHITECTURE_LAYERS = (Layer.PROJECT_ARCHITECTURE, Layer.GLOBAL_STANDARD)


@dataclass(frozen=True, slots=True, eq=False)
class Embedding:
    """Result of embedding a query.

    An unavailable embedding carries no vector at all, so it can never be
    mistaken for a genuine low-similarity query.
    """

    vector: Optional[np.ndarray] = None

    @property
    def available(self) -> bool:
        return self.vector is not None

    @classmethod
    def of(cls, vector: np.ndarray) -> "Embedding":
        return cls(vector=np.asarray(vector, dtype="float32"))

    @classmethod
    def unavailable(cls) -> "Embedding":
        return cls(vector=None)


@dataclass(slots=True)
class TextChunk:
    """Contiguous slice ``text == document[start:end]`` of a document."""

    source_path: Optional[Path]
    index: int
    text: str
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class PointMetadata:
    """Payload stored alongside every vector."""

    project_id: str
    file_path: str
    layer: Layer
    machine_id: str
    chunk_index: int
    file_type: Optional[str] = None
    content: str = ""
    char_start: int = 0
    char_end: int = 0
    indexed_at: str = field(default_factory=_utc_now)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "project_id": self.project_id,
            "file_path": self.file_path,
            "layer": self.layer.value,
            "machine_id": self.machine_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "indexed_at": self.indexed_at,
        }
        if self.file_type is not None:
            payload["file_type"] = self.file_type
        return payload


@dataclass(slots=True)
class IndexedPoint:
    id: int
    vector: np.ndarray
    metadata: PointMetadata


@dataclass(slots=True)
class ArchitectureSnippet:
    """One search hit returned for context assembly."""

    score: float
    file_path: str
    content: str
    file_type: Optional[str] = None
    chunk_index: Optional[int] = None
    project_id: Optional[str] = None

    @property
    def file_name(self) -> str:
        return Path(self.file_path).name or self.file_path

    @classmethod
    def from_hit(cls, hit: Dict[str, Any]) -> "ArchitectureSnippet":
        payload = hit.get("payload") or {}
        chunk_index = payload.get("chunk_index")
        return cls(
            score=float(hit["score"]),
            file_path=str(payload.get("file_path", "unknown")),
            content=str(payload.get("content", "")),
            file_type=payload.get("file_type"),
            chunk_index=int(chunk_index) if chunk_index is not None else None,
            project_id=payload.get("project_id"),
        )


@dataclass(slots=True)
class SprintState:
    sprint_id: str
    unfinished_tasks: str
    narrative: str


@dataclass(slots=True)
class AssembledContext:
    """Everything needed to render one prompt context block."""

    user_request: str
    snippets: List[ArchitectureSnippet] = field(default_factory=list)
    sprint: Optional[SprintState] = None

    def is_empty(self) -> bool:
        return not self.snippets and self.sprint is None
