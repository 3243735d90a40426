"""Qdrant vector store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Sequence

import numpy as np
from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from nexusmem.errors import StoreConnectionError, StoreOperationError
from nexusmem.models import IndexedPoint

LOGGER = logging.getLogger(__name__)

KEYWORD_FIELDS = ("project_id", "layer", "machine_id")

FilterValue = Any


def build_filter(filters: Mapping[str, FilterValue] | None) -> models.Filter | None:
    """AND together one condition per payload field.

    Scalars match by equality, lists/tuples/sets match any of their values.
    """
    if not filters:
        return None
    must: List[models.Condition] = []
    for key, value in filters.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            match: Any = models.MatchAny(any=[_plain(v) for v in value])
        else:
            match = models.MatchValue(value=_plain(value))
        must.append(models.FieldCondition(key=key, match=match))
    return models.Filter(must=must)


def _plain(value: Any) -> Any:
    # Enums (Layer) are stored by value
    return getattr(value, "value", value)


class QdrantVectorStore:
    """Persistence layer for chunk embeddings backed by a Qdrant collection."""

    def __init__(
        self,
        client: QdrantClient | str,
        *,
        collection_name: str = "nexus_brain",
        dimension: int = 384,
    ) -> None:
        if isinstance(client, str):
            client = (
                QdrantClient(location=":memory:") if client == ":memory:" else QdrantClient(url=client)
            )
        self._client = client
        self.collection_name = collection_name
        self.dimension = dimension
        self._collection_ready = False

    def close(self) -> None:
        self._client.close()

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except ResponseHandlingException as exc:
            raise StoreConnectionError(f"Failed to {action}: {exc.source}") from exc
        except UnexpectedResponse as exc:
            raise StoreOperationError(f"Failed to {action}: {exc}") from exc
        except (ConnectionError, TimeoutError) as exc:
            raise StoreConnectionError(f"Failed to {action}: {exc}") from exc
        except ValueError as exc:
            raise StoreOperationError(f"Failed to {action}: {exc}") from exc

    def collection_exists(self) -> bool:
        with self._translate_errors("check if collection exists"):
            return self._client.collection_exists(self.collection_name)

    def ensure_collection(self) -> None:
        """Create the collection and its keyword indexes if missing."""
        if self._collection_ready:
            return
        if not self.collection_exists():
            with self._translate_errors("create collection"):
                self._client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=models.VectorParams(
                        size=self.dimension,
                        distance=models.Distance.COSINE,
                        on_disk=True,
                    ),
                    on_disk_payload=True,
                )
                for field_name in KEYWORD_FIELDS:
                    self._client.create_payload_index(
                        collection_name=self.collection_name,
                        field_name=field_name,
                        field_schema=models.PayloadSchemaType.KEYWORD,
                    )
            LOGGER.info("Created collection %s (dim=%d)", self.collection_name, self.dimension)
        self._collection_ready = True

    def upsert(self, point: IndexedPoint) -> None:
        vector = np.asarray(point.vector, dtype="float32")
        if vector.shape != (self.dimension,):
            raise StoreOperationError(
                f"Vector size mismatch: expected {self.dimension}, got {vector.shape[-1]}"
            )
        with self._translate_errors("upsert point"):
            self._client.upsert(
                collection_name=self.collection_name,
                points=[
                    models.PointStruct(
                        id=point.id,
                        vector=vector.tolist(),
                        payload=point.metadata.to_payload(),
                    )
                ],
            )

    def search(
        self,
        embedding: np.ndarray,
        *,
        limit: int = 10,
        filters: Mapping[str, FilterValue] | None = None,
    ) -> List[Dict[str, Any]]:
        """Nearest neighbours by cosine similarity, best first."""
        query = np.asarray(embedding, dtype="float32").tolist()
        with self._translate_errors("search points"):
            response = self._client.query_points(
                collection_name=self.collection_name,
                query=query,
                limit=limit,
                query_filter=build_filter(filters),
                with_payload=True,
            )
        return [
            {"id": point.id, "score": float(point.score), "payload": point.payload or {}}
            for point in response.points
        ]

    def count(self, project_id: str | None = None) -> int:
        filters = {"project_id": project_id} if project_id else None
        with self._translate_errors("count points"):
            return self._client.count(
                collection_name=self.collection_name,
                count_filter=build_filter(filters),
                exact=True,
            ).count

    def _iter_project_points(self, project_id: str) -> Iterator[models.Record]:
        offset = None
        while True:
            with self._translate_errors("scroll points"):
                records, offset = self._client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=build_filter({"project_id": project_id}),
                    limit=256,
                    offset=offset,
                    with_payload=["file_path"],
                    with_vectors=False,
                )
            yield from records
            if offset is None:
                break

    def delete_points(self, ids: Sequence[int]) -> None:
        if not ids:
            return
        with self._translate_errors("delete points"):
            self._client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=list(ids)),
            )

    def remove_missing_files(self, project_id: str) -> int:
        """Remove points whose source file no longer exists. Returns the number of files."""
        if not self.collection_exists():
            return 0
        missing_files: set[str] = set()
        stale_ids: List[int] = []
        for record in self._iter_project_points(project_id):
            file_path = (record.payload or {}).get("file_path")
            if file_path and not Path(file_path).exists():
                missing_files.add(file_path)
                stale_ids.append(record.id)
        self.delete_points(stale_ids)
        return len(missing_files)
