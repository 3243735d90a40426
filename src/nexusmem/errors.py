"""Exception hierarchy shared by the indexing and retrieval pipeline."""

from __future__ import annotations


class NexusMemoryError(RuntimeError):
    """Base class for all nexusmem failures."""


class EmbeddingError(NexusMemoryError):
    """Raised when the local embedding model cannot produce a vector."""


class InitializationError(EmbeddingError):
    """The ONNX model or tokenizer could not be loaded."""


class AlreadyInitializedError(EmbeddingError):
    """The embedding service was initialized twice."""


class NotInitializedError(EmbeddingError):
    """An embedding was requested before the service was initialized."""


class TokenizationError(EmbeddingError):
    pass


class InferenceError(EmbeddingError):
    pass


class ShapeError(EmbeddingError):
    """The model returned a tensor with an unexpected shape."""


class StoreError(NexusMemoryError):
    """Base class for vector store failures."""


class StoreConnectionError(StoreError):
    """The vector store could not be reached."""


class StoreOperationError(StoreError):
    """The vector store rejected a request."""


class FileReadError(NexusMemoryError):
    """A watched file could not be read."""

    def __init__(self, path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class EncodingError(FileReadError):
    """A watched file is not valid UTF-8 text."""


class WatchSetupError(NexusMemoryError):
    """Filesystem notifications could not be established."""


class SchedulingError(NexusMemoryError):
    """Background work could not be scheduled at all."""
