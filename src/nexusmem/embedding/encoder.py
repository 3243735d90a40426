"""Local ONNX embedding generation.

Runs a sentence-transformer exported to ONNX (all-MiniLM-L6-v2 by default)
through ONNX Runtime, with a HuggingFace ``tokenizers`` tokenizer, and pools
the token states into one unit-length vector per text.
"""

from __future__ import annotations

import logging
import platform
import sys
import threading
from pathlib import Path
from typing import Iterable, List, Protocol, Sequence

import numpy as np
import onnxruntime as ort
from tokenizers import Tokenizer

from nexusmem.errors import (
    AlreadyInitializedError,
    InferenceError,
    InitializationError,
    NotInitializedError,
    ShapeError,
    TokenizationError,
)

EMBEDDING_DIM = 384
HIDDEN_STATE_OUTPUT = "last_hidden_state"

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns text into a unit-length vector."""

    def embed(self, text: str) -> np.ndarray: ...


def detect_providers() -> list[str]:
    """Pick ONNX Runtime execution providers for this machine.

    Strategy:
        - NVIDIA GPU: CUDA, then CPU
        - AMD GPU: ROCm, then CPU
        - Apple Silicon: CoreML, then CPU
        - otherwise CPU only
    """
    try:
        available = ort.get_available_providers()
    except Exception as e:
        logger.warning(f"Failed to query ONNX providers: {e}, falling back to CPU")
        return ["CPUExecutionProvider"]

    if "CUDAExecutionProvider" in available:
        logger.info("Detected NVIDIA GPU with CUDA - using CUDA acceleration")
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]

    if "ROCMExecutionProvider" in available:
        logger.info("Detected AMD GPU with ROCm - using ROCm acceleration")
        return ["ROCMExecutionProvider", "CPUExecutionProvider"]

    if (
        sys.platform == "darwin"
        and platform.machine() == "arm64"
        and "CoreMLExecutionProvider" in available
    ):
        logger.info("Detected Apple Silicon - using CoreML")
        return ["CoreMLExecutionProvider", "CPUExecutionProvider"]

    logger.info(f"Using CPU execution on {sys.platform}")
    return ["CPUExecutionProvider"]


def mean_pool(hidden: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Attention-mask-weighted mean over the sequence axis of a ``[seq, dim]`` array."""
    mask = np.asarray(attention_mask, dtype="float32")
    pooled = (hidden * mask[:, None]).sum(axis=0, dtype="float32")
    count = float(mask.sum())
    if count > 0:
        pooled = pooled / count
    return pooled.astype("float32", copy=False)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm > 0:
        vector = vector / norm
    return vector.astype("float32", copy=False)


def _resolve_dimension(output, expected: int | None) -> int:
    """Hidden size declared by the model output, checked against ``expected``.

    Exports with a symbolic last axis fall back to ``expected``; when neither
    is known the model cannot be used to size a collection.
    """
    shape = getattr(output, "shape", None) or ()
    declared = shape[-1] if shape and isinstance(shape[-1], int) else None
    if declared is None:
        if expected is None:
            raise InitializationError(
                f"Cannot determine embedding dimension from output {output.name!r} (shape {shape})"
            )
        return expected
    if expected is not None and declared != expected:
        raise InitializationError(
            f"Model produces {declared}-dimensional embeddings, expected {expected}"
        )
    return declared


class EmbeddingGenerator:
    """ONNX Runtime session plus tokenizer for single-text embeddings."""

    def __init__(
        self,
        model_path: Path | str,
        tokenizer_path: Path | str,
        *,
        providers: Sequence[str] | None = None,
        intra_op_threads: int = 4,
        dimension: int | None = None,
    ) -> None:
        model_path = Path(model_path)
        tokenizer_path = Path(tokenizer_path)
        if not model_path.is_file():
            raise InitializationError(f"ONNX model not found: {model_path}")
        if not tokenizer_path.is_file():
            raise InitializationError(f"Tokenizer not found: {tokenizer_path}")

        options = ort.SessionOptions()
        options.intra_op_num_threads = intra_op_threads
        try:
            self._session = ort.InferenceSession(
                str(model_path),
                sess_options=options,
                providers=list(providers) if providers else detect_providers(),
            )
        except Exception as exc:
            raise InitializationError(f"Failed to load ONNX model from {model_path}: {exc}") from exc

        try:
            self._tokenizer = Tokenizer.from_file(str(tokenizer_path))
        except Exception as exc:
            raise InitializationError(
                f"Failed to load tokenizer from {tokenizer_path}: {exc}"
            ) from exc

        self._input_names = {item.name for item in self._session.get_inputs()}
        outputs = {item.name: item for item in self._session.get_outputs()}
        # Token states, or the first output for exports that rename it
        self._output_name = (
            HIDDEN_STATE_OUTPUT if HIDDEN_STATE_OUTPUT in outputs else next(iter(outputs))
        )
        self.dimension = _resolve_dimension(outputs[self._output_name], dimension)
        logger.info(
            "Loaded embedding model %s (dim=%d) | Providers: %s",
            model_path,
            self.dimension,
            ", ".join(self._session.get_providers()),
        )

    def _encode(self, text: str) -> tuple[np.ndarray, np.ndarray]:
        try:
            encoding = self._tokenizer.encode(text, add_special_tokens=True)
        except Exception as exc:
            raise TokenizationError(f"Failed to tokenize text: {exc}") from exc
        input_ids = np.asarray(encoding.ids, dtype="int64")
        attention_mask = np.asarray(encoding.attention_mask, dtype="int64")
        return input_ids, attention_mask

    def _run(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        feeds = {
            "input_ids": input_ids[None, :],
            "attention_mask": attention_mask[None, :],
            # Single-sentence inputs always use segment 0
            "token_type_ids": np.zeros((1, input_ids.shape[0]), dtype="int64"),
        }
        feeds = {name: value for name, value in feeds.items() if name in self._input_names}

        try:
            (hidden,) = self._session.run([self._output_name], feeds)
        except Exception as exc:
            raise InferenceError(f"Failed to run ONNX inference: {exc}") from exc
        return np.asarray(hidden, dtype="float32")

    def embed(self, text: str) -> np.ndarray:
        """Return a unit-length float32 embedding for ``text``."""
        input_ids, attention_mask = self._encode(text)
        hidden = self._run(input_ids, attention_mask)

        if hidden.ndim != 3:
            raise ShapeError(f"Expected 3D tensor, got {hidden.ndim}D")
        batch_size, seq_len, width = hidden.shape
        if batch_size != 1:
            raise ShapeError(f"Expected batch_size=1, got {batch_size}")
        if seq_len != attention_mask.shape[0]:
            raise ShapeError(
                f"Sequence length mismatch: embeddings={seq_len}, "
                f"attention_mask={attention_mask.shape[0]}"
            )
        if width != self.dimension:
            raise ShapeError(f"Expected hidden size {self.dimension}, got {width}")

        return l2_normalize(mean_pool(hidden[0], attention_mask))

    def embed_batch(self, texts: Iterable[str]) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


class EmbeddingService:
    """Process-wide embedding handle.

    Holds at most one :class:`EmbeddingGenerator` and serialises every request
    through one lock, so indexing and query-time retrieval never run inference
    concurrently.
    """

    def __init__(self, generator: EmbeddingGenerator | None = None) -> None:
        self._lock = threading.Lock()
        self._generator = generator

    @property
    def is_initialized(self) -> bool:
        return self._generator is not None

    @property
    def dimension(self) -> int:
        """Width of the loaded model's vectors; the default D before initialization."""
        generator = self._generator
        return generator.dimension if generator is not None else EMBEDDING_DIM

    def initialize(self, model_path: Path | str, tokenizer_path: Path | str, **kwargs) -> None:
        with self._lock:
            if self._generator is not None:
                raise AlreadyInitializedError("Embedding generator already initialized")
            self._generator = EmbeddingGenerator(model_path, tokenizer_path, **kwargs)

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            if self._generator is None:
                raise NotInitializedError(
                    "Embedding generator not initialized. Call initialize() first."
                )
            return self._generator.embed(text)

    def embed_batch(self, texts: Iterable[str]) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


_default_service: EmbeddingService | None = None
_default_lock = threading.Lock()


def get_default_service() -> EmbeddingService:
    """Return the lazily created process-wide service."""
    global _default_service
    with _default_lock:
        if _default_service is None:
            _default_service = EmbeddingService()
        return _default_service


def initialize_embeddings(model_path: Path | str, tokenizer_path: Path | str, **kwargs) -> None:
    get_default_service().initialize(model_path, tokenizer_path, **kwargs)


def generate_embedding(text: str) -> np.ndarray:
    return get_default_service().embed(text)


def is_initialized() -> bool:
    return get_default_service().is_initialized
