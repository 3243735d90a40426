"""Tests for the ONNX embedding generator and service."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Sequence
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from nexusmem.embedding import encoder
from nexusmem.embedding.encoder import (
    EMBEDDING_DIM,
    EmbeddingGenerator,
    EmbeddingService,
    detect_providers,
    l2_normalize,
    mean_pool,
)
from nexusmem.errors import (
    AlreadyInitializedError,
    InferenceError,
    InitializationError,
    NotInitializedError,
    ShapeError,
    TokenizationError,
)
from nexusmem.index.indexer import Indexer
from nexusmem.index.storage import QdrantVectorStore

ALL_INPUTS = ("input_ids", "attention_mask", "token_type_ids")


def _hidden_states_of(width: int) -> Callable[[dict], np.ndarray]:
    """Deterministic fake transformer output of shape [1, seq, width]."""

    def hidden(feeds: dict) -> np.ndarray:
        ids = feeds["input_ids"][0].astype("float32")
        return np.sin(np.outer(ids, np.arange(1, width + 1, dtype="float32")))[None, :, :]

    return hidden


_hidden_states = _hidden_states_of(EMBEDDING_DIM)


class FakeSession:
    def __init__(
        self,
        hidden_fn: Callable[[dict], np.ndarray] = _hidden_states,
        inputs: Sequence[str] = ALL_INPUTS,
        outputs: Sequence[str] = ("last_hidden_state", "pooler_output"),
        output_shape: Sequence[object] = ("batch", "sequence", EMBEDDING_DIM),
    ) -> None:
        self.hidden_fn = hidden_fn
        self._inputs = inputs
        self._outputs = outputs
        self._output_shape = list(output_shape)
        self.calls: list[tuple[list[str], dict]] = []

    def get_inputs(self):
        return [SimpleNamespace(name=name) for name in self._inputs]

    def get_outputs(self):
        return [SimpleNamespace(name=name, shape=self._output_shape) for name in self._outputs]

    def get_providers(self):
        return ["CPUExecutionProvider"]

    def run(self, output_names, feeds):
        self.calls.append((output_names, feeds))
        return [self.hidden_fn(feeds)]


class FakeTokenizer:
    def __init__(self, mask_value: int = 1, error: Exception | None = None) -> None:
        self.mask_value = mask_value
        self.error = error

    def encode(self, text: str, add_special_tokens: bool = True):
        if self.error is not None:
            raise self.error
        ids = [101] + [ord(c) % 1000 for c in text] + [102]
        return SimpleNamespace(ids=ids, attention_mask=[self.mask_value] * len(ids))


@pytest.fixture
def artifacts(tmp_path: Path) -> tuple[Path, Path]:
    model = tmp_path / "model.onnx"
    tokenizer = tmp_path / "tokenizer.json"
    model.write_bytes(b"onnx")
    tokenizer.write_text("{}")
    return model, tokenizer


def _make_generator(
    artifacts: tuple[Path, Path],
    session: FakeSession | None = None,
    tokenizer: FakeTokenizer | None = None,
    **kwargs,
) -> EmbeddingGenerator:
    session = session or FakeSession()
    tokenizer = tokenizer or FakeTokenizer()
    with patch.object(encoder, "ort") as mock_ort, patch.object(encoder, "Tokenizer") as mock_tok:
        mock_ort.InferenceSession.return_value = session
        mock_tok.from_file.return_value = tokenizer
        return EmbeddingGenerator(*artifacts, providers=["CPUExecutionProvider"], **kwargs)


class TestPooling:
    """Test pooling helpers."""

    def test_mean_pool_respects_mask(self) -> None:
        hidden = np.array([[1.0, 2.0], [3.0, 4.0], [100.0, 100.0]], dtype="float32")
        mask = np.array([1, 1, 0])

        np.testing.assert_allclose(mean_pool(hidden, mask), [2.0, 3.0])

    def test_mean_pool_empty_mask_keeps_zero(self) -> None:
        hidden = np.ones((3, 4), dtype="float32")

        pooled = mean_pool(hidden, np.zeros(3))

        assert not pooled.any()

    def test_l2_normalize(self) -> None:
        np.testing.assert_allclose(l2_normalize(np.array([3.0, 4.0])), [0.6, 0.8])

    def test_l2_normalize_zero_vector(self) -> None:
        result = l2_normalize(np.zeros(4, dtype="float32"))

        assert not result.any()
        assert not np.isnan(result).any()


class TestEmbeddingGeneratorInit:
    """Test artifact loading failures."""

    def test_missing_model(self, tmp_path: Path) -> None:
        tokenizer = tmp_path / "tokenizer.json"
        tokenizer.write_text("{}")

        with pytest.raises(InitializationError, match="ONNX model not found"):
            EmbeddingGenerator(tmp_path / "missing.onnx", tokenizer)

    def test_missing_tokenizer(self, tmp_path: Path) -> None:
        model = tmp_path / "model.onnx"
        model.write_bytes(b"onnx")

        with pytest.raises(InitializationError, match="Tokenizer not found"):
            EmbeddingGenerator(model, tmp_path / "missing.json")

    def test_malformed_model(self, artifacts: tuple[Path, Path]) -> None:
        with patch.object(encoder, "ort") as mock_ort:
            mock_ort.InferenceSession.side_effect = RuntimeError("bad protobuf")

            with pytest.raises(InitializationError, match="bad protobuf"):
                EmbeddingGenerator(*artifacts, providers=["CPUExecutionProvider"])

    def test_malformed_tokenizer(self, artifacts: tuple[Path, Path]) -> None:
        with patch.object(encoder, "ort") as mock_ort, patch.object(encoder, "Tokenizer") as mock_tok:
            mock_ort.InferenceSession.return_value = FakeSession()
            mock_tok.from_file.side_effect = Exception("expected value at line 1")

            with pytest.raises(InitializationError, match="tokenizer"):
                EmbeddingGenerator(*artifacts, providers=["CPUExecutionProvider"])


class TestEmbeddingGenerator:
    """Test embedding generation with a fake ONNX session."""

    def test_embed_shape_and_dtype(self, artifacts: tuple[Path, Path]) -> None:
        generator = _make_generator(artifacts)

        vector = generator.embed("How do I implement user authentication?")

        assert vector.shape == (EMBEDDING_DIM,)
        assert vector.dtype == np.float32

    @pytest.mark.parametrize(
        "text",
        ["", "a", "What is the architecture for the database layer?", "x" * 300],
    )
    def test_embed_unit_norm(self, artifacts: tuple[Path, Path], text: str) -> None:
        generator = _make_generator(artifacts)

        vector = generator.embed(text)

        assert abs(float(np.linalg.norm(vector)) - 1.0) < 1e-5

    def test_zero_mask_gives_zero_vector(self, artifacts: tuple[Path, Path]) -> None:
        generator = _make_generator(artifacts, tokenizer=FakeTokenizer(mask_value=0))

        vector = generator.embed("ignored")

        assert not vector.any()

    def test_feeds_int64_inputs(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession()
        generator = _make_generator(artifacts, session=session)

        generator.embed("abc")

        output_names, feeds = session.calls[0]
        assert output_names == ["last_hidden_state"]
        assert set(feeds) == set(ALL_INPUTS)
        assert feeds["input_ids"].shape == (1, 5)
        assert feeds["input_ids"].dtype == np.int64
        assert not feeds["token_type_ids"].any()
        assert feeds["attention_mask"].tolist() == [[1, 1, 1, 1, 1]]

    def test_only_declared_inputs(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(inputs=("input_ids", "attention_mask"))
        generator = _make_generator(artifacts, session=session)

        generator.embed("abc")

        assert "token_type_ids" not in session.calls[0][1]

    def test_first_output_when_no_hidden_state_name(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(outputs=("token_embeddings",))
        generator = _make_generator(artifacts, session=session)

        generator.embed("abc")

        assert session.calls[0][0] == ["token_embeddings"]

    def test_deterministic(self, artifacts: tuple[Path, Path]) -> None:
        generator = _make_generator(artifacts)

        np.testing.assert_array_equal(generator.embed("same"), generator.embed("same"))

    def test_embed_batch_matches_embed(self, artifacts: tuple[Path, Path]) -> None:
        generator = _make_generator(artifacts)
        texts = ["Hello world", "Test document", "Another example"]

        batch = generator.embed_batch(texts)

        assert len(batch) == 3
        for text, vector in zip(texts, batch):
            np.testing.assert_array_equal(vector, generator.embed(text))

    def test_rank_error(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(hidden_fn=lambda feeds: np.ones((1, EMBEDDING_DIM), dtype="float32"))
        generator = _make_generator(artifacts, session=session)

        with pytest.raises(ShapeError, match="3D"):
            generator.embed("abc")

    def test_batch_size_error(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(hidden_fn=lambda feeds: np.ones((2, 5, EMBEDDING_DIM), dtype="float32"))
        generator = _make_generator(artifacts, session=session)

        with pytest.raises(ShapeError, match="batch_size"):
            generator.embed("abc")

    def test_sequence_length_mismatch(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(hidden_fn=lambda feeds: np.ones((1, 2, EMBEDDING_DIM), dtype="float32"))
        generator = _make_generator(artifacts, session=session)

        with pytest.raises(ShapeError, match="mismatch"):
            generator.embed("abc")

    def test_tokenization_error(self, artifacts: tuple[Path, Path]) -> None:
        generator = _make_generator(artifacts, tokenizer=FakeTokenizer(error=Exception("boom")))

        with pytest.raises(TokenizationError):
            generator.embed("abc")

    def test_inference_error(self, artifacts: tuple[Path, Path]) -> None:
        def explode(feeds: dict) -> np.ndarray:
            raise RuntimeError("ORT failure")

        generator = _make_generator(artifacts, session=FakeSession(hidden_fn=explode))

        with pytest.raises(InferenceError, match="ORT failure"):
            generator.embed("abc")


class TestEmbeddingDimension:
    """Test that the vector width comes from the loaded model."""

    def test_declared_width(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(
            hidden_fn=_hidden_states_of(768), output_shape=("batch", "sequence", 768)
        )
        generator = _make_generator(artifacts, session=session)

        assert generator.dimension == 768
        assert generator.embed("abc").shape == (768,)

    def test_conflicting_width(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(output_shape=("batch", "sequence", 768))

        with pytest.raises(InitializationError, match="768"):
            _make_generator(artifacts, session=session, dimension=EMBEDDING_DIM)

    def test_symbolic_width_uses_expected(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(output_shape=("batch", "sequence", "hidden"))

        generator = _make_generator(artifacts, session=session, dimension=EMBEDDING_DIM)

        assert generator.dimension == EMBEDDING_DIM

    def test_undeterminable_width(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(output_shape=("batch", "sequence", "hidden"))

        with pytest.raises(InitializationError, match="Cannot determine"):
            _make_generator(artifacts, session=session)

    def test_runtime_width_mismatch(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(hidden_fn=_hidden_states_of(768))
        generator = _make_generator(artifacts, session=session)

        with pytest.raises(ShapeError, match="hidden size"):
            generator.embed("abc")

    def test_service_sizes_store_from_model(self, artifacts: tuple[Path, Path]) -> None:
        session = FakeSession(
            hidden_fn=_hidden_states_of(768), output_shape=("batch", "sequence", 768)
        )
        service = EmbeddingService()
        assert service.dimension == EMBEDDING_DIM

        with patch.object(encoder, "ort") as mock_ort, patch.object(encoder, "Tokenizer") as mock_tok:
            mock_ort.InferenceSession.return_value = session
            mock_tok.from_file.return_value = FakeTokenizer()
            service.initialize(*artifacts, providers=["CPUExecutionProvider"])

        store = QdrantVectorStore(":memory:", collection_name="wide", dimension=service.dimension)
        doc = artifacts[0].parent / "notes.md"
        doc.write_text("Wide model notes")

        stats = Indexer(service, store).index([doc], "p")

        assert service.dimension == 768
        assert stats.indexed == 1
        assert stats.failed == 0
        assert store.count("p") == 1
        store.close()


class TestEmbeddingService:
    """Test the locked service handle."""

    def test_not_initialized(self) -> None:
        service = EmbeddingService()

        assert not service.is_initialized
        with pytest.raises(NotInitializedError):
            service.embed("text")

    def test_initialize_once(self, artifacts: tuple[Path, Path]) -> None:
        service = EmbeddingService()
        with patch.object(encoder, "EmbeddingGenerator") as mock_generator:
            service.initialize(*artifacts)
            assert service.is_initialized
            with pytest.raises(AlreadyInitializedError):
                service.initialize(*artifacts)

        mock_generator.assert_called_once_with(*artifacts)

    def test_failed_initialize_leaves_uninitialized(self, tmp_path: Path) -> None:
        service = EmbeddingService()

        with pytest.raises(InitializationError):
            service.initialize(tmp_path / "missing.onnx", tmp_path / "missing.json")

        assert not service.is_initialized

    def test_embed_delegates(self) -> None:
        generator = MagicMock()
        generator.embed.return_value = np.ones(EMBEDDING_DIM, dtype="float32")
        generator.dimension = EMBEDDING_DIM
        service = EmbeddingService(generator)

        result = service.embed("hello")

        generator.embed.assert_called_once_with("hello")
        assert result.shape == (EMBEDDING_DIM,)
        assert service.dimension == EMBEDDING_DIM

    def test_requests_are_serialized(self) -> None:
        active = 0
        peak = 0
        counter_lock = threading.Lock()

        def slow_embed(text: str) -> np.ndarray:
            nonlocal active, peak
            with counter_lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with counter_lock:
                active -= 1
            return np.ones(EMBEDDING_DIM, dtype="float32")

        generator = MagicMock()
        generator.embed.side_effect = slow_embed
        service = EmbeddingService(generator)

        threads = [threading.Thread(target=service.embed, args=(f"t{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert generator.embed.call_count == 8
        assert peak == 1


class TestDefaultService:
    """Test module-level convenience functions."""

    @pytest.fixture(autouse=True)
    def fresh_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(encoder, "_default_service", None)

    def test_generate_before_initialize(self) -> None:
        assert not encoder.is_initialized()
        with pytest.raises(NotInitializedError):
            encoder.generate_embedding("text")

    def test_initialize_and_generate(self, artifacts: tuple[Path, Path]) -> None:
        generator = MagicMock()
        generator.embed.return_value = np.ones(EMBEDDING_DIM, dtype="float32")
        with patch.object(encoder, "EmbeddingGenerator", return_value=generator):
            encoder.initialize_embeddings(*artifacts)
            with pytest.raises(AlreadyInitializedError):
                encoder.initialize_embeddings(*artifacts)

        assert encoder.is_initialized()
        assert encoder.generate_embedding("text").shape == (EMBEDDING_DIM,)
        assert encoder.get_default_service() is encoder.get_default_service()


class TestDetectProviders:
    """Test execution provider detection."""

    def test_cuda(self) -> None:
        with patch.object(
            encoder.ort,
            "get_available_providers",
            return_value=["CUDAExecutionProvider", "CPUExecutionProvider"],
        ):
            assert detect_providers() == ["CUDAExecutionProvider", "CPUExecutionProvider"]

    def test_rocm(self) -> None:
        with patch.object(
            encoder.ort,
            "get_available_providers",
            return_value=["ROCMExecutionProvider", "CPUExecutionProvider"],
        ):
            assert detect_providers()[0] == "ROCMExecutionProvider"

    def test_apple_silicon(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "darwin")
        monkeypatch.setattr(encoder.platform, "machine", lambda: "arm64")
        with patch.object(
            encoder.ort,
            "get_available_providers",
            return_value=["CoreMLExecutionProvider", "CPUExecutionProvider"],
        ):
            assert detect_providers() == ["CoreMLExecutionProvider", "CPUExecutionProvider"]

    def test_cpu_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        with patch.object(
            encoder.ort, "get_available_providers", return_value=["CPUExecutionProvider"]
        ):
            assert detect_providers() == ["CPUExecutionProvider"]

    def test_query_failure_falls_back_to_cpu(self) -> None:
        with patch.object(
            encoder.ort, "get_available_providers", side_effect=RuntimeError("no runtime")
        ):
            assert detect_providers() == ["CPUExecutionProvider"]
