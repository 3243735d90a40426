"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from nexusmem.utils.files import DEFAULT_EXTENSIONS

DEFAULT_QDRANT_URL = "http://localhost:6333"
DEFAULT_COLLECTION = "nexus_brain"
ARCHITECTURE_FILENAME = "04-Architecture.md"


def _get_default_model_dir() -> Path:
    """Get the default directory holding the ONNX model and tokenizer."""
    # Explicit override wins
    env_dir = os.environ.get("NEXUSMEM_MODEL_DIR")
    if env_dir:
        return Path(env_dir)

    # When running from a checkout, prefer a local models/ directory
    local_dir = Path("models")
    if local_dir.exists():
        return local_dir

    return Path.home() / ".cache" / "nexusmem" / "models"


@dataclass(slots=True)
class AppConfig:
    qdrant_url: str = DEFAULT_QDRANT_URL
    collection_name: str = DEFAULT_COLLECTION
    model_path: Path | None = None
    tokenizer_path: Path | None = None
    chunk_chars: int = 1000
    overlap: int = 100
    debounce_seconds: float = 5.0
    top_k: int = 3
    relevance_threshold: float = 0.75
    watched_extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    architecture_filename: str = ARCHITECTURE_FILENAME

    def __post_init__(self) -> None:
        if self.model_path is None:
            self.model_path = _get_default_model_dir() / "model.onnx"
        if self.tokenizer_path is None:
            self.tokenizer_path = _get_default_model_dir() / "tokenizer.json"

    def resolve_model_paths(self, base_dir: Path | None = None) -> tuple[Path, Path]:
        """Return (model_path, tokenizer_path), resolving relative paths against base_dir."""
        return (
            self._resolve(Path(self.model_path), base_dir),
            self._resolve(Path(self.tokenizer_path), base_dir),
        )

    @staticmethod
    def _resolve(path: Path, base_dir: Path | None) -> Path:
        if path.is_absolute() or base_dir is None:
            return path
        return base_dir / path
