"""Utility helpers for working with watched files."""

from __future__ import annotations

import hashlib
import socket
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from nexusmem.errors import EncodingError, FileReadError
from nexusmem.models import Layer

DEFAULT_EXTENSIONS: tuple[str, ...] = ("rs", "toml", "md", "txt", "json", "yaml", "yml", "py")

IGNORED_DIRS = frozenset({".git", "node_modules", "target", "__pycache__", ".venv", "venv"})


def has_watched_extension(path: Path, extensions: Sequence[str] = DEFAULT_EXTENSIONS) -> bool:
    """Return True if the file suffix (without dot, case-sensitive) is allow-listed."""
    suffix = path.suffix[1:]
    return bool(suffix) and suffix in extensions


def iter_indexable_paths(
    inputs: Iterable[Path], extensions: Sequence[str] = DEFAULT_EXTENSIONS
) -> Iterator[Path]:
    """Yield allow-listed files from input paths, descending into directories."""
    for item in inputs:
        if item.is_dir():
            for child in sorted(item.rglob("*")):
                if IGNORED_DIRS.intersection(child.relative_to(item).parts):
                    continue
                if child.is_file() and has_watched_extension(child, extensions):
                    yield child
        elif item.is_file() and has_watched_extension(item, extensions):
            yield item


def point_id(path: Path | str, chunk_index: int) -> int:
    """Deterministic unsigned 64-bit id for a chunk of a file."""
    absolute = Path(path).absolute()
    digest = hashlib.sha256(f"{absolute}\0{chunk_index}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def classify_layer(path: Path) -> Layer:
    """Classify a file into a layer based on where it lives.

    - ``01-PLANNING/`` → ProjectArchitecture
    - ``00-MANAGEMENT/sprints/`` → SprintMemory
    - ``src/``, ``tests/``, ``.rs``/``.toml``/``.py`` files → SourceCode
    - ``global-standards/`` → GlobalStandard
    - anything else → SourceCode
    """
    parts = path.parts
    if "01-PLANNING" in parts:
        return Layer.PROJECT_ARCHITECTURE

    for first, second in zip(parts, parts[1:]):
        if first == "00-MANAGEMENT" and second == "sprints":
            return Layer.SPRINT_MEMORY

    if "src" in parts or "tests" in parts or path.suffix in (".rs", ".toml", ".py"):
        return Layer.SOURCE_CODE

    if "global-standards" in parts:
        return Layer.GLOBAL_STANDARD

    return Layer.SOURCE_CODE


def file_type(path: Path) -> str | None:
    return path.suffix[1:] or None


def get_machine_id() -> str:
    """Hostname of the machine doing the indexing."""
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


def read_text_file(path: Path) -> str:
    """Read a file as UTF-8 text, mapping failures to FileReadError/EncodingError.

    Line endings are kept as stored so chunk offsets match the file on disk.
    """
    try:
        with path.open(encoding="utf-8", newline="") as fh:
            return fh.read()
    except UnicodeDecodeError as exc:
        raise EncodingError(path, f"not valid UTF-8 ({exc.reason})") from exc
    except OSError as exc:
        raise FileReadError(path, str(exc)) from exc
