"""Content digests used for change detection.

The same digest is applied to tool source, memory-block values and
individual folder files so that a value read back from the server can be
compared with one computed locally.
"""

from __future__ import annotations

import hashlib
from pathlib import Path


def content_hash(content: bytes | str) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_files(base: Path, rel_paths: list[str]) -> dict[str, str]:
    """Digest each file under `base`, keyed by its relative path."""

    return {rel: file_hash(base / rel) for rel in rel_paths}
