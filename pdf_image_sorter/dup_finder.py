"""Hash + size index used to drop repeated images within a single run.

PDFs often embed the same logo or background on every page, and a batch of
related PDFs repeats the same figures. The index maps a content digest to
every ``(path, size)`` pair seen with it; a candidate only counts as a
duplicate when both the digest and the byte size match an earlier entry.
The digest is a pre-screen, not a security check.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, List, Tuple


HASH_CHUNK_SIZE = 1 << 16

Entry = Tuple[Path, int]


class HashError(OSError):
    """Raised when a file cannot be read for hashing."""


def compute_hash(path: Path) -> str:
    digest = hashlib.sha1()
    try:
        with Path(path).open("rb") as stream:
            for chunk in iter(lambda: stream.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as exc:
        raise HashError(exc.errno, f"Cannot hash {path}: {exc.strerror or exc}") from exc
    return digest.hexdigest()


class DupFinder:
    """Grow-only mapping of digest -> ordered ``(path, size)`` entries.

    Not thread-safe; callers serialise access.
    """

    def __init__(self) -> None:
        self._files: Dict[str, List[Entry]] = {}

    def __len__(self) -> int:
        return len(self._files)

    def contains(self, file_hash: str, path: Path) -> bool:
        bucket = self._files.get(file_hash)
        if not bucket:
            return False
        size = Path(path).stat().st_size
        return any(entry_size == size for _, entry_size in bucket)

    def add(self, file_hash: str, path: Path) -> None:
        path = Path(path)
        self._files.setdefault(file_hash, []).append((path, path.stat().st_size))

    def entries(self, file_hash: str) -> List[Entry]:
        return list(self._files.get(file_hash, []))
