"""Fingerprints and content hashes for staleness checks.

This module handles:
- Deterministic input fingerprints over canonical JSON
- Streaming file hashes
- Tree hashes of directory artifacts (symlinks are hashed, never followed)
- Block usage estimates used for image capacity checks

An artifact is reused only when the fingerprint recorded in its marker
equals the fingerprint of the current inputs.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

# Bump when the fingerprint input format changes
FINGERPRINT_SCHEMA_VERSION = "1"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Filesystem block size assumed by usage estimates
BLOCK_SIZE = 4096


def compute_fingerprint(inputs: dict[str, Any]) -> str:
    """Compute a fingerprint from stage inputs.

    Args:
        inputs: JSON-serializable dictionary of everything affecting output.

    Returns:
        Fingerprint as 'sha256:<hex>'.
    """
    payload = {"schema_version": FINGERPRINT_SCHEMA_VERSION, "inputs": inputs}
    canonical_json = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _walk(directory: Path, exclude: frozenset[str]) -> Iterator[Path]:
    """Yield every entry below directory in sorted order, without following links.

    Top-level names listed in exclude are skipped with their whole subtree.
    """
    stack = [directory]
    entries: list[Path] = []
    while stack:
        current = stack.pop()
        with os.scandir(current) as it:
            for entry in it:
                path = Path(entry.path)
                if current == directory and entry.name in exclude:
                    continue
                entries.append(path)
                if entry.is_dir(follow_symlinks=False):
                    stack.append(path)
    yield from sorted(entries, key=lambda p: p.relative_to(directory).as_posix())


def compute_tree_hash(directory: Path, exclude: Iterable[str] = ()) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted entry paths (relative to directory)
    - Entry type and permission bits (lower 12 bits)
    - File contents, or the target of symlinks

    Timestamps and ownership are ignored.

    Args:
        directory: Directory to hash.
        exclude: Top-level entry names to leave out.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.is_dir():
        return hasher.hexdigest()

    for path in _walk(directory, frozenset(exclude)):
        rel_path = path.relative_to(directory).as_posix()
        st = path.lstat()
        mode = stat.S_IMODE(st.st_mode)

        if stat.S_ISLNK(st.st_mode):
            kind, payload = b"l", os.readlink(path).encode("utf-8", "surrogateescape")
        elif stat.S_ISDIR(st.st_mode):
            kind, payload = b"d", b""
        elif stat.S_ISREG(st.st_mode):
            kind, payload = b"f", compute_file_hash(path).encode()
        else:
            # Device nodes and fifos are recorded by type only
            kind, payload = b"o", b""

        # Hash: path\0type\0mode\0payload\0
        hasher.update(rel_path.encode("utf-8", "surrogateescape"))
        hasher.update(b"\0" + kind + b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(payload)
        hasher.update(b"\0")

    return hasher.hexdigest()


def estimate_tree_usage(directory: Path, block_size: int = BLOCK_SIZE) -> int:
    """Estimate the bytes a tree occupies on a block filesystem.

    Each regular file is rounded up to whole blocks; directories and
    symlinks count one block each (inline symlinks are not assumed).

    Args:
        directory: Directory to measure.
        block_size: Filesystem block size.

    Returns:
        Estimated usage in bytes.
    """
    if not directory.is_dir():
        return 0

    total = block_size  # the root directory itself
    for path in _walk(directory, frozenset()):
        st = path.lstat()
        if stat.S_ISREG(st.st_mode):
            blocks = -(-st.st_size // block_size)
            total += max(blocks, 1) * block_size
        else:
            total += block_size
    return total


def count_entries(directory: Path) -> int:
    """Count the top-level entries of a directory (0 if it does not exist)."""
    if not directory.is_dir():
        return 0
    return sum(1 for _ in directory.iterdir())


__all__ = [
    "BLOCK_SIZE",
    "FINGERPRINT_SCHEMA_VERSION",
    "HASH_CHUNK_SIZE",
    "compute_file_hash",
    "compute_fingerprint",
    "compute_tree_hash",
    "count_entries",
    "estimate_tree_usage",
]
