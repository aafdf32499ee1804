"""Artifact Store module.

This module handles:
- Architecture-keyed artifact paths and markers
- Input fingerprints and tree hashes for staleness checks
- Per-architecture and per-source file locks
"""

from kbuild_pipeline.store.artifacts import ArtifactMarker, ArtifactStore

__all__ = ["ArtifactMarker", "ArtifactStore"]
