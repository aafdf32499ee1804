"""Pipeline manifest module.

This module handles:
- Manifest schema validation (pydantic)
- Loading YAML/JSON manifests merged onto built-in defaults
- Export of the effective manifest
"""

from kbuild_pipeline.manifest.io import default_manifest, load_manifest
from kbuild_pipeline.manifest.schema import PipelineManifest

__all__ = ["PipelineManifest", "default_manifest", "load_manifest"]
