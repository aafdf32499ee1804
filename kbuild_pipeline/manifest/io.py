"""Manifest loading and export.

A project manifest may be partial: its top-level sections replace the
built-in defaults section by section, and entries under ``architectures``
replace the default entry for the same architecture.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kbuild_pipeline.errors import ManifestError
from kbuild_pipeline.manifest.defaults import DEFAULT_MANIFEST
from kbuild_pipeline.manifest.schema import PipelineManifest

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def merge_with_defaults(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay a (possibly partial) manifest onto the built-in defaults."""
    merged = copy.deepcopy(DEFAULT_MANIFEST)
    for key, value in data.items():
        if key == "architectures" and isinstance(value, dict):
            merged["architectures"].update(copy.deepcopy(value))
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_manifest_data(data: dict[str, Any]) -> PipelineManifest:
    """Validate manifest data merged onto the defaults.

    Raises:
        ManifestError: If the merged data does not match the schema.
    """
    try:
        return PipelineManifest.model_validate(merge_with_defaults(data))
    except ValidationError as e:
        raise ManifestError(f"Invalid pipeline manifest: {e}") from e


def default_manifest() -> PipelineManifest:
    """Return the built-in manifest."""
    return PipelineManifest.model_validate(copy.deepcopy(DEFAULT_MANIFEST))


def load_manifest(path: Path | None = None) -> PipelineManifest:
    """Load a manifest file, or the built-in defaults when path is None.

    Args:
        path: YAML (.yaml/.yml) or JSON (.json) manifest file.

    Returns:
        Validated PipelineManifest.

    Raises:
        ManifestError: If the file cannot be read, parsed, or validated.
    """
    if path is None:
        logger.debug("No manifest file, using built-in defaults")
        return default_manifest()

    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}", code="manifest_not_found") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise ManifestError(f"Failed to parse manifest {path}: {e}") from e

    logger.debug("Loaded manifest from %s", path)
    return parse_manifest_data(data)


def manifest_to_dict(manifest: PipelineManifest) -> dict[str, Any]:
    return manifest.model_dump(mode="json", exclude_none=True)


def manifest_to_yaml_string(manifest: PipelineManifest) -> str:
    """Render a manifest as YAML."""
    return yaml.safe_dump(manifest_to_dict(manifest), sort_keys=False)


__all__ = [
    "default_manifest",
    "load_json",
    "load_manifest",
    "load_yaml",
    "manifest_to_dict",
    "manifest_to_yaml_string",
    "merge_with_defaults",
    "parse_manifest_data",
]
