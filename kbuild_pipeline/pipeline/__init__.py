"""Pipeline Driver module.

This module handles:
- The stage graph and its topological levels
- Resolving prerequisites against artifact freshness
- Running stages per architecture, and architectures concurrently
"""

from kbuild_pipeline.pipeline.driver import PipelineDriver, RunOptions, RunReport, StageRecord
from kbuild_pipeline.pipeline.graph import STAGES, StageDef, topological_levels

__all__ = [
    "STAGES",
    "PipelineDriver",
    "RunOptions",
    "RunReport",
    "StageDef",
    "StageRecord",
    "topological_levels",
]
