"""Stage implementations.

This module handles:
- Running external tools with captured logs
- Rootfs Builder
- Test Stager (libc, other and rt test suites)
- Image Packager
- Developer stages (update, check, doc, clean)
"""

from kbuild_pipeline.stages.runner import CommandResult, run_command

__all__ = ["CommandResult", "run_command"]

# Lazy imports for submodules to avoid circular imports
# Access via kbuild_pipeline.stages.rootfs, etc.
