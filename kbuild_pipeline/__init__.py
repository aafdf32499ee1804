"""kbuild-pipeline - staged build-and-test orchestration for a kernel project.

This package drives the external toolchains that turn a checkout into a
populated root filesystem, staged conformance test suites and a bootable
disk image, one architecture at a time.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
