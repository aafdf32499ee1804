"""Allow ``python -m kbuild_pipeline``."""

from kbuild_pipeline.cli import app

app(prog_name="kbuild")
