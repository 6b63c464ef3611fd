"""
Analysis stages: command builders and the stage catalog.
"""

from scrnaseq_pipeline.stages.commands import CommandContext, build_argv, wrap_container
from scrnaseq_pipeline.stages.catalog import build_catalog, stage_names

__all__ = [
    "CommandContext",
    "build_argv",
    "wrap_container",
    "build_catalog",
    "stage_names",
]
