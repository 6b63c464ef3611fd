"""
Run artifacts.

Execution timeline, trace table, DAG and run summary.
"""

from scrnaseq_pipeline.export.run_artifacts import (
    write_run_artifacts,
    trace_frame,
    timeline,
)

__all__ = [
    "write_run_artifacts",
    "trace_frame",
    "timeline",
]
