"""
scRNA-seq Pipeline - Restartable task-graph orchestration for single-cell RNA-seq analysis.

This package provides:
- Declarative stage descriptors (Cell Ranger counting, Seurat QC, integration,
  clustering, markers, visualization, report)
- Dependency graph expansion over a sample manifest
- Conditional pruning (stage switches, single-sample branching, pre-existing results)
- Resource-aware parallel execution with retry escalation
- Fingerprint-based checkpointing for resume

Example:
    >>> from scrnaseq_pipeline import Pipeline, RunConfig
    >>>
    >>> config = RunConfig.from_dict({
    ...     "manifest": "samples.csv",
    ...     "reference": "refdata-gex-GRCh38-2020-A",
    ...     "skip_integration": True,
    ... })
    >>> result = Pipeline(config).run()
    >>> result.run.status
    <RunStatus.SUCCEEDED: 'succeeded'>
"""

__version__ = "0.1.0"

# Core infrastructure
from scrnaseq_pipeline.core.config import RunConfig
from scrnaseq_pipeline.core.checkpoint import CheckpointStore, compute_fingerprint
from scrnaseq_pipeline.core.manifest import Sample, parse_manifest
from scrnaseq_pipeline.core.exceptions import (
    PipelineError,
    ConfigurationError,
    GraphError,
)

# Main Pipeline class
from scrnaseq_pipeline.pipeline import Pipeline, PipelineResult, create_pipeline

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "Pipeline",
    "PipelineResult",
    "create_pipeline",
    # Core
    "RunConfig",
    "CheckpointStore",
    "compute_fingerprint",
    "Sample",
    "parse_manifest",
    "PipelineError",
    "ConfigurationError",
    "GraphError",
]
