"""
Core infrastructure for scrnaseq-pipeline.

Provides:
- Run configuration
- Sample manifest parsing
- Checkpointing and resume
- Error types
"""

from scrnaseq_pipeline.core.config import (
    RunConfig,
    Switches,
    AnalysisParams,
    ResourceCeilings,
    Executables,
    parse_memory,
    parse_duration,
)
from scrnaseq_pipeline.core.checkpoint import (
    CheckpointStore,
    CheckpointRecord,
    compute_fingerprint,
    path_stamp,
)
from scrnaseq_pipeline.core.manifest import Sample, parse_manifest
from scrnaseq_pipeline.core.exceptions import (
    PipelineError,
    ConfigurationError,
    ManifestError,
    GraphError,
    DuplicateDescriptorError,
    UnboundInputError,
    CyclicDependencyError,
    MissingUpstreamError,
)

__all__ = [
    "RunConfig",
    "Switches",
    "AnalysisParams",
    "ResourceCeilings",
    "Executables",
    "parse_memory",
    "parse_duration",
    "CheckpointStore",
    "CheckpointRecord",
    "compute_fingerprint",
    "path_stamp",
    "Sample",
    "parse_manifest",
    "PipelineError",
    "ConfigurationError",
    "ManifestError",
    "GraphError",
    "DuplicateDescriptorError",
    "UnboundInputError",
    "CyclicDependencyError",
    "MissingUpstreamError",
]
