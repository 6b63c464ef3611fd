"""
Error taxonomy for the orchestrator.

Every exception here is a configuration-time error: it is raised before any
task is dispatched. Task execution failures are never raised; they are
recorded per instance in the run result.
"""


class PipelineError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(PipelineError):
    """Invalid run configuration or missing required paths."""


class ManifestError(ConfigurationError):
    """Sample manifest could not be parsed."""


class GraphError(ConfigurationError):
    """The task graph is invalid."""


class DuplicateDescriptorError(GraphError):
    """A descriptor name was registered twice."""


class UnboundInputError(GraphError):
    """An input references a producer or output that does not exist."""


class CyclicDependencyError(GraphError):
    """The dependency graph contains a cycle."""


class MissingUpstreamError(GraphError):
    """A required producer was pruned and no substitute is available."""
