"""
Task graph orchestration.

Descriptors, graph expansion, pruning, resource resolution and scheduling.
"""

from scrnaseq_pipeline.orchestration.descriptor import (
    Cardinality,
    Const,
    SampleField,
    Param,
    Upstream,
    OutputSpec,
    RetryPolicy,
    TaskDescriptor,
    DescriptorRegistry,
)
from scrnaseq_pipeline.orchestration.dependency_graph import (
    DependencyGraph,
    InstanceId,
    TaskInstance,
    build,
)
from scrnaseq_pipeline.orchestration.pruning import prune
from scrnaseq_pipeline.orchestration.resources import (
    Resources,
    Allocation,
    ResourceBudget,
    RESOURCE_TIERS,
    clamp,
    resolve,
)
from scrnaseq_pipeline.orchestration.job import (
    TaskState,
    RunStatus,
    AttemptRecord,
    InstanceReport,
    RunResult,
)
from scrnaseq_pipeline.orchestration.executor import (
    CommandExecutor,
    CommandJob,
    ExecutionOutcome,
    SubprocessExecutor,
)
from scrnaseq_pipeline.orchestration.scheduler import Scheduler

__all__ = [
    "Cardinality",
    "Const",
    "SampleField",
    "Param",
    "Upstream",
    "OutputSpec",
    "RetryPolicy",
    "TaskDescriptor",
    "DescriptorRegistry",
    "DependencyGraph",
    "InstanceId",
    "TaskInstance",
    "build",
    "prune",
    "Resources",
    "Allocation",
    "ResourceBudget",
    "RESOURCE_TIERS",
    "clamp",
    "resolve",
    "TaskState",
    "RunStatus",
    "AttemptRecord",
    "InstanceReport",
    "RunResult",
    "CommandExecutor",
    "CommandJob",
    "ExecutionOutcome",
    "SubprocessExecutor",
    "Scheduler",
]
