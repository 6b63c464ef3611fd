"""
Task descriptor model.

A descriptor is the static, declarative definition of one operation: what it
consumes, what it produces, how much it needs and how it is retried. It holds
no control flow; the same descriptor is expanded per sample or once globally
depending on its cardinality.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, Literal, Mapping, Optional, Union

from scrnaseq_pipeline.core.exceptions import DuplicateDescriptorError, UnboundInputError
from scrnaseq_pipeline.orchestration.resources import Resources

if TYPE_CHECKING:
    from scrnaseq_pipeline.stages.commands import CommandContext


class Cardinality(Enum):
    """How a descriptor expands into instances."""

    PER_SAMPLE = "per_sample"
    AGGREGATE = "aggregate"
    SINGLETON = "singleton"


# ---- Input bindings ----

@dataclass(frozen=True)
class Const:
    """A constant input value."""

    value: Any


@dataclass(frozen=True)
class SampleField:
    """A field of the bound sample (``sample_id``, ``fastq_path``...)."""

    field: str


@dataclass(frozen=True)
class Param:
    """A named run-configuration parameter."""

    name: str


@dataclass(frozen=True)
class Upstream:
    """An output of another descriptor."""

    producer: str
    output: str
    optional: bool = False
    """Drop the input instead of failing when the producer is pruned."""


Binding = Union[Const, SampleField, Param, Upstream]


# ---- Outputs ----

@dataclass(frozen=True)
class OutputSpec:
    """A declared output of a descriptor."""

    template: str
    """Formatted with ``outdir``, ``key``, ``sample_id``, ``sample_name``."""

    kind: Literal["path", "value"] = "path"
    """Paths are contracted to exist after success; values are passed through."""

    fallback: Optional[str] = None
    """Externally supplied location used when the producing stage is skipped.
    Formatted like ``template`` plus ``counts_dir``."""

    def render(self, **context: Any) -> str:
        """Format the template for a concrete instance."""
        return self.template.format(**context)

    def render_fallback(self, **context: Any) -> Optional[str]:
        """Format the fallback template, if any."""
        return self.fallback.format(**context) if self.fallback else None


@dataclass(frozen=True)
class RetryPolicy:
    """When and how often a failed instance is retried."""

    max_attempts: int = 2
    """Total attempts including the first."""

    retryable_exit_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({104, *range(130, 146)})
    )
    """Exit codes treated as transient (signal kills, OOM)."""

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, attempt: int, exit_code: Optional[int], timed_out: bool = False) -> bool:
        """Decide whether a failed attempt is retried."""
        if attempt >= self.max_attempts:
            return False
        return timed_out or exit_code in self.retryable_exit_codes


@dataclass(frozen=True)
class TaskDescriptor:
    """
    Immutable definition of one pipeline operation.

    Never mutated at run time; pruning produces rewritten copies.
    """

    name: str
    cardinality: Cardinality
    command: Callable[["CommandContext"], list[str]] = field(compare=False, repr=False)
    inputs: Mapping[str, Binding] = field(default_factory=dict)
    outputs: Mapping[str, OutputSpec] = field(default_factory=dict)
    resources: Union[str, Resources] = "process_low"
    container: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    switch: Union[str, tuple[str, ...], None] = None
    """Feature switch(es); the stage is removed when any of them is set."""

    min_samples: int = 1
    """Stage is removed when the manifest has fewer samples."""

    bypass: Mapping[str, str] = field(default_factory=dict)
    """output -> input: where consumers read from when this stage is skipped."""

    params: tuple[str, ...] = ()
    """Run parameters the command reads; part of the fingerprint."""

    external: bool = False
    """Synthetic producer standing in for a skipped stage; never dispatched."""

    description: str = ""

    def switch_names(self) -> tuple[str, ...]:
        """Switches that disable this stage."""
        if self.switch is None:
            return ()
        if isinstance(self.switch, str):
            return (self.switch,)
        return tuple(self.switch)

    def upstream_bindings(self) -> Iterator[tuple[str, Upstream]]:
        """Yield (slot, binding) for every upstream reference."""
        for slot, binding in self.inputs.items():
            if isinstance(binding, Upstream):
                yield slot, binding

    def producers(self) -> set[str]:
        """Names of descriptors this one reads from."""
        return {b.producer for _, b in self.upstream_bindings()}

    def path_outputs(self) -> list[str]:
        """Names of outputs that are file-system paths."""
        return [name for name, spec in self.outputs.items() if spec.kind == "path"]


class DescriptorRegistry:
    """
    Ordered registry of task descriptors.

    Registration order is the declaration order used for deterministic
    graph expansion.

    Example:
        >>> registry = DescriptorRegistry()
        >>> registry.define("count", Cardinality.PER_SAMPLE, command=build_count,
        ...                 inputs={"fastqs": SampleField("fastq_path")},
        ...                 outputs={"matrix": OutputSpec("{outdir}/cellranger/{sample_id}/outs")})
    """

    def __init__(self, descriptors: Optional[list[TaskDescriptor]] = None):
        self._descriptors: dict[str, TaskDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def define(
        self,
        name: str,
        cardinality: Cardinality,
        command: Callable[["CommandContext"], list[str]],
        inputs: Optional[Mapping[str, Binding]] = None,
        outputs: Optional[Mapping[str, OutputSpec]] = None,
        resources: Union[str, Resources] = "process_low",
        retry: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> TaskDescriptor:
        """Create and register a descriptor.

        Raises
        ------
        DuplicateDescriptorError
            If the name is already registered
        """
        descriptor = TaskDescriptor(
            name=name,
            cardinality=cardinality,
            command=command,
            inputs=dict(inputs or {}),
            outputs=dict(outputs or {}),
            resources=resources,
            retry=retry or RetryPolicy(),
            **kwargs,
        )
        return self.register(descriptor)

    def register(self, descriptor: TaskDescriptor) -> TaskDescriptor:
        """Register an existing descriptor."""
        if descriptor.name in self._descriptors:
            raise DuplicateDescriptorError(f"Descriptor already registered: {descriptor.name}")
        for output, slot in descriptor.bypass.items():
            if output not in descriptor.outputs or slot not in descriptor.inputs:
                raise UnboundInputError(
                    f"Descriptor '{descriptor.name}' bypass {output}->{slot} "
                    "must map a declared output to a declared input"
                )
        self._descriptors[descriptor.name] = descriptor
        return descriptor

    def get(self, name: str) -> TaskDescriptor:
        """Get descriptor by name."""
        if name not in self._descriptors:
            raise KeyError(f"Unknown descriptor: {name}")
        return self._descriptors[name]

    def names(self) -> list[str]:
        """Descriptor names in declaration order."""
        return list(self._descriptors)

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[TaskDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)
