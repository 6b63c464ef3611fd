"""
Task instance dependency graph.

Expands descriptors over the sample set into task instances and derives
edges from their data-flow bindings.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Optional

from scrnaseq_pipeline.core.exceptions import (
    CyclicDependencyError,
    DuplicateDescriptorError,
    UnboundInputError,
)
from scrnaseq_pipeline.core.manifest import Sample
from scrnaseq_pipeline.orchestration.descriptor import Cardinality, Param, SampleField, TaskDescriptor

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import RunConfig

logger = logging.getLogger(__name__)

GLOBAL_KEY = "*"
SAMPLE_FIELDS = frozenset(f.name for f in fields(Sample))


@dataclass(frozen=True, order=True)
class InstanceId:
    """Instance identity: (descriptor name, binding key)."""

    descriptor: str
    key: str = GLOBAL_KEY

    def __str__(self) -> str:
        if self.key == GLOBAL_KEY:
            return self.descriptor
        return f"{self.descriptor}[{self.key}]"


@dataclass(frozen=True)
class InputEdge:
    """How one input slot of an instance is fed."""

    slot: str
    producer: str
    output: str
    sources: tuple[InstanceId, ...]
    collect: bool = False
    """True for fan-in: the slot receives a list in manifest order."""


@dataclass
class TaskInstance:
    """
    A descriptor bound to a sample, to the whole sample set, or to nothing.
    """

    id: InstanceId
    descriptor: TaskDescriptor
    sample: Optional[Sample]
    index: int
    """Expansion order; deterministic tie-break for sorting."""

    input_edges: dict[str, InputEdge] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.id)

    @property
    def external(self) -> bool:
        return self.descriptor.external

    def predecessors(self) -> list[InstanceId]:
        """Distinct upstream instances in slot order."""
        seen: dict[InstanceId, None] = {}
        for edge in self.input_edges.values():
            for source in edge.sources:
                seen.setdefault(source, None)
        return list(seen)

    def template_context(self, outdir: Path | str, counts_dir: Path | str) -> dict[str, Any]:
        """Values available to output templates."""
        return {
            "outdir": str(outdir),
            "counts_dir": str(counts_dir),
            "key": self.id.key if self.id.key != GLOBAL_KEY else "all",
            "sample_id": self.sample.sample_id if self.sample else "all",
            "sample_name": self.sample.sample_name if self.sample else "all",
        }

    def render_outputs(self, outdir: Path | str, counts_dir: Path | str) -> dict[str, str]:
        """Declared outputs for this instance."""
        context = self.template_context(outdir, counts_dir)
        if self.external:
            return {
                name: spec.render_fallback(**context) or spec.render(**context)
                for name, spec in self.descriptor.outputs.items()
            }
        return {name: spec.render(**context) for name, spec in self.descriptor.outputs.items()}


class DependencyGraph:
    """
    Directed acyclic graph of task instances.

    Example:
        >>> graph = build(catalog, samples, config)
        >>> order = graph.topological_sort()
        >>> graph.successors(InstanceId("count", "S1"))
        [InstanceId(descriptor='filter', key='S1')]
    """

    def __init__(
        self,
        instances: dict[InstanceId, TaskInstance],
        descriptors: list[TaskDescriptor],
        samples: list[Sample],
        config: Optional["RunConfig"] = None,
    ):
        self.instances = instances
        self.descriptors = descriptors
        self.samples = samples
        self.config = config

        self._successors: dict[InstanceId, list[InstanceId]] = {iid: [] for iid in instances}
        for iid, instance in instances.items():
            for pred in instance.predecessors():
                if pred not in instances:
                    raise UnboundInputError(f"Instance '{iid}' depends on unknown instance '{pred}'")
                self._successors[pred].append(iid)

    # ==================== Access ====================

    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[TaskInstance]:
        return iter(self.instances.values())

    def __contains__(self, iid: InstanceId) -> bool:
        return iid in self.instances

    def __getitem__(self, iid: InstanceId) -> TaskInstance:
        return self.instances[iid]

    def descriptor(self, name: str) -> Optional[TaskDescriptor]:
        """Get descriptor by name."""
        return next((d for d in self.descriptors if d.name == name), None)

    def instances_of(self, descriptor: str) -> list[TaskInstance]:
        """Instances of one descriptor in expansion order."""
        return [i for i in self.instances.values() if i.id.descriptor == descriptor]

    def edges(self) -> list[tuple[InstanceId, InstanceId]]:
        """All (upstream, downstream) pairs."""
        return [(src, dst) for src, dsts in self._successors.items() for dst in dsts]

    def predecessors(self, iid: InstanceId) -> list[InstanceId]:
        return self.instances[iid].predecessors()

    def successors(self, iid: InstanceId) -> list[InstanceId]:
        return list(self._successors[iid])

    def descendants(self, iid: InstanceId) -> set[InstanceId]:
        """All instances that depend on ``iid`` directly or transitively."""
        found: set[InstanceId] = set()
        to_visit = list(self._successors[iid])
        while to_visit:
            current = to_visit.pop()
            if current not in found:
                found.add(current)
                to_visit.extend(self._successors[current])
        return found

    def waiting_dependents(self, iid: InstanceId) -> int:
        """Number of transitive dependents; used to prefer unblocking work."""
        return len(self.descendants(iid))

    # ==================== Ordering ====================

    def topological_sort(self) -> list[InstanceId]:
        """
        Execution order via Kahn's algorithm.

        Ties are broken by expansion order, so the result is deterministic.

        Raises:
            CyclicDependencyError: If some instances can never be ordered.
        """
        in_degree = {iid: len(inst.predecessors()) for iid, inst in self.instances.items()}
        queue = [(self.instances[iid].index, iid) for iid, d in in_degree.items() if d == 0]
        heapq.heapify(queue)
        order: list[InstanceId] = []

        while queue:
            _, current = heapq.heappop(queue)
            order.append(current)
            for succ in self._successors[current]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(queue, (self.instances[succ].index, succ))

        if len(order) != len(self.instances):
            stuck = sorted(str(iid) for iid, d in in_degree.items() if d > 0)
            raise CyclicDependencyError(f"Cycle detected among: {', '.join(stuck)}")

        return order

    # ==================== Export ====================

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "samples": [s.sample_id for s in self.samples],
            "instances": {
                str(iid): {
                    "descriptor": inst.descriptor.name,
                    "cardinality": inst.descriptor.cardinality.value,
                    "external": inst.external,
                    "depends_on": [str(p) for p in inst.predecessors()],
                }
                for iid, inst in self.instances.items()
            },
        }

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph pipeline {", "  rankdir=TB;", '  node [shape=box, style=rounded];']
        for iid in self.topological_sort():
            inst = self.instances[iid]
            style = ', style="dashed"' if inst.external else ""
            lines.append(f'  "{iid}" [label="{iid}"{style}];')
        for src, dst in self.edges():
            lines.append(f'  "{src}" -> "{dst}";')
        lines.append("}")
        return "\n".join(lines) + "\n"


def _index_descriptors(descriptors: Iterable[TaskDescriptor]) -> dict[str, TaskDescriptor]:
    by_name: dict[str, TaskDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.name in by_name:
            raise DuplicateDescriptorError(f"Descriptor already registered: {descriptor.name}")
        by_name[descriptor.name] = descriptor

    for descriptor in by_name.values():
        for slot, binding in descriptor.inputs.items():
            if isinstance(binding, SampleField) and binding.field not in SAMPLE_FIELDS:
                raise UnboundInputError(
                    f"Input '{descriptor.name}.{slot}' references unknown sample field '{binding.field}'"
                )
            if isinstance(binding, SampleField) and descriptor.cardinality is not Cardinality.PER_SAMPLE:
                raise UnboundInputError(
                    f"Input '{descriptor.name}.{slot}' reads sample field '{binding.field}' "
                    f"but '{descriptor.name}' is {descriptor.cardinality.value}, not per-sample"
                )
        for slot, binding in descriptor.upstream_bindings():
            producer = by_name.get(binding.producer)
            if producer is None:
                raise UnboundInputError(
                    f"Input '{descriptor.name}.{slot}' references unknown producer '{binding.producer}'"
                )
            if binding.output not in producer.outputs:
                raise UnboundInputError(
                    f"Input '{descriptor.name}.{slot}' references undeclared output "
                    f"'{binding.producer}.{binding.output}'"
                )
    return by_name


def _check_params(descriptors: Iterable[TaskDescriptor], config: "RunConfig") -> None:
    for descriptor in descriptors:
        names = [(slot, b.name) for slot, b in descriptor.inputs.items() if isinstance(b, Param)]
        names += [("params", name) for name in descriptor.params]
        for slot, name in names:
            try:
                config.param(name)
            except KeyError:
                raise UnboundInputError(
                    f"Input '{descriptor.name}.{slot}' references unknown run parameter '{name}'"
                ) from None


def build(
    descriptors: Iterable[TaskDescriptor],
    samples: list[Sample],
    config: Optional["RunConfig"] = None,
) -> DependencyGraph:
    """
    Expand descriptors over the sample set into a dependency graph.

    - per-sample descriptors get one instance per sample (manifest order);
    - aggregate and singleton descriptors get one instance; a per-sample
      producer feeding them is collected into a list (fan-in);
    - a per-sample consumer of a global producer receives its single value.

    Args:
        descriptors: Descriptors in declaration order.
        samples: Parsed manifest.
        config: Run configuration (kept on the graph for later stages).

    Returns:
        Validated dependency graph.

    Raises:
        DuplicateDescriptorError: Repeated descriptor name.
        UnboundInputError: Reference to an unknown producer or output.
        CyclicDependencyError: Dependencies cannot be ordered.
    """
    descriptors = list(descriptors)
    by_name = _index_descriptors(descriptors)
    if config is not None:
        _check_params(descriptors, config)

    instances: dict[InstanceId, TaskInstance] = {}
    for descriptor in descriptors:
        if descriptor.cardinality is Cardinality.PER_SAMPLE:
            bindings = [(sample.sample_id, sample) for sample in samples]
        else:
            bindings = [(GLOBAL_KEY, None)]

        for key, sample in bindings:
            edges: dict[str, InputEdge] = {}
            for slot, binding in descriptor.upstream_bindings():
                producer = by_name[binding.producer]
                if producer.cardinality is not Cardinality.PER_SAMPLE:
                    sources = (InstanceId(producer.name),)
                    collect = False
                elif sample is not None:
                    sources = (InstanceId(producer.name, sample.sample_id),)
                    collect = False
                else:
                    sources = tuple(InstanceId(producer.name, s.sample_id) for s in samples)
                    collect = True
                edges[slot] = InputEdge(slot, producer.name, binding.output, sources, collect)

            iid = InstanceId(descriptor.name, key)
            instances[iid] = TaskInstance(
                id=iid,
                descriptor=descriptor,
                sample=sample,
                index=len(instances),
                input_edges=edges,
            )

    graph = DependencyGraph(instances, descriptors, samples, config)
    graph.topological_sort()

    logger.debug("Built graph: %d descriptors, %d instances", len(descriptors), len(instances))
    return graph
