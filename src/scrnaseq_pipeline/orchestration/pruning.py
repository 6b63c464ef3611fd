"""
Conditional graph pruning.

Applies feature switches and sample-count guards as explicit rewrite rules
on the descriptor plan, then re-expands it, so the pruned graph is built and
validated by the same code path as the full one.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from scrnaseq_pipeline.core.exceptions import MissingUpstreamError
from scrnaseq_pipeline.orchestration.dependency_graph import DependencyGraph, build
from scrnaseq_pipeline.orchestration.descriptor import Cardinality, TaskDescriptor, Upstream

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import RunConfig
    from scrnaseq_pipeline.stages.commands import CommandContext

logger = logging.getLogger(__name__)

EXTERNAL_SUFFIX = ":external"


def _no_command(ctx: "CommandContext") -> list[str]:
    raise RuntimeError("External producers are never executed")


def external_name(producer: str) -> str:
    """Name of the synthetic producer standing in for a skipped stage."""
    return f"{producer}{EXTERNAL_SUFFIX}"


def removed_stages(graph: DependencyGraph, config: "RunConfig") -> list[str]:
    """
    Descriptors disabled for this run, in declaration order.

    A stage is removed when its feature switch is set or when the manifest
    has fewer samples than the stage needs.
    """
    n_samples = len(graph.samples)
    removed = []
    for descriptor in graph.descriptors:
        enabled = [s for s in descriptor.switch_names() if config.switches.is_set(s)]
        if enabled:
            logger.info("Stage '%s' disabled by %s", descriptor.name, ", ".join(enabled))
            removed.append(descriptor.name)
        elif n_samples < descriptor.min_samples:
            logger.info(
                "Stage '%s' skipped: needs %d samples, manifest has %d",
                descriptor.name, descriptor.min_samples, n_samples,
            )
            removed.append(descriptor.name)
    return removed


def _descriptor_order(descriptors: list[TaskDescriptor]) -> list[TaskDescriptor]:
    # Producers before consumers; declaration order otherwise.
    # Cycles are left for build() to report.
    by_name = {d.name: d for d in descriptors}
    placed: dict[str, TaskDescriptor] = {}
    remaining = list(descriptors)
    while remaining:
        progressed = False
        for descriptor in list(remaining):
            deps = {p for p in descriptor.producers() if p in by_name}
            if deps <= placed.keys():
                placed[descriptor.name] = descriptor
                remaining.remove(descriptor)
                progressed = True
        if not progressed:
            return descriptors
    return list(placed.values())


class _Rewriter:
    """Resolves bindings that point at removed stages."""

    def __init__(self, descriptors: dict[str, TaskDescriptor], removed: set[str]):
        self.descriptors = descriptors
        self.removed = removed
        self.externals: dict[str, TaskDescriptor] = {}

    def resolve(self, consumer: str, slot: str, binding: Upstream) -> tuple[Optional[Upstream], bool]:
        """
        Find the live source for a binding.

        Returns:
            (binding or None when dropped, whether a bypass was taken).

        Raises:
            MissingUpstreamError: No bypass, fallback or optional escape.
        """
        bypassed = False
        seen: set[tuple[str, str]] = set()
        while binding.producer in self.removed:
            if (binding.producer, binding.output) in seen:
                break
            seen.add((binding.producer, binding.output))

            producer = self.descriptors[binding.producer]
            bypass_slot = producer.bypass.get(binding.output)
            source = producer.inputs.get(bypass_slot) if bypass_slot else None
            if isinstance(source, Upstream):
                logger.info(
                    "Rewiring %s.%s around skipped '%s' to %s.%s",
                    consumer, slot, producer.name, source.producer, source.output,
                )
                binding = Upstream(source.producer, source.output, binding.optional)
                bypassed = True
                continue

            spec = producer.outputs[binding.output]
            if spec.fallback:
                ext = self._external_for(producer)
                logger.info(
                    "Rewiring %s.%s to pre-existing results of skipped '%s'",
                    consumer, slot, producer.name,
                )
                return Upstream(ext.name, binding.output, binding.optional), bypassed

            if binding.optional:
                logger.info("Dropping optional input %s.%s (stage '%s' skipped)",
                            consumer, slot, producer.name)
                return None, bypassed

            raise MissingUpstreamError(
                f"Input '{consumer}.{slot}' needs '{producer.name}.{binding.output}', "
                f"but stage '{producer.name}' is skipped and has no substitute"
            )

        if binding.producer in self.removed:
            raise MissingUpstreamError(
                f"Input '{consumer}.{slot}' cannot be resolved: bypass loop through '{binding.producer}'"
            )
        return binding, bypassed

    def _external_for(self, producer: TaskDescriptor) -> TaskDescriptor:
        name = external_name(producer.name)
        if name not in self.externals:
            self.externals[name] = TaskDescriptor(
                name=name,
                cardinality=producer.cardinality,
                command=_no_command,
                outputs={k: spec for k, spec in producer.outputs.items() if spec.fallback},
                resources=producer.resources,
                external=True,
                description=f"Pre-existing results for skipped stage '{producer.name}'",
            )
        return self.externals[name]


def prune(graph: DependencyGraph, config: Optional["RunConfig"] = None) -> DependencyGraph:
    """
    Apply run-configuration rewrite rules to a built graph.

    For each binding that reads from a removed stage, in order:

    1. the removed stage declares a bypass for that output: read the bypass
       input's source instead, following chains of removed stages;
    2. the output declares a fallback location: read it from a synthetic
       external producer (the location must exist);
    3. the binding is optional: drop it;
    4. otherwise raise ``MissingUpstreamError``.

    A singleton stage that now reads a per-sample source through a bypass
    becomes per-sample, and so does every singleton downstream of it, until
    an aggregate stage collects the samples again.

    Args:
        graph: Graph produced by ``build``.
        config: Run configuration (defaults to the graph's).

    Returns:
        A new, validated graph.

    Raises:
        MissingUpstreamError: A required input has no live source.
    """
    config = config or graph.config
    if config is None:
        raise ValueError("prune() needs a run configuration")

    removed = set(removed_stages(graph, config))
    if not removed:
        return graph

    by_name = {d.name: d for d in graph.descriptors}
    rewriter = _Rewriter(by_name, removed)
    rewritten: dict[str, TaskDescriptor] = {}

    def cardinality_of(name: str) -> Cardinality:
        if name in rewritten:
            return rewritten[name].cardinality
        if name in rewriter.externals:
            return rewriter.externals[name].cardinality
        return by_name[name].cardinality

    for descriptor in _descriptor_order(graph.descriptors):
        if descriptor.name in removed:
            continue

        inputs = {}
        fan_out = False
        for slot, binding in descriptor.inputs.items():
            if not isinstance(binding, Upstream):
                inputs[slot] = binding
                continue

            if binding.producer in removed:
                resolved, bypassed = rewriter.resolve(descriptor.name, slot, binding)
                if resolved is None:
                    continue
            else:
                resolved, bypassed = binding, False

            source_per_sample = cardinality_of(resolved.producer) is Cardinality.PER_SAMPLE
            fanned_producer = (
                resolved.producer in rewritten
                and rewritten[resolved.producer].cardinality is not by_name[resolved.producer].cardinality
            )
            if descriptor.cardinality is Cardinality.SINGLETON and source_per_sample and (
                bypassed or fanned_producer
            ):
                fan_out = True
            inputs[slot] = resolved

        cardinality = Cardinality.PER_SAMPLE if fan_out else descriptor.cardinality
        if fan_out:
            logger.info("Stage '%s' fans out per sample", descriptor.name)
        rewritten[descriptor.name] = replace(descriptor, inputs=inputs, cardinality=cardinality)

    descriptors = []
    for descriptor in graph.descriptors:
        ext = external_name(descriptor.name)
        if ext in rewriter.externals:
            descriptors.append(rewriter.externals[ext])
        if descriptor.name in rewritten:
            descriptors.append(rewritten[descriptor.name])

    pruned = build(descriptors, graph.samples, config)
    _check_external_sources(pruned, config)

    logger.info(
        "Pruned graph: %d -> %d instances (%s skipped)",
        len(graph), len(pruned), ", ".join(sorted(removed)),
    )
    return pruned


def _check_external_sources(graph: DependencyGraph, config: "RunConfig") -> None:
    for instance in graph:
        if not instance.external:
            continue
        for name, location in instance.render_outputs(config.outdir, config.counts_dir).items():
            if not Path(location).exists():
                raise MissingUpstreamError(
                    f"Stage '{instance.descriptor.name.removesuffix(EXTERNAL_SUFFIX)}' is skipped "
                    f"but no pre-existing '{name}' was found for {instance.id}: {location}"
                )
