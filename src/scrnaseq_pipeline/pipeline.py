"""
Main Pipeline class that wires configuration, graph construction and execution.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from scrnaseq_pipeline.core.checkpoint import CheckpointStore
from scrnaseq_pipeline.core.config import RunConfig
from scrnaseq_pipeline.core.exceptions import ConfigurationError
from scrnaseq_pipeline.core.manifest import Sample, parse_manifest
from scrnaseq_pipeline.export.run_artifacts import write_run_artifacts
from scrnaseq_pipeline.orchestration.dependency_graph import DependencyGraph, build
from scrnaseq_pipeline.orchestration.descriptor import DescriptorRegistry, SampleField
from scrnaseq_pipeline.orchestration.executor import CommandExecutor, SubprocessExecutor
from scrnaseq_pipeline.orchestration.job import RunResult, RunStatus
from scrnaseq_pipeline.orchestration.pruning import prune
from scrnaseq_pipeline.orchestration.scheduler import Scheduler
from scrnaseq_pipeline.stages.catalog import build_catalog

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


@dataclass
class PipelineResult:
    """Result of a pipeline invocation."""

    run: RunResult
    graph: DependencyGraph
    artifacts: dict[str, Path] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.run.status is RunStatus.SUCCEEDED:
            return EXIT_OK
        if self.run.status is RunStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILED


@contextmanager
def cancel_on_signals(handler: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``handler`` for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _on_signal(signum, frame):
        logger.warning("Received %s; cancelling run", signal.Signals(signum).name)
        handler()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


class Pipeline:
    """Orchestrates one scRNA-seq analysis run.

    Example:
        >>> config = RunConfig.from_yaml("run.yaml")
        >>> pipeline = Pipeline(config)
        >>> graph = pipeline.plan()
        >>> result = pipeline.run()
        >>> result.exit_code
        0
    """

    def __init__(
        self,
        config: RunConfig,
        registry: Optional[DescriptorRegistry] = None,
        executor: Optional[CommandExecutor] = None,
        bound_by_host: bool = True,
    ):
        """Initialize pipeline.

        Parameters
        ----------
        config : RunConfig
            Run configuration
        registry : DescriptorRegistry, optional
            Stage descriptors (default: the scRNA-seq catalog)
        executor : CommandExecutor, optional
            Attempt executor (default: local subprocesses)
        bound_by_host : bool
            Lower resource ceilings to what this machine has
        """
        self.config = config
        self.registry = registry or build_catalog()
        self.executor = executor or SubprocessExecutor()
        self.bound_by_host = bound_by_host

        self._scheduler: Optional[Scheduler] = None

    def load_samples(self) -> list[Sample]:
        """Validate the configuration and parse the manifest."""
        self.config.validate()
        return parse_manifest(self.config.manifest, fastq_dir=self.config.fastq_dir)

    def plan(self, samples: Optional[list[Sample]] = None) -> DependencyGraph:
        """Build and prune the instance graph without executing anything.

        Raises
        ------
        ConfigurationError
            Invalid configuration, manifest or graph
        """
        if samples is None:
            samples = self.load_samples()

        graph = build(self.registry, samples, self.config)
        graph = prune(graph, self.config)
        self._check_sample_inputs(graph)

        logger.info(
            "Planned %d instances over %d samples (%s)",
            len(graph), len(samples), ", ".join(d.name for d in graph.descriptors),
        )
        return graph

    def _check_sample_inputs(self, graph: DependencyGraph) -> None:
        # Raw data must be present for every sample whose counting will run
        for instance in graph:
            if instance.external or instance.sample is None:
                continue
            for binding in instance.descriptor.inputs.values():
                if not (isinstance(binding, SampleField) and binding.field == "fastq_path"):
                    continue
                fastq = instance.sample.fastq_path
                if fastq is None:
                    raise ConfigurationError(
                        f"Sample '{instance.sample.sample_id}' has no fastq_path and no fastq_dir is set"
                    )
                if not Path(fastq).exists():
                    raise ConfigurationError(
                        f"FASTQ location for sample '{instance.sample.sample_id}' not found: {fastq}"
                    )

    def run(self, graph: Optional[DependencyGraph] = None) -> PipelineResult:
        """Execute the pipeline.

        Configuration errors raise before anything is dispatched; task
        failures are reported in the result.

        Parameters
        ----------
        graph : DependencyGraph, optional
            Pre-planned graph (default: ``plan()``)

        Returns
        -------
        PipelineResult
            Run result, executed graph and artifact locations
        """
        if graph is None:
            graph = self.plan()

        ceilings = self.config.ceilings
        if self.bound_by_host:
            ceilings = ceilings.bounded_by_host()

        store = CheckpointStore(self.config.checkpoint_root)
        self._scheduler = Scheduler(self.config, self.executor, store, ceilings=ceilings)

        with cancel_on_signals(self.cancel):
            result = self._scheduler.run(graph)

        artifacts = write_run_artifacts(result, graph, self.config)
        return PipelineResult(run=result, graph=graph, artifacts=artifacts)

    def cancel(self) -> None:
        """Cancel a run in progress."""
        if self._scheduler is not None:
            self._scheduler.cancel()


def create_pipeline(config_path: Optional[str | Path] = None, **overrides) -> Pipeline:
    """Factory function to create a pipeline from YAML plus overrides.

    Parameters
    ----------
    config_path : str or Path, optional
        YAML configuration file
    **overrides
        Flat or sectioned configuration values

    Returns
    -------
    Pipeline
        Configured pipeline instance
    """
    config = RunConfig.from_yaml(config_path) if config_path else RunConfig()
    if overrides:
        config = config.with_overrides(**overrides)
    return Pipeline(config)
