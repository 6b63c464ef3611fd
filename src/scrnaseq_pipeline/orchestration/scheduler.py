"""
Resource-aware parallel scheduler.

The control loop in ``Scheduler.run`` is the only code that mutates
instance state. Worker threads from a bounded thread pool each run one
child process through the executor; the loop suspends until at least one
of them finishes, then applies the outcome and dispatches more work.
"""

from __future__ import annotations

import heapq
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from scrnaseq_pipeline.core.checkpoint import CheckpointStore, compute_fingerprint, path_stamp
from scrnaseq_pipeline.orchestration.dependency_graph import (
    GLOBAL_KEY,
    DependencyGraph,
    InstanceId,
    TaskInstance,
)
from scrnaseq_pipeline.orchestration.descriptor import Const, Param, SampleField, Upstream
from scrnaseq_pipeline.orchestration.executor import CommandExecutor, CommandJob, ExecutionOutcome
from scrnaseq_pipeline.orchestration.job import (
    AttemptRecord,
    InstanceReport,
    RunResult,
    RunStatus,
    TaskState,
)
from scrnaseq_pipeline.orchestration.resources import Allocation, ResourceBudget, resolve
from scrnaseq_pipeline.stages.commands import CommandContext, build_argv

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import ResourceCeilings, RunConfig

logger = logging.getLogger(__name__)


def instance_dir(root: Path, iid: InstanceId) -> Path:
    """Per-instance directory: ``root/<descriptor>[/<sample>]``."""
    path = root / iid.descriptor.replace(":", "_")
    return path if iid.key == GLOBAL_KEY else path / iid.key


class Scheduler:
    """
    Execute a dependency graph.

    Per-instance states follow
    ``PENDING -> READY -> RUNNING -> {SUCCEEDED, FAILED}`` with
    ``FAILED -> RETRY_PENDING -> READY`` while the retry policy allows, plus
    the terminal ``BLOCKED`` (an upstream failed) and ``CANCELLED``.

    Example:
        >>> scheduler = Scheduler(config, SubprocessExecutor(), CheckpointStore(root))
        >>> result = scheduler.run(graph)
        >>> result.status
        <RunStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        config: "RunConfig",
        executor: CommandExecutor,
        store: Optional[CheckpointStore] = None,
        ceilings: Optional["ResourceCeilings"] = None,
        max_parallel: Optional[int] = None,
        verify_outputs: bool = True,
        poll_interval: float = 1.0,
    ):
        """
        Initialize scheduler.

        Args:
            config: Run configuration (parameters, output locations, resume).
            executor: Runs one attempt per call, from worker threads.
            store: Checkpoint store; None disables checkpointing.
            ceilings: Per-task ceilings and pool size (default: config.ceilings).
            max_parallel: Concurrency limit (default: config.max_parallel).
            verify_outputs: Check that path outputs exist after exit code 0.
            poll_interval: Seconds between termination retries while draining
                a cancelled run.
        """
        self.config = config
        self.executor = executor
        self.store = store
        self.ceilings = ceilings or config.ceilings
        self.max_parallel = max_parallel or config.max_parallel
        self.verify_outputs = verify_outputs
        self.poll_interval = poll_interval

        self._cancelled = threading.Event()
        self._reset()

    def _reset(self) -> None:
        self._graph: Optional[DependencyGraph] = None
        self._states: dict[InstanceId, TaskState] = {}
        self._reports: dict[InstanceId, InstanceReport] = {}
        self._outputs: dict[InstanceId, dict[str, Any]] = {}
        self._fingerprints: dict[InstanceId, str] = {}
        self._completions: dict[InstanceId, Optional[str]] = {}
        self._inputs: dict[InstanceId, dict[str, Any]] = {}
        self._waiting_on: dict[InstanceId, set[InstanceId]] = {}
        self._priority: dict[InstanceId, tuple[int, int]] = {}
        self._ready: list[tuple[tuple[int, int], InstanceId]] = []
        self._running: dict[Future, tuple[InstanceId, Allocation, AttemptRecord]] = {}
        self._dispatched = 0

    # ==================== Public API ====================

    def cancel(self) -> None:
        """
        Cancel the run.

        Live children are terminated; instances that have not finished end
        CANCELLED. Succeeded instances and their checkpoints are kept.
        """
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested")
        self._cancelled.set()
        self.executor.terminate_all()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def state(self, iid: InstanceId) -> TaskState:
        """Current state of an instance in the active or last run."""
        return self._states[iid]

    def run(self, graph: DependencyGraph) -> RunResult:
        """
        Execute every instance of the graph.

        Task failures never raise; they are recorded in the result.

        Returns:
            Per-instance reports and the overall status.
        """
        self._reset()
        self._graph = graph
        started_at = datetime.now()

        order = graph.topological_sort()
        for position, iid in enumerate(order):
            instance = graph[iid]
            self._states[iid] = TaskState.PENDING
            self._reports[iid] = InstanceReport(str(iid), instance.descriptor.name)
            self._waiting_on[iid] = set(instance.predecessors())
            self._priority[iid] = (-graph.waiting_dependents(iid), position)

        logger.info("Scheduling %d instances (max %d in parallel)", len(order), self.max_parallel)

        budget = ResourceBudget.from_ceilings(self.ceilings, self.max_parallel)
        self._promote([iid for iid in order if not self._waiting_on[iid]])

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="task") as pool:
            while not self.cancelled:
                self._dispatch(pool, budget)
                if not self._running:
                    break
                # cancel() terminates live children, which completes their futures
                done, _ = wait(list(self._running), return_when=FIRST_COMPLETED)
                for future in done:
                    self._complete(future, budget)

            if self.cancelled:
                self._drain(budget)

        result = RunResult(
            status=self._overall_status(),
            reports={str(iid): self._reports[iid] for iid in order},
            dispatched=self._dispatched,
            started_at=started_at,
            completed_at=datetime.now(),
        )
        logger.info(
            "Run %s: %s",
            result.status.value,
            ", ".join(f"{n} {s}" for s, n in result.counts().items() if n),
        )
        return result

    # ==================== State transitions ====================

    def _set_state(self, iid: InstanceId, state: TaskState, reason: Optional[str] = None) -> None:
        self._states[iid] = state
        report = self._reports[iid]
        report.state = state
        if reason is not None:
            report.reason = reason

    def _promote(self, candidates: list[InstanceId]) -> None:
        """Move instances whose inputs are all available to READY."""
        queue = list(candidates)
        while queue:
            iid = queue.pop(0)
            if self._states[iid] is not TaskState.PENDING:
                continue

            instance = self._graph[iid]
            inputs, fingerprint = self._resolve(instance)
            self._inputs[iid] = inputs
            self._fingerprints[iid] = fingerprint
            self._reports[iid].fingerprint = fingerprint
            self._set_state(iid, TaskState.READY)

            if instance.external:
                outputs = instance.render_outputs(self.config.outdir, self.config.counts_dir)
                logger.info("[%s] using pre-existing results", iid)
                queue.extend(self._succeed(iid, outputs))
            elif self._cache_hit(iid, fingerprint):
                self._reports[iid].cached = True
                logger.info("[%s] already complete; skipping", iid)
                checkpoint = self.store.get(fingerprint)
                queue.extend(self._succeed(iid, checkpoint.outputs, checkpoint.completion))
            else:
                heapq.heappush(self._ready, (self._priority[iid], iid))

    def _succeed(
        self, iid: InstanceId, outputs: dict[str, Any], completion: Optional[str] = None
    ) -> list[InstanceId]:
        """Mark SUCCEEDED; return dependents that became ready."""
        self._outputs[iid] = outputs
        self._completions[iid] = completion
        self._reports[iid].outputs = outputs
        self._set_state(iid, TaskState.SUCCEEDED)

        unblocked = []
        for succ in self._graph.successors(iid):
            self._waiting_on[succ].discard(iid)
            if not self._waiting_on[succ] and self._states[succ] is TaskState.PENDING:
                unblocked.append(succ)
        return unblocked

    def _fail(self, iid: InstanceId, reason: str) -> None:
        """Terminal failure: block every transitive dependent."""
        self._set_state(iid, TaskState.FAILED, reason)
        logger.error("[%s] failed: %s", iid, reason)

        blocked = 0
        for desc in self._graph.descendants(iid):
            if not self._states[desc].is_terminal:
                self._set_state(desc, TaskState.BLOCKED, f"upstream {iid} failed")
                blocked += 1
        if blocked:
            logger.warning("[%s] blocked %d dependent instance(s)", iid, blocked)

    def _overall_status(self) -> RunStatus:
        if self.cancelled:
            for iid, state in self._states.items():
                if not state.is_terminal:
                    self._set_state(iid, TaskState.CANCELLED, "run cancelled")
            return RunStatus.CANCELLED
        if all(state is TaskState.SUCCEEDED for state in self._states.values()):
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED

    # ==================== Inputs and checkpoints ====================

    def _resolve(self, instance: TaskInstance) -> tuple[dict[str, Any], str]:
        """Resolve input values and the instance fingerprint."""
        descriptor = instance.descriptor
        values: dict[str, Any] = {}
        fingerprinted: dict[str, Any] = {}

        for slot, binding in descriptor.inputs.items():
            if isinstance(binding, Const):
                value = binding.value
            elif isinstance(binding, SampleField):
                value = getattr(instance.sample, binding.field)
                value = str(value) if isinstance(value, Path) else value
            elif isinstance(binding, Param):
                value = self.config.param(binding.name)
            elif isinstance(binding, Upstream):
                edge = instance.input_edges[slot]
                produced = [self._outputs[src][edge.output] for src in edge.sources]
                stamped = [
                    self._upstream_identity(src, edge.output, v)
                    for src, v in zip(edge.sources, produced)
                ]
                values[slot] = produced if edge.collect else produced[0]
                fingerprinted[slot] = stamped if edge.collect else stamped[0]
                continue
            else:
                raise TypeError(f"Unknown binding for {instance.id}.{slot}: {binding!r}")
            values[slot] = value
            fingerprinted[slot] = value

        if instance.external:
            context = instance.template_context(self.config.outdir, self.config.counts_dir)
            fingerprinted = {
                name: path_stamp(spec.render_fallback(**context))
                for name, spec in descriptor.outputs.items()
            }

        params = {name: self.config.param(name) for name in descriptor.params}
        container = descriptor.container if self.config.container_engine else None
        fingerprint = compute_fingerprint(
            f"{descriptor.name}[{instance.id.key}]", fingerprinted, params, container
        )
        return values, fingerprint

    def _upstream_identity(self, src: InstanceId, output: str, value: Any) -> dict[str, Any]:
        """Producer fingerprint, completion token and, for paths, the on-disk stamp."""
        identity = {
            "fingerprint": self._fingerprints[src],
            "completion": self._completions.get(src),
            "value": value,
        }
        if self._graph[src].descriptor.outputs[output].kind == "path":
            identity["stamp"] = path_stamp(value)
        return identity

    def _cache_hit(self, iid: InstanceId, fingerprint: str) -> bool:
        return self.store is not None and self.config.resume and self.store.has(fingerprint)

    # ==================== Dispatch ====================

    def _dispatch(self, pool: ThreadPoolExecutor, budget: ResourceBudget) -> None:
        """Start READY instances, highest priority first, while they fit."""
        deferred = []
        while self._ready and not self.cancelled:
            entry = heapq.heappop(self._ready)
            iid = entry[1]
            instance = self._graph[iid]
            attempt = self._reports[iid].attempt_count + 1
            allocation = resolve(instance.descriptor.resources, attempt, self.ceilings)

            if not budget.can_allocate(allocation):
                deferred.append(entry)
                if budget.running >= budget.max_tasks:
                    break
                continue

            budget.allocate(allocation)
            job = self._make_job(instance, attempt, allocation)
            record = AttemptRecord(
                attempt=attempt,
                allocation=allocation,
                stdout_path=job.stdout_path,
                stderr_path=job.stderr_path,
            )
            self._reports[iid].attempts.append(record)
            self._set_state(iid, TaskState.RUNNING)
            self._dispatched += 1

            logger.info(
                "[%s] attempt %d started (%d cpus, %.1f GB, %ds)",
                iid, attempt, allocation.cpus, allocation.memory / 1024**3, allocation.time,
            )
            future = pool.submit(self.executor.execute, job)
            self._running[future] = (iid, allocation, record)

        for entry in deferred:
            heapq.heappush(self._ready, entry)

        if self._ready and not self._running and not self.cancelled:
            raise RuntimeError("Ready instances cannot fit into an idle resource budget")

    def _make_job(self, instance: TaskInstance, attempt: int, allocation: Allocation) -> CommandJob:
        outputs = instance.render_outputs(self.config.outdir, self.config.counts_dir)
        log_dir = instance_dir(self.config.info_dir / "logs", instance.id)
        workdir = instance_dir(self.config.outdir / "work", instance.id)

        ctx = CommandContext(
            instance=instance.name,
            sample=instance.sample,
            inputs=self._inputs[instance.id],
            outputs=outputs,
            allocation=allocation,
            config=self.config,
            workdir=workdir,
        )
        return CommandJob(
            instance=instance.name,
            argv=build_argv(instance.descriptor, ctx),
            attempt=attempt,
            allocation=allocation,
            workdir=workdir,
            stdout_path=log_dir / f"attempt{attempt}.out",
            stderr_path=log_dir / f"attempt{attempt}.err",
            env={"SCRNASEQ_TASK": instance.name, "SCRNASEQ_CPUS": str(allocation.cpus)},
        )

    # ==================== Completion ====================

    def _complete(self, future: Future, budget: ResourceBudget) -> None:
        iid, allocation, record = self._running.pop(future)
        budget.release(allocation)
        outcome = self._outcome(iid, future)

        record.completed_at = outcome.completed_at
        record.exit_code = outcome.exit_code
        record.timed_out = outcome.timed_out
        record.peak_rss = outcome.peak_rss
        record.error = outcome.error

        instance = self._graph[iid]
        if outcome.exit_code == 0:
            self._accept(instance, record)
            return

        if self.cancelled:
            self._set_state(iid, TaskState.CANCELLED, "run cancelled")
            return

        retry = instance.descriptor.retry
        if retry.should_retry(record.attempt, outcome.exit_code, outcome.timed_out):
            self._set_state(iid, TaskState.RETRY_PENDING)
            logger.warning(
                "[%s] attempt %d %s; retrying with more resources",
                iid, record.attempt,
                "timed out" if outcome.timed_out else f"exited with {outcome.exit_code}",
            )
            self._set_state(iid, TaskState.READY)
            heapq.heappush(self._ready, (self._priority[iid], iid))
            return

        if outcome.timed_out:
            reason = f"timed out after {record.attempt} attempt(s)"
        elif outcome.error:
            reason = outcome.error
        else:
            reason = f"exit code {outcome.exit_code}"
        self._fail(iid, reason)

    def _outcome(self, iid: InstanceId, future: Future) -> ExecutionOutcome:
        error = future.exception()
        if error is None:
            return future.result()
        logger.error("[%s] executor error: %s", iid, error)
        return ExecutionOutcome(exit_code=1, error=f"executor error: {error}")

    def _accept(self, instance: TaskInstance, record: AttemptRecord) -> None:
        """Exit code 0: check declared paths, checkpoint, release dependents."""
        iid = instance.id
        outputs = instance.render_outputs(self.config.outdir, self.config.counts_dir)

        if self.verify_outputs:
            missing = [
                outputs[name] for name in instance.descriptor.path_outputs()
                if not Path(outputs[name]).exists()
            ]
            if missing:
                self._fail(iid, f"missing outputs: {', '.join(missing)}")
                return

        completion = None
        if self.store is not None:
            checkpoint = self.store.record(
                self._fingerprints[iid],
                outputs,
                instance=str(iid),
                path_outputs=instance.descriptor.path_outputs(),
            )
            completion = checkpoint.completion

        duration = record.duration or 0.0
        logger.info("[%s] succeeded in %.1fs", iid, duration)
        self._promote(self._succeed(iid, outputs, completion))

    def _drain(self, budget: ResourceBudget) -> None:
        """Terminate and collect whatever is still running after cancellation."""
        while self._running:
            self.executor.terminate_all()
            done, _ = wait(list(self._running), timeout=self.poll_interval)
            for future in done:
                self._complete(future, budget)
