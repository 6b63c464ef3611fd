"""Pytest configuration and fixtures."""

import tempfile
import threading
from datetime import datetime
from pathlib import Path

import pytest


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fastq_root(temp_dir):
    """FASTQ directories for two samples."""
    root = temp_dir / "fastq"
    for sample_id in ("S1", "S2"):
        (root / sample_id).mkdir(parents=True)
        (root / sample_id / f"{sample_id}_S1_L001_R1_001.fastq.gz").write_bytes(b"")
    return root


@pytest.fixture
def reference_dir(temp_dir):
    """Mock Cell Ranger reference directory."""
    path = temp_dir / "refdata-gex-GRCh38"
    path.mkdir()
    return path


@pytest.fixture
def manifest_path(temp_dir, fastq_root):
    """Two-sample manifest with explicit FASTQ locations."""
    path = temp_dir / "samples.csv"
    path.write_text(
        "sample_id,fastq_path,sample_name,condition\n"
        f"S1,{fastq_root / 'S1'},Donor 1,healthy\n"
        f"S2,{fastq_root / 'S2'},Donor 2,disease\n"
    )
    return path


@pytest.fixture
def single_manifest_path(temp_dir, fastq_root):
    """One-sample manifest."""
    path = temp_dir / "single.csv"
    path.write_text(f"sample_id,fastq_path\nS1,{fastq_root / 'S1'}\n")
    return path


@pytest.fixture
def run_config(temp_dir, manifest_path, reference_dir):
    """Valid two-sample run configuration."""
    from scrnaseq_pipeline.core.config import RunConfig

    return RunConfig(
        manifest=manifest_path,
        reference=reference_dir,
        outdir=temp_dir / "results",
    )


@pytest.fixture
def samples(run_config):
    """Parsed two-sample manifest."""
    from scrnaseq_pipeline.core.manifest import parse_manifest

    return parse_manifest(run_config.manifest)


class FakeExecutor:
    """
    In-process stand-in for the subprocess executor.

    Succeeds by creating each instance's declared outputs (files for names
    with a suffix, directories otherwise). Per-instance behaviour can be
    scripted by exit code per attempt, timeout, missing outputs or blocking
    until ``terminate_all``. Instances in ``hold`` wait until ``hold_until``
    attempts are live at once. The instances live when each attempt started
    are kept in ``live_at_start``.
    """

    def __init__(self, outputs=None, exit_codes=None, timeouts=(), no_outputs=(), block=(),
                 hold=(), hold_until=2):
        self.outputs = outputs or {}
        self.exit_codes = exit_codes or {}
        self.timeouts = set(timeouts)
        self.no_outputs = set(no_outputs)
        self.block = set(block)
        self.hold = set(hold)
        self.hold_until = hold_until
        self.calls = []
        self.live = set()
        self.live_at_start = {}
        self.peak_live = 0
        self.started = threading.Event()
        self._released = threading.Event()
        self._lock = threading.Condition()

    @classmethod
    def for_graph(cls, graph, config, **kwargs):
        outputs = {
            inst.name: inst.render_outputs(config.outdir, config.counts_dir)
            for inst in graph
            if not inst.external
        }
        return cls(outputs=outputs, **kwargs)

    def attempts(self, instance):
        return [job for job in self.calls if job.instance == instance]

    def execute(self, job):
        started_at = datetime.now()
        with self._lock:
            self.calls.append(job)
            self.live_at_start[job.instance] = frozenset(self.live)
            self.live.add(job.instance)
            self.peak_live = max(self.peak_live, len(self.live))
            self._lock.notify_all()
        self.started.set()
        try:
            return self._outcome(job, started_at)
        finally:
            with self._lock:
                self.live.discard(job.instance)

    def _outcome(self, job, started_at):
        from scrnaseq_pipeline.orchestration.executor import ExecutionOutcome

        if job.instance in self.hold:
            with self._lock:
                self._lock.wait_for(lambda: len(self.live) >= self.hold_until, timeout=5)

        if job.instance in self.block:
            self._released.wait(timeout=10)
            return ExecutionOutcome(exit_code=143, started_at=started_at)

        if job.instance in self.timeouts:
            return ExecutionOutcome(exit_code=137, timed_out=True, started_at=started_at)

        codes = self.exit_codes.get(job.instance, [0])
        exit_code = codes[min(job.attempt, len(codes)) - 1]
        if exit_code == 0 and job.instance not in self.no_outputs:
            for location in self.outputs.get(job.instance, {}).values():
                path = Path(location)
                if path.suffix:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(job.instance)
                else:
                    path.mkdir(parents=True, exist_ok=True)
        return ExecutionOutcome(exit_code=exit_code, started_at=started_at)

    def terminate_all(self):
        self._released.set()


@pytest.fixture
def fake_executor_cls():
    """The FakeExecutor class, for tests that script behaviour per instance."""
    return FakeExecutor
