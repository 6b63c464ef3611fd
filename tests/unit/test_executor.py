"""Tests for the local subprocess executor."""

from __future__ import annotations

import sys
import threading
import time

import pytest

from scrnaseq_pipeline.orchestration.resources import GB, Resources


def _job(temp_dir, code, time_limit=60, attempt=1):
    from scrnaseq_pipeline.orchestration.executor import CommandJob

    logs = temp_dir / "logs"
    return CommandJob(
        instance="probe",
        argv=[sys.executable, "-c", code],
        attempt=attempt,
        allocation=Resources(cpus=1, memory=GB, time=time_limit),
        workdir=temp_dir / "work",
        stdout_path=logs / f"attempt{attempt}.out",
        stderr_path=logs / f"attempt{attempt}.err",
        env={"SCRNASEQ_TASK": "probe"},
    )


@pytest.fixture
def executor():
    from scrnaseq_pipeline.orchestration.executor import SubprocessExecutor
    return SubprocessExecutor(poll_interval=0.05, kill_grace=1.0)


class TestSubprocessExecutor:
    """Tests for running, timing out and terminating child processes."""

    def test_success_writes_logs(self, executor, temp_dir):
        job = _job(
            temp_dir,
            "import os, sys; print(os.environ['SCRNASEQ_TASK']); print('warn', file=sys.stderr)",
        )
        outcome = executor.execute(job)

        assert outcome.exit_code == 0
        assert not outcome.timed_out
        assert outcome.completed_at >= outcome.started_at
        assert job.stdout_path.read_text().strip() == "probe"
        assert job.stderr_path.read_text().strip() == "warn"
        assert job.workdir.is_dir()

    def test_runs_in_workdir(self, executor, temp_dir):
        job = _job(temp_dir, "open('marker.txt', 'w').write('x')")
        executor.execute(job)
        assert (job.workdir / "marker.txt").exists()

    def test_nonzero_exit(self, executor, temp_dir):
        outcome = executor.execute(_job(temp_dir, "import sys; sys.exit(3)"))
        assert outcome.exit_code == 3
        assert not outcome.timed_out

    def test_timeout_kills_child(self, executor, temp_dir):
        start = time.monotonic()
        outcome = executor.execute(_job(temp_dir, "import time; time.sleep(30)", time_limit=1))

        assert outcome.timed_out
        assert outcome.exit_code == 137
        assert time.monotonic() - start < 15
        assert executor.live_count == 0

    def test_missing_command(self, executor, temp_dir):
        job = _job(temp_dir, "")
        job.argv = [str(temp_dir / "no-such-tool")]
        outcome = executor.execute(job)

        assert outcome.exit_code == 127
        assert outcome.error

    def test_terminate_all(self, executor, temp_dir):
        job = _job(temp_dir, "import time; time.sleep(30)")
        outcomes = []
        worker = threading.Thread(target=lambda: outcomes.append(executor.execute(job)))
        worker.start()

        deadline = time.monotonic() + 10
        while executor.live_count == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
        executor.terminate_all()
        worker.join(timeout=15)

        assert not worker.is_alive()
        assert outcomes[0].exit_code == 143
        assert not outcomes[0].timed_out

    def test_child_started_after_terminate_all_is_killed(self, executor, temp_dir):
        executor.terminate_all()
        started = time.monotonic()
        outcome = executor.execute(_job(temp_dir, "import time; time.sleep(30)"))

        assert outcome.exit_code == 143
        assert time.monotonic() - started < 15
        assert executor.live_count == 0

    def test_peak_rss_sampled(self, executor, temp_dir):
        outcome = executor.execute(_job(temp_dir, "import time; time.sleep(0.3)"))
        assert outcome.peak_rss is not None
        assert outcome.peak_rss > 0


class TestReturnCodes:
    """Tests for exit code normalization."""

    @pytest.mark.parametrize("returncode, expected", [
        (0, 0),
        (1, 1),
        (-9, 137),
        (-15, 143),
    ])
    def test_normalize_returncode(self, returncode, expected):
        from scrnaseq_pipeline.orchestration.executor import normalize_returncode
        assert normalize_returncode(returncode) == expected
