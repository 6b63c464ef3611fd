"""
Command execution for task attempts.

Each attempt runs exactly one external command as a child process. The
executor is called from scheduler worker threads and blocks until the
child exits, is killed on timeout, or is terminated by cancellation.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import psutil

from scrnaseq_pipeline.orchestration.resources import Allocation

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 137
COMMAND_NOT_FOUND_EXIT_CODE = 127


@dataclass
class CommandJob:
    """Everything needed to launch one attempt."""

    instance: str
    argv: list[str]
    attempt: int
    allocation: Allocation
    workdir: Path
    stdout_path: Path
    stderr_path: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionOutcome:
    """What the executor observed for one attempt."""

    exit_code: int
    timed_out: bool = False
    peak_rss: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime = field(default_factory=datetime.now)
    error: Optional[str] = None


class CommandExecutor(Protocol):
    """Runs one attempt to completion."""

    def execute(self, job: CommandJob) -> ExecutionOutcome:
        ...

    def terminate_all(self) -> None:
        ...


def normalize_returncode(returncode: int) -> int:
    """Map a signal death (negative return code) to the shell convention 128+N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def _process_tree(pid: int) -> list[psutil.Process]:
    try:
        parent = psutil.Process(pid)
        return [parent] + parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _tree_rss(pid: int) -> Optional[int]:
    total = 0
    sampled = False
    for proc in _process_tree(pid):
        try:
            total += proc.memory_info().rss
            sampled = True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total if sampled else None


def kill_tree(proc: subprocess.Popen, grace: float = 5.0) -> None:
    """Terminate a child process and its descendants, then kill survivors."""
    descendants = _process_tree(proc.pid)[1:]
    for child in descendants:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    proc.terminate()

    # The direct child is reaped through Popen so its return code is kept.
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()

    _, alive = psutil.wait_procs(descendants, timeout=grace)
    for child in alive:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


class SubprocessExecutor:
    """
    Run commands as local child processes.

    The wall-clock limit is the allocation's time; a child that exceeds it
    is killed and reported with exit code 137 and ``timed_out=True``.
    Resident memory of the process tree is sampled while it runs. After
    ``terminate_all`` any child that starts is terminated at once.

    Example:
        >>> executor = SubprocessExecutor(poll_interval=0.5)
        >>> outcome = executor.execute(job)
        >>> outcome.exit_code
        0
    """

    def __init__(self, poll_interval: float = 1.0, kill_grace: float = 5.0):
        """
        Initialize executor.

        Args:
            poll_interval: Seconds between liveness/memory samples.
            kill_grace: Seconds between SIGTERM and SIGKILL.
        """
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self._live: dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._terminating = threading.Event()

    def execute(self, job: CommandJob) -> ExecutionOutcome:
        """Run one attempt and block until it finishes."""
        job.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        job.workdir.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(job.env)

        started_at = datetime.now()
        logger.debug("[%s] attempt %d: %s", job.instance, job.attempt, " ".join(job.argv))

        with open(job.stdout_path, "w") as out, open(job.stderr_path, "w") as err:
            try:
                proc = subprocess.Popen(
                    job.argv, cwd=job.workdir, env=env, stdout=out, stderr=err,
                    start_new_session=True,
                )
            except OSError as e:
                logger.error("[%s] could not start %s: %s", job.instance, job.argv[0], e)
                return ExecutionOutcome(
                    exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                    started_at=started_at,
                    completed_at=datetime.now(),
                    error=str(e),
                )

            with self._lock:
                self._live[proc.pid] = proc
                late = self._terminating.is_set()
            try:
                if late:
                    kill_tree(proc, self.kill_grace)
                returncode, timed_out, peak_rss = self._wait(proc, job)
            finally:
                with self._lock:
                    self._live.pop(proc.pid, None)

        return ExecutionOutcome(
            exit_code=TIMEOUT_EXIT_CODE if timed_out else normalize_returncode(returncode),
            timed_out=timed_out,
            peak_rss=peak_rss,
            started_at=started_at,
            completed_at=datetime.now(),
        )

    def _wait(self, proc: subprocess.Popen, job: CommandJob) -> tuple[int, bool, Optional[int]]:
        deadline = datetime.now().timestamp() + job.allocation.time
        peak_rss: Optional[int] = None

        while True:
            rss = _tree_rss(proc.pid)
            if rss is not None:
                peak_rss = max(peak_rss or 0, rss)

            remaining = deadline - datetime.now().timestamp()
            if remaining <= 0:
                logger.warning(
                    "[%s] attempt %d exceeded %ds wall-clock limit; killing",
                    job.instance, job.attempt, job.allocation.time,
                )
                kill_tree(proc, self.kill_grace)
                proc.wait()
                return proc.returncode, True, peak_rss

            try:
                proc.wait(timeout=min(self.poll_interval, remaining))
                return proc.returncode, False, peak_rss
            except subprocess.TimeoutExpired:
                continue

    def terminate_all(self) -> None:
        """Terminate every live child process tree."""
        self._terminating.set()
        with self._lock:
            live = list(self._live.values())
        for proc in live:
            logger.info("Terminating pid %d", proc.pid)
            kill_tree(proc, self.kill_grace)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

