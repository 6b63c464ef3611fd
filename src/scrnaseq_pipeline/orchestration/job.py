"""
Task instance state and run results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from scrnaseq_pipeline.orchestration.resources import Allocation


class TaskState(Enum):
    """Task instance execution states."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRY_PENDING = "retry_pending"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    TaskState.SUCCEEDED,
    TaskState.FAILED,
    TaskState.BLOCKED,
    TaskState.CANCELLED,
})


class RunStatus(Enum):
    """Overall run outcome."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AttemptRecord:
    """One dispatch of a task instance."""

    attempt: int
    allocation: Allocation
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    peak_rss: Optional[int] = None
    stdout_path: Optional[Path] = None
    stderr_path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        """Get attempt duration in seconds."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "attempt": self.attempt,
            "allocation": self.allocation.to_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "peak_rss": self.peak_rss,
            "stdout": str(self.stdout_path) if self.stdout_path else None,
            "stderr": str(self.stderr_path) if self.stderr_path else None,
            "error": self.error,
        }


@dataclass
class InstanceReport:
    """Execution history and final state of one task instance."""

    instance: str
    descriptor: str
    state: TaskState = TaskState.PENDING
    attempts: list[AttemptRecord] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    fingerprint: Optional[str] = None
    cached: bool = False
    """Completed from a checkpoint without dispatch."""

    reason: Optional[str] = None
    """Why the instance ended FAILED, BLOCKED or CANCELLED."""

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_attempt(self) -> Optional[AttemptRecord]:
        return self.attempts[-1] if self.attempts else None

    @property
    def exit_code(self) -> Optional[int]:
        last = self.last_attempt
        return last.exit_code if last else None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "instance": self.instance,
            "descriptor": self.descriptor,
            "state": self.state.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "outputs": self.outputs,
            "fingerprint": self.fingerprint,
            "cached": self.cached,
            "reason": self.reason,
        }


@dataclass
class RunResult:
    """Outcome of one scheduler run."""

    status: RunStatus
    reports: dict[str, InstanceReport] = field(default_factory=dict)
    dispatched: int = 0
    """Number of attempts actually launched."""

    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        """Check if every instance succeeded."""
        return self.status is RunStatus.SUCCEEDED

    @property
    def duration(self) -> Optional[float]:
        """Get run duration in seconds."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def state_of(self, instance: str) -> TaskState:
        return self.reports[instance].state

    def by_state(self, state: TaskState) -> list[str]:
        """Instance names in a given state."""
        return [name for name, report in self.reports.items() if report.state is state]

    def counts(self) -> dict[str, int]:
        """Number of instances per state."""
        counts = {state.value: 0 for state in TaskState}
        for report in self.reports.values():
            counts[report.state.value] += 1
        return counts

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "dispatched": self.dispatched,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "counts": self.counts(),
            "instances": {name: report.to_dict() for name, report in self.reports.items()},
        }
