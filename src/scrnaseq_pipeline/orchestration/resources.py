"""
Resource requests, ceilings and the shared execution budget.

Resolution is purely functional: the same request, attempt and ceilings
always yield the same allocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import ResourceCeilings

logger = logging.getLogger(__name__)

GB = 1024**3
HOUR = 3600


@dataclass(frozen=True)
class Resources:
    """A resource request or allocation."""

    cpus: int
    """CPU count."""

    memory: int
    """Memory in bytes."""

    time: int
    """Wall-clock limit in seconds."""

    def scaled(self, factor: int) -> "Resources":
        """Multiply every dimension by ``factor``."""
        return Resources(self.cpus * factor, self.memory * factor, self.time * factor)

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {"cpus": self.cpus, "memory": self.memory, "time": self.time}


Allocation = Resources

# Tiers follow the usual single/low/medium/high process labels
RESOURCE_TIERS: dict[str, Resources] = {
    "process_single": Resources(cpus=1, memory=6 * GB, time=4 * HOUR),
    "process_low": Resources(cpus=2, memory=12 * GB, time=4 * HOUR),
    "process_medium": Resources(cpus=6, memory=36 * GB, time=8 * HOUR),
    "process_high": Resources(cpus=12, memory=72 * GB, time=16 * HOUR),
    "process_long": Resources(cpus=2, memory=12 * GB, time=20 * HOUR),
}


def resolve_request(request: Union[str, Resources]) -> Resources:
    """Turn a tier name or explicit request into a base request."""
    if isinstance(request, Resources):
        return request
    if request not in RESOURCE_TIERS:
        raise KeyError(f"Unknown resource tier: {request}")
    return RESOURCE_TIERS[request]


def clamp(requested: int, ceiling: int) -> int:
    """Cap one resource dimension at its ceiling."""
    return min(requested, ceiling)


def resolve(
    requested: Union[str, Resources],
    attempt: int,
    ceilings: "ResourceCeilings",
) -> Allocation:
    """
    Resolve the allocation for an attempt.

    The base request is multiplied by the attempt number (1, 2, 3...) and
    then each dimension is clamped to its ceiling independently. A base
    request already above a ceiling is clamped with a warning, never
    rejected.

    Args:
        requested: Tier name or explicit request.
        attempt: 1-based attempt number.
        ceilings: Global per-task ceilings.

    Returns:
        Allocation for this attempt.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    base = resolve_request(requested)
    limits = {
        "cpus": ceilings.max_cpus,
        "memory": ceilings.max_memory,
        "time": ceilings.max_time,
    }
    for dimension, ceiling in limits.items():
        if getattr(base, dimension) > ceiling:
            logger.warning(
                "Base %s request %d exceeds ceiling %d; using ceiling",
                dimension, getattr(base, dimension), ceiling,
            )

    escalated = base.scaled(attempt)
    return Resources(
        cpus=clamp(escalated.cpus, limits["cpus"]),
        memory=clamp(escalated.memory, limits["memory"]),
        time=clamp(escalated.time, limits["time"]),
    )


class ResourceBudget:
    """
    Pool-wide resource accounting for running tasks.

    Tracks CPUs and memory in use plus the number of running tasks.
    Owned by the scheduler control loop; not thread-safe.
    """

    __slots__ = ("total_cpus", "total_memory", "max_tasks", "_cpus", "_memory", "_tasks")

    def __init__(self, total_cpus: int, total_memory: int, max_tasks: int):
        if total_cpus <= 0 or total_memory <= 0 or max_tasks <= 0:
            raise ValueError("Resource budget must be positive")
        self.total_cpus = total_cpus
        self.total_memory = total_memory
        self.max_tasks = max_tasks
        self._cpus = 0
        self._memory = 0
        self._tasks = 0

    @classmethod
    def from_ceilings(cls, ceilings: "ResourceCeilings", max_tasks: int) -> "ResourceBudget":
        """Budget sized so any single clamped allocation always fits."""
        return cls(ceilings.max_cpus, ceilings.max_memory, max_tasks)

    @property
    def available_cpus(self) -> int:
        return self.total_cpus - self._cpus

    @property
    def available_memory(self) -> int:
        return self.total_memory - self._memory

    @property
    def running(self) -> int:
        return self._tasks

    def can_allocate(self, allocation: Allocation) -> bool:
        return (
            self._tasks < self.max_tasks
            and allocation.cpus <= self.available_cpus
            and allocation.memory <= self.available_memory
        )

    def allocate(self, allocation: Allocation) -> None:
        if not self.can_allocate(allocation):
            raise RuntimeError("Resource budget exceeded")
        self._cpus += allocation.cpus
        self._memory += allocation.memory
        self._tasks += 1

    def release(self, allocation: Allocation) -> None:
        self._cpus -= allocation.cpus
        self._memory -= allocation.memory
        self._tasks -= 1
        if self._cpus < 0 or self._memory < 0 or self._tasks < 0:
            raise RuntimeError("Resource budget over-release")
