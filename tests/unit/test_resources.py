"""Tests for resource resolution and the execution budget."""

import logging

import pytest

from scrnaseq_pipeline.orchestration.resources import GB, HOUR, Resources


@pytest.fixture
def ceilings():
    from scrnaseq_pipeline.core.config import ResourceCeilings
    return ResourceCeilings(max_cpus=16, max_memory="128.GB", max_time="240h")


class TestResolve:
    """Tests for per-attempt allocation."""

    def test_first_attempt_is_base_request(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        allocation = resolve("process_medium", 1, ceilings)
        assert allocation == Resources(cpus=6, memory=36 * GB, time=8 * HOUR)

    def test_escalation_clamped_per_dimension(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        allocation = resolve("process_high", 2, ceilings)
        assert allocation.cpus == 16
        assert allocation.memory == 128 * GB
        assert allocation.time == 32 * HOUR

    def test_escalation_is_monotonic(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        previous = None
        for attempt in range(1, 6):
            allocation = resolve("process_low", attempt, ceilings)
            if previous is not None:
                assert allocation.cpus >= previous.cpus
                assert allocation.memory >= previous.memory
                assert allocation.time >= previous.time
            assert allocation.cpus <= ceilings.max_cpus
            assert allocation.memory <= ceilings.max_memory
            assert allocation.time <= ceilings.max_time
            previous = allocation

    def test_base_over_ceiling_warns(self, caplog):
        from scrnaseq_pipeline.core.config import ResourceCeilings
        from scrnaseq_pipeline.orchestration.resources import resolve

        small = ResourceCeilings(max_cpus=4, max_memory="16.GB", max_time="2h")
        with caplog.at_level(logging.WARNING):
            allocation = resolve("process_high", 1, small)
        assert allocation == Resources(cpus=4, memory=16 * GB, time=2 * HOUR)
        assert "exceeds ceiling" in caplog.text

    def test_explicit_request(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        request = Resources(cpus=1, memory=2 * GB, time=600)
        assert resolve(request, 3, ceilings) == Resources(cpus=3, memory=6 * GB, time=1800)

    def test_invalid_attempt(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        with pytest.raises(ValueError):
            resolve("process_low", 0, ceilings)

    def test_unknown_tier(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import resolve

        with pytest.raises(KeyError):
            resolve("process_gpu", 1, ceilings)

    def test_clamp(self):
        from scrnaseq_pipeline.orchestration.resources import clamp

        assert clamp(24, 16) == 16
        assert clamp(8, 16) == 8


class TestResourceBudget:
    """Tests for pool-wide accounting."""

    def test_allocate_release(self):
        from scrnaseq_pipeline.orchestration.resources import ResourceBudget

        budget = ResourceBudget(total_cpus=16, total_memory=64 * GB, max_tasks=4)
        job = Resources(cpus=12, memory=32 * GB, time=HOUR)
        assert budget.can_allocate(job)
        budget.allocate(job)
        assert budget.running == 1
        assert budget.available_cpus == 4
        assert not budget.can_allocate(job)

        budget.release(job)
        assert budget.available_cpus == 16
        assert budget.available_memory == 64 * GB

    def test_task_limit(self):
        from scrnaseq_pipeline.orchestration.resources import ResourceBudget

        budget = ResourceBudget(total_cpus=16, total_memory=64 * GB, max_tasks=1)
        budget.allocate(Resources(1, GB, 60))
        assert not budget.can_allocate(Resources(1, GB, 60))
        with pytest.raises(RuntimeError):
            budget.allocate(Resources(1, GB, 60))

    def test_over_release(self):
        from scrnaseq_pipeline.orchestration.resources import ResourceBudget

        budget = ResourceBudget(total_cpus=4, total_memory=GB, max_tasks=2)
        with pytest.raises(RuntimeError):
            budget.release(Resources(1, 1, 1))

    def test_from_ceilings_fits_any_clamped_allocation(self, ceilings):
        from scrnaseq_pipeline.orchestration.resources import ResourceBudget, resolve

        budget = ResourceBudget.from_ceilings(ceilings, max_tasks=2)
        assert budget.can_allocate(resolve("process_high", 5, ceilings))
