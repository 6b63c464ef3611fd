"""
Run artifact writers.

Execution timeline, per-attempt trace table, DAG rendering and run summary
written to ``<outdir>/pipeline_info`` after every run. They are reports
only; resume never reads them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pandas as pd

from scrnaseq_pipeline.orchestration.job import InstanceReport, RunResult

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import RunConfig
    from scrnaseq_pipeline.orchestration.dependency_graph import DependencyGraph

logger = logging.getLogger(__name__)

TRACE_COLUMNS = [
    "task_id",
    "instance",
    "descriptor",
    "attempt",
    "status",
    "exit",
    "cached",
    "cpus",
    "memory",
    "time_limit",
    "start",
    "complete",
    "duration",
    "peak_rss",
    "fingerprint",
    "reason",
]


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w") as f:
        f.write(text)
    temp_path.replace(path)


def timeline(result: RunResult) -> list[dict[str, Any]]:
    """One entry per attempt, ordered by start time."""
    entries = []
    for name, report in result.reports.items():
        for attempt in report.attempts:
            final = attempt is report.last_attempt
            entries.append({
                "instance": name,
                "descriptor": report.descriptor,
                "attempt": attempt.attempt,
                "start": attempt.started_at.isoformat(),
                "end": attempt.completed_at.isoformat() if attempt.completed_at else None,
                "duration": attempt.duration,
                "exit_code": attempt.exit_code,
                "timed_out": attempt.timed_out,
                "state": report.state.value if final else "retried",
            })
    return sorted(entries, key=lambda e: e["start"])


def trace_frame(result: RunResult) -> pd.DataFrame:
    """
    Per-attempt trace table.

    Instances completed without dispatch (checkpoint hits, pre-existing
    results) and instances that never ran get a single row with attempt 0.
    """
    rows = []
    for name, report in result.reports.items():
        base = {
            "instance": name,
            "descriptor": report.descriptor,
            "cached": report.cached,
            "fingerprint": report.fingerprint,
        }
        if not report.attempts:
            rows.append({**base, "attempt": 0, "status": report.state.value, "reason": report.reason})
            continue
        for attempt in report.attempts:
            final = attempt is report.last_attempt
            rows.append({
                **base,
                "attempt": attempt.attempt,
                "status": report.state.value if final else "retried",
                "exit": attempt.exit_code,
                "cpus": attempt.allocation.cpus,
                "memory": attempt.allocation.memory,
                "time_limit": attempt.allocation.time,
                "start": attempt.started_at.isoformat(),
                "complete": attempt.completed_at.isoformat() if attempt.completed_at else None,
                "duration": attempt.duration,
                "peak_rss": attempt.peak_rss,
                "reason": report.reason if final else attempt.error,
            })

    df = pd.DataFrame(rows, columns=TRACE_COLUMNS[1:])
    df.insert(0, "task_id", range(1, len(df) + 1))
    df["exit"] = df["exit"].astype("Int64")
    return df


def _final_state(report: InstanceReport) -> dict[str, Any]:
    last = report.last_attempt
    return {
        "state": report.state.value,
        "attempts": report.attempt_count,
        "exit_code": report.exit_code,
        "timed_out": last.timed_out if last is not None else False,
        "cached": report.cached,
        "reason": report.reason,
    }


def summary(result: RunResult, graph: "DependencyGraph", config: "RunConfig") -> dict[str, Any]:
    """Run-level summary, with the final state of every instance."""
    return {
        "status": result.status.value,
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat() if result.completed_at else None,
        "duration": result.duration,
        "samples": [s.sample_id for s in graph.samples],
        "stages": [d.name for d in graph.descriptors],
        "n_instances": len(graph),
        "dispatched": result.dispatched,
        "counts": result.counts(),
        "instances": {name: _final_state(report) for name, report in result.reports.items()},
        "reasons": {
            name: report.reason
            for name, report in result.reports.items()
            if report.reason is not None
        },
        "config": config.to_dict(),
        "written_at": datetime.now().isoformat(),
    }


def write_run_artifacts(
    result: RunResult,
    graph: "DependencyGraph",
    config: "RunConfig",
    info_dir: Path | str | None = None,
) -> dict[str, Path]:
    """
    Write every run artifact.

    Args:
        result: Scheduler result.
        graph: The executed (pruned) graph.
        config: Run configuration.
        info_dir: Target directory (default: config.info_dir).

    Returns:
        Mapping of artifact name to written path.
    """
    info_dir = Path(info_dir) if info_dir is not None else config.info_dir
    info_dir.mkdir(parents=True, exist_ok=True)

    paths = {
        "timeline": info_dir / "execution_timeline.json",
        "trace": info_dir / "execution_trace.tsv",
        "dag": info_dir / "pipeline_dag.dot",
        "summary": info_dir / "run_summary.json",
    }

    _write_atomic(paths["timeline"], json.dumps(timeline(result), indent=2))
    trace_frame(result).to_csv(paths["trace"], sep="\t", index=False)
    _write_atomic(paths["dag"], graph.to_dot())
    _write_atomic(paths["summary"], json.dumps(summary(result, graph, config), indent=2, default=str))

    logger.info("Run artifacts written to %s", info_dir)
    return paths
