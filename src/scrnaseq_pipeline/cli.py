"""
Command-line interface for the scRNA-seq pipeline.

Usage:
    scrnaseq-pipeline run --config run.yaml
    scrnaseq-pipeline run --manifest samples.csv --reference refdata-gex-GRCh38 --skip-integration
    scrnaseq-pipeline plan --config run.yaml --dot dag.dot
    scrnaseq-pipeline validate --config run.yaml
    scrnaseq-pipeline stages
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import yaml

from scrnaseq_pipeline.core.exceptions import PipelineError

logger = logging.getLogger("scrnaseq_pipeline")


def _setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=fmt, handlers=handlers)


def _parse_param(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{item}'")
    key, value = item.split("=", 1)
    return key.strip(), yaml.safe_load(value)


def _load_config(args: argparse.Namespace):
    """Defaults, then environment or YAML file, then command-line flags."""
    from scrnaseq_pipeline.core.config import RunConfig

    config = RunConfig.from_yaml(args.config) if args.config else RunConfig.from_env()

    overrides: dict[str, Any] = {
        "manifest": args.manifest,
        "reference": args.reference,
        "outdir": args.outdir,
        "fastq_dir": args.fastq_dir,
        "cellranger_dir": args.cellranger_dir,
        "max_parallel": args.max_parallel,
        "max_cpus": args.max_cpus,
        "max_memory": args.max_memory,
        "max_time": args.max_time,
        "container_engine": args.container_engine,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    for switch in ("skip_cellranger", "skip_analysis", "skip_integration"):
        if getattr(args, switch):
            overrides[switch] = True
    if args.no_resume:
        overrides["resume"] = False
    overrides.update(dict(args.param or []))

    return config.with_overrides(**overrides) if overrides else config


def cmd_run(args: argparse.Namespace) -> int:
    """Plan and execute the pipeline."""
    from scrnaseq_pipeline.pipeline import Pipeline

    pipeline = Pipeline(_load_config(args))
    result = pipeline.run()

    for name, report in result.run.reports.items():
        if report.reason:
            logger.warning("%s: %s (%s)", name, report.state.value, report.reason)
    logger.info("Run %s; artifacts in %s", result.run.status.value, pipeline.config.info_dir)
    return result.exit_code


def cmd_plan(args: argparse.Namespace) -> int:
    """Print the pruned instance graph without executing it."""
    from scrnaseq_pipeline.pipeline import Pipeline

    graph = Pipeline(_load_config(args)).plan()

    if args.dot:
        Path(args.dot).parent.mkdir(parents=True, exist_ok=True)
        Path(args.dot).write_text(graph.to_dot())
        logger.info("DAG written to %s", args.dot)

    if args.json:
        print(json.dumps(graph.to_dict(), indent=2))
        return 0

    for iid in graph.topological_sort():
        instance = graph[iid]
        deps = ", ".join(str(p) for p in instance.predecessors()) or "-"
        marker = " (pre-existing)" if instance.external else ""
        print(f"{iid}{marker}\t<- {deps}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check configuration, manifest and graph."""
    from scrnaseq_pipeline.pipeline import Pipeline

    graph = Pipeline(_load_config(args)).plan()
    print(f"OK: {len(graph.samples)} samples, {len(graph)} task instances")
    return 0


def cmd_stages(args: argparse.Namespace) -> int:
    """List the stage descriptors."""
    from scrnaseq_pipeline.orchestration.resources import resolve_request
    from scrnaseq_pipeline.stages.catalog import build_catalog

    for descriptor in build_catalog():
        request = resolve_request(descriptor.resources)
        switches = ",".join(descriptor.switch_names()) or "-"
        print(
            f"{descriptor.name:<10} {descriptor.cardinality.value:<10} "
            f"cpus={request.cpus:<3} mem={request.memory // 1024**3}GB "
            f"switch={switches:<28} {descriptor.description}"
        )
    return 0


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", "-c", help="YAML run configuration")
    parser.add_argument("--manifest", help="Sample manifest (CSV/TSV)")
    parser.add_argument("--reference", help="Reference transcriptome directory")
    parser.add_argument("--outdir", "-o", help="Output directory")
    parser.add_argument("--fastq-dir", help="Default FASTQ directory")
    parser.add_argument("--cellranger-dir", help="Pre-existing Cell Ranger results")
    parser.add_argument("--skip-cellranger", action="store_true", help="Use pre-existing counts")
    parser.add_argument("--skip-analysis", action="store_true", help="Stop after counting")
    parser.add_argument("--skip-integration", action="store_true", help="Analyze samples separately")
    parser.add_argument("--max-parallel", type=int, help="Concurrent tasks")
    parser.add_argument("--max-cpus", type=int, help="Per-task CPU ceiling")
    parser.add_argument("--max-memory", help="Per-task memory ceiling (e.g. 64.GB)")
    parser.add_argument("--max-time", help="Per-task time ceiling (e.g. 48h)")
    parser.add_argument("--container-engine", choices=["docker", "singularity"])
    parser.add_argument("--no-resume", action="store_true", help="Ignore existing checkpoints")
    parser.add_argument(
        "--param", "-p", action="append", type=_parse_param, metavar="KEY=VALUE",
        help="Analysis parameter override (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="scrnaseq-pipeline",
        description="scRNA-seq workflow: Cell Ranger counting and Seurat analysis",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--log-file", help="Log file path")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("run", help="Execute the pipeline")
    _add_config_args(p)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("plan", help="Show the task graph without executing it")
    _add_config_args(p)
    p.add_argument("--dot", help="Write the graph in DOT format")
    p.add_argument("--json", action="store_true", help="Print the graph as JSON")
    p.set_defaults(func=cmd_plan)

    p = sub.add_parser("validate", help="Validate configuration, manifest and graph")
    _add_config_args(p)
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("stages", help="List pipeline stages")
    p.set_defaults(func=cmd_stages)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    _setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        return args.func(args)
    except PipelineError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
