"""
Command builders for the analysis stages.

Every builder is a pure function of a ``CommandContext``: it returns the
argv of exactly one external command and never touches the file system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:
    from scrnaseq_pipeline.core.config import RunConfig
    from scrnaseq_pipeline.core.manifest import Sample
    from scrnaseq_pipeline.orchestration.descriptor import TaskDescriptor
    from scrnaseq_pipeline.orchestration.resources import Allocation


@dataclass
class CommandContext:
    """Resolved inputs, outputs and allocation for one attempt."""

    instance: str
    sample: Optional["Sample"]
    inputs: dict[str, Any]
    outputs: dict[str, str]
    allocation: "Allocation"
    config: "RunConfig"
    workdir: Path = field(default_factory=Path.cwd)

    def param(self, name: str) -> Any:
        """Run parameter by name."""
        return self.config.param(name)

    def script(self, name: str) -> str:
        """Path of an analysis script."""
        return str(self.config.executables.scripts_dir / name)

    @property
    def memory_gb(self) -> int:
        return max(1, self.allocation.memory // 1024**3)


def joined(value: Any, sep: str = ",") -> str:
    """Render a single value or a fan-in list as one argument."""
    if isinstance(value, (list, tuple)):
        return sep.join(str(v) for v in value)
    return str(value)


# ==================== Counting ====================

def cellranger_count(ctx: CommandContext) -> list[str]:
    """cellranger count for one sample."""
    sample_id = ctx.inputs["sample_id"]
    return [
        ctx.param("cellranger"), "count",
        f"--id={sample_id}",
        f"--transcriptome={ctx.inputs['transcriptome']}",
        f"--fastqs={ctx.inputs['fastqs']}",
        f"--sample={ctx.inputs['sample_name']}",
        f"--expect-cells={ctx.inputs['expected_cells']}",
        f"--localcores={ctx.allocation.cpus}",
        f"--localmem={ctx.memory_gb}",
        f"--output-dir={ctx.config.counts_dir / sample_id}",
        "--disable-ui",
    ]


# ==================== Seurat stages ====================

def qc_filter(ctx: CommandContext) -> list[str]:
    """Per-sample QC metrics, plots and cell/gene filtering."""
    return [
        ctx.param("rscript"), ctx.script("qc_filter.R"),
        "--matrix", str(ctx.inputs["matrix"]),
        "--sample-id", str(ctx.inputs["sample_id"]),
        "--sample-name", str(ctx.inputs["sample_name"]),
        "--condition", str(ctx.inputs["condition"]),
        "--min-genes", str(ctx.inputs["min_genes"]),
        "--max-genes", str(ctx.inputs["max_genes"]),
        "--max-mito", str(ctx.inputs["max_mito_pct"]),
        "--min-cells", str(ctx.inputs["min_cells"]),
        "--out-rds", ctx.outputs["seurat"],
        "--out-metrics", ctx.outputs["qc_metrics"],
        "--out-plots", ctx.outputs["qc_plots"],
    ]


def integrate(ctx: CommandContext) -> list[str]:
    """Cross-sample integration of the filtered objects."""
    return [
        ctx.param("rscript"), ctx.script("integrate.R"),
        "--inputs", joined(ctx.inputs["datasets"]),
        "--method", str(ctx.inputs["method"]),
        "--n-features", str(ctx.inputs["n_variable_features"]),
        "--n-pcs", str(ctx.inputs["n_pcs"]),
        "--threads", str(ctx.allocation.cpus),
        "--out", ctx.outputs["integrated"],
    ]


def cluster(ctx: CommandContext) -> list[str]:
    return [
        ctx.param("rscript"), ctx.script("cluster.R"),
        "--input", joined(ctx.inputs["seurat"]),
        "--n-features", str(ctx.inputs["n_variable_features"]),
        "--n-pcs", str(ctx.inputs["n_pcs"]),
        "--resolution", str(ctx.inputs["resolution"]),
        "--out", ctx.outputs["clustered"],
    ]


def find_markers(ctx: CommandContext) -> list[str]:
    return [
        ctx.param("rscript"), ctx.script("find_markers.R"),
        "--input", str(ctx.inputs["clustered"]),
        "--logfc", str(ctx.inputs["logfc"]),
        "--min-pct", str(ctx.inputs["min_pct"]),
        "--threads", str(ctx.allocation.cpus),
        "--out", ctx.outputs["markers"],
    ]


def visualize(ctx: CommandContext) -> list[str]:
    return [
        ctx.param("rscript"), ctx.script("visualize.R"),
        "--input", str(ctx.inputs["clustered"]),
        "--markers", str(ctx.inputs["markers"]),
        "--outdir", ctx.outputs["plots"],
    ]


def report(ctx: CommandContext) -> list[str]:
    """
    Final report. Every section input is optional; a section whose stage
    did not run is simply omitted from the command line.
    """
    argv = [
        ctx.param("rscript"), ctx.script("report.R"),
        "--title", str(ctx.inputs["title"]),
        "--out", ctx.outputs["report"],
    ]
    for slot, flag in (
        ("count_metrics", "--count-metrics"),
        ("qc_metrics", "--qc-metrics"),
        ("markers", "--markers"),
        ("plots", "--plots"),
    ):
        if slot in ctx.inputs:
            argv.extend([flag, joined(ctx.inputs[slot])])
    return argv


# ==================== Containers ====================

def container_binds(config: "RunConfig", extra: Sequence[Path | str] = ()) -> list[str]:
    """Absolute host paths a containerized command needs to see."""
    candidates = [
        config.outdir,
        config.counts_dir,
        config.reference,
        config.fastq_dir,
        config.executables.scripts_dir,
        *extra,
    ]
    binds: list[str] = []
    for path in candidates:
        if path is None:
            continue
        resolved = str(Path(path).resolve())
        if resolved not in binds:
            binds.append(resolved)
    return binds


def wrap_container(
    argv: list[str],
    engine: str,
    image: str,
    binds: Sequence[str],
    allocation: Optional["Allocation"] = None,
    workdir: Optional[Path] = None,
) -> list[str]:
    """
    Run ``argv`` inside a container image.

    Raises:
        ValueError: Unknown container engine.
    """
    if engine == "docker":
        wrapped = ["docker", "run", "--rm"]
        for path in binds:
            wrapped.extend(["-v", f"{path}:{path}"])
        if workdir is not None:
            wrapped.extend(["-w", str(Path(workdir).resolve())])
        if allocation is not None:
            wrapped.extend([f"--cpus={allocation.cpus}", f"--memory={allocation.memory}b"])
        return wrapped + [image] + argv

    if engine == "singularity":
        wrapped = ["singularity", "exec", "--cleanenv"]
        if binds:
            wrapped.extend(["-B", ",".join(binds)])
        if workdir is not None:
            wrapped.extend(["--pwd", str(Path(workdir).resolve())])
        uri = image if "://" in image or image.endswith(".sif") else f"docker://{image}"
        return wrapped + [uri] + argv

    raise ValueError(f"Unknown container engine: {engine}")


def build_argv(descriptor: "TaskDescriptor", ctx: CommandContext) -> list[str]:
    """The final command for an attempt, containerized when configured."""
    argv = [str(arg) for arg in descriptor.command(ctx)]
    engine = ctx.config.container_engine
    if engine and descriptor.container:
        extra = [ctx.sample.fastq_path] if ctx.sample and ctx.sample.fastq_path else []
        argv = wrap_container(
            argv, engine, descriptor.container,
            binds=container_binds(ctx.config, extra),
            allocation=ctx.allocation,
            workdir=ctx.workdir,
        )
    return argv
