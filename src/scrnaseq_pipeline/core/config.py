"""
Run configuration management.

Provides immutable dataclass-based configuration with YAML/environment
loading, flat-key overrides and validation of the mandatory paths.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal, Optional

import psutil
import yaml

from scrnaseq_pipeline.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_MEMORY_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

_DURATION_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_memory(value: int | float | str) -> int:
    """Parse a memory amount such as ``"64.GB"`` or ``"512 MB"`` to bytes.

    Plain numbers are taken as bytes.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid memory value: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)

    match = re.fullmatch(r"\s*([0-9]*\.?[0-9]+)\s*\.?\s*([KMGT]?B)?\s*", str(value), re.IGNORECASE)
    if match is None:
        raise ConfigurationError(f"Invalid memory value: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _MEMORY_UNITS[(unit or "B").upper()])


def parse_duration(value: int | float | str) -> int:
    """Parse a wall-clock duration to seconds.

    Accepts plain seconds, ``HH:MM:SS`` and unit strings such as ``"4h"``,
    ``"1h 30m"`` or ``"2.d"``.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration value: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)

    text = str(value).strip()
    if re.fullmatch(r"\d+:\d{2}:\d{2}", text):
        hours, minutes, seconds = (int(p) for p in text.split(":"))
        return hours * 3600 + minutes * 60 + seconds

    tokens = re.findall(r"([0-9]*\.?[0-9]+)\s*\.?\s*([smhd])", text)
    if not tokens or re.sub(r"[0-9.\ssmhd]", "", text):
        raise ConfigurationError(f"Invalid duration value: {value!r}")
    return int(sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in tokens))


@dataclass(frozen=True)
class Switches:
    """Feature switches that enable or disable whole stages."""

    skip_cellranger: bool = False
    """Read counts from ``cellranger_dir`` instead of running Cell Ranger."""

    skip_analysis: bool = False
    """Stop after counting (no filtering, clustering or markers)."""

    skip_integration: bool = False
    """Analyse each sample separately instead of integrating them."""

    def is_set(self, name: str) -> bool:
        """Check whether the named switch is on."""
        if name not in {f.name for f in fields(self)}:
            raise ConfigurationError(f"Unknown feature switch: {name}")
        return bool(getattr(self, name))


@dataclass(frozen=True)
class AnalysisParams:
    """Tunable parameters passed to the external analysis tools."""

    expected_cells: int = 10000
    """Expected number of recovered cells per sample."""

    min_genes: int = 200
    """Minimum detected genes per cell."""

    max_genes: int = 6000
    """Maximum detected genes per cell (doublet guard)."""

    max_mito_pct: float = 20.0
    """Maximum percentage of mitochondrial reads per cell."""

    min_cells: int = 3
    """Minimum cells a gene must be detected in."""

    n_variable_features: int = 2000
    """Number of highly variable features."""

    n_pcs: int = 30
    """Principal components used for neighbours and embedding."""

    resolution: float = 0.5
    """Clustering resolution."""

    integration_method: str = "cca"
    """Integration anchor method (cca, rpca, harmony)."""

    marker_logfc: float = 0.25
    """Log fold-change threshold for marker genes."""

    marker_min_pct: float = 0.1
    """Minimum fraction of cells expressing a marker."""

    report_title: str = "Single-cell RNA-seq report"
    """Title of the generated report."""


@dataclass(frozen=True)
class ResourceCeilings:
    """Global per-task resource ceilings."""

    max_cpus: int = 16
    """Maximum CPUs for a single task."""

    max_memory: int = 128 * 1024**3
    """Maximum memory in bytes for a single task."""

    max_time: int = 240 * 3600
    """Maximum wall-clock seconds for a single task."""

    def __post_init__(self):
        object.__setattr__(self, "max_cpus", int(self.max_cpus))
        object.__setattr__(self, "max_memory", parse_memory(self.max_memory))
        object.__setattr__(self, "max_time", parse_duration(self.max_time))
        if self.max_cpus <= 0 or self.max_memory <= 0 or self.max_time <= 0:
            raise ConfigurationError("Resource ceilings must be positive")

    def bounded_by_host(self) -> "ResourceCeilings":
        """Return ceilings no larger than this machine can provide."""
        host_cpus = psutil.cpu_count(logical=True) or 1
        host_memory = psutil.virtual_memory().total

        cpus = min(self.max_cpus, host_cpus)
        memory = min(self.max_memory, host_memory)
        if cpus < self.max_cpus or memory < self.max_memory:
            logger.warning(
                "Resource ceilings reduced to host capacity: %d cpus, %.1f GB",
                cpus, memory / 1024**3,
            )
        return replace(self, max_cpus=cpus, max_memory=memory)


@dataclass(frozen=True)
class Executables:
    """External tool locations."""

    cellranger: str = "cellranger"
    """Cell Ranger executable."""

    rscript: str = "Rscript"
    """Rscript executable driving the Seurat analysis scripts."""

    scripts_dir: Path = Path("bin")
    """Directory holding the analysis R scripts."""

    def __post_init__(self):
        object.__setattr__(self, "scripts_dir", Path(self.scripts_dir))


_SECTIONS = {
    "switches": Switches,
    "params": AnalysisParams,
    "ceilings": ResourceCeilings,
    "executables": Executables,
}

_PATH_FIELDS = ("manifest", "reference", "outdir", "fastq_dir", "cellranger_dir", "checkpoint_dir")


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable configuration for a single pipeline invocation.

    Example:
        >>> config = RunConfig.from_dict({
        ...     "manifest": "samples.csv",
        ...     "reference": "refdata-gex-GRCh38-2020-A",
        ...     "skip_integration": True,
        ...     "max_memory": "64.GB",
        ... })
        >>> config.validate()
    """

    manifest: Optional[Path] = None
    """Sample manifest (CSV/TSV). Required."""

    reference: Optional[Path] = None
    """Reference transcriptome directory. Required."""

    outdir: Path = Path("results")
    """Base output directory."""

    fastq_dir: Optional[Path] = None
    """Default FASTQ directory for samples without ``fastq_path``."""

    cellranger_dir: Optional[Path] = None
    """Location of pre-existing Cell Ranger results (default: outdir/cellranger)."""

    checkpoint_dir: Optional[Path] = None
    """Checkpoint store location (default: outdir/.checkpoints)."""

    switches: Switches = field(default_factory=Switches)
    params: AnalysisParams = field(default_factory=AnalysisParams)
    ceilings: ResourceCeilings = field(default_factory=ResourceCeilings)
    executables: Executables = field(default_factory=Executables)

    max_parallel: int = 4
    """Maximum number of concurrently running tasks."""

    container_engine: Optional[Literal["docker", "singularity"]] = None
    """Wrap commands in containers when set."""

    resume: bool = True
    """Skip instances whose fingerprint is already checkpointed."""

    def __post_init__(self):
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                object.__setattr__(self, name, Path(value))
        if self.max_parallel < 1:
            raise ConfigurationError("max_parallel must be at least 1")
        if self.container_engine not in (None, "docker", "singularity"):
            raise ConfigurationError(f"Unknown container engine: {self.container_engine}")

    # ==================== Derived paths ====================

    @property
    def info_dir(self) -> Path:
        """Directory for run artifacts (timeline, trace, DAG, logs)."""
        return self.outdir / "pipeline_info"

    @property
    def counts_dir(self) -> Path:
        """Directory where Cell Ranger results are read from or written to."""
        return self.cellranger_dir or self.outdir / "cellranger"

    @property
    def checkpoint_root(self) -> Path:
        """Checkpoint store directory."""
        return self.checkpoint_dir or self.outdir / ".checkpoints"

    # ==================== Parameter lookup ====================

    def param(self, name: str) -> Any:
        """
        Look up a named run parameter for task binding.

        Searches the analysis parameters, then top-level settings
        (``reference``, ``outdir``...), then executables.

        Raises:
            KeyError: If no parameter has that name.
        """
        for section in (self.params, self, self.executables):
            if name in {f.name for f in fields(section)}:
                value = getattr(section, name)
                return str(value) if isinstance(value, Path) else value
        raise KeyError(f"Unknown run parameter: {name}")

    # ==================== Validation ====================

    def validate(self) -> None:
        """
        Check that mandatory paths are set and exist.

        Raises:
            ConfigurationError: On the first missing or invalid path.
        """
        for name in ("manifest", "reference"):
            value = getattr(self, name)
            if value is None:
                raise ConfigurationError(f"Missing required parameter: {name}")
            if not value.exists():
                raise ConfigurationError(f"Path for '{name}' does not exist: {value}")

        if self.fastq_dir is not None and not self.fastq_dir.is_dir():
            raise ConfigurationError(f"FASTQ directory does not exist: {self.fastq_dir}")

    # ==================== Serialization ====================

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        def _clean(value):
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, dict):
                return {k: _clean(v) for k, v in value.items()}
            return value

        return _clean(asdict(self))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RunConfig":
        """
        Create from a dictionary.

        Keys may be nested under ``switches``/``params``/``ceilings``/
        ``executables`` or given flat; flat keys are routed to the section
        that declares them.
        """
        return cls().with_overrides(**d)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "RunConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping: {path}")

        logger.info("Loaded configuration from %s", path)
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "RunConfig":
        """Create configuration from ``SCRNASEQ_*`` environment variables."""
        overrides: dict[str, Any] = {}
        for key in ("manifest", "reference", "outdir", "fastq_dir", "cellranger_dir",
                    "max_cpus", "max_memory", "max_time", "max_parallel", "container_engine"):
            value = os.getenv(f"SCRNASEQ_{key.upper()}")
            if value:
                overrides[key] = value
        if "max_parallel" in overrides:
            overrides["max_parallel"] = int(overrides["max_parallel"])
        return cls.from_dict(overrides)

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with flat or sectioned overrides applied."""
        top: dict[str, Any] = {}
        sections: dict[str, dict[str, Any]] = {name: {} for name in _SECTIONS}
        section_fields = {
            name: {f.name for f in fields(section_cls)} for name, section_cls in _SECTIONS.items()
        }
        top_fields = {f.name for f in fields(self)}

        for key, value in overrides.items():
            if value is None and key not in _PATH_FIELDS and key != "container_engine":
                continue
            if key in _SECTIONS:
                if isinstance(value, dict):
                    sections[key].update(value)
                    continue
                raise ConfigurationError(f"Section '{key}' must be a mapping")
            owner = next((name for name, names in section_fields.items() if key in names), None)
            if owner is not None:
                sections[owner][key] = value
            elif key in top_fields:
                top[key] = value
            else:
                raise ConfigurationError(f"Unknown configuration parameter: {key}")

        for name, values in sections.items():
            if values:
                unknown = set(values) - section_fields[name]
                if unknown:
                    raise ConfigurationError(
                        f"Unknown parameters in '{name}': {', '.join(sorted(unknown))}"
                    )
                top[name] = replace(getattr(self, name), **values)

        return replace(self, **top)
