"""
Sample manifest parsing.

The manifest is a CSV or TSV table with one row per 10X sequencing run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

from scrnaseq_pipeline.core.exceptions import ManifestError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("sample_id",)
OPTIONAL_COLUMNS = ("fastq_path", "sample_name", "condition")
DEFAULT_CONDITION = "Unknown"


@dataclass(frozen=True)
class Sample:
    """One row of the sample manifest."""

    sample_id: str
    """Unique sample identifier."""

    fastq_path: Optional[Path]
    """Directory holding the sample's FASTQ files."""

    sample_name: str
    """Display name used in plots and the report."""

    condition: str = DEFAULT_CONDITION
    """Experimental condition label."""

    def to_dict(self) -> dict[str, Optional[str]]:
        """Convert to dictionary."""
        return {
            "sample_id": self.sample_id,
            "fastq_path": str(self.fastq_path) if self.fastq_path else None,
            "sample_name": self.sample_name,
            "condition": self.condition,
        }


def _read_table(path: Path) -> pd.DataFrame:
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    try:
        return pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False, comment="#")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ManifestError(f"Cannot parse manifest {path}: {e}") from e


def parse_manifest(
    path: Path | str,
    fastq_dir: Optional[Path | str] = None,
) -> list[Sample]:
    """Parse a sample manifest.

    Parameters
    ----------
    path : Path or str
        CSV (``.csv``) or TSV (``.tsv``/``.txt``) manifest
    fastq_dir : Path or str, optional
        Global default FASTQ directory for rows without ``fastq_path``

    Returns
    -------
    list[Sample]
        Samples in manifest order

    Raises
    ------
    ManifestError
        If the file is missing, a required column is absent, a
        ``sample_id`` is empty or duplicated, or the manifest has no rows
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")

    table = _read_table(path)
    table.columns = [str(c).strip() for c in table.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in table.columns]
    if missing:
        raise ManifestError(f"Manifest {path} is missing required column(s): {', '.join(missing)}")

    if table.empty:
        raise ManifestError(f"Manifest has no samples: {path}")

    table = table.apply(lambda col: col.str.strip())

    if (table["sample_id"] == "").any():
        rows = [i + 2 for i in table.index[table["sample_id"] == ""]]
        raise ManifestError(f"Empty sample_id in manifest rows: {rows}")

    duplicated = table.loc[table["sample_id"].duplicated(), "sample_id"].unique().tolist()
    if duplicated:
        raise ManifestError(f"Duplicate sample_id in manifest: {', '.join(duplicated)}")

    for column in OPTIONAL_COLUMNS:
        if column not in table.columns:
            table[column] = ""

    default_fastq = Path(fastq_dir) if fastq_dir else None
    samples = []
    for row in table.itertuples(index=False):
        fastq = Path(row.fastq_path) if row.fastq_path else default_fastq
        samples.append(Sample(
            sample_id=row.sample_id,
            fastq_path=fastq,
            sample_name=row.sample_name or row.sample_id,
            condition=row.condition or DEFAULT_CONDITION,
        ))

    logger.info("Parsed %d sample(s) from %s", len(samples), path)
    return samples
