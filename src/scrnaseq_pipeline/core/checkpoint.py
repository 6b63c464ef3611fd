"""
Checkpoint and resume store.

Persists per-instance completion records keyed by a fingerprint of the
instance's resolved inputs and parameters, so that a re-invocation skips
work that is already done.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class CheckpointRecord:
    """
    A completed instance as persisted on disk.
    """

    instance: str
    """Instance identity, e.g. ``count[S1]``."""

    fingerprint: str
    """Fingerprint of resolved inputs and parameters."""

    outputs: dict[str, Any]
    """Declared outputs recorded at completion."""

    path_outputs: list[str] = field(default_factory=list)
    """Names of outputs that are file-system paths."""

    completion: str = field(default_factory=lambda: uuid.uuid4().hex)
    """Token unique to this completion; a re-run producer gets a new one."""

    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    """Completion timestamp."""

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, s: str) -> "CheckpointRecord":
        """Create from JSON string."""
        return cls(**json.loads(s))

    def missing_paths(self) -> list[str]:
        """Recorded path outputs that no longer exist on disk."""
        missing = []
        for name in self.path_outputs:
            for value in _as_list(self.outputs.get(name)):
                if not Path(value).exists():
                    missing.append(str(value))
        return missing


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _canonical(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def compute_fingerprint(
    descriptor: str,
    inputs: Mapping[str, Any],
    params: Optional[Mapping[str, Any]] = None,
    container: Optional[str] = None,
) -> str:
    """
    Compute a stable fingerprint for a task instance.

    Upstream inputs are expected to carry the producer's fingerprint, its
    completion token and a stamp of each path output alongside the value,
    so a re-run or an edited output anywhere upstream changes every
    downstream fingerprint.

    Args:
        descriptor: Descriptor name.
        inputs: Resolved input values.
        params: Resolved parameter values.
        container: Container image reference.

    Returns:
        MD5 hex digest.
    """
    payload = {
        "descriptor": descriptor,
        "inputs": _canonical(inputs),
        "params": _canonical(params or {}),
        "container": container,
    }
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.md5(payload_str.encode()).hexdigest()


def path_stamp(path: Path | str) -> dict[str, Any]:
    """Identity of a path on disk: location, size and mtime."""
    path = Path(path)
    try:
        stat = path.stat()
    except FileNotFoundError:
        return {"path": str(path), "exists": False}
    return {"path": str(path), "size": stat.st_size, "mtime_ns": stat.st_mtime_ns}


class CheckpointStore:
    """
    File-backed checkpoint store.

    One JSON record per fingerprint, written atomically. Reads take no lock;
    writes are serialized through a store-level lock.

    Example:
        >>> store = CheckpointStore("results/.checkpoints")
        >>> fp = compute_fingerprint("count", {"sample_id": "S1"})
        >>> if not store.has(fp):
        ...     store.record(fp, {"matrix": "results/cellranger/S1/outs"},
        ...                  instance="count[S1]", path_outputs=["matrix"])
        >>> store.load(fp)["matrix"]
        'results/cellranger/S1/outs'
    """

    def __init__(self, root: Path | str):
        """
        Initialize checkpoint store.

        Args:
            root: Directory for checkpoint records.
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _record_path(self, fingerprint: str) -> Path:
        # First 2 chars as subdirectory keeps directories small
        return self.root / fingerprint[:2] / f"{fingerprint}.json"

    def _read(self, fingerprint: str) -> Optional[CheckpointRecord]:
        path = self._record_path(fingerprint)
        if not path.exists():
            return None
        try:
            return CheckpointRecord.from_json(path.read_text())
        except (json.JSONDecodeError, TypeError, OSError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
            return None

    def has(self, fingerprint: str) -> bool:
        """
        Check whether a valid record exists.

        A record whose path outputs no longer exist is treated as a miss
        and discarded.
        """
        record = self._read(fingerprint)
        if record is None:
            return False

        missing = record.missing_paths()
        if missing:
            logger.warning(
                "Checkpoint for %s is stale (missing %s); will re-run",
                record.instance, ", ".join(missing),
            )
            self.invalidate(fingerprint)
            return False

        return True

    def load(self, fingerprint: str) -> dict[str, Any]:
        """
        Load recorded outputs.

        Raises:
            KeyError: If no record exists for the fingerprint.
        """
        record = self._read(fingerprint)
        if record is None:
            raise KeyError(f"No checkpoint for fingerprint {fingerprint}")
        return record.outputs

    def get(self, fingerprint: str) -> Optional[CheckpointRecord]:
        """Return the full record, or None."""
        return self._read(fingerprint)

    def record(
        self,
        fingerprint: str,
        outputs: Mapping[str, Any],
        instance: str = "",
        path_outputs: Iterable[str] = (),
    ) -> CheckpointRecord:
        """
        Persist a completion record atomically.

        Args:
            fingerprint: Instance fingerprint.
            outputs: Declared outputs of the completed instance.
            instance: Instance identity for diagnostics.
            path_outputs: Names of outputs that are file-system paths.

        Returns:
            The written record.
        """
        record = CheckpointRecord(
            instance=instance,
            fingerprint=fingerprint,
            outputs=_canonical(dict(outputs)),
            path_outputs=list(path_outputs),
        )
        target = self._record_path(fingerprint)

        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                dir=target.parent, prefix=".checkpoint_", suffix=".tmp"
            )
            try:
                with os.fdopen(temp_fd, "w") as f:
                    f.write(record.to_json())
                shutil.move(temp_path, target)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

        return record

    def invalidate(self, fingerprint: str) -> None:
        """Remove a record if present."""
        with self._lock:
            self._record_path(fingerprint).unlink(missing_ok=True)

    def clear(self) -> None:
        """Remove all records."""
        with self._lock:
            for path in self.root.glob("*/*.json"):
                path.unlink()

    def __len__(self) -> int:
        return sum(1 for _ in self.root.glob("*/*.json"))
