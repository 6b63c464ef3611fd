"""Tests for core infrastructure modules."""

import os
from pathlib import Path
from types import SimpleNamespace

import pytest


class TestParsing:
    """Test memory and duration parsing."""

    @pytest.mark.parametrize("value, expected", [
        ("64.GB", 64 * 1024**3),
        ("512 MB", 512 * 1024**2),
        ("1.5GB", int(1.5 * 1024**3)),
        ("2tb", 2 * 1024**4),
        (1024, 1024),
    ])
    def test_parse_memory(self, value, expected):
        from scrnaseq_pipeline.core.config import parse_memory
        assert parse_memory(value) == expected

    @pytest.mark.parametrize("value, expected", [
        ("4h", 4 * 3600),
        ("1h 30m", 5400),
        ("2.d", 2 * 86400),
        ("01:30:00", 5400),
        (90, 90),
    ])
    def test_parse_duration(self, value, expected):
        from scrnaseq_pipeline.core.config import parse_duration
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["lots", "12 parsecs", True])
    def test_invalid_values(self, value):
        from scrnaseq_pipeline.core.config import parse_duration, parse_memory
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            parse_memory(value)
        with pytest.raises(ConfigurationError):
            parse_duration(value)


class TestRunConfig:
    """Test run configuration."""

    def test_defaults(self):
        from scrnaseq_pipeline.core.config import RunConfig

        config = RunConfig()
        assert config.outdir == Path("results")
        assert config.max_parallel == 4
        assert config.resume is True
        assert config.ceilings.max_cpus == 16
        assert config.ceilings.max_memory == 128 * 1024**3
        assert config.ceilings.max_time == 240 * 3600
        assert config.params.resolution == 0.5

    def test_derived_paths(self):
        from scrnaseq_pipeline.core.config import RunConfig

        config = RunConfig(outdir="out")
        assert config.info_dir == Path("out/pipeline_info")
        assert config.counts_dir == Path("out/cellranger")
        assert config.checkpoint_root == Path("out/.checkpoints")

        config = RunConfig(outdir="out", cellranger_dir="/data/counts")
        assert config.counts_dir == Path("/data/counts")

    def test_from_dict_flat_keys(self):
        from scrnaseq_pipeline.core.config import RunConfig

        config = RunConfig.from_dict({
            "manifest": "samples.csv",
            "skip_integration": True,
            "resolution": 0.8,
            "max_memory": "64.GB",
            "rscript": "/opt/R/bin/Rscript",
        })
        assert config.manifest == Path("samples.csv")
        assert config.switches.skip_integration is True
        assert config.params.resolution == 0.8
        assert config.ceilings.max_memory == 64 * 1024**3
        assert config.executables.rscript == "/opt/R/bin/Rscript"

    def test_from_dict_sections(self):
        from scrnaseq_pipeline.core.config import RunConfig

        config = RunConfig.from_dict({
            "switches": {"skip_cellranger": True},
            "params": {"n_pcs": 20},
            "ceilings": {"max_time": "48h"},
        })
        assert config.switches.skip_cellranger is True
        assert config.params.n_pcs == 20
        assert config.ceilings.max_time == 48 * 3600

    def test_unknown_key(self):
        from scrnaseq_pipeline.core.config import RunConfig
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError, match="resolutoin"):
            RunConfig.from_dict({"resolutoin": 0.8})
        with pytest.raises(ConfigurationError, match="bogus"):
            RunConfig.from_dict({"params": {"bogus": 1}})

    def test_invalid_values(self):
        from scrnaseq_pipeline.core.config import RunConfig
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            RunConfig(max_parallel=0)
        with pytest.raises(ConfigurationError):
            RunConfig.from_dict({"container_engine": "podman"})
        with pytest.raises(ConfigurationError):
            RunConfig.from_dict({"max_cpus": 0})

    def test_with_overrides_is_copy(self):
        from scrnaseq_pipeline.core.config import RunConfig

        base = RunConfig()
        changed = base.with_overrides(resolution=1.0, max_parallel=2)
        assert base.params.resolution == 0.5
        assert changed.params.resolution == 1.0
        assert changed.max_parallel == 2

    def test_param_lookup(self):
        from scrnaseq_pipeline.core.config import RunConfig

        config = RunConfig(reference="ref")
        assert config.param("min_genes") == 200
        assert config.param("reference") == "ref"
        assert config.param("cellranger") == "cellranger"
        assert config.param("scripts_dir") == "bin"
        with pytest.raises(KeyError):
            config.param("no_such_param")

    def test_unknown_switch(self):
        from scrnaseq_pipeline.core.config import Switches
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        assert Switches(skip_analysis=True).is_set("skip_analysis")
        with pytest.raises(ConfigurationError):
            Switches().is_set("skip_everything")

    def test_validate(self, run_config):
        run_config.validate()

    def test_validate_missing_manifest(self, reference_dir):
        from scrnaseq_pipeline.core.config import RunConfig
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError, match="manifest"):
            RunConfig(reference=reference_dir).validate()

    def test_validate_nonexistent_reference(self, manifest_path, temp_dir):
        from scrnaseq_pipeline.core.config import RunConfig
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        config = RunConfig(manifest=manifest_path, reference=temp_dir / "missing")
        with pytest.raises(ConfigurationError, match="reference"):
            config.validate()

    def test_validate_fastq_dir(self, run_config, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        config = run_config.with_overrides(fastq_dir=temp_dir / "nowhere")
        with pytest.raises(ConfigurationError, match="FASTQ"):
            config.validate()

    def test_from_yaml(self, temp_dir):
        from scrnaseq_pipeline.core.config import RunConfig

        path = temp_dir / "run.yaml"
        path.write_text(
            "manifest: samples.csv\n"
            "outdir: out\n"
            "switches:\n"
            "  skip_integration: true\n"
            "params:\n"
            "  resolution: 1.2\n"
            "max_cpus: 8\n"
        )
        config = RunConfig.from_yaml(path)
        assert config.outdir == Path("out")
        assert config.switches.skip_integration is True
        assert config.params.resolution == 1.2
        assert config.ceilings.max_cpus == 8

    def test_from_yaml_missing(self, temp_dir):
        from scrnaseq_pipeline.core.config import RunConfig
        from scrnaseq_pipeline.core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            RunConfig.from_yaml(temp_dir / "absent.yaml")

    def test_default_yaml_loads(self):
        from scrnaseq_pipeline.core.config import RunConfig

        path = Path(__file__).parents[2] / "config" / "default.yaml"
        assert RunConfig.from_yaml(path) == RunConfig()

    def test_from_env(self, monkeypatch):
        from scrnaseq_pipeline.core.config import RunConfig

        monkeypatch.setenv("SCRNASEQ_OUTDIR", "/scratch/out")
        monkeypatch.setenv("SCRNASEQ_MAX_PARALLEL", "8")
        config = RunConfig.from_env()
        assert config.outdir == Path("/scratch/out")
        assert config.max_parallel == 8

    def test_to_dict(self):
        from scrnaseq_pipeline.core.config import RunConfig

        d = RunConfig(manifest="samples.csv").to_dict()
        assert d["manifest"] == "samples.csv"
        assert d["switches"]["skip_analysis"] is False
        assert d["executables"]["scripts_dir"] == "bin"

    def test_bounded_by_host(self, monkeypatch, caplog):
        from scrnaseq_pipeline.core import config as config_module
        from scrnaseq_pipeline.core.config import ResourceCeilings

        monkeypatch.setattr(config_module.psutil, "cpu_count", lambda logical=True: 4)
        monkeypatch.setattr(
            config_module.psutil, "virtual_memory", lambda: SimpleNamespace(total=8 * 1024**3)
        )
        bounded = ResourceCeilings().bounded_by_host()
        assert bounded.max_cpus == 4
        assert bounded.max_memory == 8 * 1024**3
        assert bounded.max_time == 240 * 3600
        assert "host capacity" in caplog.text


class TestManifest:
    """Test sample manifest parsing."""

    def test_parse_csv(self, manifest_path, fastq_root):
        from scrnaseq_pipeline.core.manifest import parse_manifest

        samples = parse_manifest(manifest_path)
        assert [s.sample_id for s in samples] == ["S1", "S2"]
        assert samples[0].fastq_path == fastq_root / "S1"
        assert samples[0].sample_name == "Donor 1"
        assert samples[1].condition == "disease"

    def test_parse_tsv_with_defaults(self, temp_dir):
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.tsv"
        path.write_text("sample_id\tcondition\nA\t\nB\tcase\n")
        samples = parse_manifest(path, fastq_dir=temp_dir)
        assert samples[0].sample_name == "A"
        assert samples[0].condition == "Unknown"
        assert samples[0].fastq_path == temp_dir
        assert samples[1].condition == "case"

    def test_no_fastq_location(self, temp_dir):
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.csv"
        path.write_text("sample_id\nA\n")
        assert parse_manifest(path)[0].fastq_path is None

    def test_missing_file(self, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ManifestError
        from scrnaseq_pipeline.core.manifest import parse_manifest

        with pytest.raises(ManifestError, match="not found"):
            parse_manifest(temp_dir / "nope.csv")

    def test_missing_column(self, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ManifestError
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.csv"
        path.write_text("name,fastq_path\nA,/data\n")
        with pytest.raises(ManifestError, match="sample_id"):
            parse_manifest(path)

    def test_duplicate_sample(self, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ManifestError
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.csv"
        path.write_text("sample_id\nA\nB\nA\n")
        with pytest.raises(ManifestError, match="Duplicate"):
            parse_manifest(path)

    def test_empty_sample_id(self, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ManifestError
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.csv"
        path.write_text("sample_id,sample_name\nA,a\n,b\n")
        with pytest.raises(ManifestError, match=r"\[3\]"):
            parse_manifest(path)

    def test_empty_manifest(self, temp_dir):
        from scrnaseq_pipeline.core.exceptions import ManifestError
        from scrnaseq_pipeline.core.manifest import parse_manifest

        path = temp_dir / "samples.csv"
        path.write_text("sample_id,fastq_path\n")
        with pytest.raises(ManifestError, match="no samples"):
            parse_manifest(path)

    def test_manifest_error_is_configuration_error(self):
        from scrnaseq_pipeline.core.exceptions import ConfigurationError, ManifestError
        assert issubclass(ManifestError, ConfigurationError)


class TestCheckpointStore:
    """Test checkpoint functionality."""

    def test_fingerprint_stable(self):
        from scrnaseq_pipeline.core.checkpoint import compute_fingerprint

        a = compute_fingerprint("filter[S1]", {"min_genes": 200, "sample_id": "S1"}, {"rscript": "Rscript"})
        b = compute_fingerprint("filter[S1]", {"sample_id": "S1", "min_genes": 200}, {"rscript": "Rscript"})
        assert a == b
        assert len(a) == 32

    def test_fingerprint_sensitive(self):
        from scrnaseq_pipeline.core.checkpoint import compute_fingerprint

        base = compute_fingerprint("cluster", {"resolution": 0.5})
        assert compute_fingerprint("cluster", {"resolution": 0.8}) != base
        assert compute_fingerprint("markers", {"resolution": 0.5}) != base
        assert compute_fingerprint("cluster", {"resolution": 0.5}, {"rscript": "R"}) != base
        assert compute_fingerprint("cluster", {"resolution": 0.5}, container="seurat:4") != base

    def test_fingerprint_includes_upstream(self):
        from scrnaseq_pipeline.core.checkpoint import compute_fingerprint

        a = compute_fingerprint("filter[S1]", {"matrix": {"fingerprint": "aaa", "value": "/m"}})
        b = compute_fingerprint("filter[S1]", {"matrix": {"fingerprint": "bbb", "value": "/m"}})
        assert a != b

    def test_record_and_load(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        out = temp_dir / "matrix"
        out.mkdir()
        store = CheckpointStore(temp_dir / "ckpt")
        store.record("abc123", {"matrix": out, "n": 5}, instance="count[S1]", path_outputs=["matrix"])

        assert store.has("abc123")
        assert store.load("abc123") == {"matrix": str(out), "n": 5}
        assert store.get("abc123").instance == "count[S1]"
        assert len(store) == 1

    def test_each_completion_gets_new_token(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        store = CheckpointStore(temp_dir)
        first = store.record("fp", {"x": 1}, instance="cluster")
        second = store.record("fp", {"x": 1}, instance="cluster")

        assert first.completion != second.completion
        assert store.get("fp").completion == second.completion

    def test_miss(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        store = CheckpointStore(temp_dir)
        assert not store.has("nothing")
        assert store.get("nothing") is None
        with pytest.raises(KeyError):
            store.load("nothing")

    def test_stale_record_invalidated(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        out = temp_dir / "markers.csv"
        out.write_text("gene")
        store = CheckpointStore(temp_dir / "ckpt")
        store.record("fp1", {"markers": str(out)}, path_outputs=["markers"])

        out.unlink()
        assert not store.has("fp1")
        assert len(store) == 0

    def test_fan_in_paths_checked(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointRecord

        present = temp_dir / "a"
        present.write_text("")
        record = CheckpointRecord(
            instance="report",
            fingerprint="fp",
            outputs={"plots": [str(present), str(temp_dir / "b")]},
            path_outputs=["plots"],
        )
        assert record.missing_paths() == [str(temp_dir / "b")]

    def test_unreadable_record_is_miss(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        store = CheckpointStore(temp_dir)
        path = temp_dir / "ab" / "abcd.json"
        path.parent.mkdir()
        path.write_text("{not json")
        assert not store.has("abcd")

    def test_record_is_atomic(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        store = CheckpointStore(temp_dir)
        store.record("ff00", {"x": 1})
        store.record("ff00", {"x": 2})
        assert store.load("ff00") == {"x": 2}
        assert not list(temp_dir.glob("**/*.tmp"))

    def test_clear(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import CheckpointStore

        store = CheckpointStore(temp_dir)
        store.record("aa11", {})
        store.record("bb22", {})
        assert len(store) == 2
        store.clear()
        assert len(store) == 0

    def test_path_stamp(self, temp_dir):
        from scrnaseq_pipeline.core.checkpoint import path_stamp

        path = temp_dir / "metrics_summary.csv"
        path.write_text("a")
        first = path_stamp(path)
        assert first["size"] == 1

        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
        assert path_stamp(path) != first
        assert path_stamp(temp_dir / "missing") == {"path": str(temp_dir / "missing"), "exists": False}
