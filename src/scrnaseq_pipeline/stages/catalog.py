"""
The scRNA-seq stage catalog.

    count (per sample) -> filter (per sample) -> integrate (aggregate)
        -> cluster -> markers -> visualize -> report (aggregate)

Skipping integration, or running a single sample, rewires ``cluster`` around
``integrate`` so cluster, markers and visualize run once per sample.
"""

from __future__ import annotations

from scrnaseq_pipeline.orchestration.descriptor import (
    Cardinality,
    DescriptorRegistry,
    OutputSpec,
    Param,
    RetryPolicy,
    SampleField,
    Upstream,
)
from scrnaseq_pipeline.stages import commands

CELLRANGER_IMAGE = "nfcore/cellranger:7.1.0"
SEURAT_IMAGE = "satijalab/seurat:4.3.0"

COUNT_OUTS = "{counts_dir}/{sample_id}/outs"


def build_catalog() -> DescriptorRegistry:
    """Create the registry of analysis stages in declaration order."""
    registry = DescriptorRegistry()

    registry.define(
        "count",
        Cardinality.PER_SAMPLE,
        command=commands.cellranger_count,
        inputs={
            "sample_id": SampleField("sample_id"),
            "sample_name": SampleField("sample_name"),
            "fastqs": SampleField("fastq_path"),
            "transcriptome": Param("reference"),
            "expected_cells": Param("expected_cells"),
        },
        outputs={
            "matrix": OutputSpec(
                f"{COUNT_OUTS}/filtered_feature_bc_matrix",
                fallback=f"{COUNT_OUTS}/filtered_feature_bc_matrix",
            ),
            "summary": OutputSpec(
                f"{COUNT_OUTS}/metrics_summary.csv",
                fallback=f"{COUNT_OUTS}/metrics_summary.csv",
            ),
        },
        resources="process_high",
        retry=RetryPolicy(max_attempts=3),
        container=CELLRANGER_IMAGE,
        switch="skip_cellranger",
        params=("cellranger",),
        description="Align reads and count UMIs with cellranger count",
    )

    registry.define(
        "filter",
        Cardinality.PER_SAMPLE,
        command=commands.qc_filter,
        inputs={
            "matrix": Upstream("count", "matrix"),
            "sample_id": SampleField("sample_id"),
            "sample_name": SampleField("sample_name"),
            "condition": SampleField("condition"),
            "min_genes": Param("min_genes"),
            "max_genes": Param("max_genes"),
            "max_mito_pct": Param("max_mito_pct"),
            "min_cells": Param("min_cells"),
        },
        outputs={
            "seurat": OutputSpec("{outdir}/qc/{sample_id}/{sample_id}_filtered.rds"),
            "qc_metrics": OutputSpec("{outdir}/qc/{sample_id}/{sample_id}_qc_metrics.csv"),
            "qc_plots": OutputSpec("{outdir}/qc/{sample_id}/{sample_id}_qc_plots.pdf"),
        },
        resources="process_medium",
        container=SEURAT_IMAGE,
        switch="skip_analysis",
        params=("rscript", "scripts_dir"),
        description="QC metrics and cell/gene filtering",
    )

    registry.define(
        "integrate",
        Cardinality.AGGREGATE,
        command=commands.integrate,
        inputs={
            "datasets": Upstream("filter", "seurat"),
            "method": Param("integration_method"),
            "n_variable_features": Param("n_variable_features"),
            "n_pcs": Param("n_pcs"),
        },
        outputs={"integrated": OutputSpec("{outdir}/integration/integrated.rds")},
        resources="process_high",
        container=SEURAT_IMAGE,
        switch=("skip_analysis", "skip_integration"),
        min_samples=2,
        bypass={"integrated": "datasets"},
        params=("rscript", "scripts_dir"),
        description="Integrate filtered samples into one object",
    )

    registry.define(
        "cluster",
        Cardinality.SINGLETON,
        command=commands.cluster,
        inputs={
            "seurat": Upstream("integrate", "integrated"),
            "n_variable_features": Param("n_variable_features"),
            "n_pcs": Param("n_pcs"),
            "resolution": Param("resolution"),
        },
        outputs={"clustered": OutputSpec("{outdir}/clustering/{key}/clustered.rds")},
        resources="process_medium",
        container=SEURAT_IMAGE,
        switch="skip_analysis",
        params=("rscript", "scripts_dir"),
        description="Normalization, PCA, neighbors, clustering and UMAP",
    )

    registry.define(
        "markers",
        Cardinality.SINGLETON,
        command=commands.find_markers,
        inputs={
            "clustered": Upstream("cluster", "clustered"),
            "logfc": Param("marker_logfc"),
            "min_pct": Param("marker_min_pct"),
        },
        outputs={"markers": OutputSpec("{outdir}/markers/{key}/cluster_markers.csv")},
        resources="process_medium",
        container=SEURAT_IMAGE,
        switch="skip_analysis",
        params=("rscript", "scripts_dir"),
        description="Differential expression markers per cluster",
    )

    registry.define(
        "visualize",
        Cardinality.SINGLETON,
        command=commands.visualize,
        inputs={
            "clustered": Upstream("cluster", "clustered"),
            "markers": Upstream("markers", "markers"),
        },
        outputs={"plots": OutputSpec("{outdir}/visualization/{key}")},
        resources="process_low",
        container=SEURAT_IMAGE,
        switch="skip_analysis",
        params=("rscript", "scripts_dir"),
        description="UMAP, feature and marker dot plots",
    )

    registry.define(
        "report",
        Cardinality.AGGREGATE,
        command=commands.report,
        inputs={
            "title": Param("report_title"),
            "count_metrics": Upstream("count", "summary", optional=True),
            "qc_metrics": Upstream("filter", "qc_metrics", optional=True),
            "markers": Upstream("markers", "markers", optional=True),
            "plots": Upstream("visualize", "plots", optional=True),
        },
        outputs={"report": OutputSpec("{outdir}/report/analysis_report.html")},
        resources="process_single",
        container=SEURAT_IMAGE,
        params=("rscript", "scripts_dir"),
        description="Collect metrics and plots into the final report",
    )

    return registry


def stage_names() -> list[str]:
    """Stage names in declaration order."""
    return build_catalog().names()
