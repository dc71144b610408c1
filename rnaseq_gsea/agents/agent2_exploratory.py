"""
Agent 2: Exploratory Analysis

PCA of log-transformed counts and a clustered heatmap of the genes that
contribute most negatively to PC2.

Input:
- count_matrix.csv: From Agent 1
- metadata.csv: From Agent 1

Output:
- pca.png: PC1 vs PC2 coloured by treatment
- heat_pc2.png: Clustered z-score heatmap of the top PC2 contributors
- pca_coordinates.csv: Per-sample PC scores
- pca_loadings.csv: Per-gene PC loadings
- meta_agent2_exploratory.json: Execution metadata
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.decomposition import PCA

from ..config import (
    CONDITION_COLUMN,
    CONTRAST,
    FIGSIZE,
    HEATMAP_COMPONENT,
    N_HEATMAP_GENES,
    OUTPUT_FILES,
    SEED,
)
from ..utils.base_agent import BaseAgent, managed_figure
from .agent1_load import load_count_matrix, load_metadata


@dataclass(frozen=True)
class PCAResult:
    """Sample scores and gene loadings of a PCA fit."""
    scores: pd.DataFrame  # samples x PCs
    loadings: pd.DataFrame  # genes x PCs
    explained_variance_ratio: pd.Series


def log_transform(counts: pd.DataFrame) -> pd.DataFrame:
    """log2(count + 1)."""
    return np.log2(counts.astype(float) + 1)


def compute_pca(log_counts: pd.DataFrame) -> PCAResult:
    """PCA with samples as observations on the centred, unscaled matrix.

    Uses the full SVD so component signs are fixed by scikit-learn's
    ``svd_flip`` and repeat exactly for a given library version.
    """
    samples_by_genes = log_counts.T
    n_components = min(samples_by_genes.shape)
    pca = PCA(n_components=n_components, svd_solver='full')
    scores = pca.fit_transform(samples_by_genes.to_numpy())

    pc_names = [f"PC{i + 1}" for i in range(n_components)]
    return PCAResult(
        scores=pd.DataFrame(scores, index=samples_by_genes.index, columns=pc_names),
        loadings=pd.DataFrame(pca.components_.T, index=log_counts.index, columns=pc_names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=pc_names)
    )


def select_loading_genes(
    loadings: pd.DataFrame,
    component: str = HEATMAP_COMPONENT,
    n: int = N_HEATMAP_GENES
) -> List[str]:
    """Genes with the most negative loadings on ``component``, most negative first."""
    if component not in loadings.columns:
        raise ValueError(f"Component {component} not available (have {list(loadings.columns)})")
    ordered = loadings[component].sort_values(ascending=True, kind='mergesort')
    return ordered.index[:n].tolist()


def zscore_rows(log_counts: pd.DataFrame) -> pd.DataFrame:
    """Per-gene z-score across samples (sample standard deviation)."""
    mean = log_counts.mean(axis=1)
    std = log_counts.std(axis=1, ddof=1)
    return log_counts.sub(mean, axis=0).div(std.replace(0, np.nan), axis=0)


def plot_pca(
    scores: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_column: str = CONDITION_COLUMN,
    explained: Optional[pd.Series] = None
) -> plt.Figure:
    """Scatter of PC1 vs PC2 coloured by condition, square panel."""
    plot_df = metadata[[condition_column]].join(scores[["PC1", "PC2"]])

    fig, ax = plt.subplots(figsize=FIGSIZE["pca"])
    sns.scatterplot(data=plot_df, x="PC1", y="PC2", hue=condition_column, ax=ax)
    ax.set_box_aspect(1)
    if explained is not None:
        ax.set_xlabel(f"PC1 ({explained['PC1'] * 100:.1f}%)")
        ax.set_ylabel(f"PC2 ({explained['PC2'] * 100:.1f}%)")
    fig.tight_layout()
    return fig


def plot_heatmap(zscores: pd.DataFrame, seed: int = SEED) -> sns.matrix.ClusterGrid:
    """Clustered heatmap of gene z-scores; the gene dendrogram is hidden."""
    np.random.seed(seed)
    g = sns.clustermap(
        zscores,
        cmap="RdBu_r",
        center=0,
        row_cluster=len(zscores) > 1,
        col_cluster=zscores.shape[1] > 1,
        yticklabels=True,
        xticklabels=True,
        figsize=FIGSIZE["heatmap"],
        cbar_kws={'label': 'z-score'}
    )
    try:
        g.ax_row_dendrogram.set_visible(False)
        plt.setp(g.ax_heatmap.get_yticklabels(), fontsize=7)
    except Exception:
        plt.close(g.figure)
        raise
    return g


class ExploratoryAgent(BaseAgent):
    """Agent for PCA and PC2 heatmap exploration."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "condition_column": CONDITION_COLUMN,
            "contrast": list(CONTRAST),
            "heatmap_component": HEATMAP_COMPONENT,
            "n_heatmap_genes": N_HEATMAP_GENES,
            "seed": SEED,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_exploratory", input_dir, output_dir, merged_config)

        self.counts: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate count matrix and metadata."""
        self.require_inputs(OUTPUT_FILES["count_matrix"], OUTPUT_FILES["metadata"])

        self.counts = load_count_matrix(self.input_dir / OUTPUT_FILES["count_matrix"])
        self.metadata = load_metadata(
            self.input_dir / OUTPUT_FILES["metadata"],
            self.config["condition_column"],
            self.config["contrast"]
        )

        if list(self.metadata.index) != list(self.counts.columns):
            self.logger.error("Metadata rows are not aligned to count matrix columns")
            return False

        if self.counts.shape[1] < 2:
            self.logger.error("PCA needs at least two samples")
            return False

        return True

    def run(self) -> Dict[str, Any]:
        """Compute PCA and draw both figures."""
        condition_col = self.config["condition_column"]
        component = self.config["heatmap_component"]

        log_counts = log_transform(self.counts)

        self.logger.info("Computing principal components...")
        pca = compute_pca(log_counts)
        for pc in pca.explained_variance_ratio.index[:2]:
            self.logger.info(f"  {pc}: {pca.explained_variance_ratio[pc] * 100:.1f}% variance")

        coords = self.metadata[[condition_col]].join(pca.scores)
        self.save_csv(coords, "pca_coordinates.csv", index=True)
        self.save_csv(pca.loadings, "pca_loadings.csv", index=True)

        self.logger.info("Generating PCA plot...")
        with managed_figure(plot_pca(pca.scores, self.metadata, condition_col,
                                     pca.explained_variance_ratio)) as fig:
            self.save_figure(fig, OUTPUT_FILES["pca_plot"])

        # Sign of a component is implementation-defined; the selection is
        # reproducible only for a fixed decomposition.
        top_genes = select_loading_genes(pca.loadings, component, self.config["n_heatmap_genes"])
        self.logger.info(f"Selected {len(top_genes)} most negative {component} contributors")

        zscores = zscore_rows(log_counts).loc[top_genes]
        undefined = zscores.index[zscores.isna().any(axis=1)].tolist()
        if undefined:
            self.logger.warning(f"Dropping {len(undefined)} zero-variance genes from heatmap: {undefined}")
            zscores = zscores.drop(index=undefined)

        heatmap_drawn = len(zscores) > 0
        if heatmap_drawn:
            self.logger.info("Generating heatmap...")
            g = plot_heatmap(zscores, self.config["seed"])
            with managed_figure(g.figure) as fig:
                self.save_figure(fig, OUTPUT_FILES["heatmap"])
        else:
            self.logger.warning("Skipping heatmap - no genes with defined z-scores")

        return {
            "n_components": int(pca.scores.shape[1]),
            "explained_variance_ratio": {
                k: float(v) for k, v in pca.explained_variance_ratio.items()
            },
            "heatmap_component": component,
            "heatmap_genes": zscores.index.tolist(),
            "heatmap_drawn": heatmap_drawn
        }

    def validate_outputs(self) -> bool:
        """Validate exploratory outputs."""
        if not (self.output_dir / OUTPUT_FILES["pca_plot"]).exists():
            self.logger.error(f"Missing output file: {OUTPUT_FILES['pca_plot']}")
            return False
        if not (self.output_dir / OUTPUT_FILES["heatmap"]).exists():
            self.logger.warning("Heatmap not generated (this may be expected)")
        return True
