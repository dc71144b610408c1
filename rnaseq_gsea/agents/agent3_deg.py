"""
Agent 3: Differential Expression Gene (DEG) Analysis

Uses PyDESeq2 (negative-binomial GLM with empirical Bayes dispersion
shrinkage and Benjamini-Hochberg adjustment) to compare the treated level
against the reference level.

Input:
- count_matrix.csv: From Agent 1
- metadata.csv: From Agent 1

Output:
- deseq2_results.csv: Full DESeq2 results with a symbol column
- deg_significant.csv: Genes passing padj/log2FC thresholds
- normalized_counts.csv: DESeq2 size-factor normalized counts
- meta_agent3_deg.json: Execution metadata
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from ..config import (
    CONDITION_COLUMN,
    CONTRAST,
    LOG2FC_CUTOFF,
    OUTPUT_FILES,
    PADJ_CUTOFF,
)
from ..utils.base_agent import BaseAgent
from .agent1_load import load_count_matrix, load_metadata
from .agent4_volcano import is_significant

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['symbol', 'baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


def run_deseq2(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_column: str = CONDITION_COLUMN,
    contrast: Sequence[str] = CONTRAST,
    lfc_shrink: bool = False,
    n_cpus: int = 1
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Fit ``~ condition`` and test treated vs reference.

    Args:
        counts: Integer count matrix (genes x samples)
        metadata: Sample metadata indexed like ``counts.columns``
        condition_column: Two-level covariate in ``metadata``
        contrast: ``[reference, treated]``
        lfc_shrink: Replace log2 fold-changes with apeGLM-shrunk estimates
        n_cpus: Worker count handed to PyDESeq2

    Returns:
        (results, normalized_counts): results indexed by gene with
        baseMean, log2FoldChange, lfcSE, stat, pvalue, padj; normalized
        counts as genes x samples.
    """
    reference, treated = contrast

    if list(metadata.index) != list(counts.columns):
        raise ValueError("Metadata rows must be aligned to count matrix columns")

    # PyDESeq2 expects samples as rows
    counts_t = counts.T.astype(int)
    # Category order makes the first contrast level the model reference
    design_df = pd.DataFrame(
        {condition_column: pd.Categorical(
            metadata[condition_column].astype(str).to_numpy(),
            categories=[reference, treated]
        )},
        index=counts_t.index
    )

    inference = DefaultInference(n_cpus=n_cpus)
    dds = DeseqDataSet(
        counts=counts_t,
        metadata=design_df,
        design=f"~{condition_column}",
        refit_cooks=True,
        inference=inference,
        quiet=True
    )
    logger.info("Running DESeq2 (this may take a while)...")
    dds.deseq2()

    stat_res = DeseqStats(
        dds,
        contrast=[condition_column, treated, reference],
        inference=inference,
        quiet=True
    )
    stat_res.summary()

    if lfc_shrink:
        lfc_columns = list(dds.varm["LFC"].columns)
        coeff = f"{condition_column}[T.{treated}]"
        if coeff not in lfc_columns:
            raise ValueError(f"No coefficient {coeff} among {lfc_columns}")
        logger.info(f"Applying apeGLM LFC shrinkage on {coeff}...")
        stat_res.lfc_shrink(coeff=coeff)

    results = stat_res.results_df.copy()
    results = results[['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']]
    results.index.name = counts.index.name

    normalized = pd.DataFrame(
        np.asarray(dds.layers["normed_counts"]),
        index=counts_t.index,
        columns=counts_t.columns
    ).T

    return results, normalized


class DEGAgent(BaseAgent):
    """Agent for DESeq2-based differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "condition_column": CONDITION_COLUMN,
            "contrast": list(CONTRAST),  # [reference, treated]
            "padj_cutoff": PADJ_CUTOFF,
            "log2fc_cutoff": LOG2FC_CUTOFF,
            "lfc_shrink": False,  # apeGLM LFC shrinkage
            "n_cpus": 1,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_deg", input_dir, output_dir, merged_config)

        self.count_matrix: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate count matrix and metadata."""
        self.require_inputs(OUTPUT_FILES["count_matrix"], OUTPUT_FILES["metadata"])

        self.count_matrix = load_count_matrix(self.input_dir / OUTPUT_FILES["count_matrix"])
        self.metadata = load_metadata(
            self.input_dir / OUTPUT_FILES["metadata"],
            self.config["condition_column"],
            self.config["contrast"]
        )

        condition_col = self.config["condition_column"]
        if list(self.metadata.index) != list(self.count_matrix.columns):
            self.logger.error("Metadata rows are not aligned to count matrix columns")
            return False

        group_sizes = self.metadata[condition_col].value_counts()
        for level in self.config["contrast"]:
            if group_sizes.get(level, 0) < 1:
                self.logger.error(f"No samples for level '{level}'")
                return False

        self.logger.info(f"Count matrix: {self.count_matrix.shape[0]} genes, {self.count_matrix.shape[1]} samples")
        self.logger.info(f"Conditions: {group_sizes.to_dict()}")

        return True

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis."""
        contrast = self.config["contrast"]
        self.logger.info(f"Design: ~ {self.config['condition_column']}")
        self.logger.info(f"Contrast: {contrast[1]} vs {contrast[0]}")

        results, norm_counts = run_deseq2(
            self.count_matrix,
            self.metadata,
            self.config["condition_column"],
            contrast,
            lfc_shrink=self.config["lfc_shrink"],
            n_cpus=self.config["n_cpus"]
        )

        na_count = int(results['padj'].isna().sum())
        self.logger.info(f"NA padj values (filtered or all-zero genes): {na_count}")

        results_df = results.copy()
        results_df.insert(0, 'symbol', results_df.index.astype(str))
        results_df = results_df[RESULT_COLUMNS]
        self.save_csv(results_df, OUTPUT_FILES["deg_results"])

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        mask = is_significant(results_df['padj'], results_df['log2FoldChange'],
                              padj_cutoff, log2fc_cutoff)
        significant = results_df[mask].copy()
        significant['direction'] = np.where(significant['log2FoldChange'] > 0, 'up', 'down')
        significant = significant.sort_values('padj')
        self.save_csv(significant[['symbol', 'log2FoldChange', 'padj', 'direction']],
                      "deg_significant.csv")

        self.save_csv(norm_counts, "normalized_counts.csv", index=True)

        up_count = int((significant['direction'] == 'up').sum())
        down_count = int((significant['direction'] == 'down').sum())

        self.logger.info(f"DEG Analysis Complete:")
        self.logger.info(f"  Total genes analyzed: {len(results_df)}")
        self.logger.info(f"  Significant DEGs: {len(significant)}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")

        return {
            "method_used": "PyDESeq2",
            "lfc_shrink": bool(self.config["lfc_shrink"]),
            "total_genes": len(results_df),
            "na_padj": na_count,
            "deg_count": len(significant),
            "up_count": up_count,
            "down_count": down_count,
            "padj_cutoff": padj_cutoff,
            "log2fc_cutoff": log2fc_cutoff
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        required_files = [
            OUTPUT_FILES["deg_results"],
            "deg_significant.csv",
            "normalized_counts.csv"
        ]

        for filename in required_files:
            filepath = self.output_dir / filename
            if not filepath.exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        res = pd.read_csv(self.output_dir / OUTPUT_FILES["deg_results"])
        missing = [c for c in RESULT_COLUMNS if c not in res.columns]
        if missing:
            self.logger.error(f"Result table missing columns: {missing}")
            return False

        sig_df = pd.read_csv(self.output_dir / "deg_significant.csv")
        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        return True
