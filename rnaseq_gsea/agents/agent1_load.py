"""
Agent 1: Data Loading

Reads the raw count table and the sample metadata, removes duplicated gene
rows and aligns the metadata to the count matrix columns.

Input:
- Chow_PNAS_rawcounts.csv: gene column + one integer column per sample
- Chow_PNAS_meta.csv: one row per sample with sample and treatment columns

Output:
- count_matrix.csv: Deduplicated count matrix (genes x samples)
- metadata.csv: Metadata reordered to the count matrix columns
- meta_agent1_load.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..config import (
    CONDITION_COLUMN,
    CONTRAST,
    COUNTS_FILE,
    GENE_COLUMN,
    METADATA_FILE,
    OUTPUT_FILES,
    SAMPLE_COLUMN,
)
from ..utils.base_agent import BaseAgent


def infer_separator(path: Path) -> str:
    """Pick the delimiter from the file suffix."""
    return '\t' if Path(path).suffix.lower() in ('.tsv', '.txt') else ','


def deduplicate_genes(counts: pd.DataFrame, gene_column: str = GENE_COLUMN) -> pd.DataFrame:
    """Drop rows whose gene id repeats an earlier row (first occurrence wins)."""
    return counts.loc[~counts[gene_column].duplicated(keep='first')].reset_index(drop=True)


def build_count_matrix(counts: pd.DataFrame, gene_column: str = GENE_COLUMN) -> pd.DataFrame:
    """Index the count table by gene id and coerce the sample columns to integers.

    Raises:
        ValueError: If the gene column is missing or a count is missing,
            negative or non-integer.
    """
    if gene_column not in counts.columns:
        raise ValueError(f"Gene column '{gene_column}' not in count table")

    matrix = counts.set_index(gene_column)
    matrix.index = matrix.index.astype(str)
    matrix.index.name = gene_column
    matrix.columns = matrix.columns.astype(str)

    values = matrix.apply(pd.to_numeric, errors='coerce')
    if values.isna().any().any():
        bad = values.columns[values.isna().any()].tolist()
        raise ValueError(f"Missing or non-numeric counts in samples: {bad}")
    if (values < 0).any().any():
        raise ValueError("Count matrix contains negative values")
    if not np.allclose(values.to_numpy(), np.round(values.to_numpy())):
        raise ValueError("Count matrix contains non-integer values")

    return values.round().astype(np.int64)


def build_metadata(
    meta: pd.DataFrame,
    sample_column: str = SAMPLE_COLUMN,
    condition_column: str = CONDITION_COLUMN,
    levels: Sequence[str] = CONTRAST
) -> pd.DataFrame:
    """Index metadata by sample id and make the condition a two-level category.

    The first entry of ``levels`` is the reference level; it sets the sign of
    every fold-change reported downstream.
    """
    for col in (sample_column, condition_column):
        if col not in meta.columns:
            raise ValueError(f"Column '{col}' not in metadata")
    if len(levels) != 2:
        raise ValueError(f"Exactly two condition levels required, got {list(levels)}")

    metadata = meta.copy()
    metadata[sample_column] = metadata[sample_column].astype(str)
    if metadata[sample_column].duplicated().any():
        dupes = metadata.loc[metadata[sample_column].duplicated(), sample_column].tolist()
        raise ValueError(f"Duplicated sample ids in metadata: {dupes}")
    metadata = metadata.set_index(sample_column)

    observed = set(metadata[condition_column].astype(str))
    if observed != set(levels):
        raise ValueError(
            f"Condition '{condition_column}' has levels {sorted(observed)}, "
            f"expected exactly {list(levels)}"
        )

    metadata[condition_column] = pd.Categorical(
        metadata[condition_column].astype(str), categories=list(levels), ordered=True
    )
    return metadata


def align_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """Return metadata reordered to the count matrix column order.

    Raises:
        ValueError: If the sample ids of both tables are not the same set.
    """
    count_samples = list(counts.columns)
    meta_samples = list(metadata.index)

    missing_meta = [s for s in count_samples if s not in set(meta_samples)]
    missing_counts = [s for s in meta_samples if s not in set(count_samples)]
    if missing_meta or missing_counts:
        raise ValueError(
            "Sample ids differ between count matrix and metadata: "
            f"not in metadata={missing_meta}, not in count matrix={missing_counts}"
        )

    return metadata.loc[count_samples]


def coerce_condition(
    metadata: pd.DataFrame,
    condition_column: str = CONDITION_COLUMN,
    levels: Sequence[str] = CONTRAST
) -> pd.DataFrame:
    """Restore the ordered condition category after a CSV round trip."""
    metadata = metadata.copy()
    metadata[condition_column] = pd.Categorical(
        metadata[condition_column].astype(str), categories=list(levels), ordered=True
    )
    return metadata


def load_count_matrix(path: Path, gene_column: str = GENE_COLUMN) -> pd.DataFrame:
    """Read a cleaned count matrix written by the loader agent."""
    counts = pd.read_csv(path, index_col=0)
    counts.index = counts.index.astype(str)
    counts.index.name = gene_column
    counts.columns = counts.columns.astype(str)
    return counts


def load_metadata(
    path: Path,
    condition_column: str = CONDITION_COLUMN,
    levels: Sequence[str] = CONTRAST
) -> pd.DataFrame:
    """Read aligned metadata written by the loader agent."""
    metadata = pd.read_csv(path, index_col=0)
    metadata.index = metadata.index.astype(str)
    return coerce_condition(metadata, condition_column, levels)


class DataLoaderAgent(BaseAgent):
    """Agent for loading, deduplicating and aligning the input tables."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "counts_file": COUNTS_FILE,
            "metadata_file": METADATA_FILE,
            "gene_column": GENE_COLUMN,
            "sample_column": SAMPLE_COLUMN,
            "condition_column": CONDITION_COLUMN,
            "contrast": list(CONTRAST),  # [reference, treated]
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_load", input_dir, output_dir, merged_config)

        self.raw_counts: Optional[pd.DataFrame] = None
        self.raw_metadata: Optional[pd.DataFrame] = None
        self.duplicated_genes: List[str] = []

    def validate_inputs(self) -> bool:
        """Load both input tables and check the key columns."""
        counts_file = self.config["counts_file"]
        metadata_file = self.config["metadata_file"]

        self.raw_counts = self.load_csv(
            counts_file, sep=infer_separator(self.input_dir / counts_file)
        )
        self.raw_metadata = self.load_csv(
            metadata_file, sep=infer_separator(self.input_dir / metadata_file)
        )

        gene_col = self.config["gene_column"]
        if gene_col not in self.raw_counts.columns:
            self.logger.error(f"Gene column '{gene_col}' not in count table")
            return False

        for col in (self.config["sample_column"], self.config["condition_column"]):
            if col not in self.raw_metadata.columns:
                self.logger.error(f"Column '{col}' not in metadata")
                return False

        if self.raw_counts.shape[1] < 3:
            self.logger.error("Count table needs a gene column and at least two samples")
            return False

        return True

    def run(self) -> Dict[str, Any]:
        """Deduplicate, coerce and align the inputs."""
        gene_col = self.config["gene_column"]
        condition_col = self.config["condition_column"]
        contrast = self.config["contrast"]

        dupes = self.raw_counts[gene_col].duplicated(keep='first')
        self.duplicated_genes = self.raw_counts.loc[dupes, gene_col].astype(str).tolist()
        if self.duplicated_genes:
            self.logger.warning(
                f"Dropping {len(self.duplicated_genes)} duplicated gene rows "
                f"(first kept): {self.duplicated_genes[:10]}"
            )

        counts = build_count_matrix(deduplicate_genes(self.raw_counts, gene_col), gene_col)
        metadata = build_metadata(
            self.raw_metadata,
            self.config["sample_column"],
            condition_col,
            contrast
        )
        metadata = align_samples(counts, metadata)

        group_sizes = metadata[condition_col].value_counts().reindex(contrast)
        self.logger.info(f"Count matrix: {counts.shape[0]} genes, {counts.shape[1]} samples")
        self.logger.info(f"Groups: {group_sizes.to_dict()}")

        self.save_csv(counts, OUTPUT_FILES["count_matrix"], index=True)
        self.save_csv(metadata, OUTPUT_FILES["metadata"], index=True)

        return {
            "n_genes": int(counts.shape[0]),
            "n_samples": int(counts.shape[1]),
            "n_duplicated_genes": len(self.duplicated_genes),
            "group_sizes": {k: int(v) for k, v in group_sizes.items()},
            "reference_level": contrast[0],
            "treated_level": contrast[1]
        }

    def validate_outputs(self) -> bool:
        """Validate loader outputs."""
        for key in ("count_matrix", "metadata"):
            filepath = self.output_dir / OUTPUT_FILES[key]
            if not filepath.exists():
                self.logger.error(f"Missing output file: {filepath.name}")
                return False
        return True
