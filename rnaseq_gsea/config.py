"""Configuration settings for the bulk RNA-seq DGE/GSEA pipeline."""
from pathlib import Path

# Paths (relative to the working directory)
INPUT_DIR = Path("_input")
OUTPUT_DIR = Path("_output")

COUNTS_FILE = "Chow_PNAS_rawcounts.csv"
METADATA_FILE = "Chow_PNAS_meta.csv"

# Input schema
GENE_COLUMN = "gene"
SAMPLE_COLUMN = "sample"
CONDITION_COLUMN = "treatment"
CONTRAST = ["control", "SBRT"]  # [reference, treated]

# Reproducibility
SEED = 415

# Exploratory analysis
HEATMAP_COMPONENT = "PC2"
N_HEATMAP_GENES = 50

# Significance thresholds
PADJ_CUTOFF = 0.05
LOG2FC_CUTOFF = 1.0
N_LABEL_GENES = 5

# GSEA
SPECIES = "human"
MSIGDB_VERSION = "2023.2.Hs"
GENE_SETS = {
    "reactome": "c2.cp.reactome",
    "kegg": "c2.cp.kegg_legacy",
    "go": "c5.go",
}
MIN_GS_SIZE = 10
MAX_GS_SIZE = 300
GSEA_PVALUE_CUTOFF = 0.05
PERMUTATION_NUM = 1000

# Figures: (width, height) in inches at FIGURE_DPI
FIGURE_DPI = 100
FIGSIZE = {
    "pca": (5, 5),
    "heatmap": (5, 7),
    "volcano": (7, 5),
}

# Fixed output names
OUTPUT_FILES = {
    "count_matrix": "count_matrix.csv",
    "metadata": "metadata.csv",
    "pca_plot": "pca.png",
    "heatmap": "heat_pc2.png",
    "deg_results": "deseq2_results.csv",
    "volcano": "volc.png",
    "gsea_all": "GSEAall.csv",
}
