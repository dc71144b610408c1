"""
Bulk RNA-seq Exploratory, Differential Expression and GSEA Pipeline

A linear pipeline of 5 agents over one count matrix:
1. Data loading (deduplication, sample alignment)
2. Exploratory analysis (PCA, PC2 heatmap)
3. DEG analysis (DESeq2)
4. Volcano plot
5. GSEA (Reactome, KEGG, GO)

Each agent has clear input/output files and can be run independently.
"""

from .orchestrator import RNAseqPipeline, create_sample_data

__version__ = "1.0.0"

__all__ = ["RNAseqPipeline", "create_sample_data"]
