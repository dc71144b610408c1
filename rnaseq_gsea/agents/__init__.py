"""
Pipeline Agents

Each agent handles one stage of the analysis:
- Agent 1: Data loading (deduplication, sample alignment)
- Agent 2: Exploratory analysis (PCA, PC2 heatmap)
- Agent 3: DEG analysis (PyDESeq2)
- Agent 4: Volcano plot
- Agent 5: GSEA (Reactome, KEGG, GO)
"""

from .agent1_load import DataLoaderAgent
from .agent2_exploratory import ExploratoryAgent
from .agent3_deg import DEGAgent
from .agent4_volcano import VolcanoAgent
from .agent5_gsea import GSEAAgent

__all__ = [
    "DataLoaderAgent",
    "ExploratoryAgent",
    "DEGAgent",
    "VolcanoAgent",
    "GSEAAgent"
]
