"""
Agent 4: Volcano Plot

Input:
- deseq2_results.csv: From Agent 3

Output:
- volc.png: log2 fold-change vs -log10 adjusted p-value
- meta_agent4_volcano.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from adjustText import adjust_text

from ..config import FIGSIZE, LOG2FC_CUTOFF, N_LABEL_GENES, OUTPUT_FILES, PADJ_CUTOFF
from ..utils.base_agent import BaseAgent, managed_figure


def is_significant(padj, log2fc, padj_cutoff: float = PADJ_CUTOFF,
                   log2fc_cutoff: float = LOG2FC_CUTOFF):
    """padj < cutoff and |log2FC| > cutoff. Works on scalars and arrays; NaN is never significant."""
    return np.logical_and(np.less(padj, padj_cutoff),
                          np.greater(np.abs(log2fc), log2fc_cutoff))


def select_label_genes(results: pd.DataFrame, n: int = N_LABEL_GENES) -> List[str]:
    """Union of the top ``n`` up, top ``n`` down and ``n`` smallest padj genes.

    Each gene appears once, in the order up, down, padj.
    """
    up = results.nlargest(n, 'log2FoldChange')['symbol']
    down = results.nsmallest(n, 'log2FoldChange')['symbol']
    top_padj = results.nsmallest(n, 'padj')['symbol']
    return list(dict.fromkeys(pd.concat([up, down, top_padj]).astype(str)))


def plot_volcano(
    results: pd.DataFrame,
    label_genes: List[str],
    padj_cutoff: float = PADJ_CUTOFF,
    log2fc_cutoff: float = LOG2FC_CUTOFF
) -> plt.Figure:
    """Volcano plot with threshold lines and repelled gene labels."""
    df = results.dropna(subset=['log2FoldChange', 'padj']).copy()
    df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))
    sig = is_significant(df['padj'], df['log2FoldChange'], padj_cutoff, log2fc_cutoff)

    fig, ax = plt.subplots(figsize=FIGSIZE["volcano"])

    background = df[~sig]
    ax.scatter(background['log2FoldChange'], background['neg_log10_padj'],
               s=2, c='#666666', alpha=0.5, edgecolors='none', rasterized=True)
    foreground = df[sig]
    ax.scatter(foreground['log2FoldChange'], foreground['neg_log10_padj'],
               s=12, c='black', alpha=0.5, edgecolors='none')

    ax.axvline(x=-log2fc_cutoff, color='red')
    ax.axvline(x=log2fc_cutoff, color='red')
    ax.axhline(y=-np.log10(padj_cutoff), color='red')

    labelled = df[df['symbol'].isin(label_genes)].drop_duplicates('symbol')
    texts = [
        ax.text(row['log2FoldChange'], row['neg_log10_padj'], row['symbol'], fontsize=8,
                bbox=dict(boxstyle='round,pad=0.2', facecolor='white', edgecolor='#424242'))
        for _, row in labelled.iterrows()
    ]
    if texts:
        adjust_text(texts, ax=ax,
                    arrowprops=dict(arrowstyle='-', color='#424242', lw=0.5))

    ax.set_xlabel('log2FoldChange')
    ax.set_ylabel('-log10(padj)')
    fig.tight_layout()
    return fig


class VolcanoAgent(BaseAgent):
    """Agent for the DESeq2 volcano plot."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "padj_cutoff": PADJ_CUTOFF,
            "log2fc_cutoff": LOG2FC_CUTOFF,
            "n_label_genes": N_LABEL_GENES,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_volcano", input_dir, output_dir, merged_config)

        self.deg_all: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate DEG results."""
        self.deg_all = self.load_csv(OUTPUT_FILES["deg_results"], dtype={'symbol': str})

        for col in ('symbol', 'log2FoldChange', 'padj'):
            if col not in self.deg_all.columns:
                self.logger.error(f"Column '{col}' not in DEG results")
                return False

        return True

    def run(self) -> Dict[str, Any]:
        """Generate the volcano plot."""
        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        label_genes = select_label_genes(self.deg_all, self.config["n_label_genes"])
        self.logger.info(f"Labelling {len(label_genes)} genes: {label_genes}")

        self.logger.info("Generating volcano plot...")
        with managed_figure(plot_volcano(self.deg_all, label_genes,
                                         padj_cutoff, log2fc_cutoff)) as fig:
            self.save_figure(fig, OUTPUT_FILES["volcano"])

        sig = is_significant(self.deg_all['padj'], self.deg_all['log2FoldChange'],
                             padj_cutoff, log2fc_cutoff)

        return {
            "n_genes_plotted": int(self.deg_all[['log2FoldChange', 'padj']].notna().all(axis=1).sum()),
            "n_significant": int(sig.sum()),
            "labelled_genes": label_genes
        }

    def validate_outputs(self) -> bool:
        """Validate volcano output."""
        if not (self.output_dir / OUTPUT_FILES["volcano"]).exists():
            self.logger.error(f"Missing output file: {OUTPUT_FILES['volcano']}")
            return False
        return True
