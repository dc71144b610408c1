"""
Agent 5: Gene Set Enrichment Analysis (GSEA)

Ranks genes by DESeq2 log2 fold-change and runs pre-ranked GSEA against
Reactome, KEGG and GO gene sets (Entrez ids). Results of the three databases
are merged, BH adjusted p-values are recomputed across the merged table and
core-enrichment Entrez ids are translated back to gene symbols.

Input:
- deseq2_results.csv: From Agent 3

Output:
- gene_reference.csv: SYMBOL to ENTREZID table (one row per ENTREZID)
- gsea_<source>.csv: Per-database significant gene sets
- GSEAall.csv: Merged results with globally re-adjusted p-values
- meta_agent5_gsea.json: Execution metadata
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
import gseapy as gp
import mygene
from statsmodels.stats.multitest import multipletests

from ..config import (
    GENE_SETS,
    GSEA_PVALUE_CUTOFF,
    MAX_GS_SIZE,
    MIN_GS_SIZE,
    MSIGDB_VERSION,
    OUTPUT_FILES,
    PERMUTATION_NUM,
    SEED,
    SPECIES,
)
from ..utils.base_agent import BaseAgent

logger = logging.getLogger(__name__)

CORE_SEPARATOR = "/"

GSEA_COLUMNS = [
    'source', 'ID', 'Description', 'setSize', 'enrichmentScore', 'NES',
    'pvalue', 'padj', 'core_enrichment'
]

GeneSets = Union[str, Dict[str, List[str]]]


def bh_adjust(pvalues: Iterable[float]) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values."""
    pvalues = np.asarray(list(pvalues), dtype=float)
    if pvalues.size == 0:
        return pvalues
    return multipletests(pvalues, method='fdr_bh')[1]


def build_gene_reference(
    symbols: Iterable[str],
    species: str = SPECIES,
    client: Optional[Any] = None
) -> pd.DataFrame:
    """Map gene symbols to Entrez ids via mygene.

    Symbols without a match are dropped. When an Entrez id is reached from
    more than one symbol only the first row is kept, so the table is a
    one-to-one mapping.

    Returns:
        DataFrame with string columns SYMBOL and ENTREZID, in query order.
    """
    queries = list(dict.fromkeys(str(s) for s in symbols))
    client = client or mygene.MyGeneInfo()

    hits = client.querymany(
        queries,
        scopes='symbol',
        fields='entrezgene',
        species=species,
        returnall=False,
        verbose=False
    )

    rows = []
    for hit in hits:
        if hit.get('notfound') or 'entrezgene' not in hit:
            continue
        rows.append({'SYMBOL': str(hit['query']), 'ENTREZID': str(hit['entrezgene'])})

    gene_ref = pd.DataFrame(rows, columns=['SYMBOL', 'ENTREZID'])
    unmatched = len(set(queries) - set(gene_ref['SYMBOL']))
    logger.info(f"Mapped {gene_ref['SYMBOL'].nunique()}/{len(queries)} symbols to Entrez ids "
                f"({unmatched} without a match)")

    return gene_ref.drop_duplicates('ENTREZID', keep='first').reset_index(drop=True)


def build_ranked_list(results: pd.DataFrame, gene_ref: pd.DataFrame) -> pd.Series:
    """Entrez id -> log2 fold-change, ordered by fold-change descending.

    The order of the returned Series is the input contract of the GSEA test.
    Ties keep the order of ``gene_ref``.
    """
    merged = gene_ref.merge(
        results[['symbol', 'log2FoldChange']].astype({'symbol': str}),
        left_on='SYMBOL', right_on='symbol', how='inner'
    ).dropna(subset=['log2FoldChange'])
    merged = merged.sort_values('log2FoldChange', ascending=False, kind='mergesort')

    ranked = pd.Series(
        merged['log2FoldChange'].to_numpy(dtype=float),
        index=pd.Index(merged['ENTREZID'].to_numpy(), name='ENTREZID'),
        name='log2FoldChange'
    )
    return ranked


def load_gene_sets(
    definition: Union[str, Mapping[str, List[str]]],
    dbver: str = MSIGDB_VERSION
) -> GeneSets:
    """Resolve a gene set definition.

    ``definition`` is either a gene set dict, a path to a local ``.gmt`` file or an
    MSigDB category such as ``c2.cp.reactome`` downloaded with Entrez ids.
    """
    if isinstance(definition, Mapping):
        return {name: [str(g) for g in genes] for name, genes in definition.items()}
    if str(definition).endswith('.gmt'):
        if not Path(definition).exists():
            raise FileNotFoundError(f"Gene set file not found: {definition}")
        return str(definition)

    gmt = gp.Msigdb().get_gmt(category=definition, dbver=dbver, entrez=True)
    if not gmt:
        raise ValueError(f"MSigDB category '{definition}' not available for version {dbver}")
    return gmt


def describe_term(term: str) -> str:
    """REACTOME_CELL_CYCLE -> 'CELL CYCLE'."""
    term = str(term)
    if '_' not in term:
        return term
    return term.split('_', 1)[1].replace('_', ' ')


def empty_gsea_table() -> pd.DataFrame:
    return pd.DataFrame(columns=GSEA_COLUMNS)


def standardize_prerank(res2d: pd.DataFrame, source: str) -> pd.DataFrame:
    """Rename gseapy prerank output to the enrichment result row layout."""
    if res2d is None or len(res2d) == 0:
        return empty_gsea_table()

    out = pd.DataFrame({
        'source': source,
        'ID': res2d['Term'].astype(str).to_numpy(),
        'Description': res2d['Term'].map(describe_term).to_numpy(),
        'setSize': res2d['Tag %'].astype(str).str.split('/').str[1].astype(int).to_numpy(),
        'enrichmentScore': res2d['ES'].astype(float).to_numpy(),
        'NES': res2d['NES'].astype(float).to_numpy(),
        'pvalue': res2d['NOM p-val'].astype(float).to_numpy(),
        'core_enrichment': res2d['Lead_genes'].astype(str)
                                               .str.replace(';', CORE_SEPARATOR, regex=False)
                                               .to_numpy(),
    })
    out = out.dropna(subset=['pvalue']).reset_index(drop=True)
    out.insert(out.columns.get_loc('pvalue') + 1, 'padj', bh_adjust(out['pvalue']))
    return out[GSEA_COLUMNS]


def run_prerank(
    ranked: pd.Series,
    gene_sets: GeneSets,
    source: str,
    min_size: int = MIN_GS_SIZE,
    max_size: int = MAX_GS_SIZE,
    pvalue_cutoff: float = GSEA_PVALUE_CUTOFF,
    permutation_num: int = PERMUTATION_NUM,
    seed: int = SEED
) -> pd.DataFrame:
    """Pre-ranked GSEA for one database.

    Adjusted p-values are BH over every tested gene set of this database; only
    sets with ``padj < pvalue_cutoff`` are returned. No passing set yields an
    empty table with the standard columns.
    """
    rnk = ranked.rename_axis('ENTREZID').reset_index()

    np.random.seed(seed)
    try:
        pre_res = gp.prerank(
            rnk=rnk,
            gene_sets=gene_sets,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            seed=seed,
            threads=1,
            outdir=None,
            no_plot=True,
            verbose=False
        )
    except LookupError as e:
        # gseapy raises a plain LookupError when no set fits min_size..max_size
        if isinstance(e, (KeyError, IndexError)):
            raise
        logger.warning(f"{source}: no gene sets tested ({e})")
        return empty_gsea_table()

    tested = standardize_prerank(pre_res.res2d, source)
    significant = tested[tested['padj'] < pvalue_cutoff].reset_index(drop=True)
    logger.info(f"{source}: {len(significant)}/{len(tested)} gene sets with padj < {pvalue_cutoff}")
    return significant


def combine_results(frames: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Concatenate per-database results and recompute BH across all rows."""
    frames = [f for f in frames if f is not None and len(f) > 0]
    if not frames:
        return empty_gsea_table()

    combined = pd.concat(frames, ignore_index=True)
    return combined.assign(padj=bh_adjust(combined['pvalue']))


def translate_core_enrichment(results: pd.DataFrame, gene_ref: pd.DataFrame) -> pd.DataFrame:
    """Add ``core_enrichment_symbol`` with each Entrez id replaced by its symbol.

    Ids are matched as whole tokens; ids missing from ``gene_ref`` are skipped.
    """
    entrez_to_symbol = dict(zip(gene_ref['ENTREZID'].astype(str), gene_ref['SYMBOL'].astype(str)))

    def to_symbols(core: Any) -> str:
        if pd.isna(core) or core == '':
            return ''
        tokens = str(core).split(CORE_SEPARATOR)
        return CORE_SEPARATOR.join(entrez_to_symbol[t] for t in tokens if t in entrez_to_symbol)

    return results.assign(core_enrichment_symbol=results['core_enrichment'].map(to_symbols))


class GSEAAgent(BaseAgent):
    """Agent for pre-ranked GSEA over Reactome, KEGG and GO."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "species": SPECIES,
            "gene_sets": dict(GENE_SETS),  # source -> MSigDB category, .gmt path or dict
            "msigdb_version": MSIGDB_VERSION,
            "min_gs_size": MIN_GS_SIZE,
            "max_gs_size": MAX_GS_SIZE,
            "gsea_pvalue_cutoff": GSEA_PVALUE_CUTOFF,
            "permutation_num": PERMUTATION_NUM,
            "seed": SEED,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent5_gsea", input_dir, output_dir, merged_config)

        self.deg_all: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate DEG results."""
        self.deg_all = self.load_csv(OUTPUT_FILES["deg_results"], dtype={'symbol': str})

        for col in ('symbol', 'log2FoldChange'):
            if col not in self.deg_all.columns:
                self.logger.error(f"Column '{col}' not in DEG results")
                return False

        if not self.config["gene_sets"]:
            self.logger.error("No gene set databases configured")
            return False

        return True

    def run(self) -> Dict[str, Any]:
        """Execute GSEA for each database and merge."""
        ordered = self.deg_all.sort_values('log2FoldChange', ascending=False, kind='mergesort')

        self.logger.info(f"Mapping {len(ordered)} symbols to Entrez ids via mygene...")
        gene_ref = build_gene_reference(ordered['symbol'], self.config["species"])
        self.save_csv(gene_ref, "gene_reference.csv")

        ranked = build_ranked_list(ordered, gene_ref)
        self.logger.info(f"Ranked list: {len(ranked)} genes")
        if len(ranked) == 0:
            raise ValueError("No genes left in the ranked list after Entrez mapping")

        per_source = {}
        for source, definition in self.config["gene_sets"].items():
            self.logger.info(f"Running GSEA for {source}...")
            gene_sets = load_gene_sets(definition, self.config["msigdb_version"])
            result = run_prerank(
                ranked,
                gene_sets,
                source,
                min_size=self.config["min_gs_size"],
                max_size=self.config["max_gs_size"],
                pvalue_cutoff=self.config["gsea_pvalue_cutoff"],
                permutation_num=self.config["permutation_num"],
                seed=self.config["seed"]
            )
            if len(result) == 0:
                self.logger.warning(f"No significant gene sets for {source}")
            self.save_csv(translate_core_enrichment(result, gene_ref), f"gsea_{source}.csv")
            per_source[source] = result

        combined = combine_results(per_source.values())
        combined = translate_core_enrichment(combined, gene_ref)
        self.save_csv(combined, OUTPUT_FILES["gsea_all"])

        counts = {source: len(df) for source, df in per_source.items()}
        n_significant = int((combined['padj'] < self.config["gsea_pvalue_cutoff"]).sum())

        self.logger.info(f"GSEA Complete:")
        for source, count in counts.items():
            self.logger.info(f"    {source}: {count} gene sets")
        self.logger.info(f"  Merged gene sets: {len(combined)}")
        self.logger.info(f"  Significant after global BH: {n_significant}")

        return {
            "n_mapped_genes": int(len(gene_ref)),
            "n_ranked_genes": int(len(ranked)),
            "gene_sets_per_source": counts,
            "total_gene_sets": int(len(combined)),
            "significant_after_global_bh": n_significant
        }

    def validate_outputs(self) -> bool:
        """Validate GSEA outputs."""
        filepath = self.output_dir / OUTPUT_FILES["gsea_all"]
        if not filepath.exists():
            self.logger.error(f"Missing output file: {filepath.name}")
            return False

        # Tolerate an empty merged table
        if filepath.stat().st_size > 0:
            header = pd.read_csv(filepath, nrows=0).columns
            if 'core_enrichment_symbol' not in header:
                self.logger.error("GSEAall.csv missing core_enrichment_symbol column")
                return False

        return True
