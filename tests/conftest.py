"""
DGE/GSEA Pipeline - Test Configuration and Fixtures
"""
import sys
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def sample_count_table():
    """Raw count table in the input layout: gene column + one column per sample."""
    rng = np.random.default_rng(42)
    n_genes = 100
    samples = ["C1", "C2", "C3", "T1", "T2", "T3"]

    counts = rng.negative_binomial(n=10, p=0.05, size=(n_genes, len(samples)))
    # First 10 genes up in treated, next 10 down
    counts[:10, 3:] = counts[:10, 3:] * 4
    counts[10:20, 3:] = counts[10:20, 3:] // 4 + 1

    df = pd.DataFrame(counts, columns=samples)
    df.insert(0, "gene", [f"GENE{i}" for i in range(n_genes)])
    return df


@pytest.fixture
def sample_metadata_table():
    """Metadata deliberately listed in a different order than the count columns."""
    return pd.DataFrame({
        "sample": ["T1", "C1", "T2", "C2", "T3", "C3"],
        "treatment": ["SBRT", "control", "SBRT", "control", "SBRT", "control"],
        "batch": ["b1"] * 6
    })


@pytest.fixture
def input_dir(tmp_path, sample_count_table, sample_metadata_table):
    """Input directory with the default file names."""
    from rnaseq_gsea.config import COUNTS_FILE, METADATA_FILE

    directory = tmp_path / "_input"
    directory.mkdir()
    sample_count_table.to_csv(directory / COUNTS_FILE, index=False)
    sample_metadata_table.to_csv(directory / METADATA_FILE, index=False)
    return directory


@pytest.fixture
def sample_deg_results():
    """Generate sample DESeq2 results."""
    rng = np.random.default_rng(42)
    n_genes = 50

    return pd.DataFrame({
        "symbol": [f"GENE{i}" for i in range(n_genes)],
        "baseMean": rng.uniform(100, 10000, n_genes),
        "log2FoldChange": rng.normal(0, 2, n_genes),
        "lfcSE": rng.uniform(0.1, 0.5, n_genes),
        "stat": rng.normal(0, 3, n_genes),
        "pvalue": rng.uniform(0, 0.05, n_genes),
        "padj": rng.uniform(0, 0.1, n_genes),
    })


class FakeMyGeneInfo:
    """Stand-in for mygene.MyGeneInfo returning hits from a fixed table."""

    def __init__(self, table):
        # symbol -> list of Entrez ids (empty list: not found)
        self.table = table
        self.calls = []

    def querymany(self, queries, scopes=None, fields=None, species=None, **kwargs):
        self.calls.append(list(queries))
        hits = []
        for q in queries:
            ids = self.table.get(q, [])
            if not ids:
                hits.append({"query": q, "notfound": True})
            for entrez in ids:
                hits.append({"query": q, "_id": str(entrez), "entrezgene": entrez})
        return hits


@pytest.fixture
def fake_mygene():
    """Factory for a fake mygene client."""
    return FakeMyGeneInfo
