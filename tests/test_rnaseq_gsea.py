"""
DGE/GSEA Pipeline - Unit Tests
"""
import json

import pytest
import pandas as pd
import numpy as np
import matplotlib.image as mpimg
import matplotlib.pyplot as plt

from rnaseq_gsea.config import COUNTS_FILE, METADATA_FILE, OUTPUT_FILES
from rnaseq_gsea.agents import agent5_gsea
from rnaseq_gsea.agents.agent1_load import (
    DataLoaderAgent,
    align_samples,
    build_count_matrix,
    build_metadata,
    deduplicate_genes,
    load_metadata,
)
from rnaseq_gsea.agents.agent2_exploratory import (
    ExploratoryAgent,
    compute_pca,
    log_transform,
    plot_heatmap,
    select_loading_genes,
    zscore_rows,
)
from rnaseq_gsea.agents.agent3_deg import DEGAgent, RESULT_COLUMNS, run_deseq2
from rnaseq_gsea.agents.agent4_volcano import (
    VolcanoAgent,
    is_significant,
    select_label_genes,
)
from rnaseq_gsea.agents.agent5_gsea import (
    GSEA_COLUMNS,
    GSEAAgent,
    build_gene_reference,
    build_ranked_list,
    combine_results,
    standardize_prerank,
    translate_core_enrichment,
)

pytestmark = pytest.mark.filterwarnings("ignore::DeprecationWarning")


def image_shape(path):
    """(height, width) in pixels."""
    return mpimg.imread(path).shape[:2]


def fake_res2d(terms, pvalues, lead_genes):
    n = len(terms)
    return pd.DataFrame({
        "Name": ["prerank"] * n,
        "Term": terms,
        "ES": np.linspace(0.8, -0.6, n),
        "NES": np.linspace(2.0, -1.5, n),
        "NOM p-val": pvalues,
        "FDR q-val": pvalues,
        "FWER p-val": pvalues,
        "Tag %": [f"{len(g.split(';'))}/{len(g.split(';')) + 10}" for g in lead_genes],
        "Gene %": ["10.0%"] * n,
        "Lead_genes": lead_genes,
    })


class TestAgent1Load:
    """Test cases for Agent 1 - Data loading."""

    def test_deduplicate_keeps_first(self):
        table = pd.DataFrame({
            "gene": ["A", "B", "A", "C"],
            "S1": [1, 2, 100, 3],
            "S2": [4, 5, 200, 6],
        })
        deduped = deduplicate_genes(table)

        assert deduped["gene"].tolist() == ["A", "B", "C"]
        assert deduped.loc[deduped["gene"] == "A", "S1"].item() == 1

    def test_deduplicate_idempotent(self, sample_count_table):
        table = pd.concat([sample_count_table, sample_count_table.iloc[:5]], ignore_index=True)
        once = build_count_matrix(deduplicate_genes(table))
        twice = build_count_matrix(deduplicate_genes(deduplicate_genes(table)))

        pd.testing.assert_frame_equal(once, twice)
        assert once.index.is_unique

    def test_count_matrix_rejects_negative(self):
        table = pd.DataFrame({"gene": ["A", "B"], "S1": [1, -2], "S2": [3, 4]})
        with pytest.raises(ValueError, match="negative"):
            build_count_matrix(table)

    def test_count_matrix_rejects_non_integer(self):
        table = pd.DataFrame({"gene": ["A", "B"], "S1": [1.5, 2], "S2": [3, 4]})
        with pytest.raises(ValueError, match="non-integer"):
            build_count_matrix(table)

    def test_metadata_condition_is_ordered_category(self, sample_metadata_table):
        meta = build_metadata(sample_metadata_table)

        assert list(meta["treatment"].cat.categories) == ["control", "SBRT"]
        assert meta["treatment"].cat.ordered
        assert meta.index.name == "sample"

    def test_metadata_rejects_unexpected_levels(self, sample_metadata_table):
        bad = sample_metadata_table.assign(treatment=["a", "b", "c", "a", "b", "c"])
        with pytest.raises(ValueError, match="expected exactly"):
            build_metadata(bad)

    def test_align_reorders_metadata(self, sample_count_table, sample_metadata_table):
        counts = build_count_matrix(sample_count_table)
        meta = align_samples(counts, build_metadata(sample_metadata_table))

        assert list(meta.index) == list(counts.columns)
        assert meta.loc["C1", "treatment"] == "control"
        assert meta.loc["T3", "treatment"] == "SBRT"

    def test_align_mismatch_lists_keys(self, sample_count_table, sample_metadata_table):
        counts = build_count_matrix(sample_count_table)
        meta = sample_metadata_table.copy()
        meta.loc[0, "sample"] = "X9"

        with pytest.raises(ValueError) as excinfo:
            align_samples(counts, build_metadata(meta))

        message = str(excinfo.value)
        assert "T1" in message
        assert "X9" in message

    def test_agent_writes_aligned_outputs(self, input_dir, tmp_path, sample_count_table):
        # Append a duplicated gene row
        table = pd.concat([sample_count_table, sample_count_table.iloc[[0]]], ignore_index=True)
        table.to_csv(input_dir / COUNTS_FILE, index=False)

        output_dir = tmp_path / "_output"
        results = DataLoaderAgent(input_dir, output_dir).execute()

        assert results["n_duplicated_genes"] == 1
        assert results["n_genes"] == len(sample_count_table)
        assert results["group_sizes"] == {"control": 3, "SBRT": 3}

        counts = pd.read_csv(output_dir / OUTPUT_FILES["count_matrix"], index_col=0)
        meta = load_metadata(output_dir / OUTPUT_FILES["metadata"])
        assert list(meta.index) == list(counts.columns)
        record = json.loads((output_dir / "meta_agent1_load.json").read_text())
        assert record["success"] is True
        assert record["results"]["n_genes"] == len(sample_count_table)

    def test_agent_missing_input_raises(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(FileNotFoundError):
            DataLoaderAgent(empty, tmp_path / "_output").execute()

    def test_agent_tab_separated_input(self, tmp_path, sample_count_table, sample_metadata_table):
        input_dir = tmp_path / "tsv"
        input_dir.mkdir()
        sample_count_table.to_csv(input_dir / "counts.tsv", sep="\t", index=False)
        sample_metadata_table.to_csv(input_dir / "meta.tsv", sep="\t", index=False)

        results = DataLoaderAgent(
            input_dir, tmp_path / "_output",
            config={"counts_file": "counts.tsv", "metadata_file": "meta.tsv"}
        ).execute()

        assert results["n_samples"] == 6


class TestAgent2Exploratory:
    """Test cases for Agent 2 - PCA and heatmap."""

    def test_log_transform(self):
        counts = pd.DataFrame({"S1": [0, 1, 3], "S2": [7, 15, 0]}, index=["A", "B", "C"])
        logged = log_transform(counts)

        np.testing.assert_allclose(logged["S1"], [0.0, 1.0, 2.0])
        np.testing.assert_allclose(logged["S2"], [3.0, 4.0, 0.0])

    def test_pca_shapes(self, sample_count_table):
        log_counts = log_transform(build_count_matrix(sample_count_table))
        pca = compute_pca(log_counts)

        assert pca.scores.shape == (6, 6)
        assert pca.loadings.shape == (100, 6)
        assert list(pca.scores.index) == list(log_counts.columns)
        assert pca.explained_variance_ratio["PC1"] >= pca.explained_variance_ratio["PC2"]

    def test_pca_is_reproducible(self, sample_count_table):
        log_counts = log_transform(build_count_matrix(sample_count_table))
        first = compute_pca(log_counts)
        second = compute_pca(log_counts)

        pd.testing.assert_frame_equal(first.loadings, second.loadings)

    def test_select_loading_genes_most_negative_first(self):
        loadings = pd.DataFrame(
            {"PC1": [0.0] * 5, "PC2": [0.3, -0.5, 0.1, -0.2, -0.9]},
            index=["A", "B", "C", "D", "E"]
        )

        assert select_loading_genes(loadings, "PC2", n=3) == ["E", "B", "D"]
        assert len(select_loading_genes(loadings, "PC2", n=50)) == 5

    def test_select_loading_genes_unknown_component(self):
        loadings = pd.DataFrame({"PC1": [0.1]}, index=["A"])
        with pytest.raises(ValueError):
            select_loading_genes(loadings, "PC2")

    def test_zscore_rows(self, sample_count_table):
        z = zscore_rows(log_transform(build_count_matrix(sample_count_table)))

        np.testing.assert_allclose(z.mean(axis=1), 0, atol=1e-10)
        np.testing.assert_allclose(z.std(axis=1, ddof=1), 1, atol=1e-10)

    def test_heatmap_figure_closed_on_error(self, sample_count_table, monkeypatch):
        z = zscore_rows(log_transform(build_count_matrix(sample_count_table))).iloc[:20]
        open_before = set(plt.get_fignums())

        def broken_setp(*args, **kwargs):
            raise RuntimeError("styling failed")

        monkeypatch.setattr(plt, "setp", broken_setp)
        with pytest.raises(RuntimeError, match="styling failed"):
            plot_heatmap(z)

        assert set(plt.get_fignums()) == open_before

    def test_agent_writes_figures(self, input_dir, tmp_path):
        output_dir = tmp_path / "_output"
        DataLoaderAgent(input_dir, output_dir).execute()

        results = ExploratoryAgent(output_dir, output_dir).execute()

        assert image_shape(output_dir / OUTPUT_FILES["pca_plot"]) == (500, 500)
        assert image_shape(output_dir / OUTPUT_FILES["heatmap"]) == (700, 500)
        assert results["heatmap_drawn"]
        assert len(results["heatmap_genes"]) == 50
        coords = pd.read_csv(output_dir / "pca_coordinates.csv", index_col=0)
        assert {"treatment", "PC1", "PC2"} <= set(coords.columns)


class TestAgent3DEG:
    """Test cases for Agent 3 - DESeq2."""

    @staticmethod
    def doubled_gene_dataset():
        """2 control vs 2 treated samples, 100 genes, G1 doubled in treated."""
        rng = np.random.default_rng(7)
        genes = [f"G{i}" for i in range(1, 101)]
        samples = ["ctrl1", "ctrl2", "trt1", "trt2"]

        def nb(mean, size):
            # dispersion 0.01
            return rng.negative_binomial(100, 100 / (100 + mean), size=size)

        counts = pd.DataFrame(nb(500, (100, 4)), index=genes, columns=samples)
        counts.loc["G1"] = np.concatenate([nb(1000, 2), nb(2000, 2)])
        counts.index.name = "gene"

        metadata = build_metadata(pd.DataFrame({
            "sample": samples,
            "treatment": ["control", "control", "SBRT", "SBRT"],
        }))
        return counts, align_samples(counts, metadata)

    def test_doubled_gene_is_top_hit(self):
        counts, metadata = self.doubled_gene_dataset()

        results, normalized = run_deseq2(counts, metadata)

        assert 0.7 < results.loc["G1", "log2FoldChange"] < 1.3
        others = results.drop(index="G1")["padj"].dropna()
        assert len(others) > 0
        assert (results.loc["G1", "padj"] < others).all()
        assert normalized.shape == counts.shape

    def test_shrunk_fold_change_keeps_direction(self):
        counts, metadata = self.doubled_gene_dataset()

        results, _ = run_deseq2(counts, metadata, lfc_shrink=True)

        # Treated vs control: G1 stays up after apeGLM shrinkage
        assert 0.5 < results.loc["G1", "log2FoldChange"] < 1.3

    def test_misaligned_metadata_rejected(self, sample_count_table, sample_metadata_table):
        counts = build_count_matrix(sample_count_table)
        metadata = build_metadata(sample_metadata_table)  # not aligned
        with pytest.raises(ValueError, match="aligned"):
            run_deseq2(counts, metadata)

    def test_agent_outputs(self, input_dir, tmp_path):
        output_dir = tmp_path / "_output"
        DataLoaderAgent(input_dir, output_dir).execute()

        results = DEGAgent(output_dir, output_dir).execute()

        res = pd.read_csv(output_dir / OUTPUT_FILES["deg_results"])
        assert list(res.columns) == RESULT_COLUMNS
        assert len(res) == 100
        assert results["deg_count"] == results["up_count"] + results["down_count"]

        # Genes 0-9 were multiplied by 4 in the treated group
        up = res.set_index("symbol").loc[[f"GENE{i}" for i in range(10)], "log2FoldChange"]
        assert (up > 0).all()

        sig = pd.read_csv(output_dir / "deg_significant.csv")
        assert set(sig["direction"]) <= {"up", "down"}


class TestAgent4Volcano:
    """Test cases for Agent 4 - Volcano plot."""

    @pytest.mark.parametrize("padj,log2fc,expected", [
        (0.04, 1.5, True),
        (0.06, 2.0, False),
        (0.01, 0.5, False),
        (0.01, -1.5, True),
        (np.nan, 3.0, False),
    ])
    def test_is_significant(self, padj, log2fc, expected):
        assert bool(is_significant(padj, log2fc)) is expected

    def test_is_significant_vectorized(self):
        padj = pd.Series([0.04, 0.06, 0.01])
        lfc = pd.Series([1.5, 2.0, 0.5])
        assert is_significant(padj, lfc).tolist() == [True, False, False]

    def test_label_genes_unique_and_bounded(self, sample_deg_results):
        labels = select_label_genes(sample_deg_results)

        assert len(labels) == len(set(labels))
        assert len(labels) <= 15
        top_up = sample_deg_results.nlargest(5, "log2FoldChange")["symbol"]
        assert set(top_up) <= set(labels)

    def test_label_genes_small_table(self):
        res = pd.DataFrame({
            "symbol": ["A", "B", "C"],
            "log2FoldChange": [2.0, -1.0, 0.5],
            "padj": [0.01, 0.2, 0.03],
        })
        labels = select_label_genes(res)

        assert sorted(labels) == ["A", "B", "C"]

    def test_agent_writes_figure(self, tmp_path, sample_deg_results):
        sample_deg_results.to_csv(tmp_path / OUTPUT_FILES["deg_results"], index=False)

        results = VolcanoAgent(tmp_path, tmp_path).execute()

        assert image_shape(tmp_path / OUTPUT_FILES["volcano"]) == (500, 700)
        assert len(results["labelled_genes"]) <= 15


class TestAgent5GSEA:
    """Test cases for Agent 5 - GSEA."""

    def test_gene_reference_one_to_one(self, fake_mygene):
        client = fake_mygene({
            "TP53": [7157],
            "P53": [7157],       # alias reaching the same id
            "MYC": [4609],
            "NOPE": [],
        })
        gene_ref = build_gene_reference(["TP53", "P53", "MYC", "NOPE", "TP53"], client=client)

        assert gene_ref["SYMBOL"].tolist() == ["TP53", "MYC"]
        assert gene_ref["ENTREZID"].tolist() == ["7157", "4609"]
        assert client.calls == [["TP53", "P53", "MYC", "NOPE"]]

    def test_ranked_list_descending(self):
        results = pd.DataFrame({
            "symbol": ["A", "B", "C", "D"],
            "log2FoldChange": [0.5, 3.0, -2.0, np.nan],
        })
        gene_ref = pd.DataFrame({"SYMBOL": ["A", "B", "C", "D"], "ENTREZID": ["1", "2", "3", "4"]})

        ranked = build_ranked_list(results, gene_ref)

        assert ranked.index.tolist() == ["2", "1", "3"]
        assert ranked.is_monotonic_decreasing
        assert ranked.index.name == "ENTREZID"

    def test_translate_exact_tokens(self):
        gene_ref = pd.DataFrame({
            "SYMBOL": ["ALPHA", "BETA", "GAMMA"],
            "ENTREZID": ["12", "123", "1234"],
        })
        results = pd.DataFrame({"core_enrichment": ["123/12", "1234", "99/12", ""]})

        translated = translate_core_enrichment(results, gene_ref)

        assert translated["core_enrichment_symbol"].tolist() == ["BETA/ALPHA", "GAMMA", "ALPHA", ""]
        assert "core_enrichment_symbol" not in results.columns

    def test_standardize_prerank(self):
        res2d = fake_res2d(
            ["REACTOME_CELL_CYCLE", "REACTOME_APOPTOSIS"],
            [0.001, 0.2],
            ["1;2;3", "4;5"],
        )
        table = standardize_prerank(res2d, "reactome")

        assert list(table.columns) == GSEA_COLUMNS
        assert table["Description"].tolist() == ["CELL CYCLE", "APOPTOSIS"]
        assert table["setSize"].tolist() == [13, 12]
        assert table["core_enrichment"].tolist() == ["1/2/3", "4/5"]
        assert (table["padj"] >= table["pvalue"]).all()

    def test_combine_results_global_bh_monotone(self):
        rng = np.random.default_rng(3)
        frames = []
        for source in ("reactome", "kegg", "go"):
            n = 8
            frames.append(pd.DataFrame({
                "source": source,
                "ID": [f"{source}_{i}" for i in range(n)],
                "Description": "x",
                "setSize": 20,
                "enrichmentScore": 0.5,
                "NES": 1.5,
                "pvalue": rng.uniform(0, 0.05, n),
                "padj": 0.0,
                "core_enrichment": "1/2",
            }))

        combined = combine_results(frames)

        assert len(combined) == 24
        ordered = combined.sort_values("pvalue")
        assert ordered["padj"].is_monotonic_increasing
        assert (combined["padj"] >= combined["pvalue"]).all()
        # inputs untouched
        assert (frames[0]["padj"] == 0.0).all()

    def test_combine_results_empty(self):
        combined = combine_results([pd.DataFrame(columns=GSEA_COLUMNS)] * 3)

        assert len(combined) == 0
        assert list(combined.columns) == GSEA_COLUMNS

    def test_prerank_on_dict_gene_sets(self):
        genes = [str(1000 + i) for i in range(400)]
        ranked = pd.Series(np.linspace(3, -3, 400), index=pd.Index(genes, name="ENTREZID"))
        gene_sets = {
            "TOP_SET": genes[:30],
            "BOTTOM_SET": genes[-30:],
            "RANDOM_A": genes[100:300:10],
            "RANDOM_B": genes[50:350:15],
        }

        result = agent5_gsea.run_prerank(ranked, gene_sets, "custom", permutation_num=200)

        assert list(result.columns) == GSEA_COLUMNS
        assert (result["padj"] < 0.05).all()
        assert (result["source"] == "custom").all()
        assert "TOP_SET" in set(result["ID"])

    def test_prerank_without_testable_sets_is_empty(self):
        genes = [str(1000 + i) for i in range(400)]
        ranked = pd.Series(np.linspace(3, -3, 400), index=pd.Index(genes, name="ENTREZID"))
        # Both sets are below the default min_size of 10
        gene_sets = {"TINY_A": genes[:5], "TINY_B": genes[-5:]}

        result = agent5_gsea.run_prerank(ranked, gene_sets, "custom", permutation_num=100)

        assert len(result) == 0
        assert list(result.columns) == GSEA_COLUMNS
        assert len(combine_results([result])) == 0

    def test_agent_merges_and_round_trips(self, tmp_path, fake_mygene, monkeypatch):
        deg = pd.DataFrame({
            "symbol": ["A", "B", "C", "D", "E"],
            "baseMean": [100.0] * 5,
            "log2FoldChange": [2.0, -1.0, 0.5, 1.5, -2.5],
            "lfcSE": [0.2] * 5,
            "stat": [1.0] * 5,
            "pvalue": [0.01] * 5,
            "padj": [0.02] * 5,
        })
        deg.to_csv(tmp_path / OUTPUT_FILES["deg_results"], index=False)

        client = fake_mygene({"A": [11], "B": [22], "C": [33], "D": [44], "E": [55]})
        monkeypatch.setattr(agent5_gsea.mygene, "MyGeneInfo", lambda: client)

        seen_ranks = []

        class FakePrerank:
            def __init__(self, res2d):
                self.res2d = res2d

        def fake_prerank(rnk, gene_sets, **kwargs):
            seen_ranks.append(rnk.copy())
            name = next(iter(gene_sets))
            if name == "EMPTY_SET":
                return FakePrerank(fake_res2d([name], [0.9], ["55"]))
            return FakePrerank(fake_res2d(
                [f"{name}_1", f"{name}_2"], [0.001, 0.004], ["11;44", "55;22"]
            ))

        monkeypatch.setattr(agent5_gsea.gp, "prerank", fake_prerank)

        config = {"gene_sets": {
            "reactome": {"REACTOME_X": ["11", "44"]},
            "kegg": {"KEGG_X": ["55", "22"]},
            "go": {"EMPTY_SET": ["55"]},
        }}
        results = GSEAAgent(tmp_path, tmp_path, config=config).execute()

        # Ranked list handed to prerank is ordered by fold-change
        assert seen_ranks[0]["ENTREZID"].tolist() == ["11", "44", "33", "22", "55"]

        assert results["gene_sets_per_source"] == {"reactome": 2, "kegg": 2, "go": 0}

        written = pd.read_csv(tmp_path / OUTPUT_FILES["gsea_all"],
                              dtype={"core_enrichment": str, "core_enrichment_symbol": str})
        assert len(written) == 4
        assert list(written.columns) == GSEA_COLUMNS + ["core_enrichment_symbol"]
        assert written["core_enrichment"].tolist() == ["11/44", "55/22", "11/44", "55/22"]
        assert written["core_enrichment_symbol"].tolist() == ["A/D", "E/B", "A/D", "E/B"]
        assert written["ID"].tolist() == ["REACTOME_X_1", "REACTOME_X_2", "KEGG_X_1", "KEGG_X_2"]
        np.testing.assert_allclose(written["padj"], [0.002, 0.004, 0.002, 0.004])
        assert (tmp_path / "gsea_go.csv").exists()


class TestOrchestrator:
    """Test cases for RNAseqPipeline orchestrator."""

    def test_pipeline_import(self):
        from rnaseq_gsea import RNAseqPipeline
        assert RNAseqPipeline.AGENT_ORDER[0] == "agent1_load"

    def test_unknown_agent(self, tmp_path):
        from rnaseq_gsea import RNAseqPipeline

        pipeline = RNAseqPipeline(tmp_path / "in", tmp_path / "out")
        with pytest.raises(ValueError):
            pipeline.run_agent("agent9_missing")

    def test_run_until_volcano(self, tmp_path):
        from rnaseq_gsea import RNAseqPipeline, create_sample_data

        input_dir = tmp_path / "_input"
        output_dir = tmp_path / "_output"
        create_sample_data(input_dir, n_genes=300, n_samples=6)

        pipeline = RNAseqPipeline(input_dir, output_dir)
        state = pipeline.run(stop_after="agent4_volcano")

        assert state["completed_agents"] == RNAseqPipeline.AGENT_ORDER[:4]
        for key in ("pca_plot", "heatmap", "deg_results", "volcano"):
            assert (output_dir / OUTPUT_FILES[key]).exists()

        summary = json.loads((output_dir / "pipeline_summary.json").read_text())
        assert summary["failed_agents"] == []

    def test_config_file_overrides(self, tmp_path, input_dir):
        from rnaseq_gsea import RNAseqPipeline

        (input_dir / "config.json").write_text(json.dumps({"n_heatmap_genes": 10, "seed": 1}))
        pipeline = RNAseqPipeline(input_dir, tmp_path / "_output", config={"seed": 2})

        assert pipeline.config["n_heatmap_genes"] == 10
        assert pipeline.config["seed"] == 2

    def test_sample_mismatch_is_fatal(self, tmp_path, input_dir, sample_metadata_table):
        from rnaseq_gsea import RNAseqPipeline

        meta = sample_metadata_table.copy()
        meta.loc[0, "sample"] = "UNKNOWN"
        meta.to_csv(input_dir / METADATA_FILE, index=False)

        output_dir = tmp_path / "_output"
        pipeline = RNAseqPipeline(input_dir, output_dir)
        with pytest.raises(ValueError, match="Sample ids differ"):
            pipeline.run()

        assert pipeline.execution_state["failed_agents"] == ["agent1_load"]
        record = json.loads((output_dir / "meta_agent1_load.json").read_text())
        assert record["success"] is False
        assert "Sample ids differ" in record["errors"][0]
        assert (output_dir / "pipeline_summary.json").exists()

    def test_dependency_check(self, tmp_path):
        from rnaseq_gsea import RNAseqPipeline

        pipeline = RNAseqPipeline(tmp_path / "in", tmp_path / "out")
        with pytest.raises(FileNotFoundError, match="deseq2_results.csv"):
            pipeline.run_agent("agent4_volcano")
