"""
Pipeline Orchestrator

Runs the five analysis agents in order over one dataset.

Usage:
    from rnaseq_gsea import RNAseqPipeline

    pipeline = RNAseqPipeline(input_dir="_input", output_dir="_output")

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent1_load")
    pipeline.run_from("agent4_volcano")  # Resume from agent 4

Stages:
    Load -> Exploratory (PCA, heatmap) -> DEG (DESeq2) -> Volcano -> GSEA

Every agent writes into the shared output directory; later agents read the
files earlier agents wrote there.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .agents import (
    DataLoaderAgent,
    ExploratoryAgent,
    DEGAgent,
    VolcanoAgent,
    GSEAAgent,
)
from .config import CONTRAST, COUNTS_FILE, INPUT_DIR, METADATA_FILE, OUTPUT_DIR


class RNAseqPipeline:
    """Orchestrator for the DGE/GSEA pipeline."""

    AGENT_ORDER = [
        "agent1_load",
        "agent2_exploratory",
        "agent3_deg",
        "agent4_volcano",
        "agent5_gsea"
    ]

    AGENT_CLASSES = {
        "agent1_load": DataLoaderAgent,
        "agent2_exploratory": ExploratoryAgent,
        "agent3_deg": DEGAgent,
        "agent4_volcano": VolcanoAgent,
        "agent5_gsea": GSEAAgent
    }

    # Files each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent1_load": [],
        "agent2_exploratory": ["count_matrix.csv", "metadata.csv"],
        "agent3_deg": ["count_matrix.csv", "metadata.csv"],
        "agent4_volcano": ["deseq2_results.csv"],
        "agent5_gsea": ["deseq2_results.csv"]
    }

    def __init__(
        self,
        input_dir: Path = INPUT_DIR,
        output_dir: Path = OUTPUT_DIR,
        config: Optional[Dict[str, Any]] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        # config.json in the input directory overrides defaults; explicit config wins
        self.config = {**self._load_config_file(), **(config or {})}

        self.execution_state = {
            "run_id": datetime.now().strftime("%Y%m%d_%H%M%S"),
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "agent_results": {}
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("rnaseq_gsea")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        # File handler
        log_file = self.output_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        # Formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _load_config_file(self) -> Dict[str, Any]:
        """Read optional config.json from the input directory."""
        config_file = self.input_dir / "config.json"
        if not config_file.exists():
            return {}
        with open(config_file, 'r', encoding='utf-8') as f:
            config = json.load(f)
        self.logger.info(f"Loaded config overrides from {config_file}")
        return config

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """First agent reads the raw inputs; the rest read earlier outputs."""
        if agent_name == "agent1_load":
            return self.input_dir
        return self.output_dir

    def _check_dependencies(self, agent_name: str) -> None:
        missing = [f for f in self.AGENT_DEPENDENCIES[agent_name]
                   if not (self.output_dir / f).exists()]
        if missing:
            raise FileNotFoundError(
                f"{agent_name} needs outputs of earlier agents: {missing}"
            )

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        agent_config = {**self.config, **(config_override or {})}

        try:
            self._check_dependencies(agent_name)

            AgentClass = self.AGENT_CLASSES[agent_name]
            agent = AgentClass(
                input_dir=self._get_agent_input_dir(agent_name),
                output_dir=self.output_dir,
                config=agent_config
            )
            results = agent.execute()
            self.execution_state["completed_agents"].append(agent_name)
            self.execution_state["agent_results"][agent_name] = results

            return results

        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            raise

    def _run_agents(self, agents_to_run) -> Dict[str, Any]:
        """Run agents in order; the first failure stops the pipeline and is re-raised."""
        self.execution_state["start_time"] = datetime.now().isoformat()
        self.logger.info(f"Agents to run: {agents_to_run}")

        try:
            for agent_name in agents_to_run:
                try:
                    self.run_agent(agent_name)
                except Exception as e:
                    self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                    raise
        finally:
            self.execution_state["end_time"] = datetime.now().isoformat()
            self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Results: {self.output_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.logger.info("Starting DGE/GSEA Pipeline")
        self.logger.info(f"Input directory: {self.input_dir}")
        self.logger.info(f"Output directory: {self.output_dir}")

        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            agents_to_run = self.AGENT_ORDER[:self.AGENT_ORDER.index(stop_after) + 1]
        else:
            agents_to_run = self.AGENT_ORDER

        return self._run_agents(agents_to_run)

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"Resuming from {agent_name}")
        return self._run_agents(self.AGENT_ORDER[self.AGENT_ORDER.index(agent_name):])

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.output_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(
    output_dir: Path,
    n_genes: int = 1000,
    n_samples: int = 8,
    seed: int = 42
) -> None:
    """Create a synthetic count table and metadata in the input layout."""
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(seed)

    known_genes = ['TP53', 'KRAS', 'EGFR', 'MYC', 'BRCA1', 'BRCA2', 'PIK3CA',
                   'PTEN', 'RB1', 'APC', 'BRAF', 'CDK4', 'CDKN2A', 'ERBB2',
                   'CDKN1A', 'MDM2', 'GADD45A', 'BAX', 'FAS', 'CCNB1']
    genes = known_genes + [f'GENE{i}' for i in range(n_genes - len(known_genes))]

    reference, treated = CONTRAST
    n_ref = n_samples // 2
    samples = [f'{reference}_{i + 1}' for i in range(n_ref)] + \
              [f'{treated}_{i + 1}' for i in range(n_samples - n_ref)]

    counts = rng.negative_binomial(20, 0.05, size=(len(genes), len(samples)))

    # Strong fold changes for the named genes, moderate for a block of others
    for i in range(len(known_genes)):
        fold_change = [4, 5, 6, 0.15, 0.2, 0.25][i % 6]
        counts[i, n_ref:] = (counts[i, n_ref:] * fold_change).astype(int)
    for i in range(30, min(80, len(genes))):
        counts[i, n_ref:] = (counts[i, n_ref:] * rng.choice([2.5, 3, 0.33, 0.4])).astype(int)

    count_df = pd.DataFrame(counts, columns=samples)
    count_df.insert(0, 'gene', genes)

    meta_df = pd.DataFrame({
        'sample': samples,
        'treatment': [reference] * n_ref + [treated] * (n_samples - n_ref)
    })

    count_df.to_csv(output_dir / COUNTS_FILE, index=False)
    meta_df.to_csv(output_dir / METADATA_FILE, index=False)

    logging.getLogger("rnaseq_gsea").info(
        f"Sample data created in {output_dir}: {len(genes)} genes x {len(samples)} samples"
    )


def main(argv=None) -> int:
    """Command-line entry point; with no flags runs on the fixed default paths."""
    import argparse

    parser = argparse.ArgumentParser(description="Bulk RNA-seq DGE and GSEA Pipeline")
    parser.add_argument("--input", "-i", default=str(INPUT_DIR), help="Input directory")
    parser.add_argument("--output", "-o", default=str(OUTPUT_DIR), help="Output directory")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--agent", help="Run specific agent only")
    parser.add_argument("--from-agent", help="Resume from specific agent")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input))
        return 0

    pipeline = RNAseqPipeline(input_dir=Path(args.input), output_dir=Path(args.output))

    if args.agent:
        pipeline.run_agent(args.agent)
    elif args.from_agent:
        pipeline.run_from(args.from_agent)
    else:
        pipeline.run()
    return 0


# CLI interface
if __name__ == "__main__":
    raise SystemExit(main())
