"""
Base Agent Class for the DGE/GSEA Pipeline

An agent is one pipeline stage. It reads tables from ``input_dir``, writes
tables and figures to ``output_dir`` and leaves two traces there:
``log_<agent>.txt`` and the run record ``meta_<agent>.json``.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import pandas as pd

from ..config import FIGURE_DPI

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@contextmanager
def managed_figure(fig: plt.Figure) -> Iterator[plt.Figure]:
    """Yield a figure and close it on exit, also when plotting fails."""
    try:
        yield fig
    finally:
        plt.close(fig)


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


class BaseAgent(ABC):
    """One stage of the pipeline.

    Subclasses load and check their inputs in ``validate_inputs``, do the
    work in ``run`` and confirm the files they promised in
    ``validate_outputs``. ``execute`` chains the three.
    """

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.agent_name = agent_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = config or {}

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = self._setup_logging()

        self.started: Optional[datetime] = None
        self.finished: Optional[datetime] = None
        self.errors: List[str] = []

    def _setup_logging(self) -> logging.Logger:
        """DEBUG to log_<agent>.txt, INFO to the console."""
        logger = logging.getLogger(self.agent_name)
        logger.setLevel(logging.DEBUG)

        # A second agent with the same name in one process must not double lines
        for old in list(logger.handlers):
            old.close()
            logger.removeHandler(old)

        log_file = self.output_dir / f"log_{self.agent_name}.txt"
        logger.addHandler(_handler(logging.FileHandler(log_file, mode='w', encoding='utf-8'),
                                   logging.DEBUG))
        logger.addHandler(_handler(logging.StreamHandler(), logging.INFO))
        return logger

    def require_inputs(self, *filenames: str) -> None:
        """Raise FileNotFoundError naming the first file absent from input_dir."""
        for filename in filenames:
            filepath = self.input_dir / filename
            if not filepath.exists():
                raise FileNotFoundError(f"Required input file not found: {filepath}")

    def load_csv(self, filename: str, required: bool = True, **kwargs) -> Optional[pd.DataFrame]:
        """Read a delimited table from input_dir; extra kwargs go to ``pd.read_csv``."""
        filepath = self.input_dir / filename
        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            self.logger.warning(f"Optional file not found: {filepath}")
            return None

        df = pd.read_csv(filepath, **kwargs)
        self.logger.info(f"Loaded {filename}: {df.shape[0]} rows x {df.shape[1]} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str, index: bool = False) -> Path:
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=index)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def save_json(self, data: Dict, filename: str) -> Path:
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        return filepath

    def save_figure(self, fig: plt.Figure, filename: str) -> Path:
        """Write a PNG at the configured dpi; pixel size is figsize x dpi."""
        filepath = self.output_dir / filename
        fig.savefig(filepath, dpi=self.config.get("dpi", FIGURE_DPI),
                    facecolor='white', edgecolor='none')
        self.logger.info(f"Saved {filepath.name}")
        return filepath

    def _write_run_record(self, results: Dict[str, Any]) -> Path:
        """meta_<agent>.json: timing, outcome, effective config and stage results."""
        elapsed = None
        if self.started and self.finished:
            elapsed = (self.finished - self.started).total_seconds()
        return self.save_json({
            "agent_name": self.agent_name,
            "started": self.started,
            "finished": self.finished,
            "execution_time_seconds": elapsed,
            "success": not self.errors,
            "errors": self.errors,
            "config_used": self.config,
            "results": results,
        }, f"meta_{self.agent_name}.json")

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Load inputs; False for unusable inputs, raise for missing files."""

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Stage work; returns a JSON-serialisable summary."""

    @abstractmethod
    def validate_outputs(self) -> bool:
        """True when every promised output file exists."""

    def execute(self) -> Dict[str, Any]:
        """validate_inputs -> run -> validate_outputs; errors are logged, recorded and re-raised."""
        self.started = datetime.now()
        results: Dict[str, Any] = {}
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        try:
            if not self.validate_inputs():
                raise ValueError("Input validation failed")
            results = self.run()
            if not self.validate_outputs():
                raise ValueError("Output validation failed")
            self.logger.info(f"{self.agent_name} completed successfully!")

        except Exception as e:
            self.errors.append(str(e))
            self.logger.error(f"Error in {self.agent_name}: {e}")
            raise

        finally:
            self.finished = datetime.now()
            self._write_run_record(results)

        return results
