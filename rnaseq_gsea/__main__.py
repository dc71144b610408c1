"""Run the pipeline with ``python -m rnaseq_gsea``."""

from .orchestrator import main

raise SystemExit(main())
