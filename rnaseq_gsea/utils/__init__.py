"""Utility modules for the DGE/GSEA pipeline."""

from .base_agent import BaseAgent, managed_figure

__all__ = [
    "BaseAgent",
    "managed_figure"
]
