"""novdiff - paragraph-level diff markers between AI, fan and raw chapter translations."""

from .analysis import DiffAnalyzer
from .cache import ResultCache
from .orchestrator import DiffOrchestrator

__all__ = ["DiffAnalyzer", "DiffOrchestrator", "ResultCache"]
