"""
DGE Pipeline

Differential gene expression analysis of RNA-seq count matrices: CPM
filtering, TMM normalization, voom with sample quality weights, weighted
linear models and empirical Bayes moderation.
"""

__version__ = "1.0.0"

from .errors import DGEError, MalformedInputError, DegenerateDesignError, NumericDegenerateError
from .config import AnalysisConfig, load_config
from .pipeline import PipelineResult, run_differential_expression, write_results
