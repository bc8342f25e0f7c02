"""
Expression filtering based on counts per million.
"""

import logging
import math
from typing import Optional

import numpy as np

from .counts import CountMatrix

logger = logging.getLogger(__name__)


def cpm(
    counts: np.ndarray,
    lib_size: Optional[np.ndarray] = None,
    log: bool = False,
    prior_count: float = 2.0
) -> np.ndarray:
    """
    Counts per million for a genes x samples array.

    Args:
        counts: Raw counts, genes as rows
        lib_size: Library size per sample (default: column sums)
        log: Return log2-CPM
        prior_count: Average count added to each observation before log2,
            scaled by library size as edgeR does

    Returns:
        Array of the same shape as counts
    """
    counts = np.asarray(counts, dtype=np.float64)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)

    if not log:
        with np.errstate(divide='ignore', invalid='ignore'):
            return counts / (lib_size[None, :] / 1e6)

    # Scale the prior so that each sample gets the same relative offset.
    prior = prior_count * lib_size / lib_size.mean()
    adjusted_lib = lib_size + 2.0 * prior
    return np.log2((counts + prior[None, :]) / adjusted_lib[None, :] * 1e6)


def log_cpm(matrix: CountMatrix, prior_count: float = 2.0) -> np.ndarray:
    """log2-CPM for a CountMatrix."""
    return cpm(matrix.counts, log=True, prior_count=prior_count)


def filter_by_expression(
    matrix: CountMatrix,
    threshold: float = 1.0,
    min_samples: Optional[int] = None
) -> CountMatrix:
    """
    Remove lowly expressed genes.

    A gene is kept when at least ``min_samples`` samples have CPM >= threshold.

    Args:
        matrix: Input counts
        threshold: CPM threshold
        min_samples: Minimum number of samples passing the threshold
            (default: half of the samples, rounded up)

    Returns:
        Reduced CountMatrix; possibly empty
    """
    if min_samples is None:
        min_samples = max(1, math.ceil(matrix.n_samples / 2))

    values = cpm(matrix.counts)
    passing = np.sum(np.nan_to_num(values, nan=0.0) >= threshold, axis=1)
    keep = passing >= min_samples

    filtered = matrix.subset_genes(keep)
    logger.info(f"Kept {filtered.n_genes}/{matrix.n_genes} genes with CPM >= {threshold} "
                f"in at least {min_samples} samples")
    if filtered.n_genes == 0:
        logger.warning("No genes passed the expression filter")
    return filtered
