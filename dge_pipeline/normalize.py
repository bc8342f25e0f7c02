"""
Library size normalization.

Implements the trimmed mean of M-values (TMM) method of Robinson & Oshlack
(2010) and the upper-quartile method. Scale factors are centred so that
their geometric mean is one.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import rankdata

from .counts import CountMatrix
from .errors import NumericDegenerateError, MalformedInputError

logger = logging.getLogger(__name__)

NORM_METHODS = ('TMM', 'upperquartile', 'none')


@dataclass(frozen=True, eq=False)
class NormalizedMatrix:
    """A count matrix together with one positive scale factor per sample."""

    counts: CountMatrix
    norm_factors: np.ndarray
    method: str = 'TMM'

    def __post_init__(self):
        factors = np.array(self.norm_factors, dtype=np.float64)
        factors.setflags(write=False)
        object.__setattr__(self, 'norm_factors', factors)

    @property
    def library_sizes(self) -> np.ndarray:
        return self.counts.library_sizes

    @property
    def effective_library_sizes(self) -> np.ndarray:
        """Library sizes multiplied by the normalization factors."""
        return self.counts.library_sizes * self.norm_factors

    @property
    def samples(self):
        return self.counts.samples

    @property
    def genes(self):
        return self.counts.genes


def _check_nonzero_samples(matrix: CountMatrix) -> np.ndarray:
    lib_size = matrix.library_sizes
    empty = [s for s, n in zip(matrix.samples, lib_size) if n <= 0]
    if empty:
        raise NumericDegenerateError(
            "Scale factor undefined for samples with all-zero counts", empty
        )
    return lib_size


def _upper_quartiles(counts: np.ndarray, lib_size: np.ndarray, p: float = 0.75) -> np.ndarray:
    # R's quantile type 7 is numpy's default linear interpolation
    return np.quantile(counts / lib_size[None, :], p, axis=0)


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighted: bool = True,
    a_cutoff: float = -1e10
) -> float:
    """TMM scale factor of one sample against the reference sample."""
    obs = obs.astype(np.float64)
    ref = ref.astype(np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[finite]
    abs_e = abs_e[finite]
    v = v[finite]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if weighted:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    matrix: CountMatrix,
    method: str = 'TMM',
    ref_column: Optional[int] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighted: bool = True,
    p: float = 0.75
) -> np.ndarray:
    """
    Compute per-sample normalization factors.

    Args:
        matrix: Filtered count matrix
        method: 'TMM', 'upperquartile' or 'none'
        ref_column: Index of the TMM reference sample (default: sample whose
            upper quartile is closest to the mean upper quartile)
        logratio_trim: Fraction of M-values trimmed from each tail
        sum_trim: Fraction of A-values trimmed from each tail
        weighted: Use precision weights when averaging M-values
        p: Quantile used by the upper-quartile method

    Returns:
        Factors with geometric mean 1

    Raises:
        NumericDegenerateError: If a sample has no counts
    """
    if method not in NORM_METHODS:
        raise MalformedInputError(f"Unknown normalization method '{method}'; expected", NORM_METHODS)

    if method == 'none':
        return np.ones(matrix.n_samples)

    lib_size = _check_nonzero_samples(matrix)
    counts = matrix.counts.astype(np.float64)

    if method == 'upperquartile':
        factors = _upper_quartiles(counts, lib_size, p)
        zero = [s for s, f in zip(matrix.samples, factors) if f <= 0]
        if zero:
            raise NumericDegenerateError("Upper quartile is zero for samples", zero)
    else:
        if ref_column is None:
            uq = _upper_quartiles(counts, lib_size)
            ref_column = int(np.argmin(np.abs(uq - uq.mean())))
        logger.debug(f"TMM reference sample: {matrix.samples[ref_column]}")

        ref = counts[:, ref_column]
        factors = np.array([
            _tmm_factor(counts[:, i], ref, lib_size[i], lib_size[ref_column],
                        logratio_trim=logratio_trim, sum_trim=sum_trim, weighted=weighted)
            for i in range(matrix.n_samples)
        ])

    return factors / np.exp(np.mean(np.log(factors)))


def normalize(matrix: CountMatrix, method: str = 'TMM', **kwargs) -> NormalizedMatrix:
    """Attach normalization factors to a count matrix."""
    factors = calc_norm_factors(matrix, method=method, **kwargs)
    summary = ", ".join(f"{s}={f:.3f}" for s, f in zip(matrix.samples, factors))
    logger.info(f"Normalization factors ({method}): {summary}")
    return NormalizedMatrix(counts=matrix, norm_factors=factors, method=method)
