"""
voom precision weights and sample quality weights.

voom (Law et al. 2014) converts counts to log2-CPM and assigns each
observation a precision weight from a lowess fit of the gene-wise
mean-variance trend. Sample quality weights (Liu et al. 2015) down-weight
samples whose residuals are consistently larger than the trend predicts.
voom_with_quality_weights alternates the two estimates.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from statsmodels.nonparametric.smoothers_lowess import lowess

from .design import DesignMatrix, non_estimable
from .errors import DegenerateDesignError, NumericDegenerateError
from .linear_model import weighted_lstsq, as_weight_matrix
from .normalize import NormalizedMatrix

logger = logging.getLogger(__name__)

_EPS = 1e-8


@dataclass(frozen=True, eq=False)
class VoomResult:
    """log2-CPM expression with observation-level precision weights."""

    E: np.ndarray
    weights: np.ndarray
    design: DesignMatrix
    genes: tuple
    samples: tuple
    lib_size: np.ndarray
    trend_x: np.ndarray
    trend_y: np.ndarray
    sample_weights: Optional[np.ndarray] = None
    span: float = 0.5


def _contr_sum(n: int) -> np.ndarray:
    """Sum-to-zero contrasts: n rows, n - 1 columns."""
    z = np.zeros((n, n - 1))
    z[: n - 1, :] = np.eye(n - 1)
    z[n - 1, :] = -1.0
    return z


def _lowess_trend(sx: np.ndarray, sy: np.ndarray, span: float) -> Tuple[np.ndarray, np.ndarray]:
    fitted = lowess(sy, sx, frac=span, it=3, return_sorted=True)
    x, y = fitted[:, 0], fitted[:, 1]
    ok = np.isfinite(y)
    x, y = x[ok], np.clip(y[ok], _EPS, None)
    x, idx = np.unique(x, return_index=True)
    y = y[idx]
    if x.size < 2:
        level = y[0] if y.size else 1.0
        x = np.array([sx.min() - 1.0, sx.max() + 1.0])
        y = np.array([level, level])
    return x, y


def voom(
    normalized: NormalizedMatrix,
    design: DesignMatrix,
    span: float = 0.5,
    sample_weights: Optional[np.ndarray] = None
) -> VoomResult:
    """
    Transform counts to log2-CPM and estimate precision weights.

    Args:
        normalized: Counts with normalization factors
        design: Design matrix with one row per sample
        span: Lowess span for the mean-variance trend
        sample_weights: Optional quality weights used when fitting the trend

    Returns:
        VoomResult; weights equal 1 / trend(fitted log-count) ** 4
    """
    counts = normalized.counts.counts.astype(np.float64)
    n_genes, n_samples = counts.shape
    x = design.matrix
    if x.shape[0] != n_samples:
        raise DegenerateDesignError(
            f"Design has {x.shape[0]} rows but the count matrix has {n_samples} samples"
        )
    if n_genes < 2:
        raise NumericDegenerateError("Need at least two genes to fit a mean-variance trend")
    aliased = non_estimable(x, design.columns)
    if aliased:
        raise DegenerateDesignError("Coefficients not estimable (aliased)", aliased)
    if n_samples - x.shape[1] < 1:
        raise DegenerateDesignError("No residual degrees of freedom to estimate variances")

    lib_size = normalized.effective_library_sizes
    y = np.log2((counts + 0.5) / (lib_size[None, :] + 1.0) * 1e6)

    w = as_weight_matrix(sample_weights, y.shape)
    fit = weighted_lstsq(y, x, w)
    sigma = np.sqrt(fit['s2'])

    amean = y.mean(axis=1)
    expressed = counts.sum(axis=1) > 0
    sx = amean[expressed] + np.mean(np.log2(lib_size + 1.0)) - np.log2(1e6)
    sy = np.sqrt(sigma[expressed])
    trend_x, trend_y = _lowess_trend(sx, sy, span)

    fitted_count = 2.0 ** fit['fitted'] * (lib_size[None, :] + 1.0) / 1e6
    fitted_logcount = np.log2(fitted_count)
    # np.interp clamps to the end values outside the fitted range
    weights = 1.0 / np.interp(fitted_logcount, trend_x, trend_y) ** 4

    logger.debug(f"voom: {n_genes} genes, trend over {int(expressed.sum())} expressed genes, "
                 f"weights in [{weights.min():.3g}, {weights.max():.3g}]")

    return VoomResult(
        E=y,
        weights=weights,
        design=design,
        genes=normalized.genes,
        samples=normalized.samples,
        lib_size=lib_size,
        trend_x=trend_x,
        trend_y=trend_y,
        sample_weights=None if sample_weights is None else np.asarray(sample_weights, dtype=np.float64),
        span=span,
    )


def array_weights(
    expression: np.ndarray,
    design: np.ndarray,
    weights: Optional[np.ndarray] = None,
    prior_n: float = 10.0,
    max_iter: int = 50,
    tol: float = 1e-5
) -> np.ndarray:
    """
    Estimate one quality weight per sample.

    The sample variance multipliers are modelled log-linearly with
    sum-to-zero contrasts, so the returned weights have geometric mean 1.
    Each pass fits every gene by weighted least squares, pools the
    leverage-adjusted squared residuals across genes, and takes one Fisher
    scoring step. ``prior_n`` pseudo-genes squeeze the weights toward 1.

    Args:
        expression: genes x samples log-expression
        design: samples x coefficients design matrix
        weights: Optional genes x samples observation weights (e.g. voom)
        prior_n: Prior strength toward equal weights
        max_iter: Maximum number of scoring passes
        tol: Stop once no weight changes by more than this

    Returns:
        Array of sample weights
    """
    y = np.asarray(expression, dtype=np.float64)
    x = np.asarray(design, dtype=np.float64)
    n_genes, n_samples = y.shape
    p = x.shape[1]

    if n_samples - p < 2:
        logger.warning("Too few residual degrees of freedom to estimate sample weights; using 1")
        return np.ones(n_samples)

    obs_w = as_weight_matrix(weights, y.shape)
    z2 = _contr_sum(n_samples)
    prior_info = prior_n * (z2.T @ z2)

    gam = np.zeros(n_samples - 1)
    aw = np.ones(n_samples)

    for iteration in range(1, max_iter + 1):
        w = obs_w * aw[None, :]
        fit = weighted_lstsq(y, x, w)
        s2 = fit['s2']
        ok = np.isfinite(s2) & (s2 > 1e-15)
        if ok.sum() < 2:
            logger.warning("Too few genes with residual variance to estimate sample weights")
            return np.ones(n_samples)

        h1 = 1.0 - fit['leverage'][ok]
        d = w[ok] * fit['residuals'][ok] ** 2 / s2[ok, None]

        zvec = np.sum(d - h1, axis=0) + prior_n * (aw - 1.0)
        score = z2.T @ zvec

        info00 = h1.sum(axis=1)
        info01 = h1 @ z2
        info11 = np.einsum('gs,sj,sk->jk', h1, z2, z2)
        info = info11 - np.einsum('gj,gk,g->jk', info01, info01, 1.0 / info00) + prior_info

        gam = gam + np.linalg.solve(info, score)
        new_aw = np.exp(-(z2 @ gam))
        change = float(np.max(np.abs(new_aw - aw)))
        aw = new_aw
        logger.debug(f"array_weights pass {iteration}: max change {change:.2e}")
        if change < tol:
            break
    else:
        logger.warning(f"Sample weights did not converge in {max_iter} passes")

    return aw


def voom_with_quality_weights(
    normalized: NormalizedMatrix,
    design: DesignMatrix,
    span: float = 0.5,
    prior_n: float = 10.0,
    passes: int = 2,
    max_iter: int = 50,
    tol: float = 1e-5
) -> VoomResult:
    """
    voom with sample quality weights.

    Alternates voom and array_weights ``passes`` times (stopping early once
    the sample weights settle); the returned weights are the voom weights
    multiplied by the sample weights.
    """
    v = voom(normalized, design, span=span)
    aw = array_weights(v.E, design.matrix, v.weights, prior_n=prior_n, max_iter=max_iter, tol=tol)

    for _ in range(1, passes):
        v = voom(normalized, design, span=span, sample_weights=aw)
        new_aw = array_weights(v.E, design.matrix, v.weights,
                               prior_n=prior_n, max_iter=max_iter, tol=tol)
        change = float(np.max(np.abs(new_aw - aw)))
        aw = new_aw
        if change < tol:
            break

    summary = ", ".join(f"{s}={a:.3f}" for s, a in zip(v.samples, aw))
    logger.info(f"Sample quality weights: {summary}")

    return VoomResult(
        E=v.E,
        weights=v.weights * aw[None, :],
        design=design,
        genes=v.genes,
        samples=v.samples,
        lib_size=v.lib_size,
        trend_x=v.trend_x,
        trend_y=v.trend_y,
        sample_weights=aw,
        span=span,
    )
