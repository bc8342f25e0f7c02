"""
Gene-wise weighted linear models with empirical Bayes moderation.

The fitting follows limma: weighted least squares per gene, then the
gene-wise residual variances are squeezed toward a prior estimated from all
genes (Smyth 2004), optionally robustly (Phipson et al. 2016).
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import integrate, optimize, special, stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from .design import DesignMatrix, non_estimable
from .errors import DegenerateDesignError, NumericDegenerateError, MalformedInputError
from .results import p_adjust_bh

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class FitResult:
    """Per-gene linear model fit; moderated statistics are filled by e_bayes."""

    coefficients: np.ndarray
    stdev_unscaled: np.ndarray
    cov_unscaled: np.ndarray
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    coef_names: tuple
    genes: tuple
    sample_weights: Optional[np.ndarray] = None
    s2_prior: Optional[Union[float, np.ndarray]] = None
    df_prior: Optional[Union[float, np.ndarray]] = None
    s2_post: Optional[np.ndarray] = None
    t: Optional[np.ndarray] = None
    df_total: Optional[np.ndarray] = None
    p_value: Optional[np.ndarray] = None
    robust: bool = False

    @property
    def n_genes(self) -> int:
        return len(self.genes)

    @property
    def moderated(self) -> bool:
        return self.t is not None

    def coef_index(self, coef: Union[int, str]) -> int:
        """Resolve a coefficient given by name or position."""
        if isinstance(coef, (int, np.integer)):
            if not 0 <= coef < len(self.coef_names):
                raise MalformedInputError(f"Coefficient index {coef} out of range; available",
                                          self.coef_names)
            return int(coef)
        if coef not in self.coef_names:
            raise MalformedInputError(f"Coefficient '{coef}' not in fit; available", self.coef_names)
        return self.coef_names.index(coef)


def weighted_lstsq(y: np.ndarray, x: np.ndarray, w: np.ndarray) -> Dict[str, np.ndarray]:
    """
    Weighted least squares for every row of y at once.

    Args:
        y: genes x samples responses
        x: samples x coefficients design of full column rank
        w: genes x samples positive weights

    Returns:
        Dictionary with coefficients, unscaled covariance, residuals,
        residual variance and leverages
    """
    n, p = x.shape
    xtwx = np.einsum('gs,si,sj->gij', w, x, x)
    xtwy = np.einsum('gs,si,gs->gi', w, x, y)
    try:
        cov = np.linalg.inv(xtwx)
    except np.linalg.LinAlgError as e:
        raise NumericDegenerateError(f"Weighted design is singular for at least one gene: {e}") from e

    beta = np.einsum('gij,gj->gi', cov, xtwy)
    fitted = beta @ x.T
    resid = y - fitted
    df = n - p
    if df > 0:
        s2 = np.sum(w * resid * resid, axis=1) / df
    else:
        s2 = np.full(y.shape[0], np.nan)
    leverage = w * np.einsum('si,gij,sj->gs', x, cov, x)

    return {
        'coefficients': beta,
        'cov_unscaled': cov,
        'fitted': fitted,
        'residuals': resid,
        's2': s2,
        'df': df,
        'leverage': np.clip(leverage, 0.0, 1.0),
    }


def as_weight_matrix(weights: Optional[np.ndarray], shape: Tuple[int, int]) -> np.ndarray:
    if weights is None:
        return np.ones(shape)
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim == 1:
        if w.shape[0] != shape[1]:
            raise MalformedInputError(f"Expected {shape[1]} sample weights, got {w.shape[0]}")
        w = np.broadcast_to(w[None, :], shape)
    if w.shape != shape:
        raise MalformedInputError(f"Weights shape {w.shape} does not match data shape {shape}")
    if np.any(~np.isfinite(w)) or np.any(w <= 0):
        raise NumericDegenerateError("Weights must be finite and positive")
    return np.array(w)


def lm_fit(
    expression: np.ndarray,
    design: DesignMatrix,
    weights: Optional[np.ndarray] = None,
    genes: Optional[Sequence[str]] = None,
    sample_weights: Optional[np.ndarray] = None
) -> FitResult:
    """
    Fit a weighted linear model to every gene.

    Args:
        expression: genes x samples log-expression (e.g. voom E)
        design: Design matrix with one row per sample
        weights: genes x samples observation weights, or one weight per sample
        genes: Gene identifiers (default: positional)
        sample_weights: Quality weights to record on the fit

    Returns:
        FitResult without moderated statistics

    Raises:
        DegenerateDesignError: If the design is rank deficient
    """
    y = np.asarray(expression, dtype=np.float64)
    x = design.matrix
    if y.ndim != 2 or y.shape[1] != x.shape[0]:
        raise MalformedInputError(
            f"Expression has shape {y.shape} but design has {x.shape[0]} samples"
        )
    aliased = non_estimable(x, design.columns)
    if aliased:
        raise DegenerateDesignError("Coefficients not estimable (aliased)", aliased)

    w = as_weight_matrix(weights, y.shape)
    fit = weighted_lstsq(y, x, w)
    if genes is None:
        genes = [str(i) for i in range(y.shape[0])]

    stdev = np.sqrt(np.diagonal(fit['cov_unscaled'], axis1=1, axis2=2))
    logger.debug(f"Fitted {y.shape[0]} genes on {x.shape[1]} coefficients, "
                 f"{fit['df']} residual df")

    return FitResult(
        coefficients=fit['coefficients'],
        stdev_unscaled=stdev,
        cov_unscaled=fit['cov_unscaled'],
        sigma=np.sqrt(fit['s2']),
        df_residual=np.full(y.shape[0], float(fit['df'])),
        amean=y.mean(axis=1),
        coef_names=tuple(design.columns),
        genes=tuple(genes),
        sample_weights=None if sample_weights is None else np.asarray(sample_weights, dtype=np.float64),
    )


_CONTRAST_TERM = re.compile(r'([+-]?)\s*(?:(\d+(?:\.\d*)?|\.\d+)\s*\*?\s*)?([A-Za-z_.][A-Za-z0-9_.]*)')


def make_contrasts(contrasts: Mapping[str, str], coef_names: Sequence[str]) -> pd.DataFrame:
    """
    Build a contrast matrix from linear expressions over coefficient names.

    Args:
        contrasts: Mapping of contrast name to expression, e.g.
            {'HighVsLow': 'tempHigh - tempLow'}
        coef_names: Coefficient names of the fit

    Returns:
        DataFrame indexed by coefficient, one column per contrast
    """
    matrix = pd.DataFrame(0.0, index=list(coef_names), columns=list(contrasts))
    for name, expression in contrasts.items():
        text = expression.replace(' ', '')
        consumed = 0
        for match in _CONTRAST_TERM.finditer(text):
            if match.start() != consumed:
                break
            sign, number, coef = match.groups()
            if coef not in matrix.index:
                raise MalformedInputError(f"Unknown coefficient '{coef}' in contrast '{name}'; available",
                                          coef_names)
            value = float(number) if number else 1.0
            matrix.loc[coef, name] += -value if sign == '-' else value
            consumed = match.end()
        if consumed != len(text) or consumed == 0:
            raise MalformedInputError(f"Cannot parse contrast '{name}': '{expression}'")
    return matrix


def contrasts_fit(fit: FitResult, contrasts: Union[pd.DataFrame, Mapping[str, Mapping[str, float]]]) -> FitResult:
    """
    Re-express a fit in terms of contrasts of its coefficients.

    Args:
        fit: Un-moderated or moderated fit; moderated statistics are dropped
        contrasts: DataFrame indexed by coefficient name (one column per
            contrast), or mapping contrast name -> {coefficient: weight}

    Returns:
        New FitResult whose coefficients are the contrasts
    """
    if not isinstance(contrasts, pd.DataFrame):
        contrasts = pd.DataFrame(
            {name: pd.Series(weights, dtype=np.float64) for name, weights in contrasts.items()}
        ).fillna(0.0)

    unknown = [c for c in contrasts.index if c not in fit.coef_names]
    if unknown:
        raise MalformedInputError("Contrast rows are not coefficients of the fit", unknown)
    c = contrasts.reindex(list(fit.coef_names)).fillna(0.0).to_numpy(dtype=np.float64)

    if fit.moderated:
        logger.warning("Contrasts applied to a moderated fit; re-run e_bayes")

    cov = np.einsum('ia,gij,jb->gab', c, fit.cov_unscaled, c)
    return replace(
        fit,
        coefficients=fit.coefficients @ c,
        cov_unscaled=cov,
        stdev_unscaled=np.sqrt(np.diagonal(cov, axis1=1, axis2=2)),
        coef_names=tuple(str(name) for name in contrasts.columns),
        s2_prior=None, df_prior=None, s2_post=None, t=None, df_total=None, p_value=None,
        robust=False,
    )


def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1.0 - tri / x) / special.polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return float(y)


def _smooth_trend(covariate: np.ndarray, values: np.ndarray, span: float = 0.5) -> np.ndarray:
    """Lowess fit of values on covariate, evaluated at every covariate value."""
    fitted = lowess(values, covariate, frac=span, it=3, return_sorted=False)
    bad = ~np.isfinite(fitted)
    if bad.any():
        fitted = np.where(bad, np.mean(values), fitted)
    return fitted


def _moment_prior(
    z: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None
) -> Tuple[Union[float, np.ndarray], float]:
    """Scaled-F prior from log-variances by moment matching."""
    e = z - special.digamma(df / 2) + np.log(df / 2)
    n = e.size
    if covariate is None:
        emean = float(np.mean(e))
        evar = float(np.sum((e - emean) ** 2) / (n - 1))
    else:
        emean = _smooth_trend(covariate, e)
        evar = float(np.sum((e - emean) ** 2) / (n - 1))
    evar -= float(np.mean(special.polygamma(1, df / 2)))

    if evar > 0:
        df_prior = 2.0 * trigamma_inverse(evar)
        s2_prior = np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        df_prior = np.inf
        s2_prior = np.exp(emean) if covariate is not None else float(np.mean(np.exp(z)))
    return s2_prior, float(df_prior)


def _floor_variances(s2: np.ndarray) -> np.ndarray:
    s2 = np.maximum(s2, 0.0)
    m = float(np.median(s2))
    if m <= 0:
        raise NumericDegenerateError("Residual variances are zero for most genes")
    return np.maximum(s2, 1e-5 * m)


def _winsorized_log_moments(d: float, d0: float, tail_p: Tuple[float, float]) -> Tuple[float, float]:
    """Mean and variance of log F(d, d0) winsorized at the given tail fractions."""
    if np.isfinite(d0):
        dist = stats.f(d, d0)
    else:
        # chi-square(d) / d
        dist = stats.gamma(d / 2, scale=2.0 / d)
    lo = np.log(dist.ppf(tail_p[0]))
    hi = np.log(dist.isf(tail_p[1]))

    def density(u):
        x = np.exp(u)
        return dist.pdf(x) * x

    m1 = integrate.quad(lambda u: u * density(u), lo, hi)[0] + tail_p[0] * lo + tail_p[1] * hi
    m2 = integrate.quad(lambda u: u * u * density(u), lo, hi)[0] + tail_p[0] * lo ** 2 + tail_p[1] * hi ** 2
    return float(m1), float(m2 - m1 ** 2)


def _robust_prior(
    z: np.ndarray,
    df: np.ndarray,
    tail_p: Tuple[float, float],
    covariate: Optional[np.ndarray] = None
) -> Tuple[Union[float, np.ndarray], float]:
    """
    Scaled-F prior from winsorized log-variances.

    The winsorized mean and variance of the observed log-variances are
    matched to those of a winsorized log F(d, d0) distribution, with d the
    median residual df, so a minority of outlying genes cannot inflate the
    prior.
    """
    d = float(np.median(df))
    if covariate is None:
        center = 0.0
    else:
        center = _smooth_trend(covariate, z)
    resid = z - center
    lo, hi = np.quantile(resid, [tail_p[0], 1.0 - tail_p[1]])
    resid = np.clip(resid, lo, hi)
    mean_w = float(np.mean(resid))
    var_w = float(np.var(resid, ddof=1))

    def excess(log_d0: float) -> float:
        return _winsorized_log_moments(d, float(np.exp(log_d0)), tail_p)[1] - var_w

    lower, upper = np.log(0.5), np.log(1e4)
    if excess(upper) >= 0:
        d0 = np.inf
    elif excess(lower) <= 0:
        d0 = 0.5
    else:
        d0 = float(np.exp(optimize.brentq(excess, lower, upper, xtol=1e-6)))

    shift = _winsorized_log_moments(d, d0, tail_p)[0]
    return np.exp(center + mean_w - shift), float(d0)


def fit_f_dist(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None
) -> Dict[str, Any]:
    """
    Estimate the scaled-F prior of gene-wise variances.

    Args:
        s2: Residual variances
        df: Residual degrees of freedom (scalar or per gene)
        covariate: Optional per-gene covariate for a trended prior

    Returns:
        Dictionary with 'scale' (prior variance) and 'df2' (prior df, may be inf)
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)
    ok = np.isfinite(s2) & (df > 1e-15)
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=np.float64)
        ok &= np.isfinite(covariate)
    if ok.sum() < 2:
        raise NumericDegenerateError("Need at least two genes with residual df to estimate a prior")

    z = np.log(_floor_variances(s2[ok]))
    scale, df2 = _moment_prior(z, df[ok], None if covariate is None else covariate[ok])

    if covariate is not None:
        trend = np.interp(covariate, np.sort(covariate[ok]), np.asarray(scale)[np.argsort(covariate[ok])])
        scale = trend
    return {'scale': scale, 'df2': df2}


def squeeze_var(
    s2: np.ndarray,
    df: np.ndarray,
    robust: bool = False,
    covariate: Optional[np.ndarray] = None,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1)
) -> Dict[str, Any]:
    """
    Squeeze gene-wise variances toward a common prior.

    Args:
        s2: Residual variances
        df: Residual degrees of freedom
        robust: Estimate the prior from winsorized log-variances and give
            outlier genes a smaller prior df
        covariate: Optional per-gene covariate (e.g. average expression)
            for a trended prior
        winsor_tail_p: Lower and upper tail fractions winsorized in robust mode

    Returns:
        Dictionary with 'var_prior', 'df_prior' and 'var_post'
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape).copy()

    if not robust:
        prior = fit_f_dist(s2, df, covariate=covariate)
        var_prior, df_prior = prior['scale'], prior['df2']
        if np.isinf(df_prior):
            var_post = np.broadcast_to(var_prior, s2.shape).astype(np.float64)
        else:
            var_post = (df * s2 + df_prior * var_prior) / (df + df_prior)
        return {'var_prior': var_prior, 'df_prior': df_prior, 'var_post': var_post}

    if not all(0 < p < 0.5 for p in winsor_tail_p):
        raise MalformedInputError(f"Winsorization tails must be in (0, 0.5), got {winsor_tail_p}")
    s2_floor = _floor_variances(s2)
    var_prior, d0 = _robust_prior(np.log(s2_floor), df, winsor_tail_p, covariate)
    var_prior = np.broadcast_to(np.asarray(var_prior, dtype=np.float64), s2.shape)

    d0_work = d0 if np.isfinite(d0) else float(np.sum(df))
    ratio = s2_floor / var_prior
    p_upper = stats.f.sf(ratio, df, d0_work)
    q_upper = p_adjust_bh(p_upper)
    df_prior = d0_work * np.clip(2.0 * q_upper, 0.0, 1.0)

    var_post = (df * s2 + df_prior * var_prior) / (df + df_prior)
    n_outliers = int(np.sum(df_prior < d0_work))
    logger.debug(f"Robust prior: d0={d0_work:.3g}, {n_outliers} genes with reduced prior df")
    return {'var_prior': var_prior, 'df_prior': df_prior, 'var_post': var_post}


def e_bayes(
    fit: FitResult,
    robust: bool = False,
    trend: bool = False,
    winsor_tail_p: Tuple[float, float] = (0.05, 0.1)
) -> FitResult:
    """
    Moderated t-statistics by empirical Bayes variance shrinkage.

    Args:
        fit: Output of lm_fit or contrasts_fit
        robust: Protect the prior against genes with outlying variances
        trend: Let the prior variance depend on average log-expression
        winsor_tail_p: Winsorization tails used when robust is set

    Returns:
        New FitResult with s2_prior, df_prior, s2_post, t, df_total, p_value

    Raises:
        NumericDegenerateError: If a gene has zero variance and no prior df
    """
    df = fit.df_residual
    if not np.any(df > 0):
        raise DegenerateDesignError("No residual degrees of freedom; add replicates or drop coefficients")

    s2 = fit.sigma ** 2
    squeezed = squeeze_var(
        s2, df, robust=robust,
        covariate=fit.amean if trend else None,
        winsor_tail_p=winsor_tail_p,
    )
    df_prior = squeezed['df_prior']
    s2_post = np.asarray(squeezed['var_post'], dtype=np.float64)

    degenerate = (s2_post <= 0) | ~np.isfinite(s2_post)
    if degenerate.any():
        raise NumericDegenerateError(
            "Zero residual variance with no prior information for genes",
            [g for g, bad in zip(fit.genes, degenerate) if bad],
        )

    df_pooled = float(np.sum(df))
    df_total = np.minimum(df + df_prior, df_pooled)
    t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]
    p_value = 2.0 * stats.t.sf(np.abs(t), df_total[:, None])

    prior_desc = (f"{df_prior:.3g}" if np.ndim(df_prior) == 0
                  else f"median {np.median(df_prior):.3g}")
    logger.info(f"Empirical Bayes: prior df {prior_desc}, "
                f"prior variance {np.median(squeezed['var_prior']):.4g}"
                f"{' (robust)' if robust else ''}{' (trended)' if trend else ''}")

    return replace(
        fit,
        s2_prior=squeezed['var_prior'],
        df_prior=df_prior,
        s2_post=s2_post,
        t=t,
        df_total=df_total,
        p_value=p_value,
        robust=robust,
    )
