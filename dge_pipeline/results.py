"""
Differential expression tables from moderated fits.
"""

import logging
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .errors import MalformedInputError

logger = logging.getLogger(__name__)

SORT_OPTIONS = ('p', 'logFC', 'none')

TABLE_COLUMNS = ['gene', 'logFC', 'AveExpr', 't', 'P.Value', 'adj.P.Val', 'rank']


def p_adjust_bh(pvalues: Sequence[float]) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN inputs stay NaN and do not count towards the number of tests.
    """
    p = np.asarray(pvalues, dtype=np.float64)
    adjusted = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        adjusted[ok] = multipletests(p[ok], method='fdr_bh')[1]
    return adjusted


def _require_moderated(fit) -> None:
    if getattr(fit, 't', None) is None:
        raise MalformedInputError("Fit has no moderated statistics; run e_bayes first")


def top_table(
    fit,
    coef: Optional[Union[int, str]] = None,
    number: Optional[int] = None,
    sort_by: str = 'p',
    p_value: float = 1.0,
    lfc: float = 0.0
) -> pd.DataFrame:
    """
    Table of genes ranked for one coefficient.

    Args:
        fit: Moderated FitResult
        coef: Coefficient name or index (default: the last coefficient)
        number: Maximum number of rows (default: all)
        sort_by: 'p' (adjusted p-value), 'logFC' (absolute fold change) or
            'none' (gene order)
        p_value: Keep only genes with adjusted p-value <= p_value
        lfc: Keep only genes with |logFC| >= lfc

    Returns:
        DataFrame with gene, logFC, AveExpr, t, P.Value, adj.P.Val, rank
    """
    _require_moderated(fit)
    if sort_by not in SORT_OPTIONS:
        raise MalformedInputError(f"Unknown sort_by '{sort_by}'; expected", SORT_OPTIONS)

    j = len(fit.coef_names) - 1 if coef is None else fit.coef_index(coef)
    pvals = fit.p_value[:, j]
    adj = p_adjust_bh(pvals)

    table = pd.DataFrame({
        'gene': list(fit.genes),
        'logFC': fit.coefficients[:, j],
        'AveExpr': fit.amean,
        't': fit.t[:, j],
        'P.Value': pvals,
        'adj.P.Val': adj,
    })
    order = _p_order(pvals, fit.t[:, j])
    rank = np.empty(len(order), dtype=int)
    rank[order] = np.arange(1, len(order) + 1)
    table['rank'] = rank

    if sort_by == 'p':
        table = table.iloc[order]
    elif sort_by == 'logFC':
        table = table.reindex(table['logFC'].abs().sort_values(ascending=False, kind='mergesort').index)

    mask = pd.Series(True, index=table.index)
    if p_value < 1.0:
        mask &= table['adj.P.Val'] <= p_value
    if lfc > 0:
        mask &= table['logFC'].abs() >= lfc
    table = table[mask]

    if number is not None:
        table = table.head(number)
    return table.reset_index(drop=True)[TABLE_COLUMNS]


def _p_order(pvals: np.ndarray, t: np.ndarray) -> np.ndarray:
    # ties in P.Value are broken by larger |t|; NaN p-values go last
    p = np.where(np.isnan(pvals), np.inf, pvals)
    return np.lexsort((-np.abs(t), p))


def decide_tests(
    fit,
    p_value: float = 0.05,
    lfc: float = 0.0,
    coefs: Optional[Sequence[Union[int, str]]] = None
) -> pd.DataFrame:
    """
    Classify each gene as up (1), down (-1) or not significant (0).

    BH adjustment is applied separately for each coefficient.
    """
    _require_moderated(fit)
    indices: List[int] = [fit.coef_index(c) for c in coefs] if coefs is not None \
        else list(range(len(fit.coef_names)))

    calls = {}
    for j in indices:
        adj = p_adjust_bh(fit.p_value[:, j])
        significant = (adj <= p_value) & (np.abs(fit.coefficients[:, j]) >= lfc)
        calls[fit.coef_names[j]] = np.where(significant, np.sign(fit.coefficients[:, j]), 0).astype(int)

    return pd.DataFrame(calls, index=list(fit.genes))


def summarize_tests(decisions: pd.DataFrame) -> pd.DataFrame:
    """Count Down / NotSig / Up genes per coefficient."""
    summary = pd.DataFrame({
        'Down': (decisions == -1).sum(),
        'NotSig': (decisions == 0).sum(),
        'Up': (decisions == 1).sum(),
    }).T
    logger.debug(f"Test summary:\n{summary}")
    return summary
