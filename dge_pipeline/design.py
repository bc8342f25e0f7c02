"""
Design matrix construction from additive model formulas.

Formulas follow the R convention restricted to main effects of categorical
covariates, e.g. ``~ temp`` or ``~ population + temp``. An intercept is
included unless the formula contains ``0 +`` or ``- 1``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg as sla

from .counts import SampleMetadata
from .errors import DegenerateDesignError, MalformedInputError

logger = logging.getLogger(__name__)

INTERCEPT = 'Intercept'

_TERM_RE = re.compile(r'^[A-Za-z_.][A-Za-z0-9_.]*$')


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Numeric design: one row per sample, one column per coefficient."""

    matrix: np.ndarray
    columns: tuple
    samples: tuple
    formula: str = ''

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=np.float64)
        if matrix.shape != (len(self.samples), len(self.columns)):
            raise DegenerateDesignError(
                f"Design shape {matrix.shape} does not match "
                f"{len(self.samples)} samples x {len(self.columns)} coefficients"
            )
        matrix.setflags(write=False)
        object.__setattr__(self, 'matrix', matrix)
        object.__setattr__(self, 'columns', tuple(self.columns))
        object.__setattr__(self, 'samples', tuple(self.samples))

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.matrix))

    @property
    def n_coefficients(self) -> int:
        return len(self.columns)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=list(self.samples), columns=list(self.columns))


def parse_formula(formula: str) -> Tuple[List[str], bool]:
    """
    Split a formula into its terms.

    Args:
        formula: e.g. '~ population + temp' or '~ 0 + group'

    Returns:
        (terms, has_intercept)
    """
    rhs = formula.strip()
    if '~' in rhs:
        lhs, rhs = rhs.split('~', 1)
        if lhs.strip():
            raise DegenerateDesignError(f"Formula must not have a response: '{formula}'")
    if ':' in rhs or '*' in rhs:
        raise DegenerateDesignError(f"Interaction terms are not supported: '{formula}'")

    intercept = True
    rhs = rhs.replace(' ', '')
    if re.search(r'-1(?![0-9])', rhs):
        intercept = False
        rhs = re.sub(r'-1(?![0-9])', '', rhs)

    terms = []
    for term in (t for t in rhs.split('+') if t):
        if term == '0':
            intercept = False
        elif term == '1':
            intercept = True
        elif _TERM_RE.match(term):
            if term not in terms:
                terms.append(term)
        else:
            raise DegenerateDesignError(f"Cannot parse term '{term}' in formula '{formula}'")
    return terms, intercept


def _factor_levels(
    values: pd.Series,
    factor: str,
    levels: Optional[Sequence[str]] = None
) -> List[str]:
    observed = sorted(values.unique().tolist())
    if levels is None:
        return observed
    if isinstance(levels, str):
        levels = [levels]
    levels = [str(level) for level in levels]
    unknown = [level for level in levels if level not in observed]
    if unknown:
        raise MalformedInputError(f"Levels of '{factor}' not found in the samples; observed "
                                  f"{', '.join(observed)}", unknown)
    # named levels lead, in the given order; the rest follow sorted
    return levels + [level for level in observed if level not in levels]


def build_design(
    metadata: SampleMetadata,
    formula: str,
    levels: Optional[Dict[str, Sequence[str]]] = None,
    check: bool = True
) -> DesignMatrix:
    """
    Encode categorical covariates as a design matrix.

    Each factor contributes one indicator column per non-reference level;
    the reference is the first level (sorted, unless ``levels`` fixes the
    order). Without an intercept the first factor keeps all of its levels.

    Args:
        metadata: Sample metadata aligned to the count matrix
        formula: Additive model formula
        levels: Optional level order per factor, reference first; a single
            level or a partial list puts those first and the rest sorted
        check: Raise if the design is not of full column rank

    Returns:
        DesignMatrix
    """
    levels = levels or {}
    terms, intercept = parse_formula(formula)
    if not terms and not intercept:
        raise DegenerateDesignError(f"Formula '{formula}' has no coefficients")

    columns = []
    blocks = []
    n = len(metadata.samples)

    if intercept:
        columns.append(INTERCEPT)
        blocks.append(np.ones((n, 1)))

    for i, factor in enumerate(terms):
        values = metadata.column(factor)
        factor_levels = _factor_levels(values, factor, levels.get(factor))
        keep_all = not intercept and i == 0
        encoded = factor_levels if keep_all else factor_levels[1:]
        for level in encoded:
            columns.append(f"{factor}{level}")
            blocks.append((values.to_numpy() == level).astype(np.float64)[:, None])

    design = DesignMatrix(
        matrix=np.hstack(blocks) if blocks else np.zeros((n, 0)),
        columns=columns,
        samples=metadata.samples,
        formula=formula,
    )
    logger.info(f"Design '{formula}': {n} samples x {design.n_coefficients} coefficients "
                f"({', '.join(columns)})")
    if check:
        check_estimable(design)
    return design


def single_factor_design(
    metadata: SampleMetadata,
    factor: str,
    reference: Optional[str] = None
) -> DesignMatrix:
    """Intercept plus indicators for one covariate."""
    levels = None if reference is None else {factor: [reference]}
    return build_design(metadata, f"~ {factor}", levels=levels)


def multi_factor_design(
    metadata: SampleMetadata,
    factors: Sequence[str],
    levels: Optional[Dict[str, Sequence[str]]] = None
) -> DesignMatrix:
    """Additive model over two or more covariates, without interactions."""
    if len(factors) < 2:
        raise DegenerateDesignError("A multi-factor design needs at least two covariates")
    return build_design(metadata, "~ " + " + ".join(factors), levels=levels)


def non_estimable(matrix: np.ndarray, columns: Sequence[str]) -> List[str]:
    """Names of the columns that are linear combinations of earlier ones."""
    x = np.asarray(matrix, dtype=np.float64)
    if x.shape[1] == 0:
        return []
    _, r, piv = sla.qr(x, mode='economic', pivoting=True)
    diag = np.abs(np.diag(r))
    tol = (diag.max() if diag.size else 0.0) * max(x.shape) * np.finfo(np.float64).eps
    rank = int(np.sum(diag > max(tol, 1e-7)))
    aliased = sorted(piv[rank:])
    return [columns[j] for j in aliased]


def check_estimable(design: DesignMatrix) -> DesignMatrix:
    """
    Verify the design has full column rank.

    Raises:
        DegenerateDesignError: Listing the aliased coefficients
    """
    if design.matrix.shape[0] <= design.n_coefficients:
        logger.warning(f"Design has {design.matrix.shape[0]} samples for "
                       f"{design.n_coefficients} coefficients; no residual degrees of freedom")
    aliased = non_estimable(design.matrix, design.columns)
    if aliased:
        raise DegenerateDesignError("Coefficients not estimable (aliased)", aliased)
    return design
