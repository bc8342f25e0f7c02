"""
End-to-end differential expression analysis.

This module chains the stages: load and align the inputs, filter lowly
expressed genes, compute TMM factors, build the design, estimate voom and
sample quality weights, fit the linear models and moderate them. Results
are written as one ranked table per coefficient plus run metrics.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .counts import CountMatrix, SampleMetadata, load_count_matrix, load_sample_metadata, align_samples
from .design import DesignMatrix, INTERCEPT, build_design
from .errors import NumericDegenerateError
from .filtering import filter_by_expression
from .linear_model import FitResult, lm_fit, make_contrasts, contrasts_fit, e_bayes
from .normalize import NormalizedMatrix, normalize
from .results import top_table, decide_tests, summarize_tests
from .utils import validate_directory_exists, save_metrics_json
from .voom import VoomResult, voom, voom_with_quality_weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PipelineResult:
    """Every intermediate of one analysis run."""

    counts: CountMatrix
    metadata: SampleMetadata
    filtered: CountMatrix
    normalized: NormalizedMatrix
    design: DesignMatrix
    voom: VoomResult
    fit: FitResult
    config: AnalysisConfig

    @property
    def coefficients(self) -> List[str]:
        """Coefficients worth reporting: everything but the intercept."""
        names = [c for c in self.fit.coef_names if c != INTERCEPT]
        return names or list(self.fit.coef_names)

    def table(self, coef: Optional[Union[int, str]] = None, number: Optional[int] = None) -> pd.DataFrame:
        cfg = self.config
        return top_table(
            self.fit,
            coef=coef,
            number=number,
            sort_by=cfg.sort_by,
            p_value=cfg.p_value if cfg.significant_only else 1.0,
            lfc=cfg.lfc if cfg.significant_only else 0.0,
        )

    def decisions(self) -> pd.DataFrame:
        return decide_tests(self.fit, p_value=self.config.p_value, lfc=self.config.lfc,
                            coefs=self.coefficients)


def prepare_inputs(
    counts_path: Union[str, Path],
    samples_path: Union[str, Path],
    sample_column: Optional[str] = None
):
    """Load the count matrix and sample sheet and align their samples."""
    counts = load_count_matrix(counts_path)
    metadata = load_sample_metadata(samples_path, sample_column=sample_column)
    metadata = align_samples(counts, metadata)
    return counts, metadata


def analyze(
    counts: CountMatrix,
    metadata: SampleMetadata,
    formula: str,
    config: Optional[AnalysisConfig] = None,
    contrasts: Optional[Mapping[str, str]] = None
) -> PipelineResult:
    """
    Run the analysis on in-memory inputs.

    Args:
        counts: Count matrix
        metadata: Sample metadata (reordered to the counts if needed)
        formula: Additive model formula, e.g. '~ population + temp'
        config: Analysis settings (default: AnalysisConfig())
        contrasts: Optional mapping of contrast name to an expression over
            coefficient names; the fit is re-expressed before moderation

    Returns:
        PipelineResult
    """
    config = config or AnalysisConfig()
    metadata = align_samples(counts, metadata)

    filtered = filter_by_expression(counts, threshold=config.cpm_threshold,
                                    min_samples=config.min_samples)
    if filtered.n_genes < 2:
        raise NumericDegenerateError(
            f"Only {filtered.n_genes} genes passed the expression filter; "
            f"lower cpm_threshold or min_samples"
        )

    norm_kwargs: Dict[str, Any] = {}
    if config.norm_method == 'TMM':
        norm_kwargs = {'logratio_trim': config.logratio_trim, 'sum_trim': config.sum_trim}
    normalized = normalize(filtered, method=config.norm_method, **norm_kwargs)

    design = build_design(metadata, formula, levels=config.reference_levels)

    if config.quality_weights:
        v = voom_with_quality_weights(normalized, design, span=config.span, prior_n=config.prior_n,
                                      passes=config.passes, max_iter=config.max_iter, tol=config.tol)
    else:
        v = voom(normalized, design, span=config.span)

    fit = lm_fit(v.E, design, weights=v.weights, genes=v.genes, sample_weights=v.sample_weights)
    if contrasts:
        fit = contrasts_fit(fit, make_contrasts(contrasts, fit.coef_names))
    fit = e_bayes(fit, robust=config.robust, trend=config.trend)

    result = PipelineResult(
        counts=counts,
        metadata=metadata,
        filtered=filtered,
        normalized=normalized,
        design=design,
        voom=v,
        fit=fit,
        config=config,
    )
    summary = summarize_tests(result.decisions())
    for coef in summary.columns:
        logger.info(f"{coef}: {summary.loc['Up', coef]} up, {summary.loc['Down', coef]} down "
                    f"at adj.P.Val <= {config.p_value}")
    return result


def run_differential_expression(
    counts_path: Union[str, Path],
    samples_path: Union[str, Path],
    formula: str,
    config: Optional[AnalysisConfig] = None,
    contrasts: Optional[Mapping[str, str]] = None,
    sample_column: Optional[str] = None
) -> PipelineResult:
    """
    Run differential expression analysis from input files.

    Args:
        counts_path: Gene-by-sample count table
        samples_path: Sample sheet with categorical covariates
        formula: Additive model formula
        config: Analysis settings
        contrasts: Optional named contrasts of the coefficients
        sample_column: Sample id column of the sample sheet (default: first)

    Returns:
        PipelineResult
    """
    logger.info(f"Running differential expression: {formula}")
    counts, metadata = prepare_inputs(counts_path, samples_path, sample_column=sample_column)
    return analyze(counts, metadata, formula, config=config, contrasts=contrasts)


def _safe_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', name)


def write_results(
    result: PipelineResult,
    output_dir: Union[str, Path],
    coefs: Optional[Sequence[str]] = None
) -> Dict[str, str]:
    """
    Write result tables and run metrics.

    Args:
        result: Output of run_differential_expression
        output_dir: Directory to write into (created if missing)
        coefs: Coefficients to tabulate (default: all but the intercept)

    Returns:
        Mapping of output name to file path
    """
    output_dir = validate_directory_exists(output_dir, create=True)
    coefs = list(coefs) if coefs else result.coefficients
    outputs: Dict[str, str] = {}

    for coef in coefs:
        table = result.table(coef)
        path = output_dir / f"top_table_{_safe_name(coef)}.tsv"
        table.to_csv(path, sep='\t', index=False)
        outputs[coef] = str(path)
        logger.info(f"Wrote {len(table)} genes for {coef} to {path}")

    factors = pd.DataFrame({
        'sample': list(result.normalized.samples),
        'lib_size': result.normalized.library_sizes,
        'norm_factor': result.normalized.norm_factors,
    })
    factors_path = output_dir / "norm_factors.tsv"
    factors.to_csv(factors_path, sep='\t', index=False)
    outputs['norm_factors'] = str(factors_path)

    sample_weights = result.voom.sample_weights
    if sample_weights is None:
        sample_weights = np.ones(len(result.voom.samples))
    weights_path = output_dir / "sample_weights.tsv"
    pd.DataFrame({'sample': list(result.voom.samples), 'weight': sample_weights}) \
        .to_csv(weights_path, sep='\t', index=False)
    outputs['sample_weights'] = str(weights_path)

    result.decisions().to_csv(output_dir / "decide_tests.tsv", sep='\t', index_label='gene')
    outputs['decide_tests'] = str(output_dir / "decide_tests.tsv")

    metrics_path = output_dir / "metrics.json"
    save_metrics_json(collect_metrics(result), metrics_path)
    outputs['metrics'] = str(metrics_path)
    return outputs


def _finite_or_none(value: float) -> Optional[float]:
    # infinite prior df is written as null
    value = float(value)
    return value if np.isfinite(value) else None


def collect_metrics(result: PipelineResult) -> Dict[str, Any]:
    """Summary numbers of a run, JSON serializable."""
    fit = result.fit
    summary = summarize_tests(result.decisions())
    return {
        'formula': result.design.formula,
        'n_samples': result.counts.n_samples,
        'n_genes_input': result.counts.n_genes,
        'n_genes_tested': fit.n_genes,
        'coefficients': list(fit.coef_names),
        'norm_method': result.normalized.method,
        'df_residual': float(np.median(fit.df_residual)),
        'df_prior': _finite_or_none(np.median(fit.df_prior)),
        's2_prior': _finite_or_none(np.median(fit.s2_prior)),
        'robust': fit.robust,
        'sample_weights': dict(zip(result.voom.samples, (
            result.voom.sample_weights if result.voom.sample_weights is not None
            else np.ones(len(result.voom.samples))
        ))),
        'de_summary': {coef: summary[coef].to_dict() for coef in summary.columns},
        'config': result.config.to_dict(),
    }
