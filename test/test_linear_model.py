#!/usr/bin/env python3
"""
DGE Pipeline - Model Fitting Tests

Pytest suite for voom, sample quality weights, the weighted linear model,
empirical Bayes moderation and the result tables.
"""

from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from dge_pipeline.counts import CountMatrix, SampleMetadata
from dge_pipeline.design import DesignMatrix, build_design, single_factor_design
from dge_pipeline.errors import MalformedInputError, DegenerateDesignError, NumericDegenerateError
from dge_pipeline.linear_model import (
    lm_fit, make_contrasts, contrasts_fit, fit_f_dist, squeeze_var, e_bayes, trigamma_inverse
)
from dge_pipeline.normalize import normalize
from dge_pipeline.results import p_adjust_bh, top_table, decide_tests, summarize_tests, TABLE_COLUMNS
from dge_pipeline.voom import voom, array_weights, voom_with_quality_weights
from generate_test_data import CountDataGenerator


def _group_design(groups, formula="~ group"):
    samples = [f'S{i}' for i in range(len(groups))]
    metadata = SampleMetadata(pd.DataFrame({'group': groups}, index=samples))
    return build_design(metadata, formula)


def _moderated_fit(seed=0, n_genes=500, effect_genes=20):
    rng = np.random.default_rng(seed)
    design = _group_design(['A', 'A', 'A', 'B', 'B', 'B'])
    y = rng.normal(5.0, 0.5, size=(n_genes, 6))
    y[:effect_genes, 3:] += 3.0
    genes = [f'G{i}' for i in range(n_genes)]
    return e_bayes(lm_fit(y, design, genes=genes)), genes[:effect_genes]


class TestLinearModel:
    """Test per-gene weighted least squares and contrasts."""

    def test_matches_least_squares(self):
        rng = np.random.default_rng(1)
        design = _group_design(['A', 'A', 'B', 'B', 'C', 'C'])
        y = rng.normal(size=(20, 6))

        fit = lm_fit(y, design)

        expected = np.linalg.lstsq(design.matrix, y.T, rcond=None)[0].T
        np.testing.assert_allclose(fit.coefficients, expected, atol=1e-10)
        resid = y - expected @ design.matrix.T
        np.testing.assert_allclose(fit.sigma ** 2, (resid ** 2).sum(axis=1) / 3, rtol=1e-10)
        assert fit.df_residual.tolist() == [3.0] * 20
        np.testing.assert_allclose(fit.amean, y.mean(axis=1))

    def test_weighted_fit(self):
        rng = np.random.default_rng(2)
        design = _group_design(['A', 'A', 'A', 'B', 'B', 'B'])
        y = rng.normal(size=(10, 6))
        w = rng.uniform(0.5, 2.0, size=(10, 6))

        fit = lm_fit(y, design, weights=w)

        for g in range(10):
            sw = np.sqrt(w[g])
            beta, rss = np.linalg.lstsq(design.matrix * sw[:, None], y[g] * sw, rcond=None)[:2]
            np.testing.assert_allclose(fit.coefficients[g], beta, atol=1e-10)
            assert fit.sigma[g] ** 2 == pytest.approx(rss[0] / 4, rel=1e-8)

    def test_sample_weight_vector(self):
        rng = np.random.default_rng(3)
        design = _group_design(['A', 'A', 'B', 'B'])
        y = rng.normal(size=(5, 4))
        w = np.array([1.0, 2.0, 0.5, 1.0])

        by_vector = lm_fit(y, design, weights=w)
        by_matrix = lm_fit(y, design, weights=np.tile(w, (5, 1)))

        np.testing.assert_allclose(by_vector.coefficients, by_matrix.coefficients)

    def test_rank_deficient_design(self):
        design = DesignMatrix(matrix=np.array([[1, 0, 0], [1, 1, 1], [1, 0, 0], [1, 1, 1]]),
                              columns=('Intercept', 'x', 'y'), samples=('a', 'b', 'c', 'd'))

        with pytest.raises(DegenerateDesignError) as excinfo:
            lm_fit(np.zeros((3, 4)), design)
        assert len(excinfo.value.coefficients) == 1

    def test_expression_shape_mismatch(self):
        design = _group_design(['A', 'A', 'B', 'B'])
        with pytest.raises(MalformedInputError):
            lm_fit(np.zeros((3, 5)), design)

    def test_non_positive_weights(self):
        design = _group_design(['A', 'A', 'B', 'B'])
        with pytest.raises(NumericDegenerateError):
            lm_fit(np.zeros((2, 4)), design, weights=np.array([1.0, 0.0, 1.0, 1.0]))

    def test_contrast_is_difference_of_coefficients(self):
        rng = np.random.default_rng(4)
        design = _group_design(['A', 'A', 'B', 'B', 'C', 'C'], formula="~ 0 + group")
        fit = lm_fit(rng.normal(size=(15, 6)), design)

        contrasts = make_contrasts({'BvsA': 'groupB - groupA'}, fit.coef_names)
        cfit = contrasts_fit(fit, contrasts)

        assert cfit.coef_names == ('BvsA',)
        np.testing.assert_allclose(cfit.coefficients[:, 0],
                                   fit.coefficients[:, 1] - fit.coefficients[:, 0])
        # Independent group means with two samples each
        np.testing.assert_allclose(cfit.stdev_unscaled[:, 0], 1.0)

        by_mapping = contrasts_fit(fit, {'BvsA': {'groupB': 1.0, 'groupA': -1.0}})
        np.testing.assert_allclose(by_mapping.coefficients, cfit.coefficients)

    def test_make_contrasts(self):
        names = ('groupA', 'groupB', 'groupC')

        matrix = make_contrasts({'avg': '0.5*groupB + 0.5*groupC - groupA'}, names)

        assert matrix['avg'].tolist() == [-1.0, 0.5, 0.5]

    def test_make_contrasts_errors(self):
        names = ('groupA', 'groupB')
        with pytest.raises(MalformedInputError):
            make_contrasts({'bad': 'groupB - groupZ'}, names)
        with pytest.raises(MalformedInputError):
            make_contrasts({'bad': 'groupB ++'}, names)

    def test_contrasts_clear_moderation(self):
        fit, _ = _moderated_fit()
        cfit = contrasts_fit(fit, make_contrasts({'B': 'groupB'}, fit.coef_names))

        assert not cfit.moderated
        assert e_bayes(cfit).moderated


class TestEmpiricalBayes:
    """Test prior estimation and variance moderation."""

    def _scaled_f(self, rng, n_genes, d, d0, s0_sq):
        sigma_sq = s0_sq * d0 / rng.chisquare(d0, size=n_genes)
        return sigma_sq * rng.chisquare(d, size=n_genes) / d

    def test_trigamma_inverse(self):
        from scipy.special import polygamma
        for x in (0.01, 0.5, 3.0, 50.0):
            assert polygamma(1, trigamma_inverse(x)) == pytest.approx(x, rel=1e-6)

    def test_fit_f_dist_recovers_prior(self):
        rng = np.random.default_rng(10)
        s2 = self._scaled_f(rng, 5000, d=4, d0=6, s0_sq=0.5)

        prior = fit_f_dist(s2, 4)

        assert 4 < prior['df2'] < 9
        assert 0.4 < prior['scale'] < 0.6

    def test_infinite_prior_df(self):
        """Variances with no extra spread give an infinite prior df."""
        s2 = np.full(100, 0.3)
        prior = fit_f_dist(s2, 5)

        assert np.isinf(prior['df2'])
        assert prior['scale'] == pytest.approx(0.3)

    def test_posterior_between_observed_and_prior(self):
        rng = np.random.default_rng(11)
        s2 = self._scaled_f(rng, 2000, d=3, d0=5, s0_sq=1.0)

        out = squeeze_var(s2, 3)

        low = np.minimum(s2, out['var_prior']) - 1e-12
        high = np.maximum(s2, out['var_prior']) + 1e-12
        assert np.all((out['var_post'] >= low) & (out['var_post'] <= high))

    def test_robust_gives_outliers_lower_prior_df(self):
        rng = np.random.default_rng(12)
        s2 = self._scaled_f(rng, 5000, d=4, d0=10, s0_sq=0.5)
        outliers = np.arange(20)
        s2[outliers] *= 1000.0

        robust = squeeze_var(s2, 4, robust=True)
        plain = squeeze_var(s2, 4, robust=False)

        df_prior = robust['df_prior']
        others = np.setdiff1d(np.arange(5000), outliers)
        assert df_prior.shape == (5000,)
        assert df_prior[outliers].max() < np.median(df_prior[others])
        # Outliers pull the ordinary estimate towards a smaller prior df
        assert np.median(df_prior[others]) > plain['df_prior']

    def test_trended_prior(self):
        rng = np.random.default_rng(13)
        amean = rng.uniform(0, 10, size=3000)
        s0_sq = np.exp(-0.3 * amean)
        s2 = s0_sq * rng.chisquare(4, size=3000) / 4

        out = squeeze_var(s2, 4, covariate=amean)

        low = out['var_prior'][amean < 2].mean()
        high = out['var_prior'][amean > 8].mean()
        assert low > 3 * high

    def test_e_bayes_statistics(self):
        fit, changed = _moderated_fit()

        assert fit.moderated
        expected_t = fit.coefficients / fit.stdev_unscaled / np.sqrt(fit.s2_post)[:, None]
        np.testing.assert_allclose(fit.t, expected_t)
        assert np.all((fit.p_value >= 0) & (fit.p_value <= 1))
        assert np.all(fit.df_total <= fit.df_residual.sum())
        assert fit.p_value[:20, 1].max() < fit.p_value[20:, 1].min()

    def test_no_residual_df(self):
        design = _group_design(['A', 'B'])
        fit = lm_fit(np.random.default_rng(0).normal(size=(10, 2)), design)

        with pytest.raises(DegenerateDesignError):
            e_bayes(fit)

    def test_zero_variance_genes(self):
        design = _group_design(['A', 'A', 'B', 'B'])
        y = np.zeros((10, 4))

        with pytest.raises(NumericDegenerateError):
            e_bayes(lm_fit(y, design))


class TestVoom:
    """Test voom precision weights and sample quality weights."""

    def _normalized(self, generator, **kwargs):
        counts, samplesheet, changed = generator.two_group_counts(**kwargs)
        matrix = CountMatrix.from_frame(counts)
        metadata = SampleMetadata(samplesheet.set_index('sample_id'))
        return normalize(matrix), single_factor_design(metadata, 'condition')

    def test_log_cpm_values(self):
        normalized, design = self._normalized(CountDataGenerator(n_genes=200, seed=20))

        v = voom(normalized, design)

        counts = normalized.counts.counts
        lib = normalized.effective_library_sizes
        np.testing.assert_allclose(v.E, np.log2((counts + 0.5) / (lib + 1.0) * 1e6))
        assert v.weights.shape == counts.shape
        assert np.all(v.weights > 0)
        assert v.sample_weights is None

    def test_weights_increase_with_expression(self):
        normalized, design = self._normalized(CountDataGenerator(n_genes=400, dispersion=0.0, seed=21),
                                              n_per_group=3)

        v = voom(normalized, design)

        order = np.argsort(v.E.mean(axis=1))
        low = v.weights[order[:40]].mean()
        high = v.weights[order[-40:]].mean()
        assert high > low

    def test_design_mismatch(self):
        normalized, _ = self._normalized(CountDataGenerator(n_genes=50, seed=22))
        design = _group_design(['A', 'A', 'B', 'B', 'B', 'B'])

        with pytest.raises(DegenerateDesignError):
            voom(normalized, design)

    def test_array_weights_equal_without_residual_df(self):
        design = _group_design(['A', 'B', 'B'])
        weights = array_weights(np.random.default_rng(0).normal(size=(50, 3)), design.matrix)

        np.testing.assert_array_equal(weights, np.ones(3))

    def test_array_weights_geometric_mean(self):
        rng = np.random.default_rng(23)
        design = _group_design(['A'] * 4 + ['B'] * 4)
        scale = np.array([1.0, 1.0, 1.0, 3.0, 1.0, 1.0, 1.0, 1.0])
        y = rng.normal(size=(1000, 8)) * scale

        weights = array_weights(y, design.matrix)

        assert np.exp(np.mean(np.log(weights))) == pytest.approx(1.0, abs=1e-8)
        assert weights[3] == weights.min()
        assert weights[3] < 0.5 * np.delete(weights, 3).min()

    def test_quality_weights_flag_noisy_sample(self):
        generator = CountDataGenerator(n_genes=500, dispersion=0.01, seed=24)
        counts, samplesheet = generator.noisy_sample_counts(n_per_group=3, noisy_sample=0, noise_sd=1.0)
        matrix = CountMatrix.from_frame(counts)
        metadata = SampleMetadata(samplesheet.set_index('sample_id'))
        normalized = normalize(matrix)
        design = single_factor_design(metadata, 'condition')

        v = voom_with_quality_weights(normalized, design)

        weights = v.sample_weights
        assert weights[0] < 0.5
        assert weights[0] < 0.5 * weights[1:].min()
        assert v.weights.shape == (counts.shape[0], 6)
        assert v.weights[:, 0].mean() < v.weights[:, 1:].mean()


class TestResults:
    """Test BH adjustment and result tables."""

    def test_bh_hand_computed(self):
        adjusted = p_adjust_bh([0.01, 0.04, 0.03, 0.005])
        np.testing.assert_allclose(adjusted, [0.02, 0.04, 0.04, 0.02])

    def test_bh_nan(self):
        adjusted = p_adjust_bh([0.01, np.nan, 0.02])
        np.testing.assert_allclose(adjusted, [0.02, np.nan, 0.02])

    def test_bh_monotone(self):
        p = np.random.default_rng(30).uniform(size=500) ** 3
        adjusted = p_adjust_bh(p)

        order = np.argsort(p)
        assert np.all(np.diff(adjusted[order]) >= 0)
        assert np.all(adjusted >= p)
        assert np.all(adjusted <= 1)

    def test_top_table_columns_and_order(self):
        fit, changed = _moderated_fit()

        table = top_table(fit, coef='groupB')

        assert list(table.columns) == TABLE_COLUMNS
        assert len(table) == fit.n_genes
        assert table['P.Value'].is_monotonic_increasing
        assert set(table['gene'].iloc[:20]) == set(changed)
        assert table['rank'].iloc[0] == 1

    def test_top_table_rank_follows_sort_on_tied_p_values(self):
        fit, _ = _moderated_fit()
        p_value = fit.p_value.copy()
        t = fit.t.copy()
        # underflowed p-values; larger |t| further down the gene order
        p_value[:5, 1] = 0.0
        t[:5, 1] = [10.0, 20.0, -30.0, 40.0, 50.0]
        tied = replace(fit, p_value=p_value, t=t)

        table = top_table(tied, coef='groupB')

        assert table['rank'].tolist() == list(range(1, fit.n_genes + 1))
        assert table['gene'].iloc[:5].tolist() == ['G4', 'G3', 'G2', 'G1', 'G0']

        unsorted = top_table(tied, coef='groupB', sort_by='none')
        assert unsorted['rank'].iloc[:5].tolist() == [5, 4, 3, 2, 1]

    def test_top_table_default_coef_and_number(self):
        fit, _ = _moderated_fit()

        default = top_table(fit, number=5)
        named = top_table(fit, coef='groupB', number=5)

        pd.testing.assert_frame_equal(default, named)
        assert len(default) == 5

    def test_top_table_sort_options(self):
        fit, _ = _moderated_fit()

        by_lfc = top_table(fit, coef=1, sort_by='logFC')
        unsorted = top_table(fit, coef=1, sort_by='none')

        assert by_lfc['logFC'].abs().is_monotonic_decreasing
        assert list(unsorted['gene']) == list(fit.genes)

    def test_top_table_significance_filter(self):
        fit, _ = _moderated_fit()

        table = top_table(fit, coef='groupB', p_value=0.05, lfc=1.0)

        assert len(table) > 0
        assert (table['adj.P.Val'] <= 0.05).all()
        assert (table['logFC'].abs() >= 1.0).all()

    def test_top_table_requires_moderation(self):
        design = _group_design(['A', 'A', 'B', 'B'])
        fit = lm_fit(np.random.default_rng(0).normal(size=(5, 4)), design)

        with pytest.raises(MalformedInputError):
            top_table(fit)
        with pytest.raises(MalformedInputError):
            top_table(_moderated_fit()[0], coef='groupZ')

    def test_decide_and_summarize(self):
        fit, changed = _moderated_fit()

        decisions = decide_tests(fit, coefs=['groupB'])
        summary = summarize_tests(decisions)

        assert list(decisions.columns) == ['groupB']
        assert (decisions.loc[changed, 'groupB'] == 1).all()
        assert summary['groupB'].sum() == fit.n_genes
        assert summary.loc['Up', 'groupB'] >= 20
