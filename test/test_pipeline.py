#!/usr/bin/env python3
"""
DESeq Pipeline - Test Suite

Pytest test suite for validating pipeline components.
"""

import gzip
import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add the project root to the Python path
import sys
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from deseq_pipeline import cli, utils
from deseq_pipeline.annotate import annotate_results, load_symbol_table, strip_version
from deseq_pipeline.config import AnalysisConfig, load_config
from deseq_pipeline.counts import load_count_matrix, load_sample_metadata, read_results, write_results
from deseq_pipeline.deseq import (
    RESULT_COLUMNS, ALL_ZERO, COOKS_OUTLIER, LOW_MEAN, NOT_CONVERGED, TESTED,
    check_design, filter_significant, run_deseq
)
from deseq_pipeline.dispersion import (
    estimate_genewise_dispersions, estimate_prior_variance, fit_dispersion_trend
)
from deseq_pipeline.exceptions import DesignError, FittingError, ReconciliationError
from deseq_pipeline.glm import fit_nb_glm, robust_moments_dispersion, wald_block, wald_test
from deseq_pipeline.multitest import benjamini_hochberg, independent_filtering
from deseq_pipeline.normalization import base_means, estimate_size_factors
from deseq_pipeline.parallel import gene_blocks, map_gene_blocks
from deseq_pipeline.pipeline import run_differential_expression
from deseq_pipeline.reconcile import AlignedDataset, ConditionRule, SampleKeyRule, reconcile_samples
from deseq_pipeline.report import generate_final_report, summarize_results
from test.generate_test_data import CountDataGenerator, create_metadata, create_sample_data


def make_dataset(counts: pd.DataFrame) -> AlignedDataset:
    """Dataset whose condition is read from the column name prefix."""
    conditions = ['T1D' if c.startswith('T1D') else 'Healthy' for c in counts.columns]
    samples = pd.DataFrame({'condition': conditions}, index=pd.Index(counts.columns, name='sample_id'))
    return AlignedDataset(counts=counts, samples=samples)


def add_genes(counts: pd.DataFrame, genes: dict) -> pd.DataFrame:
    extra = pd.DataFrame.from_dict(genes, orient='index', columns=counts.columns)
    return pd.concat([counts, extra]).astype(np.int64)


@pytest.fixture(scope="module")
def mirrored_counts():
    """Three T1D and three Healthy samples with identical background columns."""
    return CountDataGenerator(n_genes=300, seed=1).generate_mirrored_counts(n_per_group=3)


@pytest.fixture(scope="module")
def flat_result(mirrored_counts):
    counts = add_genes(mirrored_counts, {
        'FLAT': [50] * 6,
        'ZERO': [0] * 6,
    })
    return run_deseq(make_dataset(counts))


@pytest.fixture(scope="module")
def de_dataset(mirrored_counts):
    counts = add_genes(mirrored_counts, {'DE_GENE': [100, 102, 98, 10, 12, 9]})
    return make_dataset(counts)


@pytest.fixture(scope="module")
def de_result(de_dataset):
    return run_deseq(de_dataset)


@pytest.fixture(scope="module")
def simulated():
    generator = CountDataGenerator(n_genes=400, seed=42)
    counts, _, true_lfc = generator.generate_counts(n_positive=4, n_negative=4, n_de=30, lfc=2.5)
    return make_dataset(counts), true_lfc


@pytest.fixture(scope="module")
def simulated_result(simulated):
    dataset, _ = simulated
    return run_deseq(dataset, AnalysisConfig(block_size=100))


class TestUtils:
    """Test utility functions."""

    def test_validate_file_exists(self, tmp_path):
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        assert utils.validate_file_exists(test_file) == test_file

        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path / "nonexistent.txt")

    def test_validate_directory_exists(self, tmp_path):
        new_dir = tmp_path / "out" / "nested"
        with pytest.raises(FileNotFoundError):
            utils.validate_directory_exists(new_dir)

        assert utils.validate_directory_exists(new_dir, create=True) == new_dir
        assert new_dir.is_dir()

    def test_is_gzipped(self, tmp_path):
        plain = tmp_path / "plain.txt"
        plain.write_text("gene_id\tA\n")
        packed = tmp_path / "packed.txt.gz"
        with gzip.open(packed, 'wt') as f:
            f.write("gene_id\tA\n")

        assert not utils.is_gzipped(plain)
        assert utils.is_gzipped(packed)

    def test_save_metrics_json_numpy(self, tmp_path):
        out = tmp_path / "metrics.json"
        utils.save_metrics_json({'n': np.int64(3), 'x': np.float64(0.5), 'v': np.arange(2)}, out)

        assert utils.load_metrics_json(out) == {'n': 3, 'x': 0.5, 'v': [0, 1]}

    def test_format_number(self):
        assert utils.format_number(1500) == "1.50K"
        assert utils.format_number(2_500_000, precision=1) == "2.5M"
        assert utils.format_number(12) == "12.00"


class TestConfig:
    """Test analysis configuration."""

    def test_defaults(self):
        config = load_config()
        assert config.positive_label == "T1D"
        assert config.negative_label == "Healthy"
        assert config.alpha == 0.05
        assert config.n_jobs == 1

    def test_load_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("alpha: 0.1\nfit_type: mean\nn_jobs: 2\n")

        config = load_config(config_file)
        assert config.alpha == 0.1
        assert config.fit_type == "mean"
        assert config.n_jobs == 2

    def test_unknown_key(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("alpha: 0.1\nthreshold: 3\n")

        with pytest.raises(ValueError, match="threshold"):
            load_config(config_file)

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            AnalysisConfig(alpha=1.5)
        with pytest.raises(ValueError):
            AnalysisConfig(fit_type="local")
        with pytest.raises(ValueError):
            AnalysisConfig(positive_label="x", negative_label="X")
        with pytest.raises(ValueError, match="max_iter"):
            AnalysisConfig(max_iter=0)

    def test_update_ignores_none(self):
        config = AnalysisConfig().update(alpha=None, n_jobs=4)
        assert config.alpha == 0.05
        assert config.n_jobs == 4


class TestCounts:
    """Test count matrix and metadata I/O."""

    def test_load_tsv(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_text("gene_id\tS1\tS2\nG1\t5\t0\nG2\t10\t3\n")

        counts = load_count_matrix(path)
        assert list(counts.columns) == ['S1', 'S2']
        assert list(counts.index) == ['G1', 'G2']
        assert counts.loc['G2', 'S1'] == 10
        assert counts.dtypes.unique().tolist() == [np.dtype('int64')]

    def test_load_csv_gz(self, tmp_path):
        path = tmp_path / "counts.csv.gz"
        with gzip.open(path, 'wt') as f:
            f.write("gene,S1,S2\nG1,1,2\n")

        counts = load_count_matrix(path)
        assert counts.shape == (1, 2)
        assert counts.index.name == 'gene_id'

    @pytest.mark.parametrize("body,message", [
        ("G1\t-1\t2\n", "Negative"),
        ("G1\t1.5\t2\n", "Non-integer"),
        ("G1\t1\t2\nG1\t3\t4\n", "Duplicate gene"),
        ("G1\t1\t\n", "Missing"),
    ])
    def test_invalid_counts(self, tmp_path, body, message):
        path = tmp_path / "counts.tsv"
        path.write_text("gene_id\tS1\tS2\n" + body)

        with pytest.raises(ValueError, match=message):
            load_count_matrix(path)

    def test_metadata_required_columns(self, tmp_path):
        path = tmp_path / "metadata.csv"
        path.write_text("title,geo_accession\nT1D sample 1,GSM1\n")

        with pytest.raises(ValueError, match="supplementary_file"):
            load_sample_metadata(path, ['title', 'supplementary_file'])

    def test_results_roundtrip_keeps_missing(self, tmp_path):
        table = pd.DataFrame(
            {'pvalue': [0.01, np.nan], 'status': ['tested', 'all_zero']},
            index=pd.Index(['G1', 'G2'], name='gene_id')
        )
        path = write_results(table, tmp_path / "results.tsv")

        assert "NA" in path.read_text()
        loaded = read_results(path)
        assert np.isnan(loaded.loc['G2', 'pvalue'])
        assert loaded.loc['G1', 'status'] == 'tested'


class TestReconcile:
    """Test sample reconciliation."""

    def metadata(self, titles, files):
        return pd.DataFrame({'title': titles, 'supplementary_file': files})

    def test_match_and_label(self):
        counts = pd.DataFrame([[1, 2, 3]], columns=['S2', 'X', 'S1'], index=['G1'])
        metadata = self.metadata(
            ["T1D sample 1", "Healthy sample 2"],
            ["GSM1_S1.txt.gz", "GSM2_S2.txt.gz"]
        )

        dataset = reconcile_samples(counts, metadata, ConditionRule('T1D', 'Healthy'), SampleKeyRule())

        assert list(dataset.counts.columns) == ['S1', 'S2']
        assert list(dataset.conditions) == ['T1D', 'Healthy']
        assert dataset.counts.loc['G1', 'S1'] == 3

    def test_no_overlap(self):
        counts = pd.DataFrame([[1, 2]], columns=['A', 'B'], index=['G1'])
        metadata = self.metadata(["T1D sample 1"], ["GSM1_S1.txt.gz"])

        with pytest.raises(ReconciliationError, match="No samples to analyze"):
            reconcile_samples(counts, metadata, ConditionRule('T1D', 'Healthy'), SampleKeyRule())

    def test_duplicate_and_missing_keys(self):
        counts = pd.DataFrame([[1, 2]], columns=['S1', 'S2'], index=['G1'])
        metadata = self.metadata(
            ["T1D a", "Healthy b", "Healthy c", "T1D d"],
            ["GSM1_S1.txt.gz", "GSM2_S1.txt.gz", "", "GSM4_S2.txt.gz"]
        )

        dataset = reconcile_samples(counts, metadata, ConditionRule('T1D', 'Healthy'), SampleKeyRule())

        assert list(dataset.samples.index) == ['S1', 'S2']
        assert list(dataset.conditions) == ['T1D', 'T1D']

    def test_condition_rule_case_insensitive(self):
        rule = ConditionRule('T1D', 'Healthy')
        assert rule({'title': 'monocytes from t1d donor'}) == 'T1D'
        assert rule({'title': 'control donor'}) == 'Healthy'

    def test_sample_key_rule_url(self):
        rule = SampleKeyRule()
        record = {'supplementary_file': 'ftp://ftp.ncbi.nlm.nih.gov/geo/suppl/GSM3507251_T1D_01.txt.gz'}
        assert rule(record) == 'T1D_01'

        with pytest.raises(ValueError):
            SampleKeyRule(pattern=r"GSM\d+")

    def test_aligned_dataset_order(self):
        counts = pd.DataFrame([[1, 2]], columns=['A', 'B'], index=['G1'])
        samples = pd.DataFrame({'condition': ['T1D', 'Healthy']}, index=['B', 'A'])

        with pytest.raises(ReconciliationError):
            AlignedDataset(counts=counts, samples=samples)

    def test_non_string_count_columns(self):
        counts = pd.DataFrame([[5, 7]], columns=[1, 2], index=['G1'])
        metadata = self.metadata(["T1D sample 1", "Healthy sample 2"], ["1.txt", "2.txt"])

        dataset = reconcile_samples(counts, metadata, ConditionRule('T1D', 'Healthy'), SampleKeyRule())

        assert list(dataset.counts.columns) == ['1', '2']
        assert dataset.counts.loc['G1', '2'] == 7
        assert list(dataset.conditions) == ['T1D', 'Healthy']

    def test_missing_file_name_yields_no_key(self, caplog):
        assert SampleKeyRule()({'supplementary_file': np.nan}) is None
        assert ConditionRule('T1D', 'Healthy')({'title': np.nan}) == 'Healthy'

        counts = pd.DataFrame([[1, 2]], columns=['S1', 'nan'], index=['G1'])
        metadata = self.metadata(["T1D a", "Healthy b"], ["GSM1_S1.txt.gz", np.nan])

        with caplog.at_level(logging.WARNING, logger='deseq_pipeline.reconcile'):
            dataset = reconcile_samples(counts, metadata, ConditionRule('T1D', 'Healthy'), SampleKeyRule())

        assert list(dataset.samples.index) == ['S1']
        assert "yielded no sample key" in caplog.text


class TestSizeFactors:
    """Test median-of-ratios normalization."""

    def test_scaled_sample(self):
        counts = pd.DataFrame({'A': [10, 20, 30, 40], 'B': [20, 40, 60, 80]})
        sf = estimate_size_factors(counts)

        assert np.isclose(sf['B'] / sf['A'], 2.0)
        assert np.isclose(sf['A'] * sf['B'], 1.0)

    def test_positive_and_order_invariant(self, simulated):
        dataset, _ = simulated
        counts = dataset.counts
        sf = estimate_size_factors(counts)
        permuted = estimate_size_factors(counts[counts.columns[::-1]])

        assert (sf > 0).all()
        assert np.allclose(permuted[counts.columns].to_numpy(), sf.to_numpy())

    def test_zero_genes_ignored(self):
        counts = pd.DataFrame({'A': [10, 0, 30], 'B': [20, 5, 60]})
        sf = estimate_size_factors(counts)
        assert np.isclose(sf['B'] / sf['A'], 2.0)

    def test_no_usable_gene(self):
        counts = pd.DataFrame({'A': [0, 1], 'B': [1, 0]})
        with pytest.raises(FittingError):
            estimate_size_factors(counts)

    def test_base_means(self):
        counts = pd.DataFrame({'A': [10, 20], 'B': [20, 40]}, index=['G1', 'G2'])
        sf = pd.Series([0.5, 1.0], index=['A', 'B'])

        means = base_means(counts, sf)
        assert means.name == 'baseMean'
        assert list(means) == [20.0, 40.0]


class TestGLM:
    """Test negative binomial GLM fitting and Wald tests."""

    design = np.column_stack([np.ones(6), [1, 1, 1, 0, 0, 0]])

    def test_recovers_group_ratio(self):
        counts = np.array([[40, 40, 40, 10, 10, 10]])
        beta, cov, mu, _, converged = fit_nb_glm(counts, np.array([1e-4]), self.design, np.zeros(6))
        lfc, se, _, pvalue = wald_test(beta, cov)

        assert converged[0]
        assert abs(lfc[0] - 2.0) < 1e-3
        assert np.allclose(mu[0], [40, 40, 40, 10, 10, 10], rtol=1e-3)
        assert se[0] > 0
        assert pvalue[0] < 1e-6

    def test_separation_stays_finite(self):
        counts = np.array([[0, 0, 0, 200, 210, 190]])
        beta, cov, _, _, converged = fit_nb_glm(counts, np.array([0.1]), self.design, np.zeros(6))
        lfc, se, stat, pvalue = wald_test(beta, cov)

        assert converged[0]
        assert np.isfinite(lfc[0]) and lfc[0] < 0
        assert np.isfinite(se[0])
        assert np.isfinite(pvalue[0])

    def test_offsets(self):
        size_factors = np.array([2.0, 2.0, 2.0, 1.0, 1.0, 1.0])
        counts = np.array([[40, 40, 40, 20, 20, 20]])
        beta, cov, _, _, _ = fit_nb_glm(counts, np.array([1e-4]), self.design, np.log(size_factors))
        lfc, _, _, _ = wald_test(beta, cov)

        assert abs(lfc[0]) < 1e-3

    def test_robust_dispersion_ignores_single_extreme_count(self):
        groups = self.design[:, 1]
        counts = np.array([
            [100, 110, 5000, 100, 90, 105],
            [10, 100, 1000, 10, 100, 1000],
        ], dtype=float)

        alpha = robust_moments_dispersion(counts, np.ones(6), groups)

        assert alpha[0] == 0.04
        assert alpha[1] > 0.1

    def test_wald_block_not_converged(self):
        counts = np.array([[40, 42, 38, 10, 11, 9], [5, 7, 6, 20, 22, 18]])

        lfc, se, stat, pvalue, converged, max_cooks = wald_block(
            counts, np.array([0.05, 0.05]), design=self.design, size_factors=np.ones(6), max_iter=1
        )

        assert not converged.any()
        assert np.isnan(se).all()
        assert np.isnan(stat).all()
        assert np.isnan(pvalue).all()
        assert np.isnan(max_cooks).all()


class TestDispersion:
    """Test dispersion estimation."""

    def test_parametric_trend(self):
        means = np.logspace(0, 4, 200)
        noise = 1.0 + 0.05 * np.sin(np.arange(200))
        genewise = (0.05 + 2.0 / means) * noise

        trend = fit_dispersion_trend(genewise, means)

        assert trend.fit_type == 'parametric'
        assert np.isclose(trend.coefficients[0], 0.05, rtol=0.1)
        assert np.isclose(trend.coefficients[1], 2.0, rtol=0.1)
        assert np.allclose(trend(means), 0.05 + 2.0 / means, rtol=0.15)

    def test_mean_trend(self):
        genewise = np.array([0.1, 0.2, 0.3, 0.4])
        trend = fit_dispersion_trend(genewise, np.array([10.0, 20, 30, 40]), fit_type='mean')

        assert trend.fit_type == 'mean'
        assert np.isclose(trend.coefficients[0], 0.25)
        assert np.allclose(trend(np.array([1.0, 1000.0])), 0.25)

    def test_all_at_minimum(self):
        genewise = np.full(50, 1e-8)
        with pytest.raises(FittingError):
            fit_dispersion_trend(genewise, np.linspace(1, 100, 50))

    def test_prior_variance_floor(self):
        genewise = np.full(100, 0.1)
        _, prior_var = estimate_prior_variance(genewise, genewise.copy(), n_samples=6, n_coefs=2)
        assert prior_var == 0.25

    def test_genewise_orders_by_variability(self):
        design = np.column_stack([np.ones(6), [1, 1, 1, 0, 0, 0]])
        counts = np.array([
            [100, 100, 100, 100, 100, 100],
            [20, 180, 100, 40, 160, 100],
        ])
        genewise = estimate_genewise_dispersions(counts, np.ones(6), design, AnalysisConfig())

        assert genewise[0] < 1e-4
        assert genewise[1] > 0.1
        assert np.all(genewise >= 1e-8) and np.all(genewise <= 10.0)

    def test_too_few_samples(self):
        dataset = make_dataset(pd.DataFrame(
            [[5, 6], [7, 8]], columns=['T1D_01', 'H_01'], index=['G1', 'G2']
        ))
        with pytest.raises(DesignError):
            run_deseq(dataset)


class TestMultitest:
    """Test multiple testing correction."""

    def test_benjamini_hochberg(self):
        padj = benjamini_hochberg(np.array([0.01, 0.04, 0.03, np.nan]))

        assert np.allclose(padj[:3], [0.03, 0.04, 0.04])
        assert np.isnan(padj[3])

    def test_adjusted_not_below_raw(self, simulated_result):
        tested = simulated_result.table[simulated_result.table['padj'].notna()]
        assert (tested['padj'] >= tested['pvalue'] - 1e-15).all()

    def test_monotone_in_pvalue(self, simulated_result):
        tested = simulated_result.table[simulated_result.table['padj'].notna()]
        ordered = tested.sort_values('pvalue', kind='mergesort')
        assert (np.diff(ordered['padj'].to_numpy()) >= 0).all()

    def test_no_filtering_without_discoveries(self):
        base_mean = np.linspace(1, 100, 100)
        pvalues = np.linspace(0.2, 1.0, 100)

        padj, cutoff = independent_filtering(base_mean, pvalues, alpha=0.05)

        assert cutoff == 1.0
        assert np.allclose(padj, benjamini_hochberg(pvalues))

    def test_filtering_removes_low_mean_genes(self):
        base_mean = np.arange(1, 1001, dtype=float)
        pvalues = np.full(1000, 0.5)
        pvalues[960:] = np.linspace(1e-4, 4e-3, 40)

        padj, cutoff = independent_filtering(base_mean, pvalues, alpha=0.05)
        kept = base_mean >= cutoff

        assert 400 < cutoff < 961
        assert np.isnan(padj[~kept]).all()
        assert (padj[960:] < 0.05).all()
        assert np.allclose(padj[kept], benjamini_hochberg(pvalues[kept]))


class TestParallel:
    """Test block-parallel execution."""

    def test_gene_blocks(self):
        assert gene_blocks(5, 2) == [(0, 2), (2, 4), (4, 5)]
        assert gene_blocks(0, 10) == []

    def test_map_gene_blocks_order(self):
        values = np.arange(10.0)
        (doubled,) = map_gene_blocks(_double_block, [values], n_jobs=1, block_size=3, factor=2.0)
        assert np.array_equal(doubled, values * 2)

    def test_parallel_matches_serial(self, simulated, simulated_result):
        dataset, _ = simulated
        parallel = run_deseq(dataset, AnalysisConfig(block_size=100, n_jobs=2))
        pd.testing.assert_frame_equal(parallel.table, simulated_result.table, check_exact=True)


def _double_block(values, *, factor):
    return (values * factor,)


class TestDESeq:
    """Test the differential expression engine."""

    def test_result_layout(self, simulated, simulated_result):
        dataset, _ = simulated
        table = simulated_result.table

        assert list(table.columns) == RESULT_COLUMNS
        assert set(table.index) == set(dataset.counts.index)
        assert simulated_result.contrast == "T1D vs Healthy"

    def test_sorted_by_padj(self, simulated_result):
        padj = simulated_result.table['padj'].to_numpy()
        defined = padj[~np.isnan(padj)]

        assert (np.diff(defined) >= 0).all()
        assert not np.isnan(padj[:len(defined)]).any()

    def test_deterministic(self, simulated, simulated_result):
        dataset, _ = simulated
        again = run_deseq(dataset, AnalysisConfig(block_size=100))
        pd.testing.assert_frame_equal(again.table, simulated_result.table, check_exact=True)

    def test_recovers_simulated_effects(self, simulated, simulated_result):
        _, true_lfc = simulated
        significant = filter_significant(simulated_result.table, 0.05)
        de_genes = true_lfc.index[true_lfc != 0]

        found = significant.index.intersection(de_genes)
        assert len(found) >= 15
        observed = np.sign(significant.loc[found, 'log2FoldChange'].to_numpy())
        assert (observed == np.sign(true_lfc.loc[found].to_numpy())).all()

    def test_significant_is_strict_subset(self, simulated_result):
        table = simulated_result.table
        significant = filter_significant(table, 0.05)

        assert 0 < len(significant) < len(table)
        assert (significant['padj'] < 0.05).all()
        assert simulated_result.n_significant(0.05) == len(significant)

    def test_zero_variance_gene(self, flat_result):
        row = flat_result.table.loc['FLAT']

        assert abs(row['log2FoldChange']) < 1e-6
        assert row['pvalue'] > 0.9
        assert row['status'] == TESTED

    def test_all_zero_gene(self, flat_result):
        row = flat_result.table.loc['ZERO']

        assert row['status'] == ALL_ZERO
        assert row['baseMean'] == 0
        assert np.isnan(row['pvalue'])
        assert np.isnan(row['padj'])
        assert flat_result.table.index[-1] == 'ZERO'
        assert 'ZERO' not in flat_result.dispersions.index

    def test_strong_group_difference(self, de_result):
        row = de_result.table.loc['DE_GENE']

        assert abs(row['log2FoldChange'] - 3.32) < 0.35
        assert row['pvalue'] < 1e-3
        assert row['padj'] < 0.05
        assert de_result.table.index[0] == 'DE_GENE'

    def test_input_not_modified(self, de_dataset, de_result):
        assert 'DE_GENE' in de_dataset.counts.index
        assert list(de_dataset.counts.columns) == list(de_result.size_factors.index)
        assert de_dataset.counts.loc['DE_GENE'].tolist() == [100, 102, 98, 10, 12, 9]

    def test_group_too_small(self):
        counts = pd.DataFrame(
            [[10, 12, 11, 30], [5, 6, 5, 7]],
            columns=['T1D_01', 'T1D_02', 'T1D_03', 'H_01'],
            index=['G1', 'G2']
        )
        with pytest.raises(DesignError, match="fewer than 2 samples in group Healthy"):
            run_deseq(make_dataset(counts))

    def test_unexpected_label(self, de_dataset):
        with pytest.raises(DesignError):
            check_design(de_dataset, 'T2D', 'Healthy')

    def test_design_matrix(self, de_dataset):
        design = check_design(de_dataset, 'T1D', 'Healthy')
        assert design.shape == (6, 2)
        assert design[:, 1].tolist() == [1, 1, 1, 0, 0, 0]

    def test_single_extreme_count_is_cooks_outlier(self, mirrored_counts):
        counts = add_genes(mirrored_counts, {'OUTLIER': [100, 110, 5000, 100, 90, 105]})
        result = run_deseq(make_dataset(counts))
        row = result.table.loc['OUTLIER']

        assert row['status'] == COOKS_OUTLIER
        assert np.isnan(row['pvalue'])
        assert np.isnan(row['padj'])
        assert not np.isnan(row['log2FoldChange'])

    def test_low_mean_genes_leave_bh_denominator(self):
        generator = CountDataGenerator(n_genes=400, seed=5)
        counts = pd.concat([
            generator.generate_mirrored_counts(n_per_group=3),
            generator.generate_graded_counts(n_genes=200, n_per_group=3),
        ])
        result = run_deseq(make_dataset(counts))
        table = result.table
        low_mean = table[table['status'] == LOW_MEAN]
        tested = table[table['status'] == TESTED]

        assert len(low_mean) > 0
        assert result.mean_cutoff > 0
        assert low_mean['padj'].isna().all()
        assert low_mean['pvalue'].notna().all()
        assert (low_mean['baseMean'] < result.mean_cutoff).all()
        assert (tested['baseMean'] >= result.mean_cutoff).all()
        assert np.allclose(tested['padj'], benjamini_hochberg(tested['pvalue'].to_numpy()))

    def test_not_converged_genes(self, de_dataset):
        result = run_deseq(de_dataset, AnalysisConfig(max_iter=1))
        table = result.table
        fitted = table[table['status'] != ALL_ZERO]

        assert (fitted['status'] == NOT_CONVERGED).all()
        for column in ('log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj'):
            assert fitted[column].isna().all()


class TestAnnotate:
    """Test gene symbol annotation."""

    def test_strip_version(self):
        ids = pd.Index(['ENSG00000141510.16', 'ENSMUSG00000059552.3', 'FLAT.1'])
        assert list(strip_version(ids)) == ['ENSG00000141510', 'ENSMUSG00000059552', 'FLAT.1']

    def test_left_join(self, tmp_path):
        symbol_file = tmp_path / "symbols.tsv"
        symbol_file.write_text(
            "gene_id\tsymbol\nENSG00000141510.16\tTP53\nENSG00000012048\tBRCA1\nENSG00000012048\tDUP\n"
        )
        table = pd.DataFrame(
            {'padj': [0.01, 0.02, np.nan]},
            index=pd.Index(['ENSG00000012048.5', 'ENSG00000000001', 'ENSG00000141510'], name='gene_id')
        )

        annotated = annotate_results(table, load_symbol_table(symbol_file))

        assert list(annotated.columns) == ['symbol', 'padj']
        assert list(annotated.index) == list(table.index)
        assert annotated['symbol'].iloc[0] == 'BRCA1'
        assert pd.isna(annotated['symbol'].iloc[1])
        assert annotated['symbol'].iloc[2] == 'TP53'


class TestReport:
    """Test summaries, plots and the HTML report."""

    def test_summary(self, de_result):
        summary = summarize_results(de_result, 0.05)

        assert summary['contrast'] == "T1D vs Healthy"
        assert summary['group_sizes'] == {'T1D': 3, 'Healthy': 3}
        assert summary['n_significant'] == summary['n_up'] + summary['n_down']
        assert summary['n_up'] >= 1
        assert sum(summary['status_counts'].values()) == summary['n_genes']
        json.dumps(summary)

    def test_html_report(self, de_result, tmp_path):
        report = generate_final_report(de_result, tmp_path / "report.html", alpha=0.05)

        html = report.read_text()
        assert "T1D vs Healthy" in html
        assert "DE_GENE" in html

    def test_visualizations(self, de_result, de_dataset, tmp_path):
        from deseq_pipeline.viz import create_visualizations, plot_gene_counts

        plots = create_visualizations(de_result, de_dataset, tmp_path, top_n=2)

        assert plots['volcano'].exists()
        assert plots['dispersions'].exists()
        assert 'counts_DE_GENE' in plots

        with pytest.raises(KeyError):
            plot_gene_counts(de_dataset, de_result.size_factors, 'NOT_A_GENE', tmp_path / "x.png")


class TestDataGeneration:
    """Test synthetic data generation."""

    def test_mirrored_counts(self):
        counts = CountDataGenerator(n_genes=50, seed=3).generate_mirrored_counts(n_per_group=2)

        assert list(counts.columns) == ['T1D_01', 'T1D_02', 'H_01', 'H_02']
        assert (counts['T1D_01'] == counts['H_01']).all()

    def test_metadata_keys(self):
        metadata = create_metadata(['T1D_01', 'H_01'], ['T1D', 'Healthy'])
        rule = SampleKeyRule()

        assert [rule(r) for r in metadata.to_dict('records')] == ['T1D_01', 'H_01']
        assert [ConditionRule('T1D', 'Healthy')(r) for r in metadata.to_dict('records')] == ['T1D', 'Healthy']


class TestIntegration:
    """End-to-end runs on generated files."""

    def test_run_differential_expression(self, tmp_path):
        paths = create_sample_data(tmp_path / "data", n_genes=300)
        output_dir = tmp_path / "results"

        results = run_differential_expression(
            paths['counts'], paths['metadata'], output_dir,
            symbol_file=paths['symbols'], make_plots=False
        )

        for name in ('results.tsv', 'significant.tsv', 'annotated.tsv', 'dispersions.tsv',
                     'size_factors.tsv', 'samples.tsv', 'summary.json', 'report.html'):
            assert (output_dir / name).exists(), name

        table = read_results(output_dir / 'results.tsv')
        assert len(table) == 300
        assert results['summary']['group_sizes'] == {'T1D': 4, 'Healthy': 4}

        size_factors = pd.read_csv(output_dir / 'size_factors.tsv', sep='\t', index_col=0)
        assert 'UNMATCHED_1' not in size_factors.index
        assert len(size_factors) == 8


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self):
        from typer.testing import CliRunner

        runner = CliRunner()
        result = runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "DESeq Pipeline" in result.stdout

    def test_run_and_filter(self, tmp_path):
        from typer.testing import CliRunner

        paths = create_sample_data(tmp_path / "data", n_genes=300)
        output_dir = tmp_path / "results"
        runner = CliRunner()

        result = runner.invoke(cli.app, [
            "run", str(paths['counts']), str(paths['metadata']),
            "--output-dir", str(output_dir),
            "--no-plots", "--no-report"
        ])
        assert result.exit_code == 0, result.stdout
        assert (output_dir / 'results.tsv').exists()
        assert not (output_dir / 'report.html').exists()

        filtered = tmp_path / "strict.tsv"
        result = runner.invoke(cli.app, [
            "filter", str(output_dir / 'results.tsv'),
            "--output-file", str(filtered), "--alpha", "0.01"
        ])
        assert result.exit_code == 0
        assert (read_results(filtered)['padj'] < 0.01).all()

    def test_reconcile_failure_exit_code(self, tmp_path):
        from typer.testing import CliRunner

        counts = tmp_path / "counts.tsv"
        counts.write_text("gene_id\tA\tB\nG1\t1\t2\n")
        metadata = tmp_path / "metadata.csv"
        create_metadata(['S1', 'S2'], ['T1D', 'Healthy']).to_csv(metadata, index=False)

        runner = CliRunner()
        result = runner.invoke(cli.app, [
            "reconcile", str(counts), str(metadata), "--output-dir", str(tmp_path / "out")
        ])
        assert result.exit_code == 1

    def test_validate_counts(self, tmp_path):
        from typer.testing import CliRunner

        counts = tmp_path / "counts.tsv"
        counts.write_text("gene_id\tA\tB\nG1\t1\t-2\n")

        runner = CliRunner()
        result = runner.invoke(cli.app, ["validate-counts", str(counts)])
        assert result.exit_code == 1
