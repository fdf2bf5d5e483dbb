"""
Differential expression engine.

Runs the full two-group negative binomial analysis on an AlignedDataset:
size factors, dispersion estimation with shrinkage, per-gene Wald tests,
Cook's distance outlier flagging and Benjamini-Hochberg correction with
independent filtering. Every stage returns new objects; the input dataset
is never modified.

Genes that cannot be tested keep NaN statistics and an explicit status:

    tested          p-value and adjusted p-value defined
    all_zero        zero counts in every sample
    not_converged   GLM fit failed for this gene
    cooks_outlier   a single sample dominates the fit; no p-value
    low_mean        removed by independent filtering; no adjusted p-value
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional
import numpy as np
import pandas as pd
from scipy import stats

from .config import AnalysisConfig
from .dispersion import DispersionFit, estimate_dispersions
from .exceptions import DesignError, FittingError
from .glm import wald_block
from .multitest import benjamini_hochberg, independent_filtering
from .normalization import estimate_size_factors, base_means
from .parallel import map_gene_blocks
from .reconcile import AlignedDataset

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj', 'status']

TESTED = 'tested'
ALL_ZERO = 'all_zero'
NOT_CONVERGED = 'not_converged'
COOKS_OUTLIER = 'cooks_outlier'
LOW_MEAN = 'low_mean'

MIN_REPLICATES_FOR_COOKS = 3


@dataclass(frozen=True)
class DEResult:
    """
    Output of :func:`run_deseq`.

    Attributes:
        table: One row per gene, RESULT_COLUMNS, sorted by padj ascending
            with untested genes last
        size_factors: Size factor per sample
        dispersions: Dispersion estimates for genes that entered testing
        dispersion_fit: Full dispersion fit, including the trend
        positive: Label of the tested condition (numerator)
        reference: Label of the reference condition (denominator)
        group_sizes: Samples per condition
        mean_cutoff: Base mean cutoff chosen by independent filtering
    """

    table: pd.DataFrame
    size_factors: pd.Series
    dispersions: pd.DataFrame
    dispersion_fit: DispersionFit
    positive: str
    reference: str
    group_sizes: Dict[str, int]
    mean_cutoff: float = 0.0

    @property
    def contrast(self) -> str:
        return f"{self.positive} vs {self.reference}"

    def n_significant(self, alpha: float = 0.05) -> int:
        return len(filter_significant(self.table, alpha))


def check_design(dataset: AlignedDataset, positive: str, reference: str) -> np.ndarray:
    """
    Validate the two-group design and return the design matrix.

    Raises:
        DesignError: On unknown labels or fewer than 2 samples in a group
    """
    sizes = dataset.group_sizes()
    unknown = sorted(set(sizes) - {positive, reference})
    if unknown:
        raise DesignError(
            f"Unexpected condition labels {unknown}; expected only {positive!r} and {reference!r}"
        )
    for label in (reference, positive):
        if sizes.get(label, 0) < 2:
            raise DesignError(
                f"fewer than 2 samples in group {label} ({sizes.get(label, 0)} found)"
            )

    indicator = dataset.design_vector(positive)
    return np.column_stack([np.ones_like(indicator), indicator])

def run_deseq(dataset: AlignedDataset, config: Optional[AnalysisConfig] = None) -> DEResult:
    """
    Test every gene for a difference between the two conditions.

    Args:
        dataset: Aligned counts and sample conditions
        config: Analysis configuration (defaults if None)

    Returns:
        DEResult
    """
    config = config or AnalysisConfig()
    positive, reference = config.positive_label, config.negative_label

    design = check_design(dataset, positive, reference)
    sizes = dataset.group_sizes()
    logger.info(
        f"Testing {positive} ({sizes[positive]} samples) vs {reference} "
        f"({sizes[reference]} samples) over {dataset.n_genes} genes"
    )

    counts = dataset.counts
    size_factors = estimate_size_factors(counts)
    sf = size_factors.to_numpy()
    means = base_means(counts, size_factors).to_numpy()

    values = counts.to_numpy()
    all_zero = values.sum(axis=1) == 0
    active = ~all_zero
    if not active.any():
        raise FittingError("Every gene has zero counts in all samples")
    if all_zero.any():
        logger.info(f"{int(all_zero.sum())} all-zero genes excluded from testing")

    active_counts = values[active]
    disp_fit = estimate_dispersions(active_counts, sf, design, means[active], config)

    logger.info("Fitting negative binomial GLMs and running Wald tests")
    lfc, lfc_se, stat, pvalue, converged, max_cooks = map_gene_blocks(
        wald_block, [active_counts, disp_fit.final],
        n_jobs=config.n_jobs, block_size=config.block_size,
        design=design, size_factors=sf, max_iter=config.max_iter
    )

    n_genes = dataset.n_genes
    table = pd.DataFrame({
        'baseMean': means,
        'log2FoldChange': np.nan,
        'lfcSE': np.nan,
        'stat': np.nan,
        'pvalue': np.nan,
        'padj': np.nan,
        'status': np.where(all_zero, ALL_ZERO, TESTED),
    }, index=counts.index)

    status = np.full(active.sum(), TESTED, dtype=object)
    status[~converged] = NOT_CONVERGED
    for column, data in (('log2FoldChange', lfc), ('lfcSE', lfc_se), ('stat', stat), ('pvalue', pvalue)):
        data = np.where(converged, data, np.nan)
        table.loc[active, column] = data

    outliers = _cooks_outliers(max_cooks, design, sizes, config)
    status[outliers] = COOKS_OUTLIER
    pvalue_col = table.loc[active, 'pvalue'].to_numpy(copy=True)
    pvalue_col[outliers] = np.nan
    table.loc[active, 'pvalue'] = pvalue_col
    table.loc[active, 'status'] = status

    if converged.sum() < len(converged):
        logger.warning(f"{int((~converged).sum())} genes did not converge and are not tested")
    if outliers.any():
        logger.info(f"{int(outliers.sum())} genes flagged as Cook's distance outliers")

    mean_cutoff = 0.0
    if config.independent_filtering:
        padj, mean_cutoff = independent_filtering(
            table['baseMean'].to_numpy(), table['pvalue'].to_numpy(), config.alpha
        )
        filtered = np.isnan(padj) & table['pvalue'].notna().to_numpy()
        table.loc[filtered, 'status'] = LOW_MEAN
    else:
        padj = benjamini_hochberg(table['pvalue'].to_numpy())
    table['padj'] = padj

    table = table.sort_values('padj', ascending=True, na_position='last', kind='mergesort')
    table = table[RESULT_COLUMNS]
    table.index.name = 'gene_id'

    n_tested = int((table['status'] == TESTED).sum())
    logger.info(
        f"{n_tested} of {n_genes} genes tested; "
        f"{int((table['padj'] < config.alpha).sum())} with padj < {config.alpha}"
    )

    return DEResult(
        table=table,
        size_factors=size_factors,
        dispersions=disp_fit.to_frame(counts.index[active]),
        dispersion_fit=disp_fit,
        positive=positive,
        reference=reference,
        group_sizes=sizes,
        mean_cutoff=mean_cutoff,
    )

def _cooks_outliers(
    max_cooks: np.ndarray,
    design: np.ndarray,
    sizes: Dict[str, int],
    config: AnalysisConfig
) -> np.ndarray:
    """Genes whose largest Cook's distance exceeds the cutoff."""
    n_samples, n_coefs = design.shape
    if config.cooks_cutoff == 0 or min(sizes.values()) < MIN_REPLICATES_FOR_COOKS:
        return np.zeros(len(max_cooks), dtype=bool)

    cutoff = config.cooks_cutoff
    if cutoff is None:
        cutoff = stats.f.ppf(0.99, n_coefs, n_samples - n_coefs)
    return np.nan_to_num(max_cooks, nan=0.0) > cutoff

def filter_significant(table: pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
    """
    Rows with adjusted p-value strictly below ``alpha``.

    Untested genes (NaN padj) are never selected.
    """
    return table[table['padj'] < alpha].copy()
