"""
Multiple testing correction.

Benjamini-Hochberg adjustment over the genes with a defined p-value, and
independent filtering on mean expression: low-mean genes that have almost
no power are removed from the correction when that increases the number
of discoveries.
"""

import logging
from typing import Tuple
import numpy as np
from statsmodels.stats.multitest import multipletests
from statsmodels.nonparametric.smoothers_lowess import lowess

logger = logging.getLogger(__name__)

def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN p-values stay NaN and do not count toward the number of tests.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    padj = np.full(pvalues.shape, np.nan)
    defined = ~np.isnan(pvalues)
    if defined.any():
        _, padj[defined], _, _ = multipletests(pvalues[defined], method='fdr_bh')
    return padj

def independent_filtering(
    base_mean: np.ndarray,
    pvalues: np.ndarray,
    alpha: float = 0.05,
    n_theta: int = 50
) -> Tuple[np.ndarray, float]:
    """
    Choose a base mean cutoff maximizing discoveries and adjust p-values.

    Args:
        base_mean: Mean normalized count per gene
        pvalues: Raw p-values (NaN for genes without a test)
        alpha: FDR level the number of rejections is counted at
        n_theta: Number of quantiles scanned

    Returns:
        Tuple of (adjusted p-values with filtered genes set to NaN, cutoff)
    """
    base_mean = np.asarray(base_mean, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)

    lower_quantile = float(np.mean(base_mean == 0))
    upper_quantile = 0.95 if lower_quantile < 0.95 else 1.0
    theta = np.linspace(lower_quantile, upper_quantile, n_theta)
    cutoffs = np.quantile(base_mean, theta)

    adjusted = []
    for cutoff in cutoffs:
        keep = base_mean >= cutoff
        adjusted.append(benjamini_hochberg(np.where(keep, pvalues, np.nan)))
    adjusted = np.column_stack(adjusted)
    num_rej = (np.nan_to_num(adjusted, nan=1.0) < alpha).sum(axis=0)

    if num_rej.max() <= 10:
        j = 0
    else:
        fitted = lowess(num_rej, theta, frac=1 / 5, return_sorted=False)
        positive = num_rej > 0
        residual = num_rej[positive] - fitted[positive] if positive.any() else np.zeros(1)
        threshold = fitted.max() - np.sqrt(np.mean(residual ** 2))
        above = np.flatnonzero(num_rej > threshold)
        j = int(above[0]) if len(above) else 0

    logger.info(
        f"Independent filtering: base mean cutoff {cutoffs[j]:.3f} "
        f"(quantile {theta[j]:.2f}), {int(num_rej[j])} genes with padj < {alpha}"
    )
    return adjusted[:, j], float(cutoffs[j])
