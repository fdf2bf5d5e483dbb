"""
Library size normalization.

Median-of-ratios size factors: every sample is compared with a pseudo
reference sample built from per-gene geometric means. Genes with a zero in
any sample have a zero geometric mean and do not take part in the median,
but are kept for all later steps.
"""

import logging
import numpy as np
import pandas as pd

from .exceptions import FittingError

logger = logging.getLogger(__name__)

def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Estimate per-sample size factors by the median-of-ratios method.

    Args:
        counts: Raw counts, genes x samples

    Returns:
        Strictly positive size factor per sample

    Raises:
        FittingError: If no gene is non-zero in every sample
    """
    values = counts.to_numpy(dtype=float)

    with np.errstate(divide='ignore'):
        log_counts = np.log(values)
    log_geo_means = log_counts.mean(axis=1)
    usable = np.isfinite(log_geo_means)

    if not usable.any():
        raise FittingError(
            "Size factors cannot be estimated: every gene has a zero count in at least one sample"
        )

    log_ratios = log_counts[usable] - log_geo_means[usable, np.newaxis]
    size_factors = np.exp(np.median(log_ratios, axis=0))

    logger.info(
        f"Size factors from {int(usable.sum())} genes: "
        f"min {size_factors.min():.3f}, max {size_factors.max():.3f}"
    )
    return pd.Series(size_factors, index=counts.columns, name='size_factor')

def normalized_counts(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Counts divided by the size factor of their sample."""
    return counts.div(size_factors[counts.columns], axis=1)

def base_means(counts: pd.DataFrame, size_factors: pd.Series) -> pd.Series:
    """Mean of normalized counts over all samples, per gene."""
    return normalized_counts(counts, size_factors).mean(axis=1).rename('baseMean')
