"""
Dispersion estimation.

Three steps, with one synchronization point between the per-gene phases:

1. gene-wise maximum likelihood dispersions (per gene, parallel),
2. a trend of dispersion against mean expression fitted across all genes,
3. empirical Bayes shrinkage of each gene toward the trend (per gene, parallel).

With few replicates per group the gene-wise estimates are too noisy to use
directly; the shrunken (MAP) estimates are what the Wald tests use.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Tuple
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.special import polygamma

from .config import AnalysisConfig
from .exceptions import FittingError
from .glm import linear_model_mu, grid_search_log_dispersion
from .parallel import map_gene_blocks

logger = logging.getLogger(__name__)

# genes within this factor of min_disp carry no information for the trend
TREND_MIN_FACTOR = 100.0
OUTLIER_SD = 2.0
MIN_PRIOR_VAR = 0.25


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted dispersion-mean relationship."""

    fit_type: str
    coefficients: Tuple[float, ...]

    def __call__(self, means: np.ndarray) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        if self.fit_type == 'parametric':
            asympt_disp, extra_pois = self.coefficients
            return asympt_disp + extra_pois / means
        return np.full(means.shape, self.coefficients[0])


@dataclass(frozen=True)
class DispersionFit:
    """
    Dispersion estimates for the genes entering the Wald tests.

    Attributes:
        genewise: Gene-wise maximum likelihood estimates
        trend_values: Trend evaluated at each gene's base mean
        map: Maximum a posteriori (shrunken) estimates
        final: Dispersions used for testing
        trend: Fitted trend
        prior_var: Variance of the log-normal prior used for shrinkage
        outlier: Genes whose gene-wise estimate was kept over the MAP estimate
    """

    genewise: np.ndarray
    trend_values: np.ndarray
    map: np.ndarray
    final: np.ndarray
    trend: DispersionTrend
    prior_var: float
    outlier: np.ndarray

    def to_frame(self, index: pd.Index) -> pd.DataFrame:
        return pd.DataFrame({
            'dispGeneEst': self.genewise,
            'dispFit': self.trend_values,
            'dispMAP': self.map,
            'dispersion': self.final,
            'dispOutlier': self.outlier,
        }, index=index)


def _genewise_block(counts, mu, *, design, log_lower, log_upper):
    log_alpha = grid_search_log_dispersion(counts, mu, design, log_lower, log_upper)
    return (np.exp(log_alpha),)

def _map_block(counts, mu, log_trend, *, design, prior_var, log_lower, log_upper):
    log_alpha = grid_search_log_dispersion(
        counts, mu, design, log_lower, log_upper,
        log_prior_mean=log_trend, prior_var=prior_var
    )
    return (np.exp(log_alpha),)

def _dispersion_bounds(n_samples: int, config: AnalysisConfig) -> Tuple[float, float]:
    max_disp = max(config.max_disp, float(n_samples))
    return config.min_disp, max_disp

def estimate_genewise_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    config: AnalysisConfig
) -> np.ndarray:
    """
    Gene-wise dispersions maximizing the Cox-Reid adjusted likelihood.

    Args:
        counts: Raw counts of genes with at least one non-zero count
        size_factors: Size factor per sample
        design: Design matrix (samples x coefficients)
        config: Analysis configuration

    Returns:
        Dispersion per gene, clipped to the configured bounds
    """
    min_disp, max_disp = _dispersion_bounds(counts.shape[1], config)
    mu = linear_model_mu(counts, size_factors, design)

    (genewise,) = map_gene_blocks(
        _genewise_block, [counts.astype(float), mu],
        n_jobs=config.n_jobs, block_size=config.block_size,
        design=design, log_lower=np.log(min_disp / 10.0), log_upper=np.log(max_disp)
    )
    return np.clip(genewise, min_disp, max_disp)

def _parametric_trend(genewise: np.ndarray, means: np.ndarray, use: np.ndarray) -> DispersionTrend:
    coefs = np.array([0.1, 1.0])
    for _ in range(10):
        residuals = genewise / (coefs[0] + coefs[1] / means)
        good = use & (residuals > 1e-4) & (residuals < 15)
        if good.sum() < 3:
            raise FittingError("too few genes for a parametric dispersion trend")

        exog = sm.add_constant(1.0 / means[good], has_constant='add')
        family = sm.families.Gamma(link=sm.families.links.Identity())
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                fit = sm.GLM(genewise[good], exog, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FittingError(f"parametric dispersion trend fit failed: {e}")
        new_coefs = np.asarray(fit.params, dtype=float)

        if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
            raise FittingError(f"parametric dispersion trend has non-positive coefficients {new_coefs}")

        converged = np.sum(np.log(new_coefs / coefs) ** 2) < 1e-6
        coefs = new_coefs
        if converged:
            return DispersionTrend('parametric', (float(coefs[0]), float(coefs[1])))

    raise FittingError("parametric dispersion trend did not converge")

def fit_dispersion_trend(
    genewise: np.ndarray,
    means: np.ndarray,
    fit_type: str = 'parametric',
    min_disp: float = 1e-8
) -> DispersionTrend:
    """
    Fit dispersion as a function of mean expression.

    The parametric trend is ``a0 + a1 / mean``, fitted with a Gamma-family
    GLM with identity link and iterative removal of outlying genes. When it
    cannot be fitted, the trimmed mean of the gene-wise estimates is used.

    Raises:
        FittingError: If every gene-wise estimate sits at the lower bound
    """
    use = genewise >= TREND_MIN_FACTOR * min_disp
    if not use.any():
        raise FittingError(
            "Dispersion trend cannot be fitted: all gene-wise dispersion estimates "
            "are within two orders of magnitude of the minimum"
        )

    if fit_type == 'parametric':
        try:
            trend = _parametric_trend(genewise, means, use)
            logger.info(
                f"Parametric dispersion trend: asymptotic dispersion {trend.coefficients[0]:.4g}, "
                f"extra-Poisson term {trend.coefficients[1]:.4g}"
            )
            return trend
        except FittingError as e:
            logger.warning(f"{e}; using mean dispersion trend instead")

    mean_disp = float(stats.trim_mean(genewise[genewise >= 10 * min_disp], 0.001))
    logger.info(f"Mean dispersion trend: {mean_disp:.4g}")
    return DispersionTrend('mean', (mean_disp,))

def estimate_prior_variance(
    genewise: np.ndarray,
    trend_values: np.ndarray,
    n_samples: int,
    n_coefs: int,
    min_disp: float = 1e-8
) -> Tuple[float, float]:
    """
    Variance of the log-normal prior on dispersions.

    Returns:
        Tuple of (observed variance of log residuals, prior variance)
    """
    use = genewise >= TREND_MIN_FACTOR * min_disp
    if not use.any():
        raise FittingError("No informative gene-wise dispersions for the shrinkage prior")

    log_residuals = np.log(genewise[use]) - np.log(trend_values[use])
    var_log_disp = float(stats.median_abs_deviation(log_residuals, scale='normal') ** 2)
    expected_var = float(polygamma(1, (n_samples - n_coefs) / 2.0))
    prior_var = max(var_log_disp - expected_var, MIN_PRIOR_VAR)
    return var_log_disp, prior_var

def estimate_map_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    trend_values: np.ndarray,
    prior_var: float,
    config: AnalysisConfig
) -> np.ndarray:
    """Shrink dispersions toward the trend (maximum a posteriori)."""
    min_disp, max_disp = _dispersion_bounds(counts.shape[1], config)
    mu = linear_model_mu(counts, size_factors, design)

    (map_disp,) = map_gene_blocks(
        _map_block, [counts.astype(float), mu, np.log(trend_values)],
        n_jobs=config.n_jobs, block_size=config.block_size,
        design=design, prior_var=prior_var,
        log_lower=np.log(min_disp / 10.0), log_upper=np.log(max_disp)
    )
    return np.clip(map_disp, min_disp, max_disp)

def estimate_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    means: np.ndarray,
    config: AnalysisConfig
) -> DispersionFit:
    """
    Run gene-wise estimation, trend fitting and shrinkage.

    Args:
        counts: Raw counts of genes with at least one non-zero count
        size_factors: Size factor per sample
        design: Design matrix (samples x coefficients)
        means: Base mean per gene
        config: Analysis configuration

    Returns:
        DispersionFit
    """
    n_samples, n_coefs = design.shape
    if n_samples <= n_coefs:
        raise FittingError(
            f"Dispersions cannot be estimated: {n_samples} samples for {n_coefs} coefficients"
        )

    logger.info(f"Estimating gene-wise dispersions for {counts.shape[0]} genes")
    genewise = estimate_genewise_dispersions(counts, size_factors, design, config)

    trend = fit_dispersion_trend(genewise, means, config.fit_type, config.min_disp)
    trend_values = trend(means)

    var_log_disp, prior_var = estimate_prior_variance(
        genewise, trend_values, n_samples, n_coefs, config.min_disp
    )
    logger.info(f"Shrinking dispersions toward trend (prior variance {prior_var:.3f})")
    map_disp = estimate_map_dispersions(counts, size_factors, design, trend_values, prior_var, config)

    outlier = np.log(genewise) > np.log(trend_values) + OUTLIER_SD * np.sqrt(var_log_disp)
    final = np.where(outlier, genewise, map_disp)
    logger.debug(f"{int(outlier.sum())} dispersion outliers keep their gene-wise estimate")

    return DispersionFit(
        genewise=genewise,
        trend_values=trend_values,
        map=map_disp,
        final=final,
        trend=trend,
        prior_var=prior_var,
        outlier=outlier,
    )
