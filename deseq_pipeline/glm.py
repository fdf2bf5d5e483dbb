"""
Negative binomial GLM fitting and Wald testing.

All functions work on blocks of genes at once: counts are (genes x samples)
arrays, the design matrix is shared (samples x coefficients) and size
factors enter as fixed log offsets. The model per gene is

    log(mu_ij) = log(s_j) + x_j . beta_i,    Var(y_ij) = mu_ij + alpha_i mu_ij^2

Fitting never raises on a single gene; genes that fail to converge are
reported through the returned ``converged`` mask.
"""

import logging
from typing import Optional, Tuple
import numpy as np
from scipy import stats
from scipy.special import gammaln

logger = logging.getLogger(__name__)

MIN_MU = 0.5
RIDGE = 1e-6
MAX_BETA = 30.0
MAX_ETA = 50.0
MIN_COOKS_DISP = 0.04

def linear_model_mu(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    min_mu: float = MIN_MU
) -> np.ndarray:
    """
    Fitted means from a least-squares fit of normalized counts on the design.

    For a design made of group indicators this is the per-group mean of
    normalized counts, scaled back by each sample's size factor.
    """
    normed = counts / size_factors[np.newaxis, :]
    hat = design @ np.linalg.pinv(design)
    mu = (normed @ hat.T) * size_factors[np.newaxis, :]
    return np.maximum(mu, min_mu)

def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Elementwise negative binomial log-likelihood (mean/dispersion form)."""
    inv_alpha = 1.0 / alpha
    log1p_am = np.log1p(alpha * mu)
    return (
        gammaln(y + inv_alpha) - gammaln(inv_alpha) - gammaln(y + 1.0)
        - inv_alpha * log1p_am
        + y * (np.log(alpha * mu) - log1p_am)
    )

def dispersion_objective(
    log_alpha: np.ndarray,
    counts: np.ndarray,
    mu: np.ndarray,
    design: np.ndarray,
    log_prior_mean: Optional[np.ndarray] = None,
    prior_var: Optional[float] = None
) -> np.ndarray:
    """
    Cox-Reid adjusted profile log-likelihood of log-dispersion values.

    Args:
        log_alpha: Candidate log dispersions, (genes x candidates)
        counts: Raw counts, (genes x samples)
        mu: Fitted means, (genes x samples)
        design: Design matrix, (samples x coefficients)
        log_prior_mean: Per-gene mean of a normal prior on log dispersion
        prior_var: Variance of that prior

    Returns:
        Objective value per gene and candidate
    """
    alpha = np.exp(log_alpha)[:, :, np.newaxis]
    y = counts[:, np.newaxis, :]
    m = mu[:, np.newaxis, :]

    ll = nb_log_likelihood(y, m, alpha).sum(axis=-1)

    weights = m / (1.0 + alpha * m)
    xtwx = np.einsum('gkm,mp,mq->gkpq', weights, design, design)
    _, logdet = np.linalg.slogdet(xtwx)

    objective = ll - 0.5 * logdet
    if log_prior_mean is not None:
        objective = objective - (log_alpha - log_prior_mean[:, np.newaxis]) ** 2 / (2.0 * prior_var)
    return objective

def grid_search_log_dispersion(
    counts: np.ndarray,
    mu: np.ndarray,
    design: np.ndarray,
    log_lower: float,
    log_upper: float,
    log_prior_mean: Optional[np.ndarray] = None,
    prior_var: Optional[float] = None,
    n_grid: int = 50,
    n_refine: int = 3
) -> np.ndarray:
    """
    Maximize :func:`dispersion_objective` per gene over [log_lower, log_upper].

    A coarse grid is followed by ``n_refine`` rounds of a 21-point grid
    around the current best, each ten times finer.
    """
    n_genes = counts.shape[0]
    rows = np.arange(n_genes)

    def best_of(candidates):
        values = dispersion_objective(candidates, counts, mu, design, log_prior_mean, prior_var)
        values = np.where(np.isfinite(values), values, -np.inf)
        return candidates[rows, np.argmax(values, axis=1)]

    grid = np.broadcast_to(np.linspace(log_lower, log_upper, n_grid), (n_genes, n_grid))
    best = best_of(grid)
    step = (log_upper - log_lower) / (n_grid - 1)

    offsets = np.linspace(-1.0, 1.0, 21)
    for _ in range(n_refine):
        fine = np.clip(best[:, np.newaxis] + step * offsets, log_lower, log_upper)
        best = best_of(fine)
        step /= 10.0

    return best

def fit_nb_glm(
    counts: np.ndarray,
    alpha: np.ndarray,
    design: np.ndarray,
    log_offset: np.ndarray,
    max_iter: int = 100,
    tol: float = 1e-8
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Fit NB GLMs with fixed dispersions by iteratively reweighted least squares.

    Args:
        counts: Raw counts, (genes x samples)
        alpha: Dispersion per gene
        design: Design matrix, (samples x coefficients)
        log_offset: log size factor per sample
        max_iter: Maximum IRLS iterations
        tol: Relative deviance change declaring convergence

    Returns:
        Tuple of (beta, covariance, mu, weights, converged) where beta is
        (genes x coefficients) on the natural log scale and covariance is
        (genes x coefficients x coefficients)
    """
    y = counts.astype(float)
    n_genes, _ = y.shape
    n_coefs = design.shape[1]
    ridge = RIDGE * np.eye(n_coefs)
    a = alpha[:, np.newaxis]

    # start from least squares on log normalized counts
    z0 = np.log(y / np.exp(log_offset)[np.newaxis, :] + 0.1)
    beta = z0 @ np.linalg.pinv(design).T

    converged = np.zeros(n_genes, dtype=bool)
    deviance = np.full(n_genes, np.inf)

    for _ in range(max_iter):
        active = ~converged
        if not active.any():
            break

        eta = np.clip(beta[active] @ design.T + log_offset, -MAX_ETA, MAX_ETA)
        mu = np.maximum(np.exp(eta), MIN_MU)
        w = mu / (1.0 + a[active] * mu)
        z = np.log(mu) - log_offset + (y[active] - mu) / mu

        xtwx = np.einsum('gm,mp,mq->gpq', w, design, design) + ridge
        xtwz = np.einsum('gm,mp,gm->gp', w, design, z)
        with np.errstate(invalid='ignore', over='ignore'):
            new_beta = np.linalg.solve(xtwx, xtwz[:, :, np.newaxis])[:, :, 0]

        new_eta = np.clip(new_beta @ design.T + log_offset, -MAX_ETA, MAX_ETA)
        new_mu = np.maximum(np.exp(new_eta), MIN_MU)
        new_dev = -2.0 * nb_log_likelihood(y[active], new_mu, a[active]).sum(axis=1)

        change = np.abs(new_dev - deviance[active]) / (np.abs(new_dev) + 0.1)
        beta[active] = new_beta
        deviance[active] = new_dev

        idx = np.flatnonzero(active)
        converged[idx[change < tol]] = True

    bad_beta = ~np.isfinite(beta).all(axis=1) | (np.abs(beta) > MAX_BETA).any(axis=1)
    converged &= ~bad_beta
    beta[bad_beta] = np.nan

    mu = np.maximum(np.exp(np.clip(beta @ design.T + log_offset, -MAX_ETA, MAX_ETA)), MIN_MU)
    w = mu / (1.0 + a * mu)
    xtwx = np.einsum('gm,mp,mq->gpq', np.nan_to_num(w), design, design)
    inv = np.linalg.pinv(xtwx + ridge)
    covariance = inv @ xtwx @ inv
    covariance[~converged] = np.nan

    return beta, covariance, mu, w, converged

def _trim_parameters(n_samples: int) -> Tuple[float, float]:
    """Trim proportion and the matching variance scale for ``n_samples`` values."""
    if n_samples < 3.5:
        return 1.0 / 3.0, 2.04
    if n_samples > 23.5:
        return 1.0 / 8.0, 1.51
    return 1.0 / 4.0, 1.86

def trimmed_variance(
    values: np.ndarray,
    trim: Optional[float] = None,
    scale: Optional[float] = None
) -> np.ndarray:
    """
    Row-wise variance estimate from trimmed means.

    The centre is the trimmed mean of each row and the variance is the
    scaled trimmed mean of squared deviations, so a single extreme value
    does not move either.
    """
    if trim is None:
        trim, scale = _trim_parameters(values.shape[1])
    center = stats.trim_mean(values, trim, axis=1)
    squared = (values - center[:, np.newaxis]) ** 2
    return scale * stats.trim_mean(squared, trim, axis=1)

def robust_moments_dispersion(
    counts: np.ndarray,
    size_factors: np.ndarray,
    groups: np.ndarray,
    min_disp: float = MIN_COOKS_DISP
) -> np.ndarray:
    """
    Robust method-of-moments dispersion, floored at ``min_disp``.

    With at least 3 samples in every group the variance is the largest
    trimmed within-group variance; otherwise a trimmed variance over all
    samples. Used for Cook's distances.
    """
    normed = counts / size_factors[np.newaxis, :]
    levels, sizes = np.unique(groups, return_counts=True)
    if sizes.min() >= 3:
        variance = np.max(
            [trimmed_variance(normed[:, groups == level]) for level in levels], axis=0
        )
    else:
        variance = trimmed_variance(normed, trim=1.0 / 8.0, scale=1.51)

    means = normed.mean(axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        alpha = (variance - means) / means ** 2
    return np.maximum(np.nan_to_num(alpha, nan=min_disp), min_disp)

def cooks_distance(
    counts: np.ndarray,
    mu: np.ndarray,
    weights: np.ndarray,
    design: np.ndarray,
    alpha: np.ndarray
) -> np.ndarray:
    """Cook's distance per gene and sample for a fitted NB GLM."""
    n_coefs = design.shape[1]
    xtwx = np.einsum('gm,mp,mq->gpq', weights, design, design) + RIDGE * np.eye(n_coefs)
    inv = np.linalg.pinv(xtwx)
    leverage = weights * np.einsum('mp,gpq,mq->gm', design, inv, design)
    leverage = np.clip(leverage, 0.0, 1.0 - 1e-10)
    variance = mu + alpha[:, np.newaxis] * mu ** 2
    pearson_sq = (counts - mu) ** 2 / variance
    return pearson_sq / n_coefs * leverage / (1.0 - leverage) ** 2

def wald_test(beta: np.ndarray, covariance: np.ndarray, coef_index: int = 1) -> Tuple[np.ndarray, ...]:
    """
    Wald test of one coefficient against zero.

    Returns:
        Tuple of (log2 fold change, log2 standard error, statistic, two-sided p-value)
    """
    coef = beta[:, coef_index]
    se = np.sqrt(covariance[:, coef_index, coef_index])
    with np.errstate(divide='ignore', invalid='ignore'):
        stat = coef / se
    pvalue = 2.0 * stats.norm.sf(np.abs(stat))
    return coef / np.log(2), se / np.log(2), stat, pvalue

def wald_block(
    counts: np.ndarray,
    alpha: np.ndarray,
    *,
    design: np.ndarray,
    size_factors: np.ndarray,
    coef_index: int = 1,
    max_iter: int = 100
) -> Tuple[np.ndarray, ...]:
    """
    Fit, test and compute the maximum Cook's distance for a block of genes.

    Returns:
        Tuple of (log2FoldChange, lfcSE, stat, pvalue, converged, max_cooks)
    """
    log_offset = np.log(size_factors)
    beta, covariance, mu, weights, converged = fit_nb_glm(
        counts, alpha, design, log_offset, max_iter=max_iter
    )
    lfc, lfc_se, stat, pvalue = wald_test(beta, covariance, coef_index)

    groups = design[:, coef_index]
    cooks_alpha = robust_moments_dispersion(counts.astype(float), size_factors, groups)
    cooks = cooks_distance(counts.astype(float), mu, np.nan_to_num(weights), design, cooks_alpha)
    max_cooks = np.where(converged, np.nan_to_num(cooks, nan=0.0).max(axis=1), np.nan)

    return lfc, lfc_se, stat, pvalue, converged, max_cooks
