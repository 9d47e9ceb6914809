"""
Negative-binomial GLM fitting for a single gene.

counts ~ NB(mean = size_factor * exp(X @ beta), dispersion = alpha)

Coefficients are fitted by iteratively reweighted least squares with the
log size factors as offset and the dispersion held fixed.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import gammaln, xlogy

from .errors import FitDivergenceError

LOG2_E = float(np.log2(np.e))
# floor on fitted means, keeps weights and working responses finite for
# genes with an all-zero group
MIN_MU = 0.5
MAX_ABS_COEF = 30.0 * np.log(2.0)


@dataclass(frozen=True)
class FitResult:
    """Outcome of one converged NB GLM fit."""

    coefficients: np.ndarray
    log_likelihood: float
    deviance: float
    iterations: int
    mu: np.ndarray

    def log2_coefficients(self) -> np.ndarray:
        return self.coefficients * LOG2_E


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """
    Negative-binomial log-likelihood summed over samples.

    Parameters
    ----------
    y : np.ndarray
        Observed counts.
    mu : np.ndarray
        Fitted means, strictly positive.
    alpha : float
        Dispersion (variance = mu + alpha * mu^2).
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    r = 1.0 / alpha
    log1p_amu = np.log1p(alpha * mu)
    ll = (
        gammaln(y + r)
        - gammaln(r)
        - gammaln(y + 1.0)
        - r * log1p_amu
        + y * (np.log(alpha * mu) - log1p_amu)
    )
    return float(np.sum(ll))


def nb_deviance(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """
    Negative-binomial deviance against the saturated model (mu = y).

    2 * sum(y * log(y / mu) - (y + 1/alpha) * log((y + 1/alpha) / (mu + 1/alpha)))
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    r = 1.0 / alpha
    unit = xlogy(y, y / mu) - (y + r) * np.log((y + r) / (mu + r))
    return float(2.0 * np.sum(unit))


def cox_reid_adjustment(design: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Cox-Reid term -0.5 * log det(X' W X) with W = mu / (1 + alpha * mu)."""
    w = mu / (1.0 + alpha * mu)
    xtwx = (design.T * w) @ design
    sign, logdet = np.linalg.slogdet(xtwx)
    if sign <= 0:
        return 0.0
    return float(-0.5 * logdet)


def fit_nb_glm(
    y: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    alpha: float,
    max_iter: int = 100,
    tol: float = 1e-8,
    ridge: float = 1e-6,
    min_mu: float = MIN_MU,
    stage: str = "fit",
    gene_id: Optional[str] = None,
) -> FitResult:
    """
    Fit a negative-binomial GLM with fixed dispersion by IRLS.

    Parameters
    ----------
    y : np.ndarray
        Counts of one gene (n_samples,).
    size_factors : np.ndarray
        Size factors (n_samples,), used as log offset.
    design : np.ndarray
        Design matrix (n_samples, n_coefficients).
    alpha : float
        Dispersion held fixed during the fit.
    max_iter : int
        Iteration cap.
    tol : float
        Convergence threshold on the relative change of -2 * loglik.
    ridge : float
        Small ridge penalty keeping X'WX invertible.
    min_mu : float
        Lower bound applied to fitted means.
    stage : str
        Label used in raised errors.
    gene_id : str, optional
        Label used in raised errors.

    Returns
    -------
    FitResult
        Coefficients on the natural-log scale, log-likelihood and deviance
        against the saturated model.

    Raises
    ------
    FitDivergenceError
        If the fit does not converge within ``max_iter`` iterations or the
        coefficients become non-finite or explode.
    """
    y = np.asarray(y, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    x = np.asarray(design, dtype=float)
    n_coef = x.shape[1]
    penalty = np.diag(np.full(n_coef, ridge))

    beta = np.linalg.lstsq(x, np.log(y / sf + 0.1), rcond=None)[0]
    mu = np.maximum(sf * np.exp(x @ beta), min_mu)
    neg2ll = -2.0 * nb_log_likelihood(y, mu, alpha)

    for iteration in range(1, max_iter + 1):
        w = mu / (1.0 + alpha * mu)
        z = np.log(mu / sf) + (y - mu) / mu
        xtw = x.T * w
        try:
            beta = np.linalg.solve(xtw @ x + penalty, xtw @ z)
        except np.linalg.LinAlgError as exc:
            raise FitDivergenceError(gene_id, stage, f"singular system: {exc}")
        if not np.all(np.isfinite(beta)) or np.any(np.abs(beta) > MAX_ABS_COEF):
            raise FitDivergenceError(
                gene_id, stage, f"coefficients diverged at iteration {iteration}"
            )
        mu = np.maximum(sf * np.exp(x @ beta), min_mu)
        new_neg2ll = -2.0 * nb_log_likelihood(y, mu, alpha)
        if not np.isfinite(new_neg2ll):
            raise FitDivergenceError(gene_id, stage, "non-finite likelihood")
        change = abs(new_neg2ll - neg2ll) / (abs(new_neg2ll) + 0.1)
        neg2ll = new_neg2ll
        if change < tol:
            return FitResult(
                coefficients=beta,
                log_likelihood=-0.5 * neg2ll,
                deviance=nb_deviance(y, mu, alpha),
                iterations=iteration,
                mu=mu,
            )

    raise FitDivergenceError(
        gene_id, stage, f"no convergence after {max_iter} iterations"
    )
