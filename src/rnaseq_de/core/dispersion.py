"""
Per-gene negative-binomial dispersion estimation with trend shrinkage.

Three steps:
1. gene-wise estimates maximizing the Cox-Reid adjusted profile likelihood
2. a parametric mean-dispersion trend fitted across genes
3. empirical Bayes shrinkage of the gene-wise estimates towards the trend
   (maximum a posteriori with a log-normal prior), keeping dispersion
   outliers at their gene-wise value

Step 2 needs all gene-wise estimates, it separates the two per-gene maps.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from pandas import DataFrame, Series
from scipy.optimize import minimize_scalar
from scipy.special import polygamma
from scipy.stats import median_abs_deviation, trim_mean

from .errors import FitDivergenceError
from .glm import cox_reid_adjustment, fit_nb_glm, nb_log_likelihood
from .parallel import map_genes, split_results

logger = logging.getLogger(__name__)

MIN_DISP = 1e-8
# genes this close to the lower bound carry no information for the trend
MIN_DISP_FACTOR = 100.0
MIN_PRIOR_VAR = 0.25


@dataclass(frozen=True)
class DispersionTrend:
    """Mean-dispersion trend ``asympt_disp + extra_pois / mean``."""

    kind: str
    asympt_disp: float
    extra_pois: float = 0.0

    def __call__(self, means) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        return self.asympt_disp + self.extra_pois / means


@dataclass(frozen=True)
class DispersionEstimates:
    """
    Dispersion results for one run.

    - table: indexed by gene id with columns baseMean, dispGeneEst,
      dispFit, dispersion, dispOutlier
    - failures: genes whose estimation did not converge
    """

    table: DataFrame
    failures: Dict[str, FitDivergenceError]
    trend: Optional[DispersionTrend]
    prior_variance: float

    @property
    def dispersion(self) -> Series:
        return self.table["dispersion"]


def max_dispersion(n_samples: int) -> float:
    return float(max(10.0, n_samples))


def _log_alpha_bounds(min_disp: float, max_disp: float) -> Tuple[float, float]:
    return float(np.log(min_disp / 10.0)), float(np.log(max_disp))


def initial_dispersion(
    y: np.ndarray, size_factors: np.ndarray, design: np.ndarray
) -> float:
    """
    Starting value min(rough, moments) for the gene-wise optimization.

    rough: squared residuals of a linear fit of the normalized counts on the
    design. moments: (var - mean * mean(1/sf)) / mean^2.
    """
    norm = np.asarray(y, dtype=float) / size_factors
    n_samples, n_coef = design.shape

    coef = np.linalg.lstsq(design, norm, rcond=None)[0]
    mu = np.maximum(design @ coef, 1.0)
    rough = np.sum(((norm - mu) ** 2 - mu) / mu**2) / (n_samples - n_coef)
    rough = max(float(rough), 0.0)

    base_mean = norm.mean()
    base_var = norm.var(ddof=1)
    xim = np.mean(1.0 / size_factors)
    moments = (base_var - xim * base_mean) / base_mean**2
    return float(min(rough, moments))


def cox_reid_log_likelihood(
    log_alpha: float, y: np.ndarray, mu: np.ndarray, design: np.ndarray
) -> float:
    alpha = float(np.exp(log_alpha))
    return nb_log_likelihood(y, mu, alpha) + cox_reid_adjustment(design, mu, alpha)


def _maximize_log_alpha(objective, bounds, max_iter, tol, stage) -> float:
    res = minimize_scalar(
        objective,
        bounds=bounds,
        method="bounded",
        options={"maxiter": int(max_iter), "xatol": tol},
    )
    if not res.success or not np.isfinite(res.x):
        raise FitDivergenceError(None, stage, f"optimizer failed: {res.message}")
    return float(res.x)


def gene_wise_dispersion(
    y: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    min_disp: float = MIN_DISP,
    max_disp: float = 10.0,
    max_iter: int = 100,
    tol: float = 1e-6,
    beta_tol: float = 1e-8,
) -> Tuple[float, np.ndarray]:
    """
    Maximum Cox-Reid adjusted likelihood dispersion of one gene.

    Returns
    -------
    tuple
        (dispersion, fitted means used for the profile likelihood)

    Raises
    ------
    FitDivergenceError
        If the mean model or the dispersion optimization does not converge.
    """
    alpha_init = float(
        np.clip(initial_dispersion(y, size_factors, design), min_disp, max_disp)
    )
    fit = fit_nb_glm(
        y,
        size_factors,
        design,
        alpha_init,
        max_iter=max_iter,
        tol=beta_tol,
        stage="dispersion",
    )
    mu = fit.mu

    def objective(log_alpha):
        return -cox_reid_log_likelihood(log_alpha, y, mu, design)

    log_alpha = _maximize_log_alpha(
        objective, _log_alpha_bounds(min_disp, max_disp), max_iter, tol, "dispersion"
    )
    return float(np.clip(np.exp(log_alpha), min_disp, max_disp)), mu


def map_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    log_trend: float,
    design: np.ndarray,
    prior_variance: float,
    min_disp: float = MIN_DISP,
    max_disp: float = 10.0,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> float:
    """Posterior mode of the dispersion under a log-normal prior on the trend."""

    def objective(log_alpha):
        log_prior = -((log_alpha - log_trend) ** 2) / (2.0 * prior_variance)
        return -(cox_reid_log_likelihood(log_alpha, y, mu, design) + log_prior)

    log_alpha = _maximize_log_alpha(
        objective, _log_alpha_bounds(min_disp, max_disp), max_iter, tol, "dispersion"
    )
    return float(np.clip(np.exp(log_alpha), min_disp, max_disp))


def _gamma_identity_fit(
    inv_means: np.ndarray, disps: np.ndarray, start: np.ndarray, max_iter: int = 25
) -> Optional[np.ndarray]:
    # gamma family GLM with identity link, fitted by IRLS
    x = np.column_stack([np.ones_like(inv_means), inv_means])
    coefs = start
    for _ in range(max_iter):
        fitted = x @ coefs
        if np.any(fitted <= 0):
            return None
        xtw = x.T / fitted**2
        try:
            new = np.linalg.solve(xtw @ x, xtw @ disps)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(new)):
            return None
        if np.allclose(new, coefs, rtol=1e-8, atol=0.0):
            return new
        coefs = new
    return coefs


def fit_parametric_trend(
    means: np.ndarray, disps: np.ndarray, max_outer: int = 10
) -> Optional[DispersionTrend]:
    """
    Fit ``disp = asympt_disp + extra_pois / mean``.

    Genes whose dispersion ratio to the current fit leaves (1e-4, 15) are
    dropped and the fit repeated until the coefficients settle. Returns None
    if the fit does not settle or yields non-positive coefficients.
    """
    means = np.asarray(means, dtype=float)
    disps = np.asarray(disps, dtype=float)
    coefs = np.array([0.1, 1.0])
    for _ in range(max_outer):
        ratio = disps / (coefs[0] + coefs[1] / means)
        keep = (ratio > 1e-4) & (ratio < 15.0)
        if int(keep.sum()) < 3:
            return None
        new = _gamma_identity_fit(1.0 / means[keep], disps[keep], coefs)
        if new is None or np.any(new <= 0):
            return None
        converged = np.sum(np.log(new / coefs) ** 2) < 1e-6
        coefs = new
        if converged:
            return DispersionTrend("parametric", float(coefs[0]), float(coefs[1]))
    return None


def fit_dispersion_trend(
    base_mean: np.ndarray,
    gene_disp: np.ndarray,
    min_disp: float = MIN_DISP,
    fit_type: str = "parametric",
) -> Optional[DispersionTrend]:
    """
    Fit the mean-dispersion trend on genes above the dispersion floor.

    Parameters
    ----------
    base_mean : np.ndarray
        Mean normalized count per gene.
    gene_disp : np.ndarray
        Gene-wise dispersion estimates.
    min_disp : float
        Dispersion floor; genes within two orders of magnitude are ignored.
    fit_type : str
        "parametric" or "mean". A failed parametric fit falls back to the
        trimmed mean of the gene-wise estimates.

    Returns
    -------
    DispersionTrend or None
        None if no gene is usable for fitting.
    """
    if fit_type not in ("parametric", "mean"):
        raise ValueError(f"Unknown dispersion fit type: {fit_type}")
    use = np.asarray(gene_disp) >= MIN_DISP_FACTOR * min_disp
    if not np.any(use):
        return None
    if fit_type == "parametric":
        trend = fit_parametric_trend(
            np.asarray(base_mean)[use], np.asarray(gene_disp)[use]
        )
        if trend is not None:
            return trend
        warnings.warn(
            "Parametric dispersion trend did not converge, "
            "using the mean of gene-wise estimates instead"
        )
    return DispersionTrend("mean", float(trim_mean(np.asarray(gene_disp)[use], 0.001)))


def dispersion_prior_variance(
    log_residuals: np.ndarray, residual_df: int
) -> Tuple[float, float]:
    """
    Variance of log dispersion residuals and the derived prior variance.

    The expected sampling variance of a log dispersion estimate,
    trigamma(residual_df / 2), is subtracted from the observed residual
    variance (normal-scaled MAD squared); the prior variance is floored at
    0.25.

    Returns
    -------
    tuple
        (residual variance, prior variance)
    """
    if len(log_residuals) == 0:
        return 0.0, MIN_PRIOR_VAR
    var_log = float(median_abs_deviation(log_residuals, scale="normal") ** 2)
    expected = float(polygamma(1, residual_df / 2.0))
    return var_log, max(var_log - expected, MIN_PRIOR_VAR)


def dispersion_outliers(
    gene_disp: np.ndarray,
    disp_fit: np.ndarray,
    var_log: float,
    prior_variance: float,
    outlier_sd: float = 2.0,
) -> np.ndarray:
    """
    Flag genes whose log gene-wise dispersion lies more than ``outlier_sd``
    residual standard deviations above the log trend.

    The residual variance is floored at the prior variance, so a degenerate
    residual spread (e.g. a single gene above the floor) does not turn every
    gene above the trend into an outlier.
    """
    sd = np.sqrt(max(var_log, prior_variance))
    return np.log(gene_disp) > np.log(disp_fit) + outlier_sd * sd


def estimate_dispersions(
    counts: DataFrame,
    size_factors: Series,
    design: DataFrame,
    min_disp: float = MIN_DISP,
    outlier_sd: float = 2.0,
    fit_type: str = "parametric",
    max_iter: int = 100,
    tol: float = 1e-6,
    beta_tol: float = 1e-8,
    n_jobs: int = 1,
) -> DispersionEstimates:
    """
    Estimate shrunken dispersions for every gene of a count matrix.

    Parameters
    ----------
    counts : DataFrame
        Genes x samples counts without all-zero genes.
    size_factors : pd.Series
        Size factors per sample.
    design : DataFrame
        Full design matrix (samples x coefficients).
    min_disp : float
        Lower bound on dispersions.
    outlier_sd : float
        Genes whose log gene-wise estimate exceeds the log trend by more
        than ``outlier_sd`` residual standard deviations keep their
        gene-wise estimate.
    fit_type : str
        Trend type, "parametric" or "mean".
    max_iter, tol, beta_tol : optimization controls.
    n_jobs : int
        joblib workers for the per-gene maps.

    Returns
    -------
    DispersionEstimates
    """
    sf = size_factors.loc[counts.columns].to_numpy(dtype=float)
    x = design.loc[counts.columns].to_numpy(dtype=float)
    n_samples, n_coef = x.shape
    max_disp = max_dispersion(n_samples)
    values = counts.to_numpy(dtype=float)
    gene_ids = list(counts.index)

    logger.info("Estimating gene-wise dispersions for %d genes", len(gene_ids))
    gene_wise = map_genes(
        gene_wise_dispersion,
        gene_ids,
        ((row,) for row in values),
        dict(
            size_factors=sf,
            design=x,
            min_disp=min_disp,
            max_disp=max_disp,
            max_iter=max_iter,
            tol=tol,
            beta_tol=beta_tol,
        ),
        n_jobs=n_jobs,
    )
    ok, failures = split_results(gene_wise)
    if failures:
        logger.warning(
            "Dispersion estimation did not converge for %d genes", len(failures)
        )

    ok_ids = [g for g in gene_ids if g in ok]
    ok_pos = [counts.index.get_loc(g) for g in ok_ids]
    table = pd.DataFrame(index=pd.Index(ok_ids, name=counts.index.name))
    table["baseMean"] = (values[ok_pos] / sf).mean(axis=1)
    table["dispGeneEst"] = [ok[g][0] for g in ok_ids]

    trend = fit_dispersion_trend(
        table["baseMean"].to_numpy(),
        table["dispGeneEst"].to_numpy(),
        min_disp=min_disp,
        fit_type=fit_type,
    )
    if trend is None:
        if ok_ids:
            warnings.warn(
                "All gene-wise dispersion estimates are within 2 orders of "
                "magnitude of the minimum value, using them as final estimates"
            )
        table["dispFit"] = np.nan
        table["dispersion"] = table["dispGeneEst"]
        table["dispOutlier"] = False
        return DispersionEstimates(table, failures, None, float("nan"))

    logger.info(
        "Dispersion trend (%s): asymptDisp=%.4g extraPois=%.4g",
        trend.kind,
        trend.asympt_disp,
        trend.extra_pois,
    )
    disp_fit = trend(table["baseMean"].to_numpy())
    table["dispFit"] = disp_fit
    gene_disp = table["dispGeneEst"].to_numpy()
    above = gene_disp >= MIN_DISP_FACTOR * min_disp
    log_resid = np.log(gene_disp[above]) - np.log(disp_fit[above])
    var_log, prior_var = dispersion_prior_variance(log_resid, n_samples - n_coef)

    shrunk = map_genes(
        map_dispersion,
        ok_ids,
        (
            (values[pos], ok[g][1], float(np.log(fit)))
            for g, pos, fit in zip(ok_ids, ok_pos, disp_fit)
        ),
        dict(
            design=x,
            prior_variance=prior_var,
            min_disp=min_disp,
            max_disp=max_disp,
            max_iter=max_iter,
            tol=tol,
        ),
        n_jobs=n_jobs,
    )
    shrunk_ok, shrunk_failed = split_results(shrunk)

    outlier = dispersion_outliers(
        gene_disp, disp_fit, var_log, prior_var, outlier_sd
    )
    table["dispOutlier"] = outlier
    table["dispersion"] = [
        gene_disp[i] if outlier[i] else shrunk_ok.get(g, np.nan)
        for i, g in enumerate(ok_ids)
    ]
    # outliers keep their gene-wise value even if shrinkage failed
    shrink_failures = {
        g: err
        for g, err in shrunk_failed.items()
        if not outlier[ok_ids.index(g)]
    }
    if shrink_failures:
        logger.warning(
            "Dispersion shrinkage did not converge for %d genes",
            len(shrink_failures),
        )
    failures.update(shrink_failures)
    table = table.loc[table["dispersion"].notna()]
    return DispersionEstimates(table, failures, trend, prior_var)
