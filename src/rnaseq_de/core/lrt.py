"""
Likelihood-ratio testing of full vs reduced NB GLM fits.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd
from pandas import DataFrame, Series
from scipy.stats import chi2

from .glm import LOG2_E, FitResult

RESULT_COLUMNS = ["gene_id", "baseMean", "log2FoldChange", "stat", "pvalue", "padj"]


def likelihood_ratio_statistic(ll_full, ll_reduced) -> np.ndarray:
    """2 * (loglik_full - loglik_reduced), clipped at zero."""
    stat = 2.0 * (np.asarray(ll_full, dtype=float) - np.asarray(ll_reduced, dtype=float))
    return np.maximum(stat, 0.0)


def lrt_pvalues(stat, df: int) -> np.ndarray:
    """Upper-tail chi-squared probability with ``df`` degrees of freedom."""
    if int(df) != df or df <= 0:
        raise ValueError(f"Degrees of freedom must be a positive integer, got {df}")
    return chi2.sf(np.asarray(stat, dtype=float), int(df))


def benjamini_hochberg(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries are passed through and do not count towards the number of
    tests. Adjusted values are made monotone in the order of the raw
    p-values and clipped to [0, 1].

    Parameters
    ----------
    pvalues : array-like
        Raw p-values in [0, 1] or NaN.

    Returns
    -------
    np.ndarray
        Adjusted p-values with the input shape.
    """
    arr = np.asarray(pvalues, dtype=float)
    flat = arr.ravel()
    adjusted = np.full_like(flat, np.nan)
    finite = np.isfinite(flat)
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order] * (float(m) / np.arange(1, m + 1, dtype=float))
        ranked = np.minimum.accumulate(ranked[::-1])[::-1]
        ranked = np.clip(ranked, 0.0, 1.0)
        q = np.empty_like(ranked)
        q[order] = ranked
        adjusted[finite] = q
    return adjusted.reshape(arr.shape)


def likelihood_ratio_test(
    full_fits: Dict[str, FitResult],
    reduced_fits: Dict[str, FitResult],
    df: int,
    contrast: Optional[np.ndarray] = None,
    base_mean: Optional[Series] = None,
) -> DataFrame:
    """
    Test every gene that converged under both designs.

    Parameters
    ----------
    full_fits : dict
        gene id -> FitResult of the full design.
    reduced_fits : dict
        gene id -> FitResult of the reduced design.
    df : int
        Parameter difference between the designs.
    contrast : np.ndarray, optional
        Weights on the full-model coefficients giving the natural-log fold
        change; if omitted the last coefficient is used.
    base_mean : pd.Series, optional
        Mean normalized count per gene.

    Returns
    -------
    DataFrame
        Columns gene_id, baseMean, log2FoldChange, stat, pvalue, padj,
        sorted by ascending pvalue. Genes missing from either fit dict are
        absent, and do not enter the multiple testing correction.
    """
    if int(df) != df or df <= 0:
        raise ValueError(f"Degrees of freedom must be a positive integer, got {df}")
    genes = [g for g in full_fits if g in reduced_fits]
    ll_full = np.array([full_fits[g].log_likelihood for g in genes], dtype=float)
    ll_reduced = np.array([reduced_fits[g].log_likelihood for g in genes], dtype=float)
    stat = likelihood_ratio_statistic(ll_full, ll_reduced)
    pvalues = lrt_pvalues(stat, df)

    if genes and contrast is None:
        n_coef = len(full_fits[genes[0]].coefficients)
        contrast = np.zeros(n_coef)
        contrast[-1] = 1.0
    lfc = np.array(
        [float(contrast @ full_fits[g].coefficients) * LOG2_E for g in genes],
        dtype=float,
    )

    table = pd.DataFrame(
        {
            "gene_id": genes,
            "baseMean": (
                base_mean.reindex(genes).to_numpy(dtype=float)
                if base_mean is not None
                else np.nan
            ),
            "log2FoldChange": lfc,
            "stat": stat,
            "pvalue": pvalues,
            "padj": benjamini_hochberg(pvalues),
        },
        columns=RESULT_COLUMNS,
    )
    return table.sort_values("pvalue", kind="mergesort").reset_index(drop=True)

