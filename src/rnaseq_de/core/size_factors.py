"""
Sequencing depth normalization for gene x sample count matrices.
"""

import numpy as np
import pandas as pd
from pandas import DataFrame, Series

from .errors import DegenerateInputError


def estimate_size_factors(counts: DataFrame) -> Series:
    """
    Compute size factors using median-of-ratios.

    For each gene: compute the geometric mean across samples (the pseudo
    reference). For each sample: compute ratios to the geometric mean and
    take the median. Genes with a zero count in any sample have a zero
    geometric mean and are excluded from the ratios.

    Parameters
    ----------
    counts : DataFrame
        Genes x samples count matrix.

    Returns
    -------
    pd.Series
        Size factors indexed by sample name.

    Raises
    ------
    DegenerateInputError
        If fewer than two samples are given or fewer than two genes have a
        non-zero geometric mean.
    """
    if counts.shape[1] < 2:
        raise DegenerateInputError(
            f"At least 2 samples are required, got {counts.shape[1]}"
        )
    values = counts.to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        log_counts = np.log(values)
    log_geo_means = log_counts.mean(axis=1)
    usable = np.isfinite(log_geo_means)
    if int(usable.sum()) < 2:
        raise DegenerateInputError(
            f"At least 2 genes with a non-zero geometric mean are required, "
            f"got {int(usable.sum())}"
        )
    log_ratios = log_counts[usable] - log_geo_means[usable, np.newaxis]
    size_factors = np.exp(np.median(log_ratios, axis=0))
    return pd.Series(size_factors, index=counts.columns, name="size_factor")


def normalize_counts(counts: DataFrame, size_factors: Series) -> DataFrame:
    """
    Apply size factors to normalize counts.

    norm_counts = counts / size_factor

    Parameters
    ----------
    counts : DataFrame
        Raw genes x samples count matrix.
    size_factors : pd.Series
        Size factors per sample.

    Returns
    -------
    DataFrame
        Normalized count matrix.
    """
    return counts.div(size_factors.loc[counts.columns], axis=1)


def base_means(counts: DataFrame, size_factors: Series) -> Series:
    """Mean of the normalized counts per gene."""
    return normalize_counts(counts, size_factors).mean(axis=1).rename("baseMean")
