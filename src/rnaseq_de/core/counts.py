"""
Count matrix validation and filtering.
"""

from typing import Tuple

import numpy as np
import pandas as pd
from pandas import DataFrame


def validate_count_matrix(counts: DataFrame) -> DataFrame:
    """
    Check a genes x samples count matrix and return it as int64.

    Raises
    ------
    TypeError
        If counts is not a DataFrame.
    ValueError
        For duplicated gene or sample ids, non-numeric, non-finite,
        negative or non-integer values.
    """
    if not isinstance(counts, pd.DataFrame):
        raise TypeError("counts must be a pandas DataFrame")
    if counts.index.has_duplicates:
        dups = sorted(map(str, counts.index[counts.index.duplicated()].unique()))
        raise ValueError(f"Duplicated gene ids in count matrix: {dups[:10]}")
    if counts.columns.has_duplicates:
        raise ValueError("Duplicated sample ids in count matrix")
    try:
        values = counts.to_numpy(dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Count matrix contains non-numeric values: {exc}") from exc
    if not np.all(np.isfinite(values)):
        raise ValueError("Count matrix contains missing or infinite values")
    if np.any(values < 0):
        raise ValueError("Count matrix contains negative values")
    if np.any(values != np.round(values)):
        raise ValueError("Count matrix contains non-integer values")
    return pd.DataFrame(
        values.astype(np.int64), index=counts.index, columns=counts.columns
    )


def drop_zero_count_genes(counts: DataFrame) -> Tuple[DataFrame, pd.Index]:
    """
    Remove genes without any count.

    Returns
    -------
    tuple
        (filtered counts, index of removed genes)
    """
    zero = (counts == 0).all(axis=1)
    return counts.loc[~zero], counts.index[zero]
