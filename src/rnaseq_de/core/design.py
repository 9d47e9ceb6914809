"""
Design matrices for nested negative-binomial GLMs.

The full design encodes the covariates plus the grouping factor of
interest, the reduced design encodes the covariates only. Categorical
terms are treatment coded against their first level, so the level order
supplied by the caller decides the reference group.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pandas import DataFrame

from .errors import InvalidDesignError

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class DesignSpec:
    """
    Description of the full/reduced model pair.

    Parameters
    ----------
    factor : str
        Sample table column holding the grouping factor of interest.
    levels : sequence of str
        Explicit level ordering of the factor, the first level is the
        reference.
    covariates : sequence of str
        Sample table columns used as categorical covariates (e.g. batch).
    covariate_levels : dict, optional
        Explicit level ordering per covariate. Covariates not listed use
        their pandas categorical order or sorted unique values.
    contrast : tuple of str, optional
        (numerator, denominator) levels used for the reported
        log2FoldChange. Defaults to last level vs reference level.
    sample_col : str
        Sample id column of the sample table.
    """

    factor: str
    levels: Tuple[str, ...]
    covariates: Tuple[str, ...] = ()
    covariate_levels: Optional[Dict[str, Tuple[str, ...]]] = None
    contrast: Optional[Tuple[str, str]] = None
    sample_col: str = "sample_id"

    def __post_init__(self):
        covariates = self.covariates
        if isinstance(covariates, str):
            covariates = (covariates,)
        object.__setattr__(self, "levels", tuple(str(x) for x in self.levels))
        object.__setattr__(self, "covariates", tuple(covariates))
        if self.contrast is not None:
            object.__setattr__(
                self, "contrast", tuple(str(x) for x in self.contrast)
            )

    @property
    def reference_level(self) -> str:
        return self.levels[0]


@dataclass(frozen=True)
class DesignPair:
    """Full and reduced model matrices sharing the sample index."""

    full: DataFrame
    reduced: DataFrame
    df: int
    factor_columns: Tuple[str, ...]
    contrast: Tuple[str, str]
    spec: DesignSpec

    @property
    def n_samples(self) -> int:
        return int(self.full.shape[0])

    @property
    def residual_df(self) -> int:
        return int(self.full.shape[0] - self.full.shape[1])

    @property
    def contrast_vector(self) -> np.ndarray:
        """Weights on the full-model coefficients for the fold change."""
        return contrast_vector(self.full, self.spec.factor, *self.contrast)


def term_column(term: str, level: str) -> str:
    return f"{term}[T.{level}]"


def resolve_levels(
    sample_table: DataFrame,
    column: str,
    levels: Optional[Sequence[str]] = None,
) -> List[str]:
    """
    Determine the level ordering of a categorical sample table column.

    Raises
    ------
    InvalidDesignError
        If the column is missing, levels are duplicated, or a sample
        carries a value that is not one of the levels.
    """
    if column not in sample_table.columns:
        raise InvalidDesignError(f"Column '{column}' not found in sample table")
    values = sample_table[column].astype(str)
    if levels is None:
        col = sample_table[column]
        if isinstance(col.dtype, pd.CategoricalDtype):
            levels = [str(c) for c in col.cat.categories]
        else:
            levels = sorted(values.unique())
    levels = [str(level) for level in levels]
    if len(set(levels)) != len(levels):
        raise InvalidDesignError(f"Duplicated levels for '{column}': {levels}")
    unknown = sorted(set(values) - set(levels))
    if unknown:
        raise InvalidDesignError(
            f"Column '{column}' has values outside its levels {levels}: {unknown}"
        )
    return levels


def model_matrix(
    sample_table: DataFrame,
    terms: Sequence[str],
    term_levels: Dict[str, List[str]],
) -> DataFrame:
    """
    Build a treatment-coded model matrix.

    Each term contributes one indicator column per non-reference level,
    named ``term[T.level]``. An intercept column is always present.
    """
    columns = {INTERCEPT: np.ones(len(sample_table), dtype=float)}
    for term in terms:
        values = sample_table[term].astype(str).to_numpy()
        for level in term_levels[term][1:]:
            columns[term_column(term, level)] = (values == level).astype(float)
    return DataFrame(columns, index=sample_table.index)


def degrees_of_freedom(full: DataFrame, reduced: DataFrame) -> int:
    """Parameter count difference between the full and reduced designs."""
    df = int(full.shape[1] - reduced.shape[1])
    if df <= 0:
        raise InvalidDesignError(
            f"Full design must have more parameters than the reduced design "
            f"(full={full.shape[1]}, reduced={reduced.shape[1]})"
        )
    return df


def check_nested(full: DataFrame, reduced: DataFrame) -> None:
    missing = [c for c in reduced.columns if c not in full.columns]
    if missing:
        raise InvalidDesignError(
            f"Reduced design is not nested in the full design: {missing}"
        )
    if not full.index.equals(reduced.index):
        raise InvalidDesignError("Full and reduced designs have different samples")


def check_full_rank(matrix: DataFrame, name: str) -> None:
    rank = int(np.linalg.matrix_rank(matrix.to_numpy(dtype=float)))
    if rank < matrix.shape[1]:
        raise InvalidDesignError(
            f"The {name} design matrix is not full rank "
            f"(rank {rank} < {matrix.shape[1]} columns); a level may be "
            "empty or confounded with another term"
        )


def contrast_vector(
    full: DataFrame, factor: str, numerator: str, denominator: str
) -> np.ndarray:
    weights = np.zeros(full.shape[1], dtype=float)
    columns = list(full.columns)
    for level, sign in ((numerator, 1.0), (denominator, -1.0)):
        name = term_column(factor, level)
        if name in columns:
            weights[columns.index(name)] += sign
    return weights


def align_samples(
    counts: DataFrame, sample_table: DataFrame, sample_col: str = "sample_id"
) -> Tuple[DataFrame, DataFrame]:
    """
    Index the sample table by sample id and order count columns to match.

    Parameters
    ----------
    counts : DataFrame
        Genes x samples count matrix.
    sample_table : DataFrame
        One row per sample. If ``sample_col`` is not a column, the index is
        taken as sample id.
    sample_col : str
        Sample id column.

    Returns
    -------
    tuple of DataFrame
        (counts with columns in sample table order, indexed sample table)
    """
    table = sample_table.copy()
    if sample_col in table.columns:
        table = table.set_index(sample_col)
    table.index = table.index.astype(str)
    if table.index.has_duplicates:
        dups = sorted(table.index[table.index.duplicated()].unique())
        raise InvalidDesignError(f"Duplicated sample ids in sample table: {dups}")
    count_ids = [str(c) for c in counts.columns]
    missing = sorted(set(table.index) - set(count_ids))
    extra = sorted(set(count_ids) - set(table.index))
    if missing or extra:
        raise InvalidDesignError(
            "Sample ids differ between count matrix and sample table "
            f"(missing from counts: {missing}, missing from sample table: {extra})"
        )
    aligned = counts.copy()
    aligned.columns = count_ids
    return aligned[list(table.index)], table


def build_design_pair(sample_table: DataFrame, spec: DesignSpec) -> DesignPair:
    """
    Build and validate the full/reduced design pair.

    Parameters
    ----------
    sample_table : DataFrame
        Sample table indexed by sample id (see ``align_samples``).
    spec : DesignSpec
        Model description.

    Returns
    -------
    DesignPair

    Raises
    ------
    InvalidDesignError
        For a factor also listed as covariate, unknown contrast levels,
        a non-positive parameter difference, rank deficient or non-nested
        matrices, or no residual degrees of freedom.
    """
    if spec.factor in spec.covariates:
        raise InvalidDesignError(
            f"Grouping factor '{spec.factor}' is also listed as a covariate"
        )
    covariate_levels = spec.covariate_levels or {}
    term_levels = {
        spec.factor: resolve_levels(sample_table, spec.factor, spec.levels)
    }
    for covariate in spec.covariates:
        term_levels[covariate] = resolve_levels(
            sample_table, covariate, covariate_levels.get(covariate)
        )

    full = model_matrix(
        sample_table, list(spec.covariates) + [spec.factor], term_levels
    )
    reduced = model_matrix(sample_table, list(spec.covariates), term_levels)

    df = degrees_of_freedom(full, reduced)
    check_nested(full, reduced)
    check_full_rank(full, "full")
    check_full_rank(reduced, "reduced")
    if full.shape[0] <= full.shape[1]:
        raise InvalidDesignError(
            f"No residual degrees of freedom: {full.shape[0]} samples for "
            f"{full.shape[1]} coefficients"
        )

    if spec.contrast is None:
        contrast = (spec.levels[-1], spec.levels[0])
    else:
        contrast = spec.contrast
        bad = [level for level in contrast if level not in spec.levels]
        if len(contrast) != 2 or bad or contrast[0] == contrast[1]:
            raise InvalidDesignError(
                f"Invalid contrast {contrast} for levels {list(spec.levels)}"
            )

    factor_columns = tuple(c for c in full.columns if c not in reduced.columns)
    return DesignPair(
        full=full,
        reduced=reduced,
        df=df,
        factor_columns=factor_columns,
        contrast=tuple(contrast),
        spec=spec,
    )
