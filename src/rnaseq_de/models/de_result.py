"""
Configuration and result containers for likelihood-ratio DE runs.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

import pandas as pd

# per-gene status values
STATUS_TESTED = "tested"
STATUS_ALL_ZERO = "all_zero"
STATUS_DISPERSION_DIVERGENCE = "dispersion_divergence"
STATUS_FULL_DIVERGENCE = "full_fit_divergence"
STATUS_REDUCED_DIVERGENCE = "reduced_fit_divergence"


@dataclass(frozen=True)
class DEConfig:
    # Dispersion estimation
    min_disp: float = 1e-8
    outlier_sd: float = 2.0
    fit_type: str = "parametric"  # "parametric", "mean"

    # Optimization
    max_iter: int = 100
    beta_tol: float = 1e-8
    disp_tol: float = 1e-6

    # Parallel gene maps
    n_jobs: int = 1

    # Threshold used by DEResult.significant
    fdr_threshold: float = 0.1

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "DEConfig":
        """Build a config from environment settings, then apply overrides."""
        if settings is None:
            from ..config import settings
        values = {
            name: getattr(settings, name)
            for name in cls.__dataclass_fields__
            if hasattr(settings, name)
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class RunSummary:
    """Diagnostic gene counts of one run."""

    total: int
    zero_count_excluded: int
    non_convergent_excluded: int
    tested: int
    degrees_of_freedom: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class DEResult:
    """
    Outcome of a likelihood-ratio DE run.

    - table: one row per tested gene, sorted by ascending pvalue
    - size_factors: per sample
    - dispersions: per gene with a dispersion estimate
    - gene_status: per input gene, one of the STATUS_* values
    - summary: gene counts per exclusion reason
    """

    table: pd.DataFrame
    size_factors: pd.Series
    dispersions: pd.DataFrame
    gene_status: pd.Series
    summary: RunSummary
    contrast: tuple = ()
    failures: Dict[str, str] = field(default_factory=dict)
    config: Optional[DEConfig] = None

    def significant(self, fdr: Optional[float] = None) -> pd.DataFrame:
        """Rows with padj below ``fdr`` (default: DEConfig.fdr_threshold)."""
        if fdr is None:
            fdr = (self.config or DEConfig()).fdr_threshold
        return self.table.loc[self.table["padj"] < fdr].reset_index(drop=True)

    def excluded(self) -> pd.Series:
        """Status of all genes that do not appear in the result table."""
        return self.gene_status.loc[self.gene_status != STATUS_TESTED]
