"""
End-to-end likelihood-ratio differential expression run.

counts -> size factors -> dispersions -> full/reduced NB GLM fits -> LRT
-> annotated result table
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from pandas import DataFrame, Series

from ..models.de_result import (
    STATUS_ALL_ZERO,
    STATUS_DISPERSION_DIVERGENCE,
    STATUS_FULL_DIVERGENCE,
    STATUS_REDUCED_DIVERGENCE,
    STATUS_TESTED,
    DEConfig,
    DEResult,
    RunSummary,
)
from .counts import drop_zero_count_genes, validate_count_matrix
from .design import DesignSpec, align_samples, build_design_pair
from .dispersion import estimate_dispersions
from .glm import FitResult, fit_nb_glm
from .lrt import likelihood_ratio_test
from .parallel import map_genes, split_results
from .results import AnnotationLike, build_result_table
from .size_factors import base_means, estimate_size_factors

logger = logging.getLogger(__name__)


def _fit_gene(
    y: np.ndarray,
    alpha: float,
    size_factors: np.ndarray,
    design: np.ndarray,
    max_iter: int,
    tol: float,
    stage: str,
) -> FitResult:
    return fit_nb_glm(
        y, size_factors, design, alpha, max_iter=max_iter, tol=tol, stage=stage
    )


def _check_size_factors(size_factors: Series, samples: pd.Index) -> Series:
    sf = pd.Series(size_factors, dtype=float)
    sf.index = sf.index.astype(str)
    missing = sorted(set(samples) - set(sf.index))
    if missing:
        raise ValueError(f"Size factors missing for samples: {missing}")
    sf = sf.loc[samples]
    if not np.all(np.isfinite(sf)) or np.any(sf <= 0):
        raise ValueError("Size factors must be positive and finite")
    return sf.rename("size_factor")


def run_lrt(
    counts: DataFrame,
    sample_table: DataFrame,
    design: DesignSpec,
    annotation: Optional[AnnotationLike] = None,
    config: Optional[DEConfig] = None,
    size_factors: Optional[Series] = None,
) -> DEResult:
    """
    Run the likelihood-ratio test of ``covariates + factor`` vs ``covariates``.

    Parameters
    ----------
    counts : DataFrame
        Genes x samples raw counts.
    sample_table : DataFrame
        One row per sample with the sample id, factor and covariate columns.
    design : DesignSpec
        Factor, level order, covariates and fold-change contrast.
    annotation : DataFrame, Series or dict, optional
        gene id -> symbol (and extra columns) mapping joined to the output.
    config : DEConfig, optional
        Numerical settings, defaults to ``DEConfig()``.
    size_factors : pd.Series, optional
        Precomputed size factors per sample; estimated by median-of-ratios
        if omitted.

    Returns
    -------
    DEResult
        Result table sorted by pvalue plus per-gene diagnostics.

    Raises
    ------
    InvalidDesignError
        Malformed design or sample table (before any per-gene work).
    DegenerateInputError
        Too few genes or samples to estimate size factors.
    """
    config = config or DEConfig()
    counts = validate_count_matrix(counts)
    counts.index = counts.index.astype(str)
    counts, table = align_samples(counts, sample_table, design.sample_col)

    logger.info("[1/6] Building full and reduced designs")
    pair = build_design_pair(table, design)
    logger.info(
        "Full design: %s | reduced design: %s | df=%d",
        list(pair.full.columns),
        list(pair.reduced.columns),
        pair.df,
    )

    status = pd.Series(STATUS_TESTED, index=counts.index, name="status")
    total = int(counts.shape[0])

    logger.info("[2/6] Removing genes without counts")
    counts, zero_genes = drop_zero_count_genes(counts)
    status.loc[zero_genes] = STATUS_ALL_ZERO
    logger.info("Removed %d of %d genes with zero counts", len(zero_genes), total)

    logger.info("[3/6] Estimating size factors")
    if size_factors is None:
        sf = estimate_size_factors(counts)
    else:
        sf = _check_size_factors(size_factors, counts.columns)
    base_mean = base_means(counts, sf)

    logger.info("[4/6] Estimating dispersions")
    dispersions = estimate_dispersions(
        counts,
        sf,
        pair.full,
        min_disp=config.min_disp,
        outlier_sd=config.outlier_sd,
        fit_type=config.fit_type,
        max_iter=config.max_iter,
        tol=config.disp_tol,
        beta_tol=config.beta_tol,
        n_jobs=config.n_jobs,
    )
    status.loc[list(dispersions.failures)] = STATUS_DISPERSION_DIVERGENCE

    logger.info("[5/6] Fitting full and reduced models")
    genes = list(dispersions.table.index)
    values = counts.loc[genes].to_numpy(dtype=float)
    alphas = dispersions.table["dispersion"].to_numpy(dtype=float)
    sf_values = sf.to_numpy(dtype=float)
    fits = {}
    for stage, matrix in (("full", pair.full), ("reduced", pair.reduced)):
        fits[stage] = map_genes(
            _fit_gene,
            genes,
            zip(values, alphas),
            dict(
                size_factors=sf_values,
                design=matrix.to_numpy(dtype=float),
                max_iter=config.max_iter,
                tol=config.beta_tol,
                stage=stage,
            ),
            n_jobs=config.n_jobs,
        )
    full_ok, full_failed = split_results(fits["full"])
    reduced_ok, reduced_failed = split_results(fits["reduced"])
    status.loc[list(full_failed)] = STATUS_FULL_DIVERGENCE
    status.loc[[g for g in reduced_failed if g not in full_failed]] = (
        STATUS_REDUCED_DIVERGENCE
    )
    if full_failed or reduced_failed:
        logger.warning(
            "GLM fits did not converge: %d full, %d reduced",
            len(full_failed),
            len(reduced_failed),
        )

    logger.info("[6/6] Likelihood-ratio test (df=%d)", pair.df)
    tests = likelihood_ratio_test(
        full_ok,
        reduced_ok,
        pair.df,
        contrast=pair.contrast_vector,
        base_mean=base_mean,
    )
    result_table = build_result_table(tests, annotation)

    failures = {}
    for errors in (dispersions.failures, reduced_failed, full_failed):
        failures.update({gene: str(err) for gene, err in errors.items()})
    tested = int(len(result_table))
    summary = RunSummary(
        total=total,
        zero_count_excluded=int(len(zero_genes)),
        non_convergent_excluded=total - int(len(zero_genes)) - tested,
        tested=tested,
        degrees_of_freedom=pair.df,
    )
    logger.info(
        "Tested %d genes (%d zero-count, %d non-convergent excluded)",
        summary.tested,
        summary.zero_count_excluded,
        summary.non_convergent_excluded,
    )
    return DEResult(
        table=result_table,
        size_factors=sf,
        dispersions=dispersions.table,
        gene_status=status,
        summary=summary,
        contrast=pair.contrast,
        failures=failures,
        config=config,
    )
