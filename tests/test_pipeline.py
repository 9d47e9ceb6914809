"""
Tests for core/pipeline.py module.

End-to-end runs on a small hand-made scenario, the bundled test tables,
and a simulated negative-binomial data set with known DE genes.
"""

import pytest
import pandas as pd
import numpy as np
from pathlib import Path
from rnaseq_de.core.design import DesignSpec
from rnaseq_de.core.errors import (
    DegenerateInputError,
    FitDivergenceError,
    InvalidDesignError,
)
from rnaseq_de.core.glm import fit_nb_glm
from rnaseq_de.core.dispersion import gene_wise_dispersion
from rnaseq_de.core.lrt import RESULT_COLUMNS, benjamini_hochberg
from rnaseq_de.core.pipeline import run_lrt
from rnaseq_de.models.de_result import (
    STATUS_ALL_ZERO,
    STATUS_DISPERSION_DIVERGENCE,
    STATUS_FULL_DIVERGENCE,
    STATUS_REDUCED_DIVERGENCE,
    STATUS_TESTED,
    DEConfig,
)
from rnaseq_de.services.io import read_annotation, read_count_matrix, read_sample_table

DATA_DIR = Path(__file__).parent / "data"
N_DE = 20


@pytest.fixture
def scenario():
    """Three genes, six samples, three groups, unit size factors."""
    samples = [f"s{i}" for i in range(1, 7)]
    counts = pd.DataFrame(
        [
            [10, 10, 100, 100, 100, 100],
            [50, 50, 50, 50, 50, 50],
            [20, 20, 20, 20, 20, 20],
        ],
        index=["de_gene", "flat_gene", "low_gene"],
        columns=samples,
    )
    sample_table = pd.DataFrame(
        {"sample_id": samples, "group": ["A", "A", "B", "B", "C", "C"]}
    )
    spec = DesignSpec(factor="group", levels=("A", "B", "C"))
    size_factors = pd.Series(1.0, index=samples)
    return counts, sample_table, spec, size_factors


@pytest.fixture(scope="module")
def simulated():
    """200 genes x 9 samples; the first 20 genes are 4-fold up in group C."""
    rng = np.random.default_rng(2024)
    n_genes = 200
    groups = ["A"] * 3 + ["B"] * 3 + ["C"] * 3
    depth = np.array([0.8, 1.0, 1.2, 0.9, 1.1, 1.0, 1.3, 0.7, 1.0])
    means = np.exp(rng.uniform(np.log(50), np.log(1000), size=n_genes))
    fold = np.ones((n_genes, 9))
    fold[:N_DE, 6:] = 4.0
    mu = means[:, None] * fold * depth[None, :]
    alpha = 0.05 + 1.0 / means
    n = (1.0 / alpha)[:, None]
    values = rng.negative_binomial(n, n / (n + mu))

    samples = [f"{g}{i % 3 + 1}" for i, g in enumerate(groups)]
    genes = [f"gene{i:03d}" for i in range(n_genes)]
    counts = pd.DataFrame(values, index=genes, columns=samples)
    counts.loc["zero_gene"] = 0
    sample_table = pd.DataFrame({"sample_id": samples, "group": groups})
    spec = DesignSpec(factor="group", levels=("A", "B", "C"))
    return counts, sample_table, spec, depth


@pytest.fixture(scope="module")
def simulated_result(simulated):
    counts, sample_table, spec, _ = simulated
    return run_lrt(counts, sample_table, spec)


@pytest.mark.filterwarnings("ignore:All gene-wise dispersion estimates")
class TestScenario:
    """Test run_lrt on a hand-made three gene scenario."""

    def test_de_gene_significant(self, scenario):
        counts, sample_table, spec, sf = scenario
        result = run_lrt(counts, sample_table, spec, size_factors=sf)
        table = result.table.set_index("gene_id")

        assert result.table["gene_id"].iloc[0] == "de_gene"
        assert table.loc["de_gene", "pvalue"] < 0.01
        assert table.loc["flat_gene", "pvalue"] == pytest.approx(1.0, abs=1e-6)
        assert table.loc["de_gene", "log2FoldChange"] == pytest.approx(
            np.log2(10.0), abs=1e-4
        )

    def test_identical_counts_zero_fold_change(self, scenario):
        counts, sample_table, spec, sf = scenario
        table = run_lrt(counts, sample_table, spec, size_factors=sf).table
        table = table.set_index("gene_id")
        assert table.loc["flat_gene", "log2FoldChange"] == pytest.approx(0.0, abs=1e-6)
        assert table.loc["low_gene", "log2FoldChange"] == pytest.approx(0.0, abs=1e-6)

    def test_no_trend_warning(self, scenario):
        counts, sample_table, spec, sf = scenario
        with pytest.warns(UserWarning, match="minimum value"):
            result = run_lrt(counts, sample_table, spec, size_factors=sf)
        assert result.dispersions["dispFit"].isna().all()

    def test_idempotent(self, scenario):
        counts, sample_table, spec, sf = scenario
        first = run_lrt(counts, sample_table, spec, size_factors=sf)
        second = run_lrt(counts, sample_table, spec, size_factors=sf)
        pd.testing.assert_frame_equal(first.table, second.table)

    def test_all_zero_gene_excluded(self, scenario):
        """An all-zero gene is reported but leaves other results untouched."""
        counts, sample_table, spec, sf = scenario
        base = run_lrt(counts, sample_table, spec, size_factors=sf)
        with_zero = counts.copy()
        with_zero.loc["zero_gene"] = 0
        result = run_lrt(with_zero, sample_table, spec, size_factors=sf)

        assert "zero_gene" not in set(result.table["gene_id"])
        assert result.gene_status["zero_gene"] == STATUS_ALL_ZERO
        assert result.summary.zero_count_excluded == 1
        assert result.summary.total == 4
        pd.testing.assert_frame_equal(base.table, result.table)

    def test_contrast_selects_fold_change(self, scenario):
        counts, sample_table, _, sf = scenario
        spec = DesignSpec(factor="group", levels=("A", "B", "C"), contrast=("A", "B"))
        table = run_lrt(counts, sample_table, spec, size_factors=sf).table
        lfc = table.set_index("gene_id").loc["de_gene", "log2FoldChange"]
        assert lfc == pytest.approx(-np.log2(10.0), abs=1e-4)

    def test_annotation_join(self, scenario):
        counts, sample_table, spec, sf = scenario
        result = run_lrt(
            counts, sample_table, spec, annotation={"de_gene": "CD14"}, size_factors=sf
        )
        symbols = dict(zip(result.table["gene_id"], result.table["symbol"]))
        assert symbols["de_gene"] == "CD14"
        assert pd.isna(symbols["flat_gene"])


@pytest.mark.filterwarnings("ignore:All gene-wise dispersion estimates")
class TestTwoGroupScenario:
    """Three samples per group, one gene changing tenfold and one flat gene."""

    def test_de_and_flat_gene(self):
        samples = [f"s{i}" for i in range(1, 7)]
        counts = pd.DataFrame(
            [[10, 10, 10, 100, 100, 100], [50] * 6],
            index=["de", "flat"],
            columns=samples,
        )
        sample_table = pd.DataFrame(
            {"sample_id": samples, "group": ["A", "A", "A", "B", "B", "B"]}
        )
        spec = DesignSpec(factor="group", levels=("A", "B"))
        result = run_lrt(
            counts, sample_table, spec, size_factors=pd.Series(1.0, index=samples)
        )
        table = result.table.set_index("gene_id")

        assert result.summary.degrees_of_freedom == 1
        assert table.loc["de", "pvalue"] < 0.01
        assert table.loc["flat", "pvalue"] > 0.5
        assert table.loc["de", "log2FoldChange"] == pytest.approx(
            np.log2(10.0), abs=1e-4
        )


class TestInputErrors:
    """Run-level errors raised before any per-gene work."""

    def test_unknown_level(self, scenario):
        counts, sample_table, _, sf = scenario
        spec = DesignSpec(factor="group", levels=("A", "B"))
        with pytest.raises(InvalidDesignError):
            run_lrt(counts, sample_table, spec, size_factors=sf)

    def test_missing_factor_column(self, scenario):
        counts, sample_table, _, sf = scenario
        spec = DesignSpec(factor="tissue", levels=("x", "y"))
        with pytest.raises(InvalidDesignError):
            run_lrt(counts, sample_table, spec, size_factors=sf)

    def test_sample_mismatch(self, scenario):
        counts, sample_table, spec, sf = scenario
        with pytest.raises(InvalidDesignError):
            run_lrt(counts.drop(columns="s6"), sample_table, spec)

    def test_degenerate_size_factors(self, scenario):
        """Every gene has a zero, so no size factor can be estimated."""
        counts, sample_table, spec, _ = scenario
        counts = counts.copy()
        counts.iloc[:, 0] = 0
        with pytest.raises(DegenerateInputError):
            run_lrt(counts, sample_table, spec)

    def test_supplied_size_factors_missing_sample(self, scenario):
        counts, sample_table, spec, sf = scenario
        with pytest.raises(ValueError, match="Size factors missing"):
            run_lrt(counts, sample_table, spec, size_factors=sf.drop("s1"))

    def test_negative_counts(self, scenario):
        counts, sample_table, spec, sf = scenario
        counts = counts.copy()
        counts.iloc[0, 0] = -1
        with pytest.raises(ValueError):
            run_lrt(counts, sample_table, spec, size_factors=sf)


class TestDataFiles:
    """Run the pipeline on the bundled count, sample and annotation tables."""

    @pytest.fixture
    def result(self):
        counts = read_count_matrix(DATA_DIR / "counts.tsv")
        samples = read_sample_table(DATA_DIR / "samples.tsv")
        annotation = read_annotation(DATA_DIR / "annotation.tsv")
        spec = DesignSpec(
            factor="subtype",
            levels=("classical", "intermediate", "nonclassical"),
            covariates=("source",),
        )
        return run_lrt(counts, samples, spec, annotation=annotation)

    def test_top_genes(self, result):
        """The two genes that change across subtypes rank first."""
        assert set(result.table["gene_id"].iloc[:2]) == {"ENSG01", "ENSG06"}
        table = result.table.set_index("gene_id")
        assert table.loc["ENSG01", "log2FoldChange"] < 0
        assert table.loc["ENSG06", "log2FoldChange"] > 0
        assert table.loc["ENSG06", "symbol"] == "FCGR3A"

    def test_summary(self, result):
        assert result.summary.total == 8
        assert result.summary.zero_count_excluded == 1
        assert result.summary.tested + result.summary.non_convergent_excluded == 7
        assert result.summary.degrees_of_freedom == 2
        assert result.gene_status["ENSG05"] == STATUS_ALL_ZERO
        assert result.contrast == ("nonclassical", "classical")

    def test_size_factors_follow_sample_table(self, result):
        assert list(result.size_factors.index) == [
            "nonclassical_B",
            "classical_A",
            "classical_B",
            "intermediate_A",
            "intermediate_B",
            "nonclassical_A",
        ]


class TestSimulated:
    """Run the pipeline on simulated counts with known DE genes."""

    def test_result_layout(self, simulated_result):
        table = simulated_result.table
        assert list(table.columns[: len(RESULT_COLUMNS)]) == RESULT_COLUMNS
        assert "symbol" in table.columns
        assert table["pvalue"].is_monotonic_increasing
        assert table["padj"].between(0, 1).all()

    def test_summary_and_status(self, simulated, simulated_result):
        counts, _, _, _ = simulated
        summary = simulated_result.summary
        assert summary.total == 201
        assert summary.zero_count_excluded == 1
        assert summary.tested + summary.non_convergent_excluded == 200
        assert summary.tested == len(simulated_result.table)
        assert list(simulated_result.gene_status.index) == list(counts.index)
        tested = simulated_result.gene_status == STATUS_TESTED
        assert int(tested.sum()) == summary.tested
        assert "zero_gene" in simulated_result.excluded().index

    def test_size_factors_track_depth(self, simulated, simulated_result):
        _, _, _, depth = simulated
        sf = simulated_result.size_factors.to_numpy()
        ratio = (sf / sf.mean()) / (depth / depth.mean())
        assert np.all(np.abs(ratio - 1.0) < 0.2)

    def test_detects_de_genes(self, simulated_result):
        table = simulated_result.table.set_index("gene_id")
        de_genes = [f"gene{i:03d}" for i in range(N_DE)]
        hits = table.loc[table.index.intersection(de_genes)]
        null = table.drop(index=hits.index)

        assert int((hits["padj"] < 0.1).sum()) >= 15
        assert int((null["padj"] < 0.1).sum()) <= 8
        assert 1.5 < float(hits["log2FoldChange"].median()) < 2.5

    def test_significant(self, simulated_result):
        sig = simulated_result.significant()
        assert len(sig) > 0
        assert (sig["padj"] < 0.1).all()
        assert len(simulated_result.significant(fdr=1e-300)) < len(sig)

    def test_parallel_matches_serial(self, simulated, simulated_result):
        counts, sample_table, spec, _ = simulated
        parallel = run_lrt(counts, sample_table, spec, config=DEConfig(n_jobs=2))
        pd.testing.assert_frame_equal(simulated_result.table, parallel.table)
        pd.testing.assert_frame_equal(
            simulated_result.dispersions, parallel.dispersions
        )


class TestDivergence:
    """Genes whose fits do not converge are recorded and left out of the test."""

    @pytest.fixture
    def forced_failures(self, simulated, monkeypatch):
        """Make the dispersion, full or reduced fit fail for chosen genes."""
        counts, _, _, _ = simulated
        rows = {g: counts.loc[g].to_numpy(dtype=float) for g in counts.index}
        failing = {
            "dispersion": ["gene030"],
            "full": ["gene040", "gene050"],
            "reduced": ["gene050", "gene060"],
        }

        def matches(y, stage):
            return any(np.array_equal(y, rows[g]) for g in failing[stage])

        def gene_wise(y, **kwargs):
            if matches(y, "dispersion"):
                raise FitDivergenceError(None, "dispersion", "forced")
            return gene_wise_dispersion(y, **kwargs)

        def glm(y, *args, stage="fit", **kwargs):
            if stage in failing and matches(y, stage):
                raise FitDivergenceError(None, stage, "forced")
            return fit_nb_glm(y, *args, stage=stage, **kwargs)

        monkeypatch.setattr(
            "rnaseq_de.core.dispersion.gene_wise_dispersion", gene_wise
        )
        monkeypatch.setattr("rnaseq_de.core.pipeline.fit_nb_glm", glm)
        return failing

    def test_status_and_exclusion(self, simulated, forced_failures):
        counts, sample_table, spec, _ = simulated
        result = run_lrt(counts, sample_table, spec)
        status = result.gene_status

        assert status["gene030"] == STATUS_DISPERSION_DIVERGENCE
        assert status["gene040"] == STATUS_FULL_DIVERGENCE
        assert status["gene050"] == STATUS_FULL_DIVERGENCE
        assert status["gene060"] == STATUS_REDUCED_DIVERGENCE

        failed = ["gene030", "gene040", "gene050", "gene060"]
        assert not set(failed) & set(result.table["gene_id"])
        assert set(failed) <= set(result.failures)
        assert result.summary.non_convergent_excluded == 4
        assert result.summary.tested == 196
        assert result.summary.zero_count_excluded == 1
        assert set(result.excluded().index) == set(failed) | {"zero_gene"}

    def test_padj_over_tested_genes(self, simulated, forced_failures):
        """Adjusted p-values count only the genes that were tested."""
        counts, sample_table, spec, _ = simulated
        table = run_lrt(counts, sample_table, spec).table

        assert table["pvalue"].notna().all()
        np.testing.assert_allclose(
            table["padj"].to_numpy(),
            benjamini_hochberg(table["pvalue"].to_numpy()),
        )

    def test_iteration_cap_excludes_all_genes(self, simulated):
        """An iteration cap too low for any fit leaves nothing to test."""
        counts, sample_table, spec, _ = simulated
        subset = counts.iloc[:30]
        result = run_lrt(subset, sample_table, spec, config=DEConfig(max_iter=2))

        assert (result.gene_status == STATUS_DISPERSION_DIVERGENCE).all()
        assert result.table.empty
        assert result.summary.tested == 0
        assert result.summary.non_convergent_excluded == 30
