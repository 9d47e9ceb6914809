"""
Tests for jobs/de_jobs.py and the typer command line.

pypipegraph2 job classes are patched so the job wrapper can be inspected
without a running graph; the captured generator function is then called
directly.
"""

import importlib
import logging
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
from typer.testing import CliRunner
from rnaseq_de.main import app
from rnaseq_de.models.de_result import DEConfig


DATA_DIR = Path(__file__).parent / "data"
COUNT_FILE = DATA_DIR / "counts.tsv"
SAMPLE_FILE = DATA_DIR / "samples.tsv"
ANNOTATION_FILE = DATA_DIR / "annotation.tsv"
LEVELS = ["classical", "intermediate", "nonclassical"]


def test_imports():
    """Job and CLI entry points are importable."""
    jobs = importlib.import_module("rnaseq_de.jobs.de_jobs")
    assert callable(jobs.write_de_results_job)

    pkg = importlib.import_module("rnaseq_de")
    for name in ["run_lrt", "DesignSpec", "DEConfig", "DEResult"]:
        assert hasattr(pkg, name)


class TestWriteDeResultsJob:
    """Test write_de_results_job wrapper."""

    @patch("rnaseq_de.jobs.de_jobs.ParameterInvariant")
    @patch("rnaseq_de.jobs.de_jobs.FunctionInvariant")
    @patch("rnaseq_de.jobs.de_jobs.MultiFileGeneratingJob")
    def test_job_definition(self, mock_job, mock_func_inv, mock_param_inv, tmp_path):
        from rnaseq_de.jobs.de_jobs import write_de_results_job

        job = MagicMock()
        mock_job.return_value.depends_on.return_value = job

        result = write_de_results_job(
            output_dir=tmp_path,
            count_file=COUNT_FILE,
            sample_file=SAMPLE_FILE,
            factor="subtype",
            levels=LEVELS,
            covariates=["source"],
            annotation_file=ANNOTATION_FILE,
            config=DEConfig(n_jobs=1),
        )

        assert result is job
        output_files, generate = mock_job.call_args[0]
        assert [Path(p).name for p in output_files] == [
            "lrt_results.tsv",
            "lrt_size_factors.tsv",
            "lrt_dispersions.tsv",
            "lrt_gene_status.tsv",
            "lrt_summary.json",
        ]
        assert mock_func_inv.called
        job_id, params = mock_param_inv.call_args[0]
        assert job_id.endswith("lrt_lrt_parameters")
        assert "subtype" in params
        assert job.depends_on_file.call_count == 3

        generate(output_files)
        for path in output_files:
            assert Path(path).exists()

    @patch("rnaseq_de.jobs.de_jobs.ParameterInvariant")
    @patch("rnaseq_de.jobs.de_jobs.FunctionInvariant")
    @patch("rnaseq_de.jobs.de_jobs.MultiFileGeneratingJob")
    def test_parameters_follow_config(
        self, mock_job, mock_func_inv, mock_param_inv, tmp_path
    ):
        """Changing a numerical setting changes the parameter invariant."""
        from rnaseq_de.jobs.de_jobs import write_de_results_job

        params = []
        for config in (DEConfig(), DEConfig(outlier_sd=3.0)):
            write_de_results_job(
                tmp_path, COUNT_FILE, SAMPLE_FILE, "subtype", LEVELS, config=config
            )
            params.append(mock_param_inv.call_args[0][1])
        assert params[0] != params[1]


class TestCli:
    """Test the typer application."""

    @pytest.fixture(autouse=True)
    def reset_logger(self):
        yield
        logging.getLogger("rnaseq_de").handlers.clear()

    def test_info(self):
        result = CliRunner().invoke(app, ["info"])
        assert result.exit_code == 0
        assert "Dispersion trend" in result.output

    def test_run(self, tmp_path):
        args = [
            "run",
            str(COUNT_FILE),
            str(SAMPLE_FILE),
            str(tmp_path),
            "--factor",
            "subtype",
            "--covariate",
            "source",
            "--annotation",
            str(ANNOTATION_FILE),
            "--prefix",
            "cli",
        ]
        for level in LEVELS:
            args += ["--level", level]
        result = CliRunner().invoke(app, args)

        assert result.exit_code == 0, result.output
        assert (tmp_path / "cli_results.tsv").exists()
        assert "summary:" in result.output

    def test_run_invalid_level(self, tmp_path):
        args = [
            "run",
            str(COUNT_FILE),
            str(SAMPLE_FILE),
            str(tmp_path),
            "--factor",
            "subtype",
            "--level",
            "classical",
            "--level",
            "intermediate",
        ]
        result = CliRunner().invoke(app, args)
        assert result.exit_code != 0
