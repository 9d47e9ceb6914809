"""
PyPipeGraph2 job wrappers for likelihood-ratio DE runs.
"""

from dataclasses import astuple
from pypipegraph2 import (
    Job,
    MultiFileGeneratingJob,
    FunctionInvariant,
    ParameterInvariant,
)
from pathlib import Path
from typing import List, Optional, Sequence, Union
from rnaseq_de.core.pipeline import run_lrt
from rnaseq_de.models.de_result import DEConfig
from rnaseq_de.services.io import de_output_files, write_de_results


def write_de_results_job(
    output_dir: Union[Path, str],
    count_file: Union[Path, str],
    sample_file: Union[Path, str],
    factor: str,
    levels: Sequence[str],
    covariates: Sequence[str] = (),
    annotation_file: Optional[Union[Path, str]] = None,
    sample_col: str = "sample_id",
    gene_col: Optional[str] = None,
    contrast: Optional[List[str]] = None,
    prefix: str = "lrt",
    config: Optional[DEConfig] = None,
    dependencies: List[Job] = [],
):
    """
    Job running the LRT on file inputs and writing all result tables.

    Parameters
    ----------
    output_dir : Path or str
        Output directory.
    count_file, sample_file : Path or str
        Count table and sample sheet.
    factor : str
        Grouping factor column.
    levels : sequence of str
        Factor levels, reference first.
    covariates : sequence of str
        Covariate columns.
    annotation_file : Path or str, optional
        gene_id/symbol table joined to the results.
    dependencies : List[Job]
        Job dependencies

    Returns
    -------
    MultiFileGeneratingJob
        Job that creates results, size factors, dispersions, gene status
        and summary files.
    """
    output_dir = Path(output_dir)
    config = config or DEConfig()
    output_files = list(de_output_files(output_dir, prefix).values())

    def __run(output_files):
        write_de_results(
            output_dir=output_dir,
            count_file=count_file,
            sample_file=sample_file,
            factor=factor,
            levels=levels,
            covariates=covariates,
            annotation_file=annotation_file,
            sample_col=sample_col,
            gene_col=gene_col,
            contrast=contrast,
            prefix=prefix,
            config=config,
        )

    job = MultiFileGeneratingJob(output_files, __run).depends_on(dependencies)
    job.depends_on(
        FunctionInvariant(run_lrt),
        ParameterInvariant(
            f"{output_dir}/{prefix}_lrt_parameters",
            (
                str(count_file),
                str(sample_file),
                factor,
                tuple(levels),
                tuple(covariates),
                str(annotation_file),
                sample_col,
                gene_col,
                tuple(contrast) if contrast else None,
                astuple(config),
            ),
        ),
    )
    for input_file in (count_file, sample_file, annotation_file):
        if input_file is not None:
            job.depends_on_file(input_file)
    return job
