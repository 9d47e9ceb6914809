import json
import logging
import pandas as pd
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
from pandas import DataFrame

from rnaseq_de.core.counts import validate_count_matrix
from rnaseq_de.core.design import DesignSpec
from rnaseq_de.core.pipeline import run_lrt
from rnaseq_de.core.results import prepare_annotation
from rnaseq_de.models.de_result import DEConfig, DEResult


def setup_logger(
    log_path: Optional[Union[Path, str]] = None,
    logger_name: str = "rnaseq_de",
    level: int = logging.INFO,
) -> logging.Logger:
    """
    Configure the package logger with a stream handler and optional file.

    Core modules log to children of ``rnaseq_de`` so their messages end up
    here.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def read_dataframe(path: Union[str, Path], **kwargs) -> pd.DataFrame:
    """
    Read a tabular file into a pandas DataFrame based on file extension.

    Rules:
    - .csv        -> read as CSV
    - .tsv        -> read as TSV
    - .txt        -> treated as TSV
    - .xls/.xlsx  -> read as Excel
    - other       -> try TSV, raise error if that fails

    Additional keyword arguments are forwarded to the pandas reader.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"File does not exist: {path}")

    suffix = path.suffix.lower()

    try:
        if suffix == ".csv":
            return pd.read_csv(path, **kwargs)

        if suffix in {".tsv", ".txt"}:
            return pd.read_csv(path, sep="\t", **kwargs)

        if suffix in {".xls", ".xlsx"}:
            return pd.read_excel(path, **kwargs)

        # Fallback: try TSV for unknown extensions
        try:
            return pd.read_csv(path, sep="\t", **kwargs)
        except Exception as exc:
            raise ValueError(
                f"Unsupported file extension '{suffix}'. "
                "Tried to read as TSV but failed."
            ) from exc

    except Exception as exc:
        raise RuntimeError(f"Failed to read file '{path}': {exc}") from exc


def read_count_matrix(
    path: Union[str, Path], gene_col: Optional[str] = None
) -> DataFrame:
    """
    Read a gene x sample count table.

    Parameters
    ----------
    path : str or Path
        Count table, one row per gene.
    gene_col : str, optional
        Gene id column. Defaults to the first column.

    Returns
    -------
    DataFrame
        Integer counts indexed by gene id (str), samples as columns.
        All-zero genes are kept; the pipeline records them as excluded.
    """
    df = read_dataframe(path)
    gene_col = df.columns[0] if gene_col is None else gene_col
    if gene_col not in df.columns:
        raise ValueError(f"Gene column '{gene_col}' not found in count table")
    df = df.set_index(gene_col)
    df.index = df.index.astype(str)
    df.index.name = "gene_id"
    df.columns = [str(c) for c in df.columns]
    if df.shape[1] == 0:
        raise ValueError("No sample columns found in count table")
    return validate_count_matrix(df)


def read_sample_table(
    path: Union[str, Path], sample_col: str = "sample_id"
) -> DataFrame:
    """Read a sample sheet, all columns as strings."""
    df = read_dataframe(path, dtype=str)
    if sample_col not in df.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in sample table")
    return df


def read_annotation(
    path: Union[str, Path], gene_col: str = "gene_id", symbol_col: str = "symbol"
) -> DataFrame:
    """Read a gene annotation table into a frame indexed by gene id."""
    df = read_dataframe(path, dtype={gene_col: str, symbol_col: str})
    return prepare_annotation(df, gene_col=gene_col, symbol_col=symbol_col)


def save_de_result(
    result: DEResult,
    output_dir: Union[Path, str],
    prefix: str = "lrt",
) -> Dict[str, Path]:
    """
    Write all tables of a DEResult to ``output_dir``.

    Returns
    -------
    dict
        Mapping of table name to written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = de_output_files(output_dir, prefix)

    result.table.to_csv(paths["results"], sep="\t", index=False)
    result.size_factors.rename_axis("sample_id").to_frame().to_csv(
        paths["size_factors"], sep="\t"
    )
    result.dispersions.rename_axis("gene_id").to_csv(paths["dispersions"], sep="\t")
    result.gene_status.rename_axis("gene_id").to_frame().to_csv(
        paths["gene_status"], sep="\t"
    )
    summary = result.summary.to_dict()
    summary["contrast"] = list(result.contrast)
    with open(paths["summary"], "w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2)
    return paths


def de_output_files(output_dir: Union[Path, str], prefix: str = "lrt") -> Dict[str, Path]:
    output_dir = Path(output_dir)
    return {
        "results": output_dir / f"{prefix}_results.tsv",
        "size_factors": output_dir / f"{prefix}_size_factors.tsv",
        "dispersions": output_dir / f"{prefix}_dispersions.tsv",
        "gene_status": output_dir / f"{prefix}_gene_status.tsv",
        "summary": output_dir / f"{prefix}_summary.json",
    }


def write_de_results(
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
) -> Dict[str, Path]:
    """
    Read inputs from files, run the LRT and write the result tables.

    Parameters
    ----------
    output_dir : Path or str
        Output directory, created if missing.
    count_file : Path or str
        Gene x sample count table.
    sample_file : Path or str
        Sample sheet with ``sample_col``, ``factor`` and covariate columns.
    factor : str
        Grouping factor column.
    levels : sequence of str
        Factor levels, reference first.
    covariates : sequence of str
        Covariate columns.
    annotation_file : Path or str, optional
        Table with gene_id and symbol columns.
    contrast : list of str, optional
        [numerator, denominator] for the log2 fold change.
    prefix : str
        Filename prefix.

    Returns
    -------
    dict
        Written files (see ``de_output_files``).
    """
    counts = read_count_matrix(count_file, gene_col=gene_col)
    samples = read_sample_table(sample_file, sample_col=sample_col)
    annotation = read_annotation(annotation_file) if annotation_file else None
    spec = DesignSpec(
        factor=factor,
        levels=tuple(levels),
        covariates=tuple(covariates),
        contrast=tuple(contrast) if contrast else None,
        sample_col=sample_col,
    )
    result = run_lrt(counts, samples, spec, annotation=annotation, config=config)
    return save_de_result(result, output_dir, prefix=prefix)
