"""
Join test results with gene annotation and order them for output.
"""

import warnings
from typing import Dict, Optional, Union

import pandas as pd
from pandas import DataFrame, Series

AnnotationLike = Union[DataFrame, Series, Dict[str, Optional[str]]]


def prepare_annotation(
    annotation: AnnotationLike,
    gene_col: str = "gene_id",
    symbol_col: str = "symbol",
) -> DataFrame:
    """
    Bring an annotation mapping into a frame indexed by gene id.

    Parameters
    ----------
    annotation : DataFrame, Series or dict
        gene id -> symbol mapping. A DataFrame may carry the gene id as
        ``gene_col`` column or as index, plus a ``symbol_col`` column and
        any additional columns (e.g. a numeric entrez id).
    gene_col : str
        Gene id column name.
    symbol_col : str
        Symbol column name.

    Returns
    -------
    DataFrame
        One row per gene id with a ``symbol`` column first.
    """
    if isinstance(annotation, dict):
        annotation = pd.Series(annotation, dtype=object)
    if isinstance(annotation, pd.Series):
        frame = annotation.rename("symbol").to_frame()
    elif isinstance(annotation, pd.DataFrame):
        frame = annotation.copy()
        if gene_col in frame.columns:
            frame = frame.set_index(gene_col)
        if symbol_col not in frame.columns:
            raise ValueError(f"Annotation has no '{symbol_col}' column")
        frame = frame.rename(columns={symbol_col: "symbol"})
    else:
        raise TypeError("annotation must be a DataFrame, Series or dict")

    frame.index = frame.index.astype(str)
    frame.index.name = "gene_id"
    if frame.index.has_duplicates:
        warnings.warn(
            f"{int(frame.index.duplicated().sum())} duplicated gene ids in "
            "annotation, keeping the first entry"
        )
        frame = frame[~frame.index.duplicated(keep="first")]
    other = [c for c in frame.columns if c != "symbol"]
    return frame[["symbol"] + other]


def build_result_table(
    tests: DataFrame,
    annotation: Optional[AnnotationLike] = None,
    gene_col: str = "gene_id",
    symbol_col: str = "symbol",
) -> DataFrame:
    """
    Merge per-gene test results with an annotation and sort by p-value.

    Genes without annotation keep a null symbol. No statistics are
    computed here.

    Parameters
    ----------
    tests : DataFrame
        Output of ``likelihood_ratio_test``.
    annotation : DataFrame, Series or dict, optional
        See ``prepare_annotation``.

    Returns
    -------
    DataFrame
        Test columns, ``symbol`` and extra annotation columns, one row per
        tested gene, sorted by ascending pvalue.
    """
    table = tests.copy()
    table["gene_id"] = table["gene_id"].astype(str)
    if annotation is None:
        table["symbol"] = None
    else:
        annot = prepare_annotation(annotation, gene_col=gene_col, symbol_col=symbol_col)
        annot = annot.drop(
            columns=[c for c in annot.columns if c in table.columns and c != "symbol"]
        )
        table = table.merge(annot, left_on="gene_id", right_index=True, how="left")
    return table.sort_values("pvalue", kind="mergesort").reset_index(drop=True)
