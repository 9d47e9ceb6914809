"""
Error taxonomy for the differential expression core.

Run-level errors (DegenerateInputError, InvalidDesignError) abort a run
before any per-gene work. FitDivergenceError is raised per gene and is
captured by the gene map so a single failing gene never aborts the batch.
"""


class DifferentialExpressionError(Exception):
    """Base class for all errors raised by rnaseq_de."""


class DegenerateInputError(DifferentialExpressionError):
    """Not enough genes or samples to estimate size factors."""


class InvalidDesignError(DifferentialExpressionError):
    """Malformed full/reduced design pair or sample table."""


class FitDivergenceError(DifferentialExpressionError):
    """
    Per-gene optimization failed to converge.

    Parameters
    ----------
    gene_id : str
        Gene the failure belongs to (may be None while fitting anonymously).
    stage : str
        Pipeline stage, one of "dispersion", "full", "reduced".
    detail : str
        Human readable reason.
    """

    def __init__(self, gene_id, stage: str, detail: str):
        super().__init__(gene_id, stage, detail)
        self.gene_id = gene_id
        self.stage = stage
        self.detail = detail

    def __str__(self) -> str:
        return f"gene {self.gene_id!r} ({self.stage}): {self.detail}"

    def for_gene(self, gene_id) -> "FitDivergenceError":
        """Return a copy of this error labelled with ``gene_id``."""
        return FitDivergenceError(gene_id, self.stage, self.detail)
