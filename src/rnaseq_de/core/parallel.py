"""Order-stable map over genes with per-gene error capture."""

from typing import Any, Callable, Dict, Iterable, Sequence, Tuple, Union

from joblib import Parallel, delayed

from .errors import FitDivergenceError


def _call_gene(
    func: Callable[..., Any],
    gene_id: str,
    gene_args: Tuple,
    shared: Dict[str, Any],
) -> Union[Any, FitDivergenceError]:
    try:
        return func(*gene_args, **shared)
    except FitDivergenceError as err:
        return err.for_gene(gene_id)


def map_genes(
    func: Callable[..., Any],
    gene_ids: Sequence[str],
    gene_args: Iterable[Tuple],
    shared: Dict[str, Any],
    n_jobs: int = 1,
) -> Dict[str, Union[Any, FitDivergenceError]]:
    """
    Apply ``func(*gene_args[i], **shared)`` to every gene.

    A FitDivergenceError raised for one gene is returned as that gene's
    value instead of propagating, other exceptions propagate. Output keys
    follow the order of ``gene_ids`` independent of scheduling.

    Parameters
    ----------
    func : callable
        Module level function (picklable for process backends).
    gene_ids : sequence of str
        Gene labels, aligned with ``gene_args``.
    gene_args : iterable of tuple
        Per-gene positional arguments.
    shared : dict
        Read-only keyword arguments shared by all genes.
    n_jobs : int
        Number of joblib workers, 1 runs serially.
    """
    gene_ids = list(gene_ids)
    tasks = zip(gene_ids, gene_args)
    if int(n_jobs) == 1 or len(gene_ids) <= 1:
        results = [_call_gene(func, g, args, shared) for g, args in tasks]
    else:
        results = Parallel(n_jobs=int(n_jobs))(
            delayed(_call_gene)(func, g, args, shared) for g, args in tasks
        )
    return dict(zip(gene_ids, results))


def split_results(
    results: Dict[str, Union[Any, FitDivergenceError]],
) -> Tuple[Dict[str, Any], Dict[str, FitDivergenceError]]:
    """Separate successful values from captured FitDivergenceErrors."""
    ok = {}
    failed = {}
    for gene_id, value in results.items():
        if isinstance(value, FitDivergenceError):
            failed[gene_id] = value
        else:
            ok[gene_id] = value
    return ok, failed
