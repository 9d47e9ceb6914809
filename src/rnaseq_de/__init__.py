"""
rnaseq-de – negative-binomial GLM differential expression.

This package provides:
- core
- models
- services
- jobs
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("rnaseq-de")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.1.0"


from .core.design import DesignSpec
from .core.errors import (
    DegenerateInputError,
    FitDivergenceError,
    InvalidDesignError,
)
from .core.pipeline import run_lrt
from .models.de_result import DEConfig, DEResult

__all__ = [
    "DesignSpec",
    "DEConfig",
    "DEResult",
    "run_lrt",
    "DegenerateInputError",
    "FitDivergenceError",
    "InvalidDesignError",
]
