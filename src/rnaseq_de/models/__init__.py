"""
Configuration and result containers.

This includes:
- DEConfig: numerical settings of a run
- DEResult: result table plus per-gene diagnostics
- RunSummary: gene counts per exclusion reason
"""

from .de_result import DEConfig, DEResult, RunSummary

__all__ = [
    "DEConfig",
    "DEResult",
    "RunSummary",
]
