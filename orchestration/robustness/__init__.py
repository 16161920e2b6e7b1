"""
Robustness Module
=================
Loss-based outlier detection and Byzantine trimming.
"""

from .filter import FilterResult, RobustnessFilter

__all__ = [
    "FilterResult",
    "RobustnessFilter",
]
