"""Data cube group-by view benchmark and dense linear-algebra timing runs."""

__version__ = "0.1.0"
__all__ = [
    "adcgen",
    "blasbench",
    "cli",
    "jobs",
    "rbtree",
    "records",
    "viewbuild",
    "viewcntl",
    "viewsizes",
]