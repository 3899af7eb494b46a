"""Search Tuning Kernel: closed-loop optimizer for a search/ranking engine."""

__version__ = "0.1.0"
