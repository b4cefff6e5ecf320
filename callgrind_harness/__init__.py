"""Deterministic benchmarking from valgrind profiler output.

This package parses callgrind, cachegrind and DHAT output files, aggregates the
per-process/thread/part costs into one total per benchmark, compares it against
a stored baseline with configurable regression limits and folds callgrind call
graphs into flamegraph stacks.
"""

__version__ = "0.1.0"
