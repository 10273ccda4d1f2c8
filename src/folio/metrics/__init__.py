"""Portfolio return metrics.

Money-weighted return (XIRR) and the benchmark comparison built on it.
"""

from .xirr import (
    CashFlow,
    calculate_xirr,
    cash_flows_from_activities,
    cash_flows_from_series,
)
from .benchmark import (
    BENCHMARK_DOW,
    BENCHMARK_NASDAQ,
    BENCHMARK_SP500,
    BenchmarkComparator,
    BenchmarkComparison,
    BenchmarkPoint,
    simulate_benchmark,
)

__all__ = [
    # XIRR
    "CashFlow",
    "calculate_xirr",
    "cash_flows_from_activities",
    "cash_flows_from_series",
    # Benchmark comparison
    "BENCHMARK_DOW",
    "BENCHMARK_NASDAQ",
    "BENCHMARK_SP500",
    "BenchmarkComparator",
    "BenchmarkComparison",
    "BenchmarkPoint",
    "simulate_benchmark",
]
