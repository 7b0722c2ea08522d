"""
Reliability module: retry with exponential backoff for blob store I/O.
"""

from vecgraph.reliability.retry import RetryPolicy, RetryStats, calculate_backoff, retry_result

__all__ = [
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "retry_result",
]
