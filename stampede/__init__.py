"""
stampede - FCFS load and correctness harness.

Drives a coupon-issuance or order-creation endpoint with a staged population of
virtual users, classifies every response (granted, duplicate, exhausted, failure)
and reports latency percentiles, throughput and threshold verdicts.
"""

from .exceptions import StampedeConfigError, StampedeError, StampedeRunnerError

__all__ = [
    "__version__",
    "StampedeConfigError",
    "StampedeError",
    "StampedeRunnerError",
]

__version__ = "1.0.0"
