"""
SGF batch conversion driver.

Runs an external conversion tool once per entry of a source folder, with a
bounded number of conversions in flight, and waits for all of them to finish.
"""

__version__ = "0.1.0"

from .main import CompletionBarrier, WorkerPool, convert, convert_async
from .models import BatchConfig, BatchSummary, ConversionResult, WorkItem

__all__ = [
    "BatchConfig",
    "BatchSummary",
    "CompletionBarrier",
    "ConversionResult",
    "WorkItem",
    "WorkerPool",
    "convert",
    "convert_async",
]
