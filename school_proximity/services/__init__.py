from .orchestrator import BatchOrchestrator, CancellationToken, next_batch_size, partition_origins
from .resolver import RouteDistanceResolver, select_nearest
from .persistence import HttpResultStore, SaveReport, save_results

__all__ = [
    "BatchOrchestrator",
    "CancellationToken",
    "next_batch_size",
    "partition_origins",
    "RouteDistanceResolver",
    "select_nearest",
    "HttpResultStore",
    "SaveReport",
    "save_results",
]
