"""Compute worker wiring."""

from .compute_worker import ComputeWorker
from .workspace import TaskWorkspace, blob_key

__all__ = ["ComputeWorker", "TaskWorkspace", "blob_key"]
