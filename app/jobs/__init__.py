"""
Batch jobs run by an external scheduler.
"""
from .update_chunk_performance import ChunkPerformanceAggregator

__all__ = ['ChunkPerformanceAggregator']
