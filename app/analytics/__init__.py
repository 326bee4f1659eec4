"""
Analytics: chunk attribution weights, per-chunk performance counters and the
append-only pill usage / event logs the aggregation job reads.
"""
from .weighting import calculate_chunk_weights
from .chunk_performance import increment_chunk_counters, chunk_key_for, satisfaction_rate

__all__ = ['calculate_chunk_weights', 'increment_chunk_counters', 'chunk_key_for', 'satisfaction_rate']
