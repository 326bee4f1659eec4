"""
Position weighting for chunk attribution.

The first retrieved chunk is the most relevant, so it gets the largest share of
credit for an answer: raw weight 1/rank, normalized so the weights sum to 1.0.
"""
from typing import List, Sequence


def calculate_chunk_weights(chunks: Sequence) -> List[float]:
    """
    Inverse-rank weights for an ordered sequence of chunks.

    Args:
        chunks: Retrieved chunks ordered by relevance (index 0 = rank 1).
                Only the length and order matter.

    Returns:
        One weight per chunk, strictly decreasing, summing to 1.0.

    Example:
        >>> calculate_chunk_weights(["a", "b", "c"])
        [0.5454..., 0.2727..., 0.1818...]
    """
    if not chunks:
        return []

    if len(chunks) == 1:
        return [1.0]

    raw_weights = [1 / rank for rank in range(1, len(chunks) + 1)]
    total_weight = sum(raw_weights)

    return [weight / total_weight for weight in raw_weights]
