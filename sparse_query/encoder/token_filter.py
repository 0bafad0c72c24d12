"""
sparse_query/encoder/token_filter.py — Model output arrays → ordered TokenWeightMap.

Inference backends emit two parallel fixed-length arrays: vocabulary ids and
their computed weights. Reserved ids (classification start, separator,
padding) carry no lexical meaning and are dropped; everything else is looked
up in the vocabulary and kept in array order.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from typing import Union

import numpy as np

from sparse_query.encoder.vocab import Vocabulary

#: ``[CLS]``, ``[SEP]`` and ``[PAD]`` ids in the BERT uncased WordPiece vocabulary.
DEFAULT_SPECIAL_IDS: tuple[int, ...] = (101, 102, 0)

ArrayLike = Union[Sequence[int], Sequence[float], np.ndarray]


def token_weight_map(
    indexes: ArrayLike,
    weights: ArrayLike,
    vocab: Vocabulary,
    skip_ids: Collection[int] = DEFAULT_SPECIAL_IDS,
) -> dict[str, float]:
    """
    Build a token → weight map from parallel id / weight arrays.

    Ids in *skip_ids* are dropped. A token appearing twice keeps its first
    position and takes the later weight.

    Args:
        indexes: Vocabulary ids, one per output slot.
        weights: Weight for each slot in *indexes*.
        vocab: Vocabulary used to turn ids back into tokens.
        skip_ids: Reserved ids to drop.

    Returns:
        Insertion-ordered dict of token → float weight.

    Raises:
        ValueError: If the two arrays differ in length.
        IndexError: If an id falls outside the vocabulary.
    """
    ids = np.asarray(indexes).reshape(-1)
    values = np.asarray(weights, dtype=np.float64).reshape(-1)
    if ids.shape[0] != values.shape[0]:
        raise ValueError(
            f"indexes and weights must have the same length, got {ids.shape[0]} and {values.shape[0]}"
        )

    skip = {int(s) for s in skip_ids}
    result: dict[str, float] = {}
    for idx, weight in zip(ids.tolist(), values.tolist()):
        if int(idx) in skip:
            continue
        result[vocab.token(int(idx))] = float(weight)
    return result
