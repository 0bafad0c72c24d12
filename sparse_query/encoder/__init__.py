"""
encoder — Query scoring backends, vocabulary lookup and weight quantization.

Raw per-token weights from a backend are filtered at the vocabulary boundary
and quantized into a repeated-term string or an explicit term → weight map.
"""

from sparse_query.encoder.base import InferenceError, QueryEncoder, TokenWeightEncoder
from sparse_query.encoder.quantizer import SparseQuantizer, round_half_away
from sparse_query.encoder.token_filter import DEFAULT_SPECIAL_IDS, token_weight_map
from sparse_query.encoder.vocab import Vocabulary

__all__ = [
    "DEFAULT_SPECIAL_IDS",
    "InferenceError",
    "QueryEncoder",
    "SparseQuantizer",
    "TokenWeightEncoder",
    "Vocabulary",
    "round_half_away",
    "token_weight_map",
]
