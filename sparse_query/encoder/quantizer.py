"""
sparse_query/encoder/quantizer.py — Raw token weights → bounded integer weights.

A raw weight ``w`` is scaled linearly into the integer range and rounded
half away from zero::

    q = round_half_away(w / weight_range * quant_range)

Two renderings share that rule:

* the map form keeps every token with its ``q`` (zero and negative included);
* the string form repeats each token ``q`` times in input order and skips
  tokens with ``q <= 0``.

The quantizer holds only its immutable configuration, so instances are safe
to share across threads.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from fractions import Fraction
from typing import Optional, Union

from sparse_query.core.config import QuantizationConfig, validate_quantization

logger = logging.getLogger(__name__)

#: Largest repeat count the string form will render (Java int range).
MAX_REPEATS: int = 2**31 - 1


def round_half_away(value: Union[float, Fraction]) -> int:
    """
    Round to the nearest integer, ties away from zero.

    ``2.5 → 3``, ``-2.5 → -3``, ``0.49999999999999994 → 0``.
    Exact for :class:`~fractions.Fraction` input of any magnitude.
    """
    magnitude = abs(value)
    floor = math.floor(magnitude)
    rounded = floor + 1 if magnitude - floor >= 0.5 else floor
    return -rounded if value < 0 else rounded


class SparseQuantizer:
    """
    Deterministic linear quantizer for token weight maps.

    Args:
        config: Quantization ranges. Both must be positive integers.

    Raises:
        ValueError: If either range is not a positive integer.

    Example::

        q = SparseQuantizer(QuantizationConfig(weight_range=5, quant_range=100))
        q.quantize_to_map({"fish": 2.5, "swim": -1.0, "run": 0.1})
        # → {'fish': 50, 'swim': -20, 'run': 2}
    """

    def __init__(self, config: Optional[QuantizationConfig] = None) -> None:
        cfg = config or QuantizationConfig()
        validate_quantization(cfg)
        self._cfg = cfg

    @classmethod
    def from_ranges(
        cls,
        weight_range: int,
        quant_range: int,
        include_non_positive_weights: bool = True,
    ) -> "SparseQuantizer":
        """Build a quantizer without spelling out a :class:`QuantizationConfig`."""
        return cls(
            QuantizationConfig(
                weight_range=weight_range,
                quant_range=quant_range,
                include_non_positive_weights=include_non_positive_weights,
            )
        )

    @property
    def config(self) -> QuantizationConfig:
        return self._cfg

    @property
    def weight_range(self) -> int:
        return self._cfg.weight_range

    @property
    def quant_range(self) -> int:
        return self._cfg.quant_range

    # ──────────────────────────────────────────
    # Quantization
    # ──────────────────────────────────────────

    def quantize(self, weight: float, token: str = "") -> int:
        """
        Quantize one raw weight.

        Args:
            weight: Any finite real number (numpy scalars accepted).
            token: Token the weight belongs to; only used in error messages.

        Raises:
            ValueError: If *weight* is NaN or infinite.
        """
        value = float(weight)
        if not math.isfinite(value):
            raise ValueError(f"Token weight must be finite, got {value!r} for token '{token}'")
        scaled = value / self._cfg.weight_range * self._cfg.quant_range
        if not math.isfinite(scaled):
            # Float overflow for huge finite weights: redo the scaling exactly
            scaled = Fraction(value) * self._cfg.quant_range / self._cfg.weight_range
        return round_half_away(scaled)

    def quantize_to_map(self, token_weights: Mapping[str, float]) -> dict[str, int]:
        """
        Quantize every token weight into an explicit term → integer mapping.

        Tokens whose weight rounds to zero or below are kept unless the
        config sets ``include_non_positive_weights=False``. Values are never
        clamped.

        Args:
            token_weights: Token → raw weight mapping.

        Returns:
            Token → quantized weight.
        """
        keep_non_positive = self._cfg.include_non_positive_weights
        encoded: dict[str, int] = {}
        for token, weight in token_weights.items():
            q = self.quantize(weight, token)
            if q > 0 or keep_non_positive:
                encoded[token] = q
        return encoded

    def quantize_to_string(self, token_weights: Mapping[str, float]) -> str:
        """
        Render token weights as a repeated-term pseudo-document.

        Each token is emitted ``q`` times in a row, tokens in input order,
        joined by single spaces. Tokens with ``q <= 0`` contribute nothing.

        Args:
            token_weights: Token → raw weight mapping, in model output order.

        Returns:
            The encoded query string; empty if no token quantizes above zero.

        Raises:
            ValueError: If a token would repeat more than :data:`MAX_REPEATS` times.
        """
        terms: list[str] = []
        for token, weight in token_weights.items():
            repeats = max(self.quantize(weight, token), 0)
            if repeats > MAX_REPEATS:
                raise ValueError(
                    f"Token '{token}' quantizes to {repeats}, above the "
                    f"{MAX_REPEATS} repeats the string form can render; use quantize_to_map"
                )
            terms.extend([token] * repeats)
        logger.debug("Encoded %d tokens into %d terms", len(token_weights), len(terms))
        return " ".join(terms)

    def __repr__(self) -> str:
        return (
            f"SparseQuantizer(weight_range={self._cfg.weight_range}, "
            f"quant_range={self._cfg.quant_range})"
        )
