"""
sparse_query/encoder/splade.py — SPLADE inference backend (TorchScript + WordPiece).

The model is a TorchScript export of a BERT masked-language-model head that
maps ``(input_ids, attention_mask)`` to per-position vocabulary logits of shape
``(batch, seq_len, vocab_size)``. Term weights are obtained with SPLADE max
pooling::

    w[v] = max_over_positions( log(1 + relu(logits[pos, v])) * mask[pos] )

Every vocabulary entry with a positive weight becomes a candidate term; the
reserved ids of the vocabulary scheme are dropped by
:func:`~sparse_query.encoder.token_filter.token_weight_map`.

``torch`` and ``transformers`` are imported lazily so the rest of the package
stays importable without them; tests inject a fake tokenizer and model.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sparse_query.cache.artifacts import ArtifactCache
from sparse_query.core.config import EncoderConfig, VocabConfig
from sparse_query.core.logger import get_logger
from sparse_query.encoder.token_filter import token_weight_map
from sparse_query.encoder.vocab import Vocabulary

logger = logging.getLogger(__name__)

_PHASE = "encoder"


class SpladeEncoder:
    """
    SPLADE query scorer satisfying :class:`~sparse_query.encoder.base.TokenWeightEncoder`.

    Model and vocabulary files are fetched through *cache* on construction,
    before any query is scored. Any of *vocab*, *tokenizer* and *model* may
    be injected; only the missing ones are fetched and loaded.

    Args:
        config: Artifact names and URLs.
        vocab_config: Reserved tokens and maximum input length.
        cache: Artifact cache; a default one is created when omitted.
        vocab: Pre-built vocabulary.
        tokenizer: Callable behaving like a HuggingFace tokenizer
            (``tokenizer(text, return_tensors="pt", ...)``).
        model: Callable ``model(input_ids, attention_mask)`` returning logits.

    Raises:
        ValueError: If no model is injected and ``config.model_url`` is empty.
        DownloadError: If an artifact cannot be fetched.
    """

    def __init__(
        self,
        config: Optional[EncoderConfig] = None,
        vocab_config: Optional[VocabConfig] = None,
        cache: Optional[ArtifactCache] = None,
        vocab: Optional[Vocabulary] = None,
        tokenizer: Optional[Any] = None,
        model: Optional[Any] = None,
    ) -> None:
        self._cfg = config or EncoderConfig()
        self._vocab_cfg = vocab_config or VocabConfig()
        log = get_logger()

        if model is None and not self._cfg.model_url:
            raise ValueError("encoder.model_url must be set to load the SPLADE model")

        cache = cache or ArtifactCache()

        if vocab is None or tokenizer is None:
            vocab_path = cache.ensure_vocab(self._cfg.vocab_name, self._cfg.vocab_url)
            if vocab is None:
                vocab = Vocabulary.from_file(vocab_path, unknown_token=self._vocab_cfg.unknown_token)
            if tokenizer is None:
                from transformers import BertTokenizerFast  # type: ignore

                tokenizer = BertTokenizerFast(vocab_file=str(vocab_path))

        if model is None:
            import torch  # type: ignore

            model_path = cache.ensure_model(self._cfg.model_name, self._cfg.model_url)
            model = torch.jit.load(str(model_path), map_location="cpu")
            model.eval()

        self._vocab = vocab
        self._tokenizer = tokenizer
        self._model = model
        self._skip_ids = vocab.special_ids(self._vocab_cfg.special_tokens)

        log.info(
            _PHASE,
            "splade_ready",
            {
                "model": self._cfg.model_name,
                "vocab_size": len(vocab),
                "skip_ids": list(self._skip_ids),
            },
        )

    @property
    def vocab(self) -> Vocabulary:
        return self._vocab

    @property
    def skip_ids(self) -> tuple[int, ...]:
        return self._skip_ids

    def token_weights(self, query: str) -> dict[str, float]:
        """
        Score *query* and return positive-weight terms in vocabulary-id order.

        Args:
            query: Free-text query.

        Returns:
            Token → raw SPLADE weight, reserved tokens removed.
        """
        import torch  # type: ignore

        encoded = self._tokenizer(
            query,
            return_tensors="pt",
            truncation=True,
            max_length=self._vocab_cfg.max_length,
        )
        input_ids = encoded["input_ids"]
        attention_mask = encoded["attention_mask"]

        with torch.no_grad():
            output = self._model(input_ids, attention_mask)

        logits = _unwrap_logits(output)
        activations = torch.log1p(torch.relu(logits)) * attention_mask.unsqueeze(-1)
        pooled = activations.max(dim=1).values.squeeze(0)

        indexes = torch.nonzero(pooled > 0, as_tuple=False).squeeze(-1)
        weights = pooled[indexes]
        logger.debug("SPLADE produced %d non-zero terms", int(indexes.numel()))

        return token_weight_map(
            indexes.cpu().numpy(),
            weights.cpu().numpy(),
            self._vocab,
            skip_ids=self._skip_ids,
        )


def _unwrap_logits(output: Any) -> Any:
    """Accept a bare tensor, a ``(logits, ...)`` tuple or an object with ``.logits``."""
    if isinstance(output, (tuple, list)):
        return output[0]
    if hasattr(output, "logits"):
        return output.logits
    return output
