"""
sparse_query/encoder/base.py — Backend contract and the query encoding pipeline.

Any inference backend that can turn a query into an ordered token → weight
map satisfies :class:`TokenWeightEncoder`. :class:`QueryEncoder` composes
such a backend with a :class:`~sparse_query.encoder.quantizer.SparseQuantizer`
and produces the encoded query in string or map form.

Error kinds surfaced to callers:

* :class:`InferenceError` — anything the backend raised while scoring a query;
* ``DownloadError`` / ``CacheDirectoryError`` — artifact preparation, raised
  while a backend is being built (see :mod:`sparse_query.cache.artifacts`).
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from sparse_query.core.config import SparseQueryConfig
from sparse_query.core.logger import configure_logger, get_logger
from sparse_query.encoder.quantizer import SparseQuantizer

if TYPE_CHECKING:
    from sparse_query.cache.artifacts import ArtifactCache

_PHASE = "encoder"

# Longest query prefix copied into log entries and error messages
_QUERY_PREVIEW_CHARS = 80


class InferenceError(RuntimeError):
    """
    Raised when the inference backend fails to score a query.

    The backend's own exception is kept in ``cause`` and chained as
    ``__cause__``; it is never interpreted here.

    Args:
        query: The query that was being encoded.
        cause: The backend exception.
    """

    def __init__(self, query: str, cause: BaseException) -> None:
        self.query = query
        self.cause = cause
        super().__init__(
            f"Inference failed for query '{_preview(query)}': "
            f"{type(cause).__name__}: {cause}"
        )


@runtime_checkable
class TokenWeightEncoder(Protocol):
    """Anything that maps a query string to an ordered token → raw weight dict."""

    def token_weights(self, query: str) -> dict[str, float]:
        ...


def _preview(query: str) -> str:
    if len(query) <= _QUERY_PREVIEW_CHARS:
        return query
    return query[:_QUERY_PREVIEW_CHARS] + "…"


class QueryEncoder:
    """
    Encodes free-text queries into quantized sparse representations.

    Args:
        backend: Inference backend producing raw token weights.
        quantizer: Quantizer applied on top of the backend output.

    Example::

        encoder = QueryEncoder.from_config(load_config())
        encoder.encode("what is a lobster roll")
        # → 'lobster lobster lobster … roll roll …'
        encoder.encode_to_map("what is a lobster roll")
        # → {'lobster': 212, 'roll': 180, …}
    """

    def __init__(self, backend: TokenWeightEncoder, quantizer: SparseQuantizer) -> None:
        self._backend = backend
        self._quantizer = quantizer

    @classmethod
    def from_config(
        cls,
        config: SparseQueryConfig,
        cache: Optional["ArtifactCache"] = None,
    ) -> "QueryEncoder":
        """
        Build the configured backend and quantizer.

        ``config.logging`` replaces the process-wide structured logger first, so
        artifact fetches and model loading are logged under it. Artifacts are
        fetched (once) through *cache*, or through a cache built from
        ``config.cache`` when none is given.

        Raises:
            ValueError: If the backend name is unknown or misconfigured.
            DownloadError: If an artifact cannot be fetched.
            CacheDirectoryError: If the cache directory cannot be prepared.
        """
        from sparse_query.cache.artifacts import ArtifactCache

        configure_logger(config.logging)
        cache = cache or ArtifactCache(config.cache)
        backend_name = config.encoder.backend

        if backend_name == "splade":
            from sparse_query.encoder.splade import SpladeEncoder

            backend: TokenWeightEncoder = SpladeEncoder(
                config.encoder, config.vocab, cache=cache
            )
        else:
            raise ValueError(f"Unknown encoder backend '{backend_name}'")

        return cls(backend, SparseQuantizer(config.quantization))

    @property
    def quantizer(self) -> SparseQuantizer:
        return self._quantizer

    @property
    def backend(self) -> TokenWeightEncoder:
        return self._backend

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def token_weights(self, query: str) -> dict[str, float]:
        """
        Run the backend on *query* and return its raw token weights.

        Blank queries short-circuit to an empty map without calling the backend.

        Raises:
            InferenceError: If the backend raises anything.
        """
        if not query or not query.strip():
            return {}

        log = get_logger()
        t0 = time.monotonic()
        try:
            weights = self._backend.token_weights(query)
        except Exception as exc:  # noqa: BLE001
            log.error(
                _PHASE,
                "inference_failed",
                {"query": _preview(query), "error": f"{type(exc).__name__}: {exc}"},
            )
            raise InferenceError(query, exc) from exc

        log.perf(
            _PHASE,
            "inference_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"query": _preview(query), "tokens": len(weights)},
        )
        return weights

    def encode(self, query: str) -> str:
        """
        Encode *query* as a repeated-term pseudo-document.

        Raises:
            InferenceError: If the backend fails.
        """
        return self._quantizer.quantize_to_string(self.token_weights(query))

    def encode_to_map(self, query: str) -> dict[str, int]:
        """
        Encode *query* as an explicit token → integer weight mapping.

        Raises:
            InferenceError: If the backend fails.
        """
        return self._quantizer.quantize_to_map(self.token_weights(query))
