"""
sparse_query/core/config.py — Typed configuration loader for the sparse query encoder.

Loads config/sparse_query.yaml and validates all values into typed dataclasses.
All downstream modules import from this module; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_ENV_VAR = "SPARSE_QUERY_CONFIG"

_BACKENDS: frozenset[str] = frozenset({"splade"})
_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARN", "ERROR"})


# ──────────────────────────────────────────────
# Dataclass hierarchy, mirrors sparse_query.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class CacheConfig:
    """Location and transfer settings for the local artifact cache."""

    base_dir: str = "~/.cache/sparse-query/encoders"
    timeout_s: Optional[float] = None
    chunk_size: int = 65_536

    @property
    def resolved_base_dir(self) -> Path:
        """Return the cache directory as an absolute Path, expanding ~ if needed."""
        return Path(os.path.expanduser(self.base_dir))


@dataclass(frozen=True)
class QuantizationConfig:
    """
    Linear quantization ranges.

    A raw weight ``w`` becomes ``round(w / weight_range * quant_range)``.
    ``include_non_positive_weights`` controls whether tokens quantized to
    ``<= 0`` stay in the map form; the string form never repeats them.
    """

    weight_range: int = 5
    quant_range: int = 256
    include_non_positive_weights: bool = True


@dataclass(frozen=True)
class VocabConfig:
    """Vocabulary scheme: which tokens are reserved and how long inputs may be."""

    special_tokens: tuple[str, ...] = ("[CLS]", "[SEP]", "[PAD]")
    unknown_token: str = "[UNK]"
    max_length: int = 512


@dataclass(frozen=True)
class EncoderConfig:
    """Inference backend and the artifacts it needs."""

    backend: str = "splade"
    model_name: str = "splade-pp-ed.pt"
    model_url: str = ""
    vocab_name: str = "wordpiece-vocab.txt"
    vocab_url: str = "https://huggingface.co/bert-base-uncased/resolve/main/vocab.txt"


@dataclass(frozen=True)
class LoggingConfig:
    """Structured JSONL logging configuration."""

    level: str = "INFO"
    log_dir: str = "logs"
    jsonl: bool = True

    @property
    def resolved_log_dir(self) -> Path:
        """Return the log directory as a Path, expanding ~ if needed."""
        return Path(os.path.expanduser(self.log_dir))


@dataclass(frozen=True)
class SparseQueryConfig:
    """Root configuration object — single source of truth for all settings."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    quantization: QuantizationConfig = field(default_factory=QuantizationConfig)
    vocab: VocabConfig = field(default_factory=VocabConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _merge(defaults: dict, overrides: dict) -> dict:
    """
    Deep-merge *overrides* into *defaults*, returning a new dict.

    Nested dicts are merged recursively; scalar values in overrides win.
    """
    result: dict = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_path(config_path: Path | str | None) -> Path | None:
    """Find the config file: argument, then env var, then project default."""
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return resolved

    if _CONFIG_ENV_VAR in os.environ:
        resolved = Path(os.environ[_CONFIG_ENV_VAR])
        if not resolved.exists():
            raise FileNotFoundError(
                f"{_CONFIG_ENV_VAR} points to missing file: {resolved}"
            )
        return resolved

    # sparse_query/core/config.py → <project root>/config/sparse_query.yaml
    candidate = Path(__file__).resolve().parents[2] / "config" / "sparse_query.yaml"
    return candidate if candidate.exists() else None


def load_config(
    config_path: Path | str | None = None,
    overrides: Optional[dict] = None,
) -> SparseQueryConfig:
    """
    Load, validate, and return a SparseQueryConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. ``SPARSE_QUERY_CONFIG`` environment variable
    3. ``config/sparse_query.yaml`` at the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``sparse_query.yaml`` file.
        overrides: Optional nested dict applied on top of the file contents.

    Returns:
        A fully populated and frozen :class:`SparseQueryConfig` instance.

    Raises:
        ValueError: If a YAML field is unknown or has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path = _resolve_path(config_path)

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    if overrides:
        raw = _merge(raw, overrides)

    unknown = set(raw) - set(SparseQueryConfig.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown config section(s): {sorted(unknown)}")

    try:
        cache_cfg = CacheConfig(**raw.get("cache", {}))
        quant_cfg = QuantizationConfig(**raw.get("quantization", {}))

        # YAML lists → tuple
        vocab_raw = dict(raw.get("vocab", {}))
        if isinstance(vocab_raw.get("special_tokens"), list):
            vocab_raw["special_tokens"] = tuple(vocab_raw["special_tokens"])
        vocab_cfg = VocabConfig(**vocab_raw)

        encoder_cfg = EncoderConfig(**raw.get("encoder", {}))
        log_cfg = LoggingConfig(**raw.get("logging", {}))

    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(cache_cfg, quant_cfg, vocab_cfg, encoder_cfg, log_cfg)

    config = SparseQueryConfig(
        cache=cache_cfg,
        quantization=quant_cfg,
        vocab=vocab_cfg,
        encoder=encoder_cfg,
        logging=log_cfg,
    )
    logger.debug("Config loaded: %s", config)
    return config


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_str(section: str, name: str, value: object) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{section}.{name} must be a string, got {value!r}")


def _require_bool(section: str, name: str, value: object) -> None:
    if not isinstance(value, bool):
        raise ValueError(f"{section}.{name} must be true or false, got {value!r}")


def validate_quantization(quant: QuantizationConfig) -> None:
    """
    Check that both quantization ranges are positive integers and the
    non-positive-weight switch is a boolean.

    Raises:
        ValueError: If a field has the wrong type or a range is not positive.
    """
    if not _is_positive_int(quant.weight_range):
        raise ValueError(
            f"quantization.weight_range must be a positive integer, got {quant.weight_range!r}"
        )
    if not _is_positive_int(quant.quant_range):
        raise ValueError(
            f"quantization.quant_range must be a positive integer, got {quant.quant_range!r}"
        )
    _require_bool("quantization", "include_non_positive_weights", quant.include_non_positive_weights)


def _validate_config(
    cache: CacheConfig,
    quant: QuantizationConfig,
    vocab: VocabConfig,
    encoder: EncoderConfig,
    log: LoggingConfig,
) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    _require_str("cache", "base_dir", cache.base_dir)
    if not cache.base_dir:
        raise ValueError("cache.base_dir must not be empty")
    if cache.timeout_s is not None and not _is_number(cache.timeout_s):
        raise ValueError(f"cache.timeout_s must be a number or null, got {cache.timeout_s!r}")
    if cache.timeout_s is not None and cache.timeout_s <= 0:
        raise ValueError(f"cache.timeout_s must be positive or null, got {cache.timeout_s}")
    if not _is_positive_int(cache.chunk_size):
        raise ValueError(f"cache.chunk_size must be a positive integer, got {cache.chunk_size!r}")
    validate_quantization(quant)
    if not isinstance(vocab.special_tokens, tuple) or not all(
        isinstance(token, str) for token in vocab.special_tokens
    ):
        raise ValueError(
            f"vocab.special_tokens must be a list of strings, got {vocab.special_tokens!r}"
        )
    _require_str("vocab", "unknown_token", vocab.unknown_token)
    if not _is_positive_int(vocab.max_length):
        raise ValueError(f"vocab.max_length must be a positive integer, got {vocab.max_length!r}")
    for name in ("backend", "model_name", "model_url", "vocab_name", "vocab_url"):
        _require_str("encoder", name, getattr(encoder, name))
    if encoder.backend not in _BACKENDS:
        raise ValueError(
            f"encoder.backend must be one of {sorted(_BACKENDS)}, got '{encoder.backend}'"
        )
    if not encoder.model_name or not encoder.vocab_name:
        raise ValueError("encoder.model_name and encoder.vocab_name must not be empty")
    _require_str("logging", "level", log.level)
    _require_str("logging", "log_dir", log.log_dir)
    _require_bool("logging", "jsonl", log.jsonl)
    if log.level.upper() not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got '{log.level}'")
