"""
sparse_query/encoder/vocab.py — WordPiece vocabulary with id ↔ token lookup.

A ``vocab.txt`` holds one token per line; a token's id is its zero-based
line number. For ``bert-base-uncased`` that puts ``[PAD]`` at 0, ``[UNK]``
at 100, ``[CLS]`` at 101 and ``[SEP]`` at 102.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional


class Vocabulary:
    """
    Immutable bidirectional token table.

    Args:
        tokens: Tokens in id order.
        unknown_token: Token substituted for out-of-vocabulary lookups.
            Must be present in *tokens* for :meth:`index` to fall back.

    Raises:
        ValueError: If *tokens* is empty.
    """

    def __init__(self, tokens: Sequence[str], unknown_token: str = "[UNK]") -> None:
        if not tokens:
            raise ValueError("Vocabulary must contain at least one token")
        self._tokens: tuple[str, ...] = tuple(tokens)
        self._by_token: dict[str, int] = {}
        for idx, tok in enumerate(self._tokens):
            # First occurrence wins for duplicated lines
            self._by_token.setdefault(tok, idx)
        self._unknown_token = unknown_token
        self._unknown_id: Optional[int] = self._by_token.get(unknown_token)

    @classmethod
    def from_file(cls, path: Path | str, unknown_token: str = "[UNK]") -> "Vocabulary":
        """
        Load a one-token-per-line vocabulary file.

        Trailing newlines are stripped; surrounding spaces are part of the
        token and kept.
        """
        with Path(path).open("r", encoding="utf-8") as fh:
            tokens = [line.rstrip("\r\n") for line in fh]
        # A trailing blank line is a file artefact, not a token
        while tokens and tokens[-1] == "":
            tokens.pop()
        return cls(tokens, unknown_token=unknown_token)

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        return token in self._by_token

    @property
    def unknown_token(self) -> str:
        return self._unknown_token

    def token(self, index: int) -> str:
        """
        Return the token with id *index*.

        Raises:
            IndexError: If *index* is negative or beyond the vocabulary.
        """
        idx = int(index)
        if not 0 <= idx < len(self._tokens):
            raise IndexError(f"Token id {idx} outside vocabulary of size {len(self._tokens)}")
        return self._tokens[idx]

    def index(self, token: str) -> int:
        """
        Return the id of *token*, or the unknown-token id if absent.

        Raises:
            KeyError: If *token* is absent and the vocabulary has no unknown token.
        """
        idx = self._by_token.get(token, self._unknown_id)
        if idx is None:
            raise KeyError(f"Token '{token}' not in vocabulary and no '{self._unknown_token}' entry")
        return idx

    def convert_tokens_to_ids(self, tokens: Iterable[str]) -> list[int]:
        """Map a token sequence to ids, in order."""
        return [self.index(t) for t in tokens]

    def special_ids(self, tokens: Iterable[str]) -> tuple[int, ...]:
        """
        Resolve reserved tokens (``[CLS]``, ``[SEP]``, ``[PAD]``…) to their ids.

        Tokens missing from this vocabulary are skipped rather than mapped to
        the unknown id, so the unknown token is never filtered by accident.
        """
        return tuple(self._by_token[t] for t in tokens if t in self._by_token)
