"""
sparse_query — Sparse lexical query encoder.

Turns a free-text query into a weighted bag of vocabulary terms for
inverted-index retrieval. Raw per-token weights from a neural backend are
quantized into bounded integers and rendered either as a repeated-term
pseudo-document or as an explicit term → weight mapping.
"""

__version__ = "0.1.0"
