"""
core — Typed configuration and structured logging shared by all sub-packages.
"""
