"""
cache — Local artifact cache for model weights and vocabulary files.
"""

from sparse_query.cache.artifacts import (
    ArtifactCache,
    ArtifactSpec,
    CacheDirectoryError,
    DownloadError,
)

__all__ = ["ArtifactCache", "ArtifactSpec", "CacheDirectoryError", "DownloadError"]
