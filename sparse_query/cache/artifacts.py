"""
sparse_query/cache/artifacts.py — Download-once local cache for encoder artifacts.

Model weights and vocabulary files live flat under a single cache directory
(``~/.cache/sparse-query/encoders`` by default). The presence of a file named
after the artifact is the cache-hit signal: a present file is returned as-is,
with no network access and no validation of its contents. A missing file is
fetched with one streaming HTTP GET into a hidden temporary file and
atomically renamed into place, so a failed download never leaves a partial
artifact behind.

Public API
----------
``ArtifactCache(config)``
    Cache bound to one :class:`~sparse_query.core.config.CacheConfig`.

``ArtifactCache.resolve_cache_dir()``
    Create (once) and return the cache directory.

``ArtifactCache.ensure_artifact(name, url)``
    Return the local path of *name*, downloading it from *url* if absent.
"""

from __future__ import annotations

import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from pydantic import BaseModel, field_validator

from sparse_query.core.config import CacheConfig
from sparse_query.core.logger import get_logger

_PHASE = "cache"

# One fetch lock per (resolved cache dir, artifact name), shared by every
# ArtifactCache in the process.
_FETCH_LOCKS: dict[tuple[str, str], threading.Lock] = {}
_FETCH_LOCKS_GUARD = threading.Lock()


# ──────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────

class CacheDirectoryError(OSError):
    """
    Raised when the cache directory cannot be created or accessed.

    Args:
        path: The directory that could not be prepared.
        cause: The underlying ``OSError``.
    """

    def __init__(self, path: Path, cause: BaseException) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot prepare cache directory {path}: {cause}")


class DownloadError(RuntimeError):
    """
    Raised when an artifact cannot be fetched into the cache.

    Covers unreachable URLs, HTTP error statuses, dropped connections and
    local write failures. Nothing is retried; no file is left behind.

    Args:
        name: Artifact file name.
        url: Source URL.
        cause: The underlying exception.
    """

    def __init__(self, name: str, url: str, cause: BaseException) -> None:
        self.name = name
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to download artifact '{name}' from {url}: {cause}")


# ──────────────────────────────────────────────────────────────
# Request validation
# ──────────────────────────────────────────────────────────────

class ArtifactSpec(BaseModel):
    """
    Pydantic-validated artifact request.

    ``name`` must be a bare file name so every artifact lands directly in the
    cache directory; ``url`` must be an absolute http(s) URL.
    """

    name: str
    url: str

    @field_validator("name")
    @classmethod
    def must_be_bare_file_name(cls, v: str) -> str:
        """
        Reject empty names and anything that would escape the cache directory.

        Raises:
            ValueError: If the name is empty, ``.``/``..`` or contains a separator.
        """
        if not v or not v.strip():
            raise ValueError("Artifact name must not be empty")
        if v in {".", ".."} or "/" in v or "\\" in v or (os.altsep and os.altsep in v):
            raise ValueError(f"Artifact name must be a bare file name, got '{v}'")
        return v

    @field_validator("url")
    @classmethod
    def must_be_http_url(cls, v: str) -> str:
        """
        Accept only absolute ``http``/``https`` URLs.

        Raises:
            ValueError: If the scheme or host is missing or unsupported.
        """
        parsed = urlparse(v)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Artifact URL must be an absolute http(s) URL, got '{v}'")
        return v


# ──────────────────────────────────────────────────────────────
# ArtifactCache
# ──────────────────────────────────────────────────────────────

class ArtifactCache:
    """
    Guarantees named artifact files exist locally, fetching each at most once.

    The cache directory is created lazily on first use. Fetches of the same
    artifact are serialised by a lock shared by every cache in the process
    that points at the same directory, and the existence check is repeated
    under that lock, so concurrent first uses download once.

    Args:
        config: Cache location and transfer settings.
        session: Optional ``requests.Session`` used for downloads.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cfg = config or CacheConfig()
        self._session = session
        self._dir = self._cfg.resolved_base_dir
        self._dir_ready = False
        self._dir_lock = threading.Lock()

    @property
    def config(self) -> CacheConfig:
        """Settings this cache was built with."""
        return self._cfg

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def resolve_cache_dir(self) -> Path:
        """
        Return the cache directory, creating it (and parents) if missing.

        Idempotent: an already existing directory is not an error, and the
        filesystem is only touched on the first successful call.

        Raises:
            CacheDirectoryError: If the directory cannot be created, e.g.
                permission denied or the path is an existing file.
        """
        if self._dir_ready:
            return self._dir
        with self._dir_lock:
            if not self._dir_ready:
                try:
                    self._dir.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    get_logger().error(
                        _PHASE,
                        "cache_dir_failed",
                        {"path": str(self._dir), "error": str(exc)},
                    )
                    raise CacheDirectoryError(self._dir, exc) from exc
                get_logger().info(_PHASE, "cache_dir_ready", {"path": str(self._dir)})
                self._dir_ready = True
        return self._dir

    def artifact_path(self, name: str) -> Path:
        """Return where *name* is (or would be) cached, without touching disk."""
        return self._dir / name

    def ensure_artifact(self, name: str, url: str, kind: str = "artifact") -> Path:
        """
        Return the local path of artifact *name*, downloading it if absent.

        Args:
            name: Bare file name inside the cache directory.
            url: Absolute http(s) URL to fetch on a cache miss.
            kind: Label used only in log entries (``'model'``, ``'vocab'``…).

        Returns:
            Path to the cached file.

        Raises:
            ValueError: If *name* or *url* is malformed.
            CacheDirectoryError: If the cache directory cannot be prepared.
            DownloadError: If the fetch or the local write fails.
        """
        spec = ArtifactSpec(name=name, url=url)
        path = self.resolve_cache_dir() / spec.name

        if path.is_file():
            get_logger().info(_PHASE, "cache_hit", {"kind": kind, "name": spec.name})
            return path

        with self._lock_for(spec.name):
            if path.is_file():
                get_logger().info(_PHASE, "cache_hit", {"kind": kind, "name": spec.name})
                return path
            self._download(spec, path, kind)
        return path

    def ensure_model(self, name: str, url: str) -> Path:
        """Fetch-once wrapper for model weight files."""
        return self.ensure_artifact(name, url, kind="model")

    def ensure_vocab(self, name: str, url: str) -> Path:
        """Fetch-once wrapper for vocabulary files."""
        return self.ensure_artifact(name, url, kind="vocab")

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _lock_for(self, name: str) -> threading.Lock:
        key = (os.path.realpath(self._dir), name)
        with _FETCH_LOCKS_GUARD:
            lock = _FETCH_LOCKS.get(key)
            if lock is None:
                lock = _FETCH_LOCKS[key] = threading.Lock()
            return lock

    def _download(self, spec: ArtifactSpec, path: Path, kind: str) -> None:
        """
        Stream *spec.url* into a temporary file next to *path*, then rename.

        The temporary file is removed on any failure.
        """
        log = get_logger()
        log.info(_PHASE, "download_start", {"kind": kind, "name": spec.name, "url": spec.url})

        session = self._session or requests.Session()
        tmp_path: Optional[Path] = None
        t0 = time.monotonic()
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{spec.name}.", suffix=".part", dir=path.parent
            )
            tmp_path = Path(tmp_name)
            written = 0
            with os.fdopen(fd, "wb") as fh:
                with session.get(spec.url, stream=True, timeout=self._cfg.timeout_s) as response:
                    response.raise_for_status()
                    if response.headers.get("Content-Length") is None:
                        log.warn(
                            _PHASE,
                            "download_size_unknown",
                            {"kind": kind, "name": spec.name, "url": spec.url},
                        )
                    for chunk in response.iter_content(chunk_size=self._cfg.chunk_size):
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
            tmp_path = None

        except (requests.RequestException, OSError) as exc:
            log.error(
                _PHASE,
                "download_failed",
                {"kind": kind, "name": spec.name, "url": spec.url, "error": str(exc)},
            )
            raise DownloadError(spec.name, spec.url, exc) from exc

        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            if self._session is None:
                session.close()

        log.perf(
            _PHASE,
            "download_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"kind": kind, "name": spec.name, "bytes": written},
        )
