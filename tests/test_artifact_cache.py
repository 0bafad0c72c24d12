"""
tests/test_artifact_cache.py — pytest unit tests for cache.artifacts.ArtifactCache.

The network is never touched: a fake ``requests`` session serves fixed bytes
and counts GET calls.
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Iterator, Optional
from unittest.mock import patch

import pytest
import requests

from sparse_query.cache.artifacts import (
    ArtifactCache,
    ArtifactSpec,
    CacheDirectoryError,
    DownloadError,
)
from sparse_query.core.config import CacheConfig
from sparse_query.core.logger import get_logger

_URL = "https://example.invalid/vocab.txt"
_BODY = b"[PAD]\n[UNK]\n[CLS]\n[SEP]\nfish\n" * 100


# ──────────────────────────────────────────────────────────────
# Fake HTTP layer
# ──────────────────────────────────────────────────────────────

class _FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(
        self,
        body: bytes,
        status: int = 200,
        fail_after_chunks: Optional[int] = None,
        delay_s: float = 0.0,
        sized: bool = True,
    ) -> None:
        self._body = body
        self.status_code = status
        self._fail_after = fail_after_chunks
        self._delay_s = delay_s
        self.headers: dict[str, str] = {"Content-Length": str(len(body))} if sized else {}

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for n, start in enumerate(range(0, len(self._body), chunk_size)):
            if self._fail_after is not None and n >= self._fail_after:
                raise requests.ConnectionError("connection reset by peer")
            if self._delay_s:
                time.sleep(self._delay_s)
            yield self._body[start:start + chunk_size]


class _FakeSession:
    """Records every GET and hands back a configured response."""

    def __init__(
        self,
        body: bytes = _BODY,
        status: int = 200,
        error: Optional[Exception] = None,
        fail_after_chunks: Optional[int] = None,
        delay_s: float = 0.0,
        sized: bool = True,
    ) -> None:
        self.body = body
        self.status = status
        self.error = error
        self.fail_after_chunks = fail_after_chunks
        self.delay_s = delay_s
        self.sized = sized
        self.calls: list[tuple[str, Optional[float]]] = []
        self._lock = threading.Lock()

    def get(self, url: str, stream: bool = False, timeout: Optional[float] = None) -> _FakeResponse:
        with self._lock:
            self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return _FakeResponse(
            self.body, self.status, self.fail_after_chunks, self.delay_s, self.sized
        )


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def cache_dir(tmp_path: Path) -> Path:
    """Nested, not-yet-existing cache directory."""
    return tmp_path / "home" / ".cache" / "sparse-query" / "encoders"


def _cache(cache_dir: Path, session: _FakeSession, **kwargs) -> ArtifactCache:
    return ArtifactCache(CacheConfig(base_dir=str(cache_dir), chunk_size=64, **kwargs), session=session)


def _leftovers(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir() if p.name.endswith(".part"))


def _logged(level: str) -> list[dict]:
    log_dir = get_logger().log_dir
    assert log_dir is not None
    entries = [
        json.loads(line)
        for path in sorted(log_dir.glob("sparse_query_*.jsonl"))
        for line in path.read_text(encoding="utf-8").splitlines()
    ]
    return [e for e in entries if e["level"] == level]


# ──────────────────────────────────────────────────────────────
# resolve_cache_dir
# ──────────────────────────────────────────────────────────────

class TestResolveCacheDir:

    def test_creates_missing_directory_with_parents(self, cache_dir: Path) -> None:
        cache = _cache(cache_dir, _FakeSession())
        assert not cache_dir.exists()
        assert cache.resolve_cache_dir() == cache_dir
        assert cache_dir.is_dir()

    def test_existing_directory_is_fine(self, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "keep.txt").write_text("x")
        cache = _cache(cache_dir, _FakeSession())
        assert cache.resolve_cache_dir() == cache_dir
        assert (cache_dir / "keep.txt").read_text() == "x"

    def test_repeated_calls_idempotent(self, cache_dir: Path) -> None:
        cache = _cache(cache_dir, _FakeSession())
        paths = {cache.resolve_cache_dir() for _ in range(5)}
        assert paths == {cache_dir}

    def test_concurrent_calls_do_not_fail(self, cache_dir: Path) -> None:
        caches = [_cache(cache_dir, _FakeSession()) for _ in range(8)]
        errors: list[BaseException] = []
        barrier = threading.Barrier(len(caches))

        def _worker(c: ArtifactCache) -> None:
            barrier.wait()
            try:
                c.resolve_cache_dir()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=_worker, args=(c,)) for c in caches]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert cache_dir.is_dir()

    def test_path_is_a_file_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "encoders"
        blocker.write_text("not a directory")
        cache = _cache(blocker, _FakeSession())

        with pytest.raises(CacheDirectoryError) as exc_info:
            cache.resolve_cache_dir()

        assert exc_info.value.path == blocker
        assert isinstance(exc_info.value, OSError)
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_parent_is_a_file_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "home"
        blocker.write_text("not a directory")
        cache = _cache(blocker / "encoders", _FakeSession())

        with pytest.raises(CacheDirectoryError):
            cache.resolve_cache_dir()

    def test_tilde_expanded(self) -> None:
        cfg = CacheConfig(base_dir="~/.cache/sparse-query/encoders")
        assert cfg.resolved_base_dir == Path.home() / ".cache" / "sparse-query" / "encoders"


# ──────────────────────────────────────────────────────────────
# ensure_artifact
# ──────────────────────────────────────────────────────────────

class TestEnsureArtifact:

    def test_miss_downloads_exact_bytes(self, cache_dir: Path) -> None:
        session = _FakeSession()
        path = _cache(cache_dir, session).ensure_artifact("vocab.txt", _URL)

        assert path == cache_dir / "vocab.txt"
        assert path.read_bytes() == _BODY
        assert [url for url, _ in session.calls] == [_URL]

    def test_second_call_served_from_cache(self, cache_dir: Path) -> None:
        session = _FakeSession()
        cache = _cache(cache_dir, session)

        first = cache.ensure_artifact("vocab.txt", _URL)
        second = cache.ensure_artifact("vocab.txt", _URL)

        assert first == second
        assert len(session.calls) == 1

    def test_existing_file_never_fetched_or_validated(self, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "model.pt").write_bytes(b"stale but trusted")
        session = _FakeSession(error=requests.ConnectionError("offline"))

        path = _cache(cache_dir, session).ensure_artifact("model.pt", "https://example.invalid/m.pt")

        assert path.read_bytes() == b"stale but trusted"
        assert session.calls == []

    def test_new_cache_instance_reuses_file(self, cache_dir: Path) -> None:
        _cache(cache_dir, _FakeSession()).ensure_artifact("vocab.txt", _URL)
        later = _FakeSession()
        _cache(cache_dir, later).ensure_artifact("vocab.txt", _URL)
        assert later.calls == []

    def test_distinct_names_fetched_separately(self, cache_dir: Path) -> None:
        session = _FakeSession()
        cache = _cache(cache_dir, session)
        cache.ensure_model("model.pt", "https://example.invalid/model.pt")
        cache.ensure_vocab("vocab.txt", _URL)
        assert len(session.calls) == 2
        assert sorted(p.name for p in cache_dir.iterdir()) == ["model.pt", "vocab.txt"]

    def test_empty_body_creates_empty_file(self, cache_dir: Path) -> None:
        path = _cache(cache_dir, _FakeSession(body=b"")).ensure_artifact("empty.bin", _URL)
        assert path.read_bytes() == b""

    def test_timeout_passed_to_session(self, cache_dir: Path) -> None:
        session = _FakeSession()
        _cache(cache_dir, session, timeout_s=12.5).ensure_artifact("vocab.txt", _URL)
        assert session.calls == [(_URL, 12.5)]

    def test_artifact_path_does_not_touch_disk(self, cache_dir: Path) -> None:
        cache = _cache(cache_dir, _FakeSession())
        assert cache.artifact_path("vocab.txt") == cache_dir / "vocab.txt"
        assert not cache_dir.exists()

    def test_unknown_size_logged_as_warning(self, cache_dir: Path) -> None:
        path = _cache(cache_dir, _FakeSession(sized=False)).ensure_artifact("vocab.txt", _URL)
        assert path.read_bytes() == _BODY
        warnings = _logged("WARN")
        assert [w["event"] for w in warnings] == ["download_size_unknown"]
        assert warnings[0]["data"]["name"] == "vocab.txt"

    def test_known_size_not_warned(self, cache_dir: Path) -> None:
        _cache(cache_dir, _FakeSession()).ensure_artifact("vocab.txt", _URL)
        assert _logged("WARN") == []


class TestEnsureArtifactFailures:

    def test_http_error_raises_download_error(self, cache_dir: Path) -> None:
        session = _FakeSession(status=404)

        with pytest.raises(DownloadError) as exc_info:
            _cache(cache_dir, session).ensure_artifact("vocab.txt", _URL)

        err = exc_info.value
        assert err.name == "vocab.txt"
        assert err.url == _URL
        assert isinstance(err.cause, requests.HTTPError)
        assert err.__cause__ is err.cause
        assert "vocab.txt" in str(err)
        assert not (cache_dir / "vocab.txt").exists()

    def test_connection_error_raises_download_error(self, cache_dir: Path) -> None:
        session = _FakeSession(error=requests.ConnectionError("no route to host"))
        with pytest.raises(DownloadError):
            _cache(cache_dir, session).ensure_artifact("vocab.txt", _URL)
        assert not (cache_dir / "vocab.txt").exists()

    def test_mid_stream_failure_leaves_nothing_behind(self, cache_dir: Path) -> None:
        session = _FakeSession(fail_after_chunks=3)

        with pytest.raises(DownloadError):
            _cache(cache_dir, session).ensure_artifact("vocab.txt", _URL)

        assert not (cache_dir / "vocab.txt").exists()
        assert _leftovers(cache_dir) == []

    def test_local_write_failure_leaves_nothing_behind(self, cache_dir: Path) -> None:
        cache = _cache(cache_dir, _FakeSession())

        with patch("sparse_query.cache.artifacts.os.replace", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(DownloadError) as exc_info:
                cache.ensure_artifact("vocab.txt", _URL)

        assert isinstance(exc_info.value.cause, OSError)
        assert not (cache_dir / "vocab.txt").exists()
        assert _leftovers(cache_dir) == []

    def test_failure_is_not_retried_and_next_call_fetches_again(self, cache_dir: Path) -> None:
        session = _FakeSession(status=503)
        cache = _cache(cache_dir, session)

        with pytest.raises(DownloadError):
            cache.ensure_artifact("vocab.txt", _URL)
        assert len(session.calls) == 1

        session.status = 200
        path = cache.ensure_artifact("vocab.txt", _URL)
        assert path.read_bytes() == _BODY
        assert len(session.calls) == 2

    def test_directory_failure_surfaces_before_network(self, tmp_path: Path) -> None:
        blocker = tmp_path / "encoders"
        blocker.write_text("file")
        session = _FakeSession()

        with pytest.raises(CacheDirectoryError):
            _cache(blocker, session).ensure_artifact("vocab.txt", _URL)
        assert session.calls == []


class TestArtifactSpecValidation:

    @pytest.mark.parametrize("name", ["", "   ", ".", "..", "../vocab.txt", "sub/vocab.txt", "a\\b"])
    def test_bad_names_rejected(self, cache_dir: Path, name: str) -> None:
        session = _FakeSession()
        with pytest.raises(ValueError):
            _cache(cache_dir, session).ensure_artifact(name, _URL)
        assert session.calls == []

    @pytest.mark.parametrize("url", ["", "vocab.txt", "ftp://example.invalid/v.txt", "file:///etc/passwd", "https://"])
    def test_bad_urls_rejected(self, cache_dir: Path, url: str) -> None:
        session = _FakeSession()
        with pytest.raises(ValueError):
            _cache(cache_dir, session).ensure_artifact("vocab.txt", url)
        assert session.calls == []

    def test_valid_spec(self) -> None:
        spec = ArtifactSpec(name="splade-pp-ed.pt", url="http://localhost:8000/splade-pp-ed.pt")
        assert spec.name == "splade-pp-ed.pt"


class TestConcurrentFetch:

    def test_racing_first_uses_download_once(self, cache_dir: Path) -> None:
        session = _FakeSession(delay_s=0.002)
        cache = _cache(cache_dir, session)
        results: list[Path] = []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def _worker() -> None:
            barrier.wait()
            path = cache.ensure_artifact("vocab.txt", _URL)
            with lock:
                results.append(path)

        threads = [threading.Thread(target=_worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(session.calls) == 1
        assert results == [cache_dir / "vocab.txt"] * 6
        assert (cache_dir / "vocab.txt").read_bytes() == _BODY

    def test_separate_caches_on_same_directory_download_once(self, cache_dir: Path) -> None:
        session = _FakeSession(delay_s=0.002)
        caches = [_cache(cache_dir, session) for _ in range(2)]
        barrier = threading.Barrier(6)

        def _worker(cache: ArtifactCache) -> None:
            barrier.wait()
            cache.ensure_artifact("vocab.txt", _URL)

        threads = [threading.Thread(target=_worker, args=(caches[n % 2],)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(session.calls) == 1
        assert (cache_dir / "vocab.txt").read_bytes() == _BODY
        assert _leftovers(cache_dir) == []
