"""Shared fixtures and test utilities for LZXAuto tests."""

import os
import sys
import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from unittest.mock import patch

import pytest

# Add parent directory to path to import the module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import lzx_auto
from lzx_auto import (
    CompressionBackend,
    CompressionResult,
    CompressionUnavailableError,
    FileCache,
    Outcome,
)


CACHE_FILE = lzx_auto.CACHE_FILE
LOCK_SUFFIX = lzx_auto.LOCK_SUFFIX
TEMP_SUFFIX = lzx_auto.TEMP_SUFFIX


class FakeBackend(CompressionBackend):
    """
    In-memory stand-in for the OS compression primitive.

    Every call is recorded. Outcomes can be set per file name; everything else
    compresses to half its size. Directories in ``legacy_dirs`` report the
    legacy compressed attribute until it is cleared.
    """

    name = "fake"

    def __init__(
        self,
        outcomes: Optional[Dict[str, Outcome]] = None,
        legacy_dirs: Iterable[str] = (),
        delay: float = 0.0,
        on_compress: Optional[Callable[[str], None]] = None,
    ):
        self.outcomes = dict(outcomes or {})
        self.legacy_dirs = {os.path.abspath(d) for d in legacy_dirs}
        self.fail_clear: set = set()
        self.delay = delay
        self.on_compress = on_compress
        self.available = True
        self.unavailable_after: Optional[int] = None
        self.calls: List[str] = []
        self.cleared: List[str] = []
        self._lock = threading.Lock()

    def ensure_available(self) -> None:
        if not self.available:
            raise CompressionUnavailableError("fake backend is offline")

    def compress(self, path: str) -> CompressionResult:
        with self._lock:
            if self.unavailable_after is not None and len(self.calls) >= self.unavailable_after:
                raise CompressionUnavailableError("fake backend went away")
            self.calls.append(path)
        if self.on_compress is not None:
            self.on_compress(path)
        if self.delay:
            time.sleep(self.delay)

        outcome = self.outcomes.get(os.path.basename(path), Outcome.COMPRESSED)
        if outcome is Outcome.FAILED:
            return CompressionResult(Outcome.FAILED, reason="simulated failure")
        try:
            size = os.path.getsize(path)
        except OSError:
            return CompressionResult(Outcome.FAILED, reason="file not found")
        if outcome is Outcome.UNCHANGED:
            return CompressionResult(Outcome.UNCHANGED, size_on_disk=size)
        return CompressionResult(Outcome.COMPRESSED, size_on_disk=size // 2)

    def has_legacy_attribute(self, directory: str) -> bool:
        return os.path.abspath(directory) in self.legacy_dirs

    def clear_legacy_attribute(self, directory: str) -> None:
        directory = os.path.abspath(directory)
        if directory in self.fail_clear:
            raise OSError(f"access denied: {directory}")
        with self._lock:
            self.cleared.append(directory)
            self.legacy_dirs.discard(directory)

    def call_count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if os.path.basename(call) == name)


def write_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


@pytest.fixture
def tmp_test_dir(tmp_path):
    """Create a temporary test directory that's cleaned up after test."""
    test_dir = tmp_path / "test_data"
    test_dir.mkdir()
    return test_dir


@pytest.fixture
def cache_file(tmp_path):
    """Cache file path outside the tree being compressed."""
    return tmp_path / "state" / CACHE_FILE


@pytest.fixture
def cache(cache_file):
    """An empty, loaded cache."""
    cache = FileCache(str(cache_file))
    cache.load()
    return cache


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sample_tree(tmp_test_dir):
    """Nested tree with compressible and excluded files."""
    files = {
        "root.txt": 1000,
        "dir1/a.log": 2000,
        "dir1/photo.jpg": 3000,
        "dir1/subdir1/b.dll": 4000,
        "dir1/subdir2/nested/c.txt": 500,
        "dir2/d.dat": 0,
        "dir2/archive.ZIP": 700,
    }
    for relative, size in files.items():
        write_file(tmp_test_dir / relative, size)
    (tmp_test_dir / "empty_dir").mkdir()
    return tmp_test_dir


@pytest.fixture
def existing_cache_file(cache_file):
    """A cache store with two known files."""
    cache_file.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "version": 1,
        "files": {
            FileCache.normalize_path("/data/one.txt"): {"size": 100, "outcome": "compressed"},
            FileCache.normalize_path("/data/two.bin"): {"size": 200, "outcome": "failed"},
        },
    }
    cache_file.write_text(json.dumps(data))
    return cache_file


@pytest.fixture
def corrupted_cache_file(cache_file):
    """Create a corrupted cache file (invalid JSON)."""
    cache_file.parent.mkdir(parents=True, exist_ok=True)
    cache_file.write_text("{ invalid json }")
    return cache_file


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "LZXAutoConfig.json"
    path.write_text(json.dumps({"skipFileExtensions": ["jpg", ".ZIP", " mp4 "]}))
    return path


@pytest.fixture
def lock_file(tmp_test_dir):
    """Create a lock file path."""
    return tmp_test_dir / (CACHE_FILE + LOCK_SUFFIX)


@pytest.fixture
def existing_lock_file(lock_file):
    """Create an existing lock file."""
    with open(lock_file, 'w') as f:
        f.write(f"{os.getpid()}\n2024-01-01T00:00:00\n")
    return lock_file


@pytest.fixture
def stale_lock_file(lock_file):
    """Create a stale lock file (old timestamp)."""
    with open(lock_file, 'w') as f:
        f.write("99999\n2020-01-01T00:00:00\n")
    old_time = os.path.getmtime(lock_file) - (25 * 3600)  # 25 hours ago
    os.utime(lock_file, (old_time, old_time))
    return lock_file


@pytest.fixture
def mock_process_running():
    """Mock is_process_running() to return True for a specific PID."""
    def _mock_is_running(pid):
        return pid == 12345

    with patch('lzx_auto.is_process_running', side_effect=_mock_is_running):
        yield


@pytest.fixture
def mock_process_not_running():
    """Mock is_process_running() to return False for all PIDs."""
    with patch('lzx_auto.is_process_running', return_value=False):
        yield


@pytest.fixture
def mock_process_os_kill():
    """Mock os.kill for process checking fallback."""
    with patch('os.kill', return_value=None):
        with patch('lzx_auto.PSUTIL_AVAILABLE', False):
            yield


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    yield
    logging.root.handlers = original_handlers
    logging.root.setLevel(original_level)
