#!/usr/bin/env python3
"""
Incremental transparent compression for whole directory trees.

LZXAuto walks a directory tree and asks the filesystem to compress every file
(NTFS LZX through compact.exe on Windows, btrfs defragment on Linux). The
compression primitive cannot tell "already compressed" apart from "not
compressible" without redoing the work, and redoing it writes temporary data
to disk on every run. LZXAuto therefore remembers the size and outcome of every
file it has handled; files whose size has not changed since the last run are
skipped. On flash storage this saves write cycles, and a second run over an
unchanged tree issues no compression calls at all.

Directories that still carry the legacy NTFS "compressed" attribute have it
cleared once all of their files have been processed, since LZX compression does
not use that attribute and leaving it set misleads other tools.
"""

import os
import sys
import json
import argparse
import logging
import queue
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

try:
    import psutil
    PSUTIL_AVAILABLE = True
except ImportError:
    PSUTIL_AVAILABLE = False

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tqdm import tqdm


__version__ = "1.2.0"

# Log levels. GENERAL sits between INFO and WARNING so that "general" output
# (session boundaries, skipped directories) survives when statistics are muted.
GENERAL = 25
logging.addLevelName(GENERAL, "GENERAL")
LOG_LEVELS = {
    'none': logging.CRITICAL + 10,
    'general': GENERAL,
    'info': logging.INFO,
    'debug': logging.DEBUG,
}

# Constants
CONFIG_FILE = "LZXAutoConfig.json"
CACHE_FILE = "lzx_auto_cache.json"
CACHE_FORMAT_VERSION = 1
CACHE_CHECKPOINT_INTERVAL = 5000  # Decided files between intermediate cache saves
TEMP_SUFFIX = ".tmp"
LOCK_SUFFIX = ".lock"
QUEUE_DEPTH_PER_WORKER = 4
POLL_INTERVAL = 0.2  # Seconds between cancellation checks while blocked on the queue
STALE_LOCK_SECONDS = 86400
TASK_NAME = "LZXAuto"
SCHEDULE_INTERVAL_DAYS = 7
SCHEDULE_START_TIME = "03:00"
FILE_ATTRIBUTE_COMPRESSED = 0x800

DEFAULT_SKIP_EXTENSIONS = frozenset({
    '7z', 'aac', 'apk', 'avi', 'bz2', 'cab', 'docx', 'flac', 'gif', 'gz',
    'heic', 'jar', 'jpeg', 'jpg', 'lz', 'lzma', 'm4a', 'm4v', 'mkv', 'mov',
    'mp3', 'mp4', 'msi', 'ogg', 'opus', 'png', 'pptx', 'rar', 'tgz', 'webm',
    'webp', 'wim', 'wmv', 'xlsx', 'xz', 'zip', 'zst',
})

_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)


class LZXAutoError(Exception):
    """Base class for errors raised by LZXAuto."""


class ConfigError(LZXAutoError, ValueError):
    """Configuration file is missing or malformed."""


class CacheCorruptError(LZXAutoError, RuntimeError):
    """Cache store exists but cannot be read back. Fatal for the session."""


class CompressionUnavailableError(LZXAutoError, RuntimeError):
    """The OS compression primitive cannot be reached at all. Fatal for the session."""


class Outcome(Enum):
    UNCHANGED = "unchanged"
    COMPRESSED = "compressed"
    FAILED = "failed"


class Decision(Enum):
    """What the engine did with one file."""
    SKIPPED_EXTENSION = "skipped_extension"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    COMPRESSED = "compressed"
    ALREADY_COMPRESSED = "already_compressed"
    FAILED = "failed"
    VANISHED = "vanished"


@dataclass(frozen=True)
class FileRecord:
    path: str
    size: int
    outcome: Outcome


@dataclass(frozen=True)
class CompressionResult:
    outcome: Outcome
    reason: Optional[str] = None
    size_on_disk: Optional[int] = None


@dataclass(frozen=True)
class FileEntry:
    path: str
    size: int
    directory: str


@dataclass(frozen=True)
class DirectoryState:
    path: str
    legacy_attribute: bool


SESSION_COUNTERS = (
    'scanned',
    'skipped_unchanged',
    'skipped_extension',
    'compressed',
    'already_compressed',
    'failed',
    'vanished',
    'inaccessible_files',
    'directories_skipped',
    'directories_normalized',
    'bytes_processed',
    'bytes_on_disk',
)


@dataclass
class SessionStats:
    """Counters for one session. Workers update them concurrently through increment()."""
    root: str = ""
    status: str = "pending"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    scanned: int = 0
    skipped_unchanged: int = 0
    skipped_extension: int = 0
    compressed: int = 0
    already_compressed: int = 0
    failed: int = 0
    vanished: int = 0
    inaccessible_files: int = 0
    directories_skipped: int = 0
    directories_normalized: int = 0
    bytes_processed: int = 0
    bytes_on_disk: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def start(self, root: str) -> None:
        self.root = root
        self.status = "running"
        self.start_time = time.time()

    def finish(self, status: str) -> None:
        self.status = status
        self.end_time = time.time()

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def add_bytes(self, processed: int, on_disk: int) -> None:
        with self._lock:
            self.bytes_processed += processed
            self.bytes_on_disk += on_disk

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    @property
    def compression_ratio(self) -> Optional[float]:
        if not self.bytes_on_disk:
            return None
        return self.bytes_processed / self.bytes_on_disk

    def as_dict(self) -> Dict:
        with self._lock:
            counters = {name: getattr(self, name) for name in SESSION_COUNTERS}
        return {
            'root': self.root,
            'status': self.status,
            'start_time': datetime.fromtimestamp(self.start_time).isoformat() if self.start_time else None,
            'end_time': datetime.fromtimestamp(self.end_time).isoformat() if self.end_time else None,
            'elapsed_seconds': self.elapsed,
            'compression_ratio': self.compression_ratio,
            **counters,
        }


def normalize_extension(extension: str) -> str:
    return extension.strip().lower().lstrip('.')


def file_extension(path: str) -> str:
    """Lowercased extension of path without the dot ('' when there is none)."""
    return normalize_extension(os.path.splitext(path)[1])


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    if PSUTIL_AVAILABLE:
        try:
            return psutil.pid_exists(pid)
        except Exception:
            return False

    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


def logical_cpu_count() -> int:
    """Number of logical processors, used as the default worker count."""
    if PSUTIL_AVAILABLE:
        try:
            count = psutil.cpu_count(logical=True)
            if count:
                return count
        except Exception:
            pass
    return os.cpu_count() or 1


def default_cache_path() -> str:
    """Location of the cache store when none is given on the command line."""
    if os.name == "nt":
        base = os.environ.get("PROGRAMDATA") or os.path.expanduser("~")
        return os.path.join(base, "LZXAuto", CACHE_FILE)
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return os.path.join(base, "lzx_auto", CACHE_FILE)


class FileLock:
    """Lock file guarding against two LZXAuto instances sharing one cache."""

    def __init__(self, lock_file: str):
        self.lock_file = lock_file
        self.locked = False

    def _holder_is_alive(self) -> bool:
        """Return True if the existing lock file belongs to a live process."""
        try:
            lock_age = time.time() - os.path.getmtime(self.lock_file)
        except OSError:
            return False

        try:
            with open(self.lock_file, 'r') as f:
                first_line = f.readline().strip()
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as e:
            if lock_age > STALE_LOCK_SECONDS:
                logging.warning(f"Removing unreadable stale lock file {self.lock_file}: {e}")
                return False
            return True

        if first_line.isdigit():
            lock_pid = int(first_line)
            if is_process_running(lock_pid):
                return True
            logging.warning(
                f"Removing stale lock file: process {lock_pid} is not running "
                f"(lock age: {lock_age / 3600:.1f} hours)"
            )
            return False

        if lock_age > STALE_LOCK_SECONDS:
            logging.warning(f"Removing stale lock file (age: {lock_age / 3600:.1f} hours)")
            return False
        return True

    def acquire(self) -> bool:
        if os.path.exists(self.lock_file):
            if self._holder_is_alive():
                return False
            try:
                os.remove(self.lock_file)
            except FileNotFoundError:
                pass
            except OSError:
                return False

        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except OSError:
            return False
        with os.fdopen(fd, 'w') as f:
            f.write(f"{os.getpid()}\n{datetime.now().isoformat()}\n")
        self.locked = True
        return True

    def release(self):
        if self.locked:
            try:
                os.remove(self.lock_file)
            except OSError:
                pass
            self.locked = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError("Another LZXAuto instance is already running")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class FileCache:
    """
    Persistent change-detection cache: normalized path -> last size and outcome.

    Lookups do not lock. Records are immutable and a dict read is atomic, so a
    reader always sees either the previous or the new record for a path. Writes
    are serialized through ``_lock``. ``persist`` writes a complete snapshot to
    a temporary file and swaps it in with ``os.replace``. A crash mid-persist
    therefore leaves either the old or the new store on disk.
    """

    def __init__(self, cache_file: str):
        self.cache_file = cache_file
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    @staticmethod
    def normalize_path(path: str) -> str:
        return os.path.normcase(os.path.abspath(path))

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> int:
        """
        Load the store from disk, replacing anything held in memory.

        A missing or empty store loads as an empty cache (first run).

        Returns:
            Number of records loaded

        Raises:
            CacheCorruptError: If the store exists but cannot be parsed.
        """
        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                raw = f.read()
        except FileNotFoundError:
            raw = ""
        except (OSError, UnicodeDecodeError) as e:
            raise CacheCorruptError(
                f"Could not read cache file {self.cache_file}: {e}. "
                f"Run with --reset-db to start with an empty cache."
            ) from e

        records: Dict[str, FileRecord] = {}
        if raw.strip():
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise CacheCorruptError(
                    f"Cache file {self.cache_file} is corrupt ({e}). "
                    f"Run with --reset-db to start with an empty cache."
                ) from e
            records = self._parse(data)

        with self._lock:
            self._records = records
        logging.debug(f"Loaded {len(records)} cached files from {self.cache_file}")
        return len(records)

    def _parse(self, data) -> Dict[str, FileRecord]:
        if (not isinstance(data, dict)
                or data.get('version') != CACHE_FORMAT_VERSION
                or not isinstance(data.get('files'), dict)):
            raise CacheCorruptError(
                f"Cache file {self.cache_file} has an unexpected layout. "
                f"Run with --reset-db to start with an empty cache."
            )

        records = {}
        for path, entry in data['files'].items():
            try:
                size = entry['size']
                outcome = Outcome(entry['outcome'])
                if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                    raise ValueError(f"invalid size {size!r}")
            except (KeyError, TypeError, ValueError) as e:
                raise CacheCorruptError(
                    f"Cache file {self.cache_file} has an invalid entry for {path}: {e}. "
                    f"Run with --reset-db to start with an empty cache."
                ) from e
            key = self.normalize_path(path)
            records[key] = FileRecord(key, size, outcome)
        return records

    def lookup(self, path: str) -> Optional[FileRecord]:
        return self._records.get(self.normalize_path(path))

    def record(self, path: str, size: int, outcome: Outcome) -> FileRecord:
        key = self.normalize_path(path)
        entry = FileRecord(key, size, outcome)
        with self._lock:
            self._records[key] = entry
        return entry

    def snapshot(self) -> Dict[str, FileRecord]:
        with self._lock:
            return dict(self._records)

    def persist(self) -> bool:
        """
        Save the cache atomically.

        Returns:
            True if the store on disk now matches memory, False if saving failed
            (the previous store is left untouched).
        """
        with self._persist_lock:
            records = self.snapshot()
            payload = {
                'version': CACHE_FORMAT_VERSION,
                'saved_at': datetime.now().isoformat(),
                'files': {
                    path: {'size': record.size, 'outcome': record.outcome.value}
                    for path, record in records.items()
                },
            }
            temp_file = self.cache_file + TEMP_SUFFIX
            try:
                cache_dir = os.path.dirname(self.cache_file)
                if cache_dir:
                    os.makedirs(cache_dir, exist_ok=True)
                with open(temp_file, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, separators=(',', ':'))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_file, self.cache_file)
            except OSError as e:
                logging.error(f"Failed to save cache file {self.cache_file}: {e}")
                try:
                    if os.path.exists(temp_file):
                        os.remove(temp_file)
                except OSError:
                    pass
                return False

        logging.debug(f"Saved {len(records)} cached files to {self.cache_file}")
        return True

    def reset(self) -> None:
        """Drop every record, in memory and on disk."""
        with self._persist_lock:
            with self._lock:
                self._records = {}
            for path in (self.cache_file, self.cache_file + TEMP_SUFFIX):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass


def _run_tool(args: List[str]) -> Tuple[int, str]:
    """Run an external tool and return (exit code, combined stdout/stderr)."""
    result = subprocess.run(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        creationflags=_CREATION_FLAGS,
    )
    return result.returncode, result.stdout or ""


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""


_kernel32 = None


def get_allocated_size(path: str) -> Optional[int]:
    """
    Bytes actually allocated on disk for path, or None if it cannot be determined.

    On Windows this is GetCompressedFileSizeW, which reflects LZX/XPRESS
    compression. Elsewhere it is st_blocks * 512.
    """
    if os.name == "nt":
        global _kernel32
        import ctypes
        from ctypes import wintypes

        if _kernel32 is None:
            _kernel32 = ctypes.WinDLL('kernel32', use_last_error=True)
            _kernel32.GetCompressedFileSizeW.argtypes = [wintypes.LPCWSTR, ctypes.POINTER(wintypes.DWORD)]
            _kernel32.GetCompressedFileSizeW.restype = wintypes.DWORD

        high = wintypes.DWORD(0)
        low = _kernel32.GetCompressedFileSizeW(path, ctypes.byref(high))
        if low == 0xFFFFFFFF and ctypes.get_last_error() != 0:
            return None
        return (high.value << 32) + low

    try:
        return os.stat(path).st_blocks * 512
    except (OSError, AttributeError):
        return None


class CompressionBackend:
    """
    The OS compression primitive, injected into the engine.

    ``compress`` is synchronous and handles one file per call. It returns
    UNCHANGED when the file's allocation did not shrink (already compressed, or
    not compressible), COMPRESSED when it did, and FAILED with a reason
    otherwise. It only raises CompressionUnavailableError, when the tool
    itself has gone missing.
    """

    name = "base"

    def ensure_available(self) -> None:
        raise NotImplementedError

    def compress(self, path: str) -> CompressionResult:
        raise NotImplementedError

    def has_legacy_attribute(self, directory: str) -> bool:
        return False

    def clear_legacy_attribute(self, directory: str) -> None:
        pass

    def _compress_with(self, args: List[str], path: str) -> CompressionResult:
        before = get_allocated_size(path)
        try:
            code, output = _run_tool(args)
        except FileNotFoundError as e:
            raise CompressionUnavailableError(f"{args[0]} could not be started: {e}") from e
        except OSError as e:
            return CompressionResult(Outcome.FAILED, reason=str(e))

        if code != 0:
            return CompressionResult(Outcome.FAILED, reason=_last_line(output) or f"exit code {code}")

        after = get_allocated_size(path)
        if before is not None and after is not None and after < before:
            return CompressionResult(Outcome.COMPRESSED, size_on_disk=after)
        return CompressionResult(Outcome.UNCHANGED, size_on_disk=after)


class CompactBackend(CompressionBackend):
    """NTFS compression through compact.exe (Windows 10+)."""

    name = "compact"

    def __init__(self, algorithm: str = "LZX", executable: str = "compact.exe"):
        self.algorithm = algorithm
        self.executable = executable

    def ensure_available(self) -> None:
        if os.name != "nt":
            raise CompressionUnavailableError("compact.exe is only available on Windows")
        if shutil.which(self.executable) is None:
            raise CompressionUnavailableError(f"{self.executable} was not found on PATH")

    def compress(self, path: str) -> CompressionResult:
        return self._compress_with([self.executable, "/c", f"/exe:{self.algorithm}", path], path)

    def has_legacy_attribute(self, directory: str) -> bool:
        try:
            attributes = getattr(os.stat(directory), "st_file_attributes", 0)
        except OSError:
            return False
        return bool(attributes & FILE_ATTRIBUTE_COMPRESSED)

    def clear_legacy_attribute(self, directory: str) -> None:
        # Without /s this only touches the directory entry, not its files
        code, output = _run_tool([self.executable, "/u", directory])
        if code != 0:
            raise OSError(f"compact /u failed: {_last_line(output) or f'exit code {code}'}")


class BtrfsBackend(CompressionBackend):
    """btrfs compression through `btrfs filesystem defragment -c`."""

    name = "btrfs"

    def __init__(self, algorithm: str = "zstd"):
        self.algorithm = algorithm

    def ensure_available(self) -> None:
        missing = [tool for tool in ("btrfs", "lsattr", "chattr") if shutil.which(tool) is None]
        if missing:
            raise CompressionUnavailableError(f"Required tools not found on PATH: {', '.join(missing)}")

    def compress(self, path: str) -> CompressionResult:
        return self._compress_with(["btrfs", "filesystem", "defragment", f"-c{self.algorithm}", path], path)

    def has_legacy_attribute(self, directory: str) -> bool:
        try:
            code, output = _run_tool(["lsattr", "-d", directory])
        except OSError:
            return False
        if code != 0:
            return False
        line = _last_line(output)
        flags = line.split(None, 1)[0] if line else ""
        return "c" in flags

    def clear_legacy_attribute(self, directory: str) -> None:
        code, output = _run_tool(["chattr", "-c", directory])
        if code != 0:
            raise OSError(f"chattr -c failed: {_last_line(output) or f'exit code {code}'}")


def default_backend() -> CompressionBackend:
    if os.name == "nt":
        return CompactBackend()
    return BtrfsBackend()


class LZXAutoConfig(BaseModel):
    """Validated contents of LZXAutoConfig.json."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    skip_file_extensions: FrozenSet[str] = Field(..., alias="skipFileExtensions")

    @field_validator("skip_file_extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value):
        if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("skipFileExtensions must be a list of extension strings")
        normalized = set()
        for item in value:
            if not isinstance(item, str):
                raise ValueError(f"extension {item!r} is not a string")
            extension = normalize_extension(item)
            if not extension:
                raise ValueError("empty extension in skipFileExtensions")
            if '/' in extension or '\\' in extension:
                raise ValueError(f"extension {item!r} contains a path separator")
            normalized.add(extension)
        return frozenset(normalized)


def load_config(config_path: Optional[str] = None) -> LZXAutoConfig:
    """
    Load and validate the skip-extension configuration.

    Args:
        config_path: Path to the JSON config. If None, CONFIG_FILE in the current
                     directory is tried and built-in defaults are used when it
                     does not exist.

    Raises:
        ConfigError: If the file is missing (when given explicitly), not JSON,
                     or fails validation.
    """
    explicit = config_path is not None
    path = config_path if explicit else CONFIG_FILE

    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        logging.debug(f"{path} not found, using built-in skip extensions")
        return LZXAutoConfig(skip_file_extensions=DEFAULT_SKIP_EXTENSIONS)

    try:
        with open(path, 'r', encoding='utf-8-sig') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Could not parse {path}: top level must be a JSON object")

    try:
        return LZXAutoConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def _is_junction(entry: os.DirEntry) -> bool:
    is_junction = getattr(entry, "is_junction", None)
    return bool(is_junction()) if is_junction is not None else False


def iter_tree(
    root: str,
    backend: CompressionBackend,
    stats: Optional[SessionStats] = None,
) -> Iterator[Union[FileEntry, DirectoryState]]:
    """
    Lazily walk root, yielding each directory's files followed by its DirectoryState.

    Only one directory listing is held at a time. Symlinks and junctions are
    not followed. Unreadable directories and files are logged, counted in stats
    and skipped; the walk always continues.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            logging.log(GENERAL, f"Skipping directory {current}: {e.strerror or e}")
            if stats is not None:
                stats.increment('directories_skipped')
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if not _is_junction(entry):
                        subdirs.append(entry.path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                size = entry.stat(follow_symlinks=False).st_size
            except OSError as e:
                logging.warning(f"Skipping {entry.path}: {e.strerror or e}")
                if stats is not None:
                    stats.increment('inaccessible_files')
                continue
            yield FileEntry(entry.path, size, current)

        yield DirectoryState(current, backend.has_legacy_attribute(current))
        stack.extend(reversed(subdirs))


class _DirectoryTracker:
    """
    Outstanding-file counters per directory.

    A directory is sealed once the walker has emitted all of its files. The
    DirectoryState comes back to the caller (from seal or done) exactly once,
    when the directory is sealed and has no files left undecided, and only if
    its legacy attribute needs clearing.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, int] = {}
        self._sealed: Dict[str, DirectoryState] = {}

    def add(self, directory: str) -> None:
        with self._lock:
            self._pending[directory] = self._pending.get(directory, 0) + 1

    def seal(self, state: DirectoryState) -> Optional[DirectoryState]:
        with self._lock:
            if self._pending.get(state.path):
                if state.legacy_attribute:
                    self._sealed[state.path] = state
                return None
        return state if state.legacy_attribute else None

    def done(self, directory: str) -> Optional[DirectoryState]:
        with self._lock:
            remaining = self._pending[directory] - 1
            if remaining:
                self._pending[directory] = remaining
                return None
            del self._pending[directory]
            return self._sealed.pop(directory, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


_STOP = object()


class LZXAutoEngine:
    """
    One compression session over one root path.

    The engine owns the cache handle, the backend and the cancellation token.
    The walker runs on the calling thread and feeds a bounded queue. A fixed
    pool of worker threads takes entries from it and runs ``decide`` on each.
    """

    def __init__(
        self,
        cache: FileCache,
        backend: Optional[CompressionBackend] = None,
        skip_extensions: Iterable[str] = DEFAULT_SKIP_EXTENSIONS,
        workers: Optional[int] = None,
        show_progress: bool = False,
        checkpoint_interval: int = CACHE_CHECKPOINT_INTERVAL,
    ):
        if workers is not None and workers < 1:
            raise ValueError("workers must be at least 1")
        self.cache = cache
        self.backend = backend if backend is not None else default_backend()
        self.skip_extensions = frozenset(normalize_extension(e) for e in skip_extensions)
        self.workers = workers or logical_cpu_count()
        self.show_progress = show_progress
        self.checkpoint_interval = checkpoint_interval
        self.stats = SessionStats()

        self._cancel = threading.Event()
        self._tracker = _DirectoryTracker()
        self._fatal: Optional[BaseException] = None
        self._fatal_lock = threading.Lock()
        self._decided = 0
        self._decided_lock = threading.Lock()
        self._pbar: Optional[tqdm] = None
        self._started = False

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> bool:
        """
        Request cooperative shutdown.

        In-flight compression calls finish; nothing new is enqueued or dequeued.

        Returns:
            True for the first request, False if shutdown was already under way.
        """
        if self._cancel.is_set():
            logging.log(GENERAL, "Shutdown already in progress")
            return False
        self._cancel.set()
        logging.log(GENERAL, "Cancellation requested, waiting for in-flight files to finish")
        return True

    def decide(self, entry: FileEntry) -> Decision:
        """Skip or compress one file, recording the outcome in the cache."""
        self.stats.increment('scanned')

        if file_extension(entry.path) in self.skip_extensions:
            self.stats.increment('skipped_extension')
            logging.debug(f"Skip (extension): {entry.path}")
            return Decision.SKIPPED_EXTENSION

        record = self.cache.lookup(entry.path)
        if record is not None and record.size == entry.size and record.outcome is not Outcome.FAILED:
            self.stats.increment('skipped_unchanged')
            logging.debug(f"Skip (unchanged, {entry.size} bytes): {entry.path}")
            return Decision.SKIPPED_UNCHANGED

        result = self.backend.compress(entry.path)

        if result.outcome is Outcome.FAILED:
            if not os.path.lexists(entry.path):
                self.stats.increment('vanished')
                logging.warning(f"File disappeared before it could be compressed: {entry.path}")
                if self.cache.lookup(entry.path) is not None:
                    # A stale size-match must not survive a vanish
                    self.cache.record(entry.path, entry.size, Outcome.FAILED)
                return Decision.VANISHED
            self.cache.record(entry.path, entry.size, Outcome.FAILED)
            self.stats.increment('failed')
            logging.warning(f"Compression failed for {entry.path}: {result.reason}")
            return Decision.FAILED

        self.cache.record(entry.path, entry.size, Outcome.COMPRESSED)
        on_disk = result.size_on_disk if result.size_on_disk is not None else entry.size
        self.stats.add_bytes(entry.size, on_disk)
        if result.outcome is Outcome.COMPRESSED:
            self.stats.increment('compressed')
            logging.debug(f"Compressed {entry.path}: {entry.size} -> {on_disk} bytes")
            return Decision.COMPRESSED
        self.stats.increment('already_compressed')
        logging.debug(f"Unchanged {entry.path}: {on_disk} bytes on disk")
        return Decision.ALREADY_COMPRESSED

    def run(self, root: str) -> SessionStats:
        """
        Process every file under root.

        The cache is persisted and the session reported whether the run
        completes, is cancelled or fails.

        Returns:
            The finalized SessionStats (status 'completed' or 'cancelled')

        Raises:
            ValueError: If root is not a directory.
            CompressionUnavailableError: If the compression primitive is unreachable.
        """
        if self._started:
            raise RuntimeError("An engine runs a single session; create a new one")
        self._started = True

        root = os.path.abspath(root)
        if not os.path.isdir(root):
            raise ValueError(f"{root} is not a directory")
        self.backend.ensure_available()

        self.stats.start(root)
        logging.log(GENERAL, f"Session started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}: {root}")
        logging.info(
            f"Backend: {self.backend.name}, workers: {self.workers}, "
            f"cached files: {len(self.cache)}, skipped extensions: {len(self.skip_extensions)}"
        )

        work: queue.Queue = queue.Queue(maxsize=self.workers * QUEUE_DEPTH_PER_WORKER)
        threads = [
            threading.Thread(target=self._worker, args=(work,), name=f"lzx-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        if self.show_progress:
            self._pbar = tqdm(desc="Compressing", unit="file")

        status = "completed"
        for thread in threads:
            thread.start()
        try:
            if self._produce(root, work):
                for _ in threads:
                    if not self._put(work, _STOP):
                        break
        except KeyboardInterrupt:
            self._cancel.set()
            status = "cancelled"
            raise
        except BaseException:
            self._cancel.set()
            status = "failed"
            raise
        finally:
            for thread in threads:
                while thread.is_alive():
                    thread.join(POLL_INTERVAL)
            if self._pbar is not None:
                self._pbar.close()
                self._pbar = None
            if self._fatal is not None:
                status = "failed"
            elif status == "completed" and self._cancel.is_set():
                status = "cancelled"
            self._finalize(status)

        if self._fatal is not None:
            raise self._fatal
        return self.stats

    def _produce(self, root: str, work: queue.Queue) -> bool:
        """Feed the walk into the queue. Returns False if cancelled part way."""
        for item in iter_tree(root, self.backend, self.stats):
            if self._cancel.is_set():
                return False
            if isinstance(item, DirectoryState):
                state = self._tracker.seal(item)
                if state is not None:
                    self._normalize(state)
                continue
            self._tracker.add(item.directory)
            if not self._put(work, item):
                return False
        return not self._cancel.is_set()

    def _put(self, work: queue.Queue, item) -> bool:
        while not self._cancel.is_set():
            try:
                work.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _worker(self, work: queue.Queue) -> None:
        while not self._cancel.is_set():
            try:
                item = work.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _STOP:
                return
            if self._cancel.is_set():
                return
            try:
                self._process(item)
            except CompressionUnavailableError as e:
                self._abort(e)
                return

    def _process(self, entry: FileEntry) -> None:
        try:
            self.decide(entry)
        except CompressionUnavailableError:
            raise
        except Exception as e:
            logging.error(f"Unexpected error while processing {entry.path}: {e}", exc_info=True)
            self.cache.record(entry.path, entry.size, Outcome.FAILED)
            self.stats.increment('failed')

        state = self._tracker.done(entry.directory)
        if state is not None:
            self._normalize(state)
        self._after_decision()

    def _after_decision(self) -> None:
        with self._decided_lock:
            self._decided += 1
            checkpoint = bool(self.checkpoint_interval) and self._decided % self.checkpoint_interval == 0
            if self._pbar is not None:
                self._pbar.update(1)
                self._pbar.set_postfix(
                    OK=self.stats.compressed + self.stats.already_compressed,
                    Skip=self.stats.skipped_unchanged + self.stats.skipped_extension,
                    Fail=self.stats.failed,
                    refresh=False,
                )
        if checkpoint:
            logging.debug(f"Checkpoint after {self._decided} files")
            self.cache.persist()

    def _normalize(self, state: DirectoryState) -> None:
        try:
            self.backend.clear_legacy_attribute(state.path)
        except Exception as e:
            logging.warning(f"Could not clear compressed attribute on {state.path}: {e}")
            return
        self.stats.increment('directories_normalized')
        logging.debug(f"Cleared legacy compressed attribute on {state.path}")

    def _abort(self, error: BaseException) -> None:
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = error
        logging.error(f"Aborting session: {error}")
        self._cancel.set()

    def _finalize(self, status: str) -> None:
        if not self.cache.persist():
            logging.error("Cache could not be saved; files handled in this session will be examined again next run")
        self.stats.finish(status)
        report_session(self.stats)


def _format_bytes(value: int) -> str:
    if value >= 1024 ** 3:
        return f"{value / 1024 ** 3:.2f} GB"
    if value >= 1024 ** 2:
        return f"{value / 1024 ** 2:.2f} MB"
    if value >= 1024:
        return f"{value / 1024:.1f} KB"
    return f"{value} B"


def report_session(stats: SessionStats) -> None:
    """Log the session boundary at GENERAL and the statistics at INFO."""
    logging.log(
        GENERAL,
        f"Session {stats.status} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} "
        f"after {stats.elapsed:.1f}s: {stats.root}"
    )
    logging.info("=" * 60)
    logging.info("Session Summary:")
    logging.info(f"  Files scanned:               {stats.scanned}")
    logging.info(f"  Compressed:                  {stats.compressed}")
    logging.info(f"  Already compressed:          {stats.already_compressed}")
    logging.info(f"  Skipped (unchanged):         {stats.skipped_unchanged}")
    logging.info(f"  Skipped (extension):         {stats.skipped_extension}")
    logging.info(f"  Failed:                      {stats.failed}")
    logging.info(f"  Vanished:                    {stats.vanished}")
    logging.info(f"  Inaccessible files:          {stats.inaccessible_files}")
    logging.info(f"  Directories skipped:         {stats.directories_skipped}")
    logging.info(f"  Directories normalized:      {stats.directories_normalized}")
    if stats.bytes_processed:
        logging.info(f"  Bytes processed:             {_format_bytes(stats.bytes_processed)}")
        logging.info(f"  Bytes on disk:               {_format_bytes(stats.bytes_on_disk)}")
        ratio = stats.compression_ratio
        if ratio is not None:
            logging.info(f"  Compression ratio:           {ratio:.2f}x")
    if stats.elapsed > 0 and stats.scanned:
        logging.info(f"  Throughput:                  {stats.scanned / stats.elapsed:.1f} files/s")
    logging.info("=" * 60)


def install_signal_handlers(engine: LZXAutoEngine) -> None:
    """Route SIGINT/SIGTERM (and SIGBREAK on Windows) to engine.cancel()."""
    def _handler(signum, frame):
        engine.cancel()

    for name in ("SIGINT", "SIGTERM", "SIGBREAK"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            signal.signal(signum, _handler)
        except (ValueError, OSError) as e:
            # Only the main thread may install handlers
            logging.debug(f"Could not install {name} handler: {e}")


def run_session(
    root: str,
    config: Optional[LZXAutoConfig] = None,
    cache_file: Optional[str] = None,
    backend: Optional[CompressionBackend] = None,
    workers: Optional[int] = None,
    show_progress: bool = True,
    on_engine: Optional[Callable[[LZXAutoEngine], None]] = None,
) -> SessionStats:
    """
    Run one session over root with a freshly loaded cache.

    Args:
        root: Directory to compress (recursive)
        config: Skip-extension configuration (None loads CONFIG_FILE or defaults)
        cache_file: Path of the cache store (None for default_cache_path())
        backend: Compression backend (None for default_backend())
        workers: Worker thread count (None for one per logical CPU)
        show_progress: Whether to show a progress bar
        on_engine: Called with the engine before it starts, e.g. to wire up
                   cancellation from signals or a web request

    Returns:
        The finalized SessionStats

    Raises:
        ValueError: If root is not a directory or the config is invalid
        RuntimeError: If another instance holds the cache, the cache is corrupt,
                      or the compression primitive is unavailable
    """
    if not os.path.isdir(root):
        raise ValueError(f"{root} is not a directory")

    if config is None:
        config = load_config()
    if cache_file is None:
        cache_file = default_cache_path()

    cache_dir = os.path.dirname(os.path.abspath(cache_file))
    os.makedirs(cache_dir, exist_ok=True)

    with FileLock(cache_file + LOCK_SUFFIX):
        cache = FileCache(cache_file)
        cache.load()
        engine = LZXAutoEngine(
            cache,
            backend=backend,
            skip_extensions=config.skip_file_extensions,
            workers=workers,
            show_progress=show_progress,
        )
        if on_engine is not None:
            on_engine(engine)
        return engine.run(root)


def reset_cache(cache_file: Optional[str] = None) -> None:
    """Maintenance operation: discard the whole cache without traversing anything."""
    if cache_file is None:
        cache_file = default_cache_path()
    cache_dir = os.path.dirname(os.path.abspath(cache_file))
    os.makedirs(cache_dir, exist_ok=True)
    with FileLock(cache_file + LOCK_SUFFIX):
        FileCache(cache_file).reset()
    logging.log(GENERAL, f"Cache reset: {cache_file}. All files will be examined on the next run.")


def _task_path_argument(path: str) -> str:
    # A trailing backslash would escape the closing quote ("C:\")
    if path.endswith('\\'):
        path += '.'
    return f'"{path}"'


def register_schedule(root: str, python: Optional[str] = None) -> bool:
    """
    Register a Windows scheduled task that runs LZXAuto over root every week.

    Returns:
        True if the task was created or updated, False otherwise
    """
    if os.name != "nt":
        logging.error("Scheduling is only supported on Windows")
        return False

    command = f'{_task_path_argument(python or sys.executable)} -m lzx_auto {_task_path_argument(root)}'
    args = [
        "schtasks", "/Create", "/F",
        "/TN", TASK_NAME,
        "/SC", "DAILY", "/MO", str(SCHEDULE_INTERVAL_DAYS),
        "/ST", SCHEDULE_START_TIME,
        "/RU", "SYSTEM",
        "/RL", "HIGHEST",
        "/TR", command,
    ]
    try:
        code, output = _run_tool(args)
    except OSError as e:
        logging.error(f"Schedule initialization failed: {e}")
        return False
    if code != 0:
        logging.error(f"Schedule initialization failed: {_last_line(output) or f'exit code {code}'}")
        return False
    logging.log(GENERAL, f"Schedule initialized: every {SCHEDULE_INTERVAL_DAYS} days for {root}")
    return True


def remove_schedule() -> bool:
    """Delete the LZXAuto scheduled task. Returns True on success."""
    if os.name != "nt":
        logging.error("Scheduling is only supported on Windows")
        return False
    try:
        code, output = _run_tool(["schtasks", "/Delete", "/F", "/TN", TASK_NAME])
    except OSError as e:
        logging.error(f"Schedule removal failed: {e}")
        return False
    if code != 0:
        logging.error(f"Schedule removal failed: {_last_line(output) or f'exit code {code}'}")
        return False
    logging.log(GENERAL, "Schedule removed")
    return True


def parse_log_level(name: str) -> int:
    """Map a None/General/Info/Debug name (any case) to a logging threshold."""
    try:
        return LOG_LEVELS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unrecognised log level value: {name}") from None


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """Setup logging configuration."""
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lzx-auto",
        description="Automatically compress files with transparent filesystem compression "
                    "using minimal disk write cycles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Log levels:
  none     nothing is printed
  general  session start/end and skipped directories
  info     general + session statistics (default)
  debug    info + one line per file

LZXAuto records every file's size and outcome. Files whose size has not changed
since the last run are skipped, which saves SSD write cycles on incompressible
files that the OS would otherwise rewrite on every run.

Examples:
  # Compress the whole C: drive
  %(prog)s C:\\

  # Run weekly as SYSTEM through the Task Scheduler
  %(prog)s --schedule-on C:\\

  # Forget everything; the next run examines every file again
  %(prog)s --reset-db
        """
    )

    parser.add_argument(
        'path',
        nargs='?',
        default=None,
        help='Root path to start from; all subdirectories are traversed (default: root of the current drive)'
    )

    parser.add_argument(
        '--log',
        type=str.lower,
        choices=list(LOG_LEVELS),
        default='info',
        help='Log level (default: info)'
    )

    parser.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Also write the log to this file'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help=f'Skip-extension configuration (default: {CONFIG_FILE} in the current directory)'
    )

    parser.add_argument(
        '--cache',
        type=str,
        default=None,
        help='Cache file location (default: per-machine data directory)'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=None,
        help='Number of worker threads (default: one per logical CPU)'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Do not show the progress bar'
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        '--reset-db',
        action='store_true',
        help='Reset the cache; on the next run every file is handed to the compressor again'
    )
    actions.add_argument(
        '--schedule-on',
        action='store_true',
        help='Register a Task Scheduler entry running LZXAuto on PATH every 7 days (Windows)'
    )
    actions.add_argument(
        '--schedule-off',
        action='store_true',
        help='Remove the Task Scheduler entry (Windows)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LOG_LEVELS[args.log], log_file=args.log_file)

    cache_file = args.cache or default_cache_path()
    root = os.path.abspath(args.path) if args.path else os.path.abspath(os.sep)

    try:
        if args.reset_db:
            reset_cache(cache_file)
            return 0
        if args.schedule_on:
            return 0 if register_schedule(root) else 1
        if args.schedule_off:
            return 0 if remove_schedule() else 1

        config = load_config(args.config)
        stats = run_session(
            root,
            config=config,
            cache_file=cache_file,
            workers=args.workers,
            show_progress=not args.no_progress and args.log != 'debug',
            on_engine=install_signal_handlers,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except RuntimeError as e:
        logging.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logging.warning("Interrupted by user")
        return 130
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1

    return 130 if stats.status == "cancelled" else 0


if __name__ == '__main__':
    sys.exit(main())
