"""Tests for the compact.exe and btrfs backends with the tools mocked out."""

import os
import subprocess
import pytest
from unittest.mock import patch, Mock

import lzx_auto
from lzx_auto import (
    BtrfsBackend,
    CompactBackend,
    CompressionUnavailableError,
    Outcome,
    default_backend,
    FILE_ATTRIBUTE_COMPRESSED,
)


def completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)


class TestCompactBackend:

    def test_compress_command_line(self, tmp_test_dir):
        target = str(tmp_test_dir / "a.txt")
        with patch('lzx_auto.subprocess.run', return_value=completed()) as run, \
                patch('lzx_auto.get_allocated_size', side_effect=[4096, 1024]):
            CompactBackend().compress(target)

        args = run.call_args[0][0]
        assert args == ["compact.exe", "/c", "/exe:LZX", target]

    def test_smaller_allocation_is_compressed(self):
        with patch('lzx_auto.subprocess.run', return_value=completed()), \
                patch('lzx_auto.get_allocated_size', side_effect=[4096, 1024]):
            result = CompactBackend().compress("C:\\a.txt")

        assert result.outcome is Outcome.COMPRESSED
        assert result.size_on_disk == 1024

    @pytest.mark.parametrize("before,after", [(4096, 4096), (1024, 1024), (None, 100), (100, None)])
    def test_no_shrink_is_unchanged(self, before, after):
        with patch('lzx_auto.subprocess.run', return_value=completed()), \
                patch('lzx_auto.get_allocated_size', side_effect=[before, after]):
            result = CompactBackend().compress("C:\\a.txt")

        assert result.outcome is Outcome.UNCHANGED

    def test_nonzero_exit_is_failed(self):
        output = "Compressing files in C:\\\n\n[ERROR] a.txt: The process cannot access the file.\n"
        with patch('lzx_auto.subprocess.run', return_value=completed(1, output)), \
                patch('lzx_auto.get_allocated_size', return_value=4096):
            result = CompactBackend().compress("C:\\a.txt")

        assert result.outcome is Outcome.FAILED
        assert "cannot access" in result.reason

    def test_missing_tool_is_unavailable(self):
        with patch('lzx_auto.subprocess.run', side_effect=FileNotFoundError("compact.exe")), \
                patch('lzx_auto.get_allocated_size', return_value=4096):
            with pytest.raises(CompressionUnavailableError):
                CompactBackend().compress("C:\\a.txt")

    def test_other_os_error_is_failed(self):
        with patch('lzx_auto.subprocess.run', side_effect=PermissionError("denied")), \
                patch('lzx_auto.get_allocated_size', return_value=4096):
            result = CompactBackend().compress("C:\\a.txt")

        assert result.outcome is Outcome.FAILED

    def test_unavailable_off_windows(self):
        with patch('lzx_auto.os.name', 'posix'):
            with pytest.raises(CompressionUnavailableError):
                CompactBackend().ensure_available()

    def test_unavailable_when_not_on_path(self):
        with patch('lzx_auto.os.name', 'nt'), patch('lzx_auto.shutil.which', return_value=None):
            with pytest.raises(CompressionUnavailableError, match="not found"):
                CompactBackend().ensure_available()

    def test_legacy_attribute_from_stat(self):
        compressed = Mock(st_file_attributes=FILE_ATTRIBUTE_COMPRESSED | 0x10)
        plain = Mock(st_file_attributes=0x10)
        with patch('lzx_auto.os.stat', side_effect=[compressed, plain]):
            backend = CompactBackend()
            assert backend.has_legacy_attribute("C:\\old")
            assert not backend.has_legacy_attribute("C:\\new")

    def test_legacy_attribute_stat_error(self):
        with patch('lzx_auto.os.stat', side_effect=PermissionError("denied")):
            assert not CompactBackend().has_legacy_attribute("C:\\old")

    def test_clear_legacy_attribute(self):
        with patch('lzx_auto.subprocess.run', return_value=completed()) as run:
            CompactBackend().clear_legacy_attribute("C:\\old")

        assert run.call_args[0][0] == ["compact.exe", "/u", "C:\\old"]

    def test_clear_legacy_attribute_failure(self):
        with patch('lzx_auto.subprocess.run', return_value=completed(5, "Access is denied.")):
            with pytest.raises(OSError, match="Access is denied"):
                CompactBackend().clear_legacy_attribute("C:\\old")


class TestBtrfsBackend:

    def test_compress_command_line(self, tmp_test_dir):
        target = str(tmp_test_dir / "a.txt")
        with patch('lzx_auto.subprocess.run', return_value=completed()) as run, \
                patch('lzx_auto.get_allocated_size', side_effect=[8192, 4096]):
            result = BtrfsBackend().compress(target)

        assert run.call_args[0][0] == ["btrfs", "filesystem", "defragment", "-czstd", target]
        assert result.outcome is Outcome.COMPRESSED

    def test_failure(self):
        with patch('lzx_auto.subprocess.run', return_value=completed(1, "ERROR: not a btrfs filesystem")), \
                patch('lzx_auto.get_allocated_size', return_value=4096):
            result = BtrfsBackend("lzo").compress("/x")

        assert result.outcome is Outcome.FAILED
        assert "not a btrfs" in result.reason

    def test_missing_tools(self):
        with patch('lzx_auto.shutil.which', side_effect=lambda tool: None if tool == "chattr" else "/bin/" + tool):
            with pytest.raises(CompressionUnavailableError, match="chattr"):
                BtrfsBackend().ensure_available()

    @pytest.mark.parametrize("output,expected", [
        ("--------c------------- /data/dir\n", True),
        ("---------------------- /data/dir\n", False),
        ("", False),
    ])
    def test_legacy_attribute_from_lsattr(self, output, expected):
        with patch('lzx_auto.subprocess.run', return_value=completed(0, output)) as run:
            assert BtrfsBackend().has_legacy_attribute("/data/dir") is expected

        assert run.call_args[0][0] == ["lsattr", "-d", "/data/dir"]

    def test_lsattr_failure_means_no_attribute(self):
        with patch('lzx_auto.subprocess.run', return_value=completed(1, "lsattr: Operation not supported")):
            assert not BtrfsBackend().has_legacy_attribute("/data/dir")

    def test_clear_legacy_attribute(self):
        with patch('lzx_auto.subprocess.run', return_value=completed()) as run:
            BtrfsBackend().clear_legacy_attribute("/data/dir")

        assert run.call_args[0][0] == ["chattr", "-c", "/data/dir"]


class TestHelpers:

    def test_default_backend(self):
        with patch('lzx_auto.os.name', 'nt'):
            assert isinstance(default_backend(), CompactBackend)
        with patch('lzx_auto.os.name', 'posix'):
            assert isinstance(default_backend(), BtrfsBackend)

    @pytest.mark.skipif(os.name == "nt", reason="st_blocks is POSIX only")
    def test_allocated_size(self, tmp_test_dir):
        path = tmp_test_dir / "a.bin"
        path.write_bytes(b"x" * 10000)

        size = lzx_auto.get_allocated_size(str(path))
        assert size is not None and size >= 0

    def test_allocated_size_missing_file(self, tmp_test_dir):
        assert lzx_auto.get_allocated_size(str(tmp_test_dir / "missing")) is None

    def test_logical_cpu_count_fallback(self):
        with patch('lzx_auto.PSUTIL_AVAILABLE', False), patch('lzx_auto.os.cpu_count', return_value=None):
            assert lzx_auto.logical_cpu_count() == 1
