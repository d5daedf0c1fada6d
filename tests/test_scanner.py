"""Tests for candidate filtering and rescans."""

import os
import time
from unittest.mock import patch

import pytest

from auto_installer.scanner import ImageScanner, is_candidate, is_disk_image, is_temporary_download


class TestFilters:
    """Tests for name filters."""

    @pytest.mark.parametrize("name", ["App.dmg", "APP.DMG", "ubuntu.iso", "disk.iso.cdr"])
    def test_disk_images(self, name):
        """Test accepted image names."""
        assert is_disk_image(f"/dl/{name}")

    @pytest.mark.parametrize("name", ["App.zip", "App.pkg", "notes.txt", "iso", "dmg"])
    def test_not_disk_images(self, name):
        """Test rejected names."""
        assert not is_disk_image(f"/dl/{name}")

    @pytest.mark.parametrize("name", ["App.dmg.crdownload", "App.dmg.download", "App.dmg.part", "App.dmg.tmp"])
    def test_temporary_downloads(self, name):
        """Test partial-download suffixes."""
        assert is_temporary_download(f"/dl/{name}")
        assert not is_candidate(f"/dl/{name}")

    def test_candidate(self):
        """Test a finished image."""
        assert is_candidate("/dl/App-1.2.dmg")
        assert not is_candidate("")


class TestImageScanner:
    """Tests for ImageScanner."""

    def test_finds_recent_images(self, downloads_dir, write_image):
        """Test that images written after start are found."""
        scanner = ImageScanner(str(downloads_dir), daemon_start=time.time() - 60)
        write_image("B.dmg")
        write_image("A.iso")
        write_image("notes.txt")
        write_image("C.dmg.part")

        found = scanner.scan()

        assert found == [str(downloads_dir / "A.iso"), str(downloads_dir / "B.dmg")]

    def test_skips_preexisting(self, downloads_dir, write_image):
        """Test that files older than the start time are ignored."""
        path = write_image("Old.dmg")
        old = time.time() - 3600
        os.utime(path, (old, old))

        scanner = ImageScanner(str(downloads_dir), daemon_start=time.time())

        with patch("auto_installer.scanner.safe_stat", side_effect=lambda p: _without_birthtime(os.stat(p))):
            assert scanner.scan() == []

    def test_include_preexisting(self, downloads_dir, write_image):
        """Test that the recency filter can be disabled."""
        path = write_image("Old.dmg")
        old = time.time() - 3600
        os.utime(path, (old, old))

        scanner = ImageScanner(str(downloads_dir), daemon_start=time.time(), include_preexisting=True)

        assert scanner.scan() == [str(path)]

    def test_skew_tolerance(self, downloads_dir, write_image):
        """Test that files just before the start time still count."""
        path = write_image("Edge.dmg")
        start = time.time()
        os.utime(path, (start - 1, start - 1))

        scanner = ImageScanner(str(downloads_dir), daemon_start=start, skew_ms=2000)

        assert scanner.scan() == [str(path)]

    def test_skips_directories(self, downloads_dir):
        """Test that a directory named like an image is ignored."""
        (downloads_dir / "Folder.dmg").mkdir()

        scanner = ImageScanner(str(downloads_dir), daemon_start=0)

        assert scanner.scan() == []

    def test_missing_directory(self, temp_dir):
        """Test that an unreadable directory yields nothing."""
        scanner = ImageScanner(str(temp_dir / "missing"), daemon_start=0)

        assert scanner.scan() == []


class _Stat:
    def __init__(self, st):
        self._st = st

    def __getattr__(self, name):
        if name == "st_birthtime":
            raise AttributeError(name)
        return getattr(self._st, name)


def _without_birthtime(st):
    return _Stat(st)
