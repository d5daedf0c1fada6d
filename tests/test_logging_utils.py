"""Tests for auto_installer logging_utils module."""

import logging
import sys
from pathlib import Path

import pytest

from auto_installer.logging_utils import StructuredFormatter, configure_logging, fields


def _record(msg, level=logging.INFO, **extra):
    record = logging.LogRecord("auto_installer.test", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Tests for the log line layout."""

    def test_plain_message(self):
        """Test timestamp, level and message."""
        line = StructuredFormatter().format(_record("Processing image"))

        assert line.startswith("[")
        assert "Z] [info] Processing image" in line

    def test_fields_rendered_as_sorted_json(self):
        """Test that structured fields follow the message as JSON."""
        record = _record("Failed", level=logging.ERROR, **fields(b=2, a="x"))

        line = StructuredFormatter().format(record)

        assert line.endswith('[error] Failed {"a": "x", "b": 2}')

    def test_warning_level_name(self):
        """Test that WARNING renders as warn."""
        line = StructuredFormatter().format(_record("careful", level=logging.WARNING))
        assert "[warn] careful" in line

    def test_exception_appended(self):
        """Test that tracebacks are included."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("Unexpected", level=logging.ERROR)
            record.exc_info = sys.exc_info()

        line = StructuredFormatter().format(record)

        assert "RuntimeError: boom" in line


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def clean_root(self):
        """Restore root logger handlers and flags after each test."""
        root = logging.getLogger()
        handlers = list(root.handlers)
        level = root.level
        yield
        for h in list(root.handlers):
            if h not in handlers:
                root.removeHandler(h)
                h.close()
        root.setLevel(level)
        for attr in ("_auto_installer_configured", "_auto_installer_log_path"):
            if hasattr(root, attr):
                delattr(root, attr)

    def test_writes_to_file(self, temp_dir):
        """Test that records reach the configured file."""
        log_path = temp_dir / "logs" / "auto-installer.log"

        chosen = configure_logging(str(log_path), level="INFO", also_console=False)
        logging.getLogger("auto_installer.test").info("hello", extra=fields(n=1))
        for h in logging.getLogger().handlers:
            h.flush()

        assert chosen == str(log_path)
        content = log_path.read_text()
        assert '[info] hello {"n": 1}' in content

    def test_second_call_is_noop(self, temp_dir):
        """Test idempotence."""
        first = configure_logging(str(temp_dir / "a.log"), also_console=False)
        count = len(logging.getLogger().handlers)

        second = configure_logging(str(temp_dir / "b.log"), also_console=False)

        assert second == first
        assert len(logging.getLogger().handlers) == count

    def test_falls_back_to_cwd(self, temp_dir, monkeypatch):
        """Test fallback when the log directory cannot be created."""
        blocker = temp_dir / "file"
        blocker.write_text("x")
        monkeypatch.chdir(temp_dir)

        chosen = configure_logging(str(blocker / "sub" / "x.log"), also_console=False)

        assert Path(chosen).name == "auto-installer.log"
        assert Path(chosen).parent.resolve() == temp_dir.resolve()
