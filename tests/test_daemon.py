"""Tests for the daemon lifecycle."""

import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from auto_installer.atomic import SingletonLock
from auto_installer.daemon import AutoInstallerDaemon, main
from auto_installer.events import REASON_RECOVERED
from auto_installer.identity import identity_from_stat
from auto_installer.models import RecordStatus, utc_now
from auto_installer.processor import REASON_RETRY
from auto_installer.scheduler import RetryScheduler


@pytest.fixture
def config_file(temp_dir, sample_config):
    """Config file holding the sample configuration."""
    path = temp_dir / "config.json"
    path.write_text(json.dumps(sample_config.model_dump(mode="json", by_alias=True)))
    return path


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep tests from installing handlers on the root logger."""
    with patch("auto_installer.daemon.configure_logging") as mock_configure:
        yield mock_configure


@pytest.fixture
def push_source():
    """Push source double."""
    return MagicMock()


@pytest.fixture
def make_daemon(config_file, fake_images, fake_system, push_source):
    """Factory for daemons wired to fake adapters."""

    def _make(**kwargs):
        return AutoInstallerDaemon(
            config_file=config_file,
            images=fake_images,
            system=fake_system,
            push_source_factory=lambda config, on_path: push_source,
            **kwargs,
        )

    return _make


class TestAutoInstallerDaemonOnce:
    """Tests for --once runs."""

    def test_processes_new_image(self, make_daemon, write_image, state_file, fake_system, temp_dir):
        """Test that a finished image is installed and recorded."""
        daemon = make_daemon(once=True)
        path = write_image("App-1.2.dmg")

        assert daemon.start() == 0

        state = json.loads(state_file.read_text())
        (entry,) = state["entries"].values()
        assert entry["status"] == "success"
        assert entry["sourcePath"] == str(path)
        assert entry["triggerReason"] == "startup"
        assert fake_system.opened == [str(temp_dir / "Applications" / "App.app")]
        assert not (temp_dir / "auto-installer.lock").exists()

    def test_ignores_preexisting_images(self, make_daemon, write_image, fake_images):
        """Test that images older than the daemon are left alone by default."""
        path = write_image("Old.dmg")
        old = time.time() - 3600
        os.utime(path, (old, old))

        with patch("auto_installer.scanner.safe_stat") as mock_stat:
            st = os.stat(path)
            mock_stat.return_value = MagicMock(
                st_mtime=st.st_mtime, st_birthtime=st.st_mtime, st_size=st.st_size
            )
            assert make_daemon(once=True).start() == 0

        assert fake_images.attached == []

    def test_process_preexisting_flag(self, make_daemon, write_image, fake_images):
        """Test that --process-preexisting includes older images."""
        path = write_image("Old.dmg")
        old = time.time() - 3600
        os.utime(path, (old, old))

        assert make_daemon(once=True, process_preexisting=True).start() == 0

        assert fake_images.attached == [str(path)]

    def test_dry_run(self, make_daemon, write_image, fake_images, state_file):
        """Test that dry-run records success without mounting."""
        write_image()

        assert make_daemon(once=True, dry_run=True).start() == 0

        (entry,) = json.loads(state_file.read_text())["entries"].values()
        assert entry["status"] == "success"
        assert entry["result"]["dryRun"] is True
        assert fake_images.attached == []

    def test_recovers_interrupted_attempts(self, make_daemon, write_image, state_file, fake_images):
        """Test that an attempt cut short by a crash is retried on the next start."""
        path = write_image()
        old = time.time() - 3600
        os.utime(path, (old, old))
        key = identity_from_stat(os.stat(path), str(path)).key
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({
            "schemaVersion": 1,
            "entries": {key: {"status": "running", "attempts": 1, "sourcePath": str(path)}},
        }))
        daemon = make_daemon(once=True)

        assert daemon.start() == 0

        assert fake_images.attached == [str(path)]
        record = daemon.store.get(key)
        assert record.status == RecordStatus.SUCCESS
        assert record.attempts == 2
        assert record.trigger_reason == REASON_RECOVERED

    def test_recovery_skips_replaced_image(self, make_daemon, write_image, state_file, fake_images):
        """Test that a different file now at the recorded path is left alone."""
        path = write_image()
        old = time.time() - 3600
        os.utime(path, (old, old))
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({
            "schemaVersion": 1,
            "entries": {"1:2:3:4:App-1.2.dmg": {"status": "running", "attempts": 1, "sourcePath": str(path)}},
        }))
        daemon = make_daemon(once=True)

        assert daemon.start() == 0

        assert fake_images.attached == []
        record = daemon.store.get("1:2:3:4:App-1.2.dmg")
        assert record.status == RecordStatus.FAIL
        assert record.retryable is True

    def test_pending_retry_rearmed(self, make_daemon, write_image, state_file, fake_images):
        """Test that a retry deadline from the previous run is re-armed, not run early."""
        path = write_image()
        old = time.time() - 3600
        os.utime(path, (old, old))
        key = identity_from_stat(os.stat(path), str(path)).key
        deadline = utc_now() + timedelta(minutes=10)
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({
            "schemaVersion": 1,
            "entries": {key: {
                "status": "fail", "attempts": 1, "sourcePath": str(path),
                "nextRetryAt": deadline.isoformat(),
            }},
        }))

        with patch.object(RetryScheduler, "schedule", autospec=True) as mock_schedule:
            assert make_daemon(once=True).start() == 0

        assert fake_images.attached == []
        assert mock_schedule.call_count == 1
        _, scheduled_path, delay_ms, reason = mock_schedule.call_args.args
        assert scheduled_path == str(path)
        assert delay_ms == pytest.approx(10 * 60 * 1000, rel=0.01)
        assert reason == REASON_RETRY


class TestAutoInstallerDaemonLock:
    """Tests for single-instance behavior."""

    def test_second_instance_exits_without_processing(self, make_daemon, write_image, sample_config,
                                                      fake_images, state_file):
        """Test that a live lock holder makes a new instance exit immediately."""
        write_image()
        holder = SingletonLock(sample_config.lock_dir)
        holder.acquire()
        try:
            daemon = make_daemon(once=True)
            assert daemon.start() == 0
        finally:
            holder.release()

        assert fake_images.attached == []
        assert not state_file.exists()
        assert daemon.store is None

    def test_lock_kept_while_running(self, make_daemon, sample_config, push_source):
        """Test the long-running loop holds the lock until shutdown."""
        daemon = make_daemon()
        result = {}
        runner = threading.Thread(target=lambda: result.update(code=daemon.start()))
        runner.start()

        deadline = time.time() + 5
        while not daemon.running and time.time() < deadline:
            time.sleep(0.01)
        assert daemon.running
        assert SingletonLock(sample_config.lock_dir).holder_alive()
        push_source.start.assert_called_once()

        daemon.request_shutdown()
        runner.join(timeout=10)

        assert result["code"] == 0
        assert not daemon.running
        push_source.stop.assert_called_once()
        assert not SingletonLock(sample_config.lock_dir).lock_dir.exists()

    def test_sigterm_during_once_releases_lock(self, make_daemon, write_image, sample_config, fake_images):
        """Test that a termination signal while draining still removes the lock."""
        write_image()
        daemon = make_daemon(once=True)
        attach = fake_images.attach

        def attach_then_signal(image_path):
            daemon._signal_handler(signal.SIGTERM, None)
            return attach(image_path)

        fake_images.attach = attach_then_signal

        with patch("auto_installer.daemon.signal.signal") as mock_signal:
            with pytest.raises(SystemExit) as exc_info:
                daemon.start()

        assert exc_info.value.code == 128 + signal.SIGTERM
        assert not Path(sample_config.lock_dir).exists()
        assert fake_images.attached == []
        installed = [c.args[0] for c in mock_signal.call_args_list[:2]]
        assert installed == [signal.SIGTERM, signal.SIGINT]

    def test_second_signal_during_shutdown_is_ignored(self, make_daemon):
        """Test that the handler only unwinds once."""
        daemon = make_daemon(once=True)
        daemon.shutdown_requested = True

        daemon._signal_handler(signal.SIGTERM, None)

        assert daemon.shutdown_requested


class TestAutoInstallerDaemonConfig:
    """Tests for startup checks."""

    def test_missing_fswatch_fails(self, temp_dir, sample_config, fake_images, fake_system):
        """Test that an explicitly selected but missing fswatch aborts startup."""
        config_file = temp_dir / "config.json"
        data = sample_config.model_dump(mode="json", by_alias=True)
        data["watchBackend"] = "fswatch"
        config_file.write_text(json.dumps(data))

        daemon = AutoInstallerDaemon(config_file=config_file, images=fake_images, system=fake_system)

        assert daemon.start() == 1
        assert daemon.lock is None

    def test_verbose_sets_debug(self, make_daemon, no_logging_setup):
        """Test that --verbose lowers the log level."""
        make_daemon(once=True, verbose=True).start()

        assert no_logging_setup.call_args.kwargs["level"] == logging.DEBUG


class TestMain:
    """Tests for the daemon entry point."""

    def test_main_parses_flags(self, temp_dir):
        """Test argument parsing and exit code."""
        argv = ["auto-installer", "--config", str(temp_dir / "c.json"), "--once", "--dry-run",
                "--process-preexisting", "--verbose"]

        with patch.object(sys, "argv", argv), \
                patch("auto_installer.daemon.AutoInstallerDaemon") as MockDaemon:
            MockDaemon.return_value.start.return_value = 0
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 0
        kwargs = MockDaemon.call_args.kwargs
        assert kwargs["config_file"] == temp_dir / "c.json"
        assert kwargs["once"] is True
        assert kwargs["dry_run"] is True
        assert kwargs["process_preexisting"] is True
        assert kwargs["verbose"] is True

    def test_main_defaults(self):
        """Test defaults without flags."""
        with patch.object(sys, "argv", ["auto-installer"]), \
                patch("auto_installer.daemon.AutoInstallerDaemon") as MockDaemon:
            MockDaemon.return_value.start.return_value = 1
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
        assert MockDaemon.call_args.kwargs["config_file"] is None
        assert MockDaemon.call_args.kwargs["once"] is False
