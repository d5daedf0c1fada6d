"""
Exception hierarchy for auto-installer.

Pipeline errors carry the partial result reached before the failure so the
processor can persist what was actually achieved.
"""

from typing import Dict, Optional, Sequence


class AutoInstallerError(Exception):
    """Base class for all auto-installer errors."""


class CommandError(AutoInstallerError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout or "").strip()
        super().__init__(f"{self.argv[0]} failed ({returncode}): {detail}")


class CommandTimeout(AutoInstallerError):
    """An external command exceeded its ceiling and was killed."""

    def __init__(self, argv: Sequence[str], timeout: float):
        self.argv = list(argv)
        self.timeout = timeout
        super().__init__(f"{self.argv[0]} killed after {timeout:g}s")


class LockHeldError(AutoInstallerError):
    """Another live daemon instance holds the lock directory."""

    def __init__(self, lock_dir: str, pid: Optional[int] = None):
        self.lock_dir = lock_dir
        self.pid = pid
        super().__init__(f"Lock {lock_dir} is held by pid {pid}")


class PipelineError(AutoInstallerError):
    """
    An install attempt failed.

    Attributes:
        retryable: Whether the attempt may be retried with backoff
        result: Partial ProcessingResult reached before the failure
    """

    retryable = False

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class AttachError(PipelineError):
    """Mounting the image or reading the mount tool output failed."""

    retryable = True


class NoBundleError(PipelineError):
    """The mounted image contains no installable bundle."""


class OpenError(PipelineError):
    """Opening an installed bundle failed."""


class InstallError(PipelineError):
    """Copying a bundle into the install directory failed."""


class DetachError(PipelineError):
    """Unmounting failed even with force."""


def describe_error(exc: BaseException) -> Dict[str, str]:
    """Error descriptor persisted in the state file."""
    return {"type": type(exc).__name__, "message": str(exc)}
