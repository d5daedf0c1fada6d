import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from auto_installer import constants
from auto_installer.errors import CommandError, CommandTimeout

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class CmdResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    timeout: Optional[float] = None,
    check: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Logs the command at debug level.
    - A missing executable is reported as return code 127.
    - Exceeding ``timeout`` kills the child and raises CommandTimeout.
    - ``check`` raises CommandError on a non-zero exit.
    """

    argv_list = list(argv)
    logger.debug("CMD %s", _fmt_argv(argv_list))

    try:
        p = subprocess.run(
            argv_list,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        result = CmdResult(argv=argv_list, returncode=COMMAND_NOT_FOUND, stdout="", stderr=str(e))
    except subprocess.TimeoutExpired:
        raise CommandTimeout(argv_list, timeout or 0) from None
    else:
        result = CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)

    if result.stderr:
        logger.debug("STDERR %s", result.stderr.strip())

    if check and not result.ok:
        raise CommandError(argv_list, result.returncode, result.stderr, result.stdout)

    return result


def sudo_run(argv: Sequence[str], *, timeout: Optional[float] = None) -> CmdResult:
    """Run a command through non-interactive sudo, raising on failure."""
    return run_cmd([constants.SUDO, "-n", *argv], timeout=timeout, check=True)
