"""Process termination with graceful-then-forceful escalation."""

import logging
import time
from typing import Protocol

import psutil

from portwatch.exceptions import KillError

log = logging.getLogger(__name__)


class ProcessTerminator(Protocol):
    """Platform capability to signal a pid and check whether it is alive."""

    def signal(self, pid: int, graceful: bool) -> None:
        """Send the graceful or forceful termination signal; raise OSError-like errors on failure."""

    def is_alive(self, pid: int) -> bool: ...


class PsutilTerminator:
    """
    psutil-backed terminator.

    ``terminate()`` is SIGTERM on POSIX and TerminateProcess on Windows;
    ``kill()`` is SIGKILL / TerminateProcess. psutil hides the platform split.
    """

    def signal(self, pid: int, graceful: bool) -> None:
        proc = psutil.Process(pid)
        if graceful:
            proc.terminate()
        else:
            proc.kill()

    def is_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return True


def terminate(
    pid: int,
    terminator: ProcessTerminator,
    grace_period: float = 0.5,
    logger: logging.Logger | None = None,
    sleep=time.sleep,
) -> None:
    """
    Terminate ``pid``: graceful signal, wait, then one forceful signal if needed.

    A failed graceful signal is logged and escalation continues. Success means
    the process is gone or the forceful signal was delivered.

    Raises:
        KillError: If the process is still alive and the forceful signal
            could not be issued.
    """
    logger = logger or log
    try:
        terminator.signal(pid, graceful=True)
        logger.info("Sent graceful termination to process %d", pid)
    except psutil.NoSuchProcess:
        logger.info("Process %d already exited", pid)
        return
    except (psutil.Error, OSError) as e:
        logger.warning("Graceful termination of process %d failed: %s", pid, e)

    sleep(grace_period)

    if not terminator.is_alive(pid):
        logger.info("Process %d terminated gracefully", pid)
        return

    logger.warning("Process %d still running after grace period, forcing", pid)
    try:
        terminator.signal(pid, graceful=False)
    except psutil.NoSuchProcess:
        logger.info("Process %d exited before forceful termination", pid)
        return
    except (psutil.Error, OSError) as e:
        logger.error("Forceful termination of process %d failed: %s", pid, e)
        raise KillError(pid, str(e) or type(e).__name__) from e
    logger.info("Sent forceful termination to process %d", pid)
