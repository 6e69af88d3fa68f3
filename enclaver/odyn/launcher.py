"""Starting the entrypoint process and reaping every child it leaves behind."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from signal import Signals

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    uid: int
    gid: int


@dataclass(frozen=True)
class ExitStatus:
    """How a process ended: with an exit code or by a signal."""

    code: int | None = None
    signal: Signals | None = None

    @classmethod
    def exited(cls, code: int) -> ExitStatus:
        return cls(code=code)

    @classmethod
    def signaled(cls, sig: Signals) -> ExitStatus:
        return cls(signal=sig)

    def __str__(self) -> str:
        if self.signal is not None:
            return f"terminated by {self.signal.name}"
        return f"exited with {self.code}"


def _new_process_group() -> dict:
    if sys.version_info >= (3, 11):
        return {"process_group": 0}
    return {"preexec_fn": os.setpgrp}


def run_child(argv: Sequence[str | os.PathLike[str]], creds: Credentials) -> ExitStatus:
    """Run ``argv`` as the given user and reap children until it exits."""
    if not argv:
        raise ValueError("no command to run")
    child = subprocess.Popen(
        [os.fspath(arg) for arg in argv],
        user=creds.uid,
        group=creds.gid,
        **_new_process_group(),
    )
    logger.debug("Child process started")
    return _reap(child.pid)


def start_child(
    argv: Sequence[str | os.PathLike[str]], creds: Credentials
) -> asyncio.Future[ExitStatus]:
    """Run the child on a worker thread; the returned future holds its exit status."""
    return asyncio.ensure_future(asyncio.to_thread(run_child, list(argv), creds))


def _reap(sentinel: int) -> ExitStatus:
    """Reap processes until ``sentinel`` exits and return its status."""
    while True:
        try:
            pid, status = os.waitpid(-1, 0)
        except ChildProcessError as err:
            raise ChildProcessError(f"waitpid failed: {err}") from err

        if os.WIFEXITED(status):
            logger.debug("Zombie with PID %d reaped", pid)
            if pid == sentinel:
                return ExitStatus.exited(os.WEXITSTATUS(status))
        elif os.WIFSIGNALED(status):
            logger.debug("Zombie with PID %d reaped", pid)
            if pid == sentinel:
                return ExitStatus.signaled(Signals(os.WTERMSIG(status)))