#
# Copyright (c) 2023 Mikkel Schubert <MikkelSch@gmail.com>
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
"""Tracking of child processes, so that tools and workers started by this process
can be terminated when the pipeline is interrupted or shuts down."""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
from multiprocessing import Process
from subprocess import Popen, TimeoutExpired
from typing import IO, TYPE_CHECKING, Iterable, Sequence, Union

ProcessTypes = Union["Popen[bytes]", Process]

# Processes started by each (worker) process, keyed by the PID of the parent
_REGISTRY: dict[int, list[ProcessTypes]] = {}


def _register(proc: ProcessTypes) -> None:
    _REGISTRY.setdefault(os.getpid(), []).append(proc)


def _unregister(proc: ProcessTypes) -> None:
    procs = _REGISTRY.get(os.getpid(), [])
    # Already removed if the process was terminated
    if proc in procs:
        procs.remove(proc)


class RegisteredProcess(Process):
    """A multiprocessing.Process terminated by `terminate_all_processes`."""

    def start(self) -> None:
        _register(self)
        super().start()

    def join(self, timeout: float | None = None) -> None:
        super().join(timeout)
        if self.exitcode is not None:
            _unregister(self)


PopenBase = Popen[bytes] if TYPE_CHECKING else Popen


class RegisteredPopen(PopenBase):
    """A Popen terminated by `terminate_all_processes`. Every command runs in its own
    session and is terminated as a process group, so that tools that start their
    own helper processes do not leave these behind."""

    def __init__(
        self,
        args: Sequence[str],
        *,
        stdin: int | IO[bytes] | None = None,
        stdout: int | IO[bytes] | None = None,
        stderr: int | IO[bytes] | None = None,
    ) -> None:
        super().__init__(
            args,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            close_fds=True,
            start_new_session=True,
        )

        _register(self)

    def wait(self, timeout: float | None = None) -> int:
        returncode = super().wait(timeout)
        _unregister(self)

        return returncode

    def terminate(self) -> None:
        if self.poll() is None:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(self.pid, signal.SIGTERM)


def terminate_processes(
    processes: Iterable[ProcessTypes],
    timeout: float | None = None,
) -> None:
    log = logging.getLogger(__name__)

    processes = list(processes)
    for proc in processes:
        if isinstance(proc, Popen):
            command = shlex.join(str(value) for value in proc.args)  # type: ignore
            if len(command) > 80:
                command = command[:77] + "..."

            log.warning("Terminating process %s: %s", proc.pid, command)
        else:
            log.warning("Terminating worker process %s", proc.pid)

        with contextlib.suppress(OSError):
            proc.terminate()

    for proc in processes:
        with contextlib.suppress(TimeoutExpired):
            if isinstance(proc, Process):
                proc.join(timeout=timeout)
            else:
                proc.wait(timeout=timeout)


def terminate_all_processes(timeout: float | None = None) -> None:
    """Terminates every process registered by the current process."""
    terminate_processes(list(_REGISTRY.get(os.getpid(), ())), timeout=timeout)
