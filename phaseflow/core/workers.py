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
"""Execution of tasks in worker processes on the local host.

Every task is run in a separate process, which reports the outcome via a shared
queue. The Manager turns these reports, and the exit of worker processes, into
events for the pipeline loop:

  CAPACITY  -- slots are available for starting more tasks ('slots')
  TASK_DONE -- a task has finished ('task', 'error', 'backtrace')
"""

from __future__ import annotations

import logging
import multiprocessing
import queue
import signal
import sys
import traceback
from dataclasses import dataclass
from multiprocessing.connection import wait
from typing import TYPE_CHECKING, Any, Collection, Dict, Iterator, NoReturn, Optional

import setproctitle

from phaseflow.common.procs import (
    RegisteredProcess,
    terminate_all_processes,
    terminate_processes,
)
from phaseflow.node import Node, NodeError
from phaseflow.nodegraph import NodeGraph

if TYPE_CHECKING:
    from typing_extensions import Self, TypeAlias

    from phaseflow.common.versions import Requirement

EventType: TypeAlias = Dict[str, Any]
MessageType: TypeAlias = "tuple[int, Optional[BaseException], Optional[list[str]]]"
QueueType: TypeAlias = "multiprocessing.Queue[MessageType]"

EVT_CAPACITY = "CAPACITY"
EVT_TASK_DONE = "TASK_DONE"


class WorkerError(RuntimeError):
    pass


@dataclass
class _Job:
    process: RegisteredProcess
    task: Node
    # Set once the outcome has been reported by the process or by its exit
    reported: bool = False


class Manager:
    """Runs tasks in worker processes, at most 'max_tasks' at a time."""

    def __init__(
        self,
        *,
        max_tasks: int,
        requirements: Collection[Requirement],
        temp_root: str,
    ) -> None:
        self._max_tasks = max_tasks
        self._requirements = requirements
        self._temp_root = temp_root
        self._queue: QueueType | None = None
        # Running jobs keyed by the sentinel of the worker process
        self._jobs: dict[int, _Job] = {}
        self._log = logging.getLogger(__name__)

    @property
    def tasks(self) -> Iterator[Node]:
        for job in self._jobs.values():
            yield job.task

    def start(self) -> bool:
        """Checks that required software is available; returns false if not."""
        if self._queue is not None:
            raise WorkerError("Manager already started")

        self._log.info("Checking required software on localhost")
        if not NodeGraph.check_version_requirements(self._requirements):
            return False

        self._queue = multiprocessing.Queue()
        return True

    def start_task(self, task: Node) -> bool:
        results = self._check_started()

        self._log.debug("Starting local task %s with id %s", task, task.id)
        process = RegisteredProcess(
            target=task_wrapper,
            args=(results, task, self._temp_root),
            daemon=True,
        )
        process.start()

        self._jobs[process.sentinel] = _Job(process=process, task=task)
        return True

    def poll(self, timeout: float = 5.0) -> Iterator[EventType]:
        """Waits up to 'timeout' seconds for tasks to finish and yields events."""
        results = self._check_started()

        exited: list[Any] = []
        if self._jobs:
            # Results already waiting in the queue are collected without blocking
            exited = wait(list(self._jobs), timeout if _is_empty(results) else 0)

        yield from self._collect_results(results)
        yield from self._collect_exits(exited)

        slots = self._max_tasks - len(self._jobs)
        if slots > 0:
            yield {"event": EVT_CAPACITY, "slots": slots}

    def shutdown(self) -> None:
        if self._queue is not None:
            self._log.debug("Shutting down local worker")
            terminate_processes(job.process for job in self._jobs.values())

            self._jobs.clear()
            self._queue = None

    def _collect_results(self, results: QueueType) -> Iterator[EventType]:
        jobs = {job.task.id: job for job in self._jobs.values()}
        while True:
            try:
                key, error, backtrace = results.get(block=False)
            except queue.Empty:
                break

            job = jobs.get(key)
            if job is not None and not job.reported:
                job.reported = True
                yield _task_done(job.task, error, backtrace)

    def _collect_exits(self, sentinels: list[Any]) -> Iterator[EventType]:
        for sentinel in sentinels:
            job = self._jobs.pop(sentinel)
            job.process.join()

            exitcode = job.process.exitcode
            if not exitcode:
                self._log.debug("Joined local task %s", job.task)
                continue

            self._log.debug("Joining local task failed: %s", job.task)
            # A process killed before reporting is a failure of the task itself
            if not job.reported:
                job.reported = True
                error = NodeError(
                    "Worker process for task terminated with exit code "
                    f"{exitcode}: {job.task}"
                )

                yield _task_done(job.task, error, None)

    def _check_started(self) -> QueueType:
        if self._queue is None:
            raise WorkerError("Manager not started")

        return self._queue

    def __enter__(self) -> Self:
        return self

    def __exit__(self, typ: object, exc: object, tb: object) -> None:
        self.shutdown()


def _task_done(
    task: Node,
    error: BaseException | None,
    backtrace: list[str] | None,
) -> EventType:
    return {
        "event": EVT_TASK_DONE,
        "task": task,
        "error": error,
        "backtrace": backtrace,
    }


def _is_empty(results: QueueType) -> bool:
    try:
        return results.empty()
    except OSError:
        return True


def task_wrapper(results: QueueType, task: Node, temp_root: str) -> None:
    """Entry point of worker processes; runs a single task and reports the outcome
    as a tuple of (task id, error, backtrace)."""
    setproctitle.setproctitle(f"phaseflow task {task.key or task}")

    # The main process is responsible for handling Ctrl+C
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGHUP, _on_terminate)
    signal.signal(signal.SIGTERM, _on_terminate)

    try:
        task.run(temp_root)
    except Exception as error:  # noqa: BLE001
        # Errors raised by tools are reported with the backtrace of the cause
        cause = error.__cause__ if isinstance(error, NodeError) else error
        backtrace: list[str] = []
        if cause is not None and cause.__traceback__ is not None:
            backtrace = traceback.format_tb(cause.__traceback__)
            backtrace.append(f"  {cause!r}")

        results.put((task.id, error, backtrace))
    else:
        results.put((task.id, None, None))
    finally:
        results.close()
        results.join_thread()
        terminate_all_processes()


def _on_terminate(signum: int, _frame: object) -> NoReturn:
    # Sub-commands are terminated by the 'finally' block of the task wrapper
    signal.signal(signal.SIGHUP, signal.SIG_DFL)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)

    sys.exit(-signum)
