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
"""Scheduling of tasks in a NodeGraph.

The Pypeline runs every task that is not already complete, at most 'max_tasks' at
a time, retrying tasks that fail with transient errors. A failure only affects
the tasks that depend on the failing task; every other task is still run. Once
no more tasks can be run, intermediate files of completed chromosomes are removed
and the outcome is summarized via the exit code:

  EXIT_SUCCESS -- every task succeeded or was skipped
  EXIT_FATAL   -- nothing was run, e.g. due to missing inputs or executables
  EXIT_PARTIAL -- one or more tasks failed, or the run was interrupted
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import sys
import time
from shlex import quote
from typing import TYPE_CHECKING, Iterable, Iterator, NoReturn

import phaseflow.common.logging
from phaseflow.common import fileutils
from phaseflow.common.procs import terminate_all_processes
from phaseflow.common.text import format_timespan, padded_table
from phaseflow.core import reports
from phaseflow.core.workers import EVT_CAPACITY, EVT_TASK_DONE, Manager
from phaseflow.node import Node, NodeError, TransientToolError
from phaseflow.nodegraph import (
    CleanupStrategy,
    FileStatusCache,
    NodeGraph,
    NodeGraphError,
    StatusEnum,
)

if TYPE_CHECKING:
    from phaseflow.common.argparse import ArgumentParser
    from phaseflow.common.versions import Requirement
    from phaseflow.nodegraph import Transition
    from phaseflow.state import StateRecord

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

# Time window in which a second Ctrl+C terminates the pipeline immediately
_SIGINT_WINDOW = 5.0


class Pypeline:
    def __init__(
        self,
        nodes: Iterable[Node],
        temp_root: str,
        max_tasks: int = 1,
        max_retries: int = 1,
        intermediate_files: CleanupStrategy = CleanupStrategy.DELETE,
        state: StateRecord | None = None,
    ) -> None:
        self._nodes = tuple(nodes)
        for node in self._nodes:
            if not isinstance(node, Node):
                raise TypeError(f"Node object expected, received {node!r}")

        self._temp_root = temp_root
        self._max_tasks = max(1, max_tasks)
        self._max_retries = max(0, max_retries)
        self._cleanup = intermediate_files
        self._state = state
        self._log = logging.getLogger(__name__)

        # Time of the last SIGINT, if any; no new tasks are started once set
        self._interrupted = 0.0
        self._retries: dict[Node, int] = {}
        self._started: dict[Node, float] = {}
        self._failed = False

    def run(self, mode: str = "run") -> int:
        """Runs the pipeline, or prints a report if 'mode' is one of the --list-*
        modes. With 'dry_run' prerequisites are checked, but no tasks are run."""
        fscache = FileStatusCache()

        try:
            graph = NodeGraph(
                tasks=self._nodes,
                fscache=fscache,
                intermediate_files=self._cleanup,
            )
        except NodeGraphError as error:
            self._log.error(error)
            return EXIT_FATAL

        if mode not in ("run", "dry_run"):
            return self._report(mode, graph, fscache)
        elif not graph.check_file_dependencies(fscache):
            return EXIT_FATAL
        elif not self._check_executables(graph):
            return EXIT_FATAL

        manager = Manager(
            max_tasks=self._max_tasks,
            temp_root=self._temp_root,
            requirements=_pending_requirements(graph),
        )

        try:
            with manager:
                if not manager.start():
                    self._log.error("Required software is missing; terminating")
                    return EXIT_FATAL
                elif mode == "dry_run":
                    reports.state_summary(graph)
                    self._summarize(graph, dry_run=True)
                    return EXIT_SUCCESS

                self._remove_stale_temp_dirs()
                if self._state is not None:
                    self._state.update(
                        (
                            (task, None, graph.get_node_state(task))
                            for task in graph.iterflat()
                        ),
                        cause="initial",
                        cascade=False,
                    )

                with self._signal_handlers():
                    return self._run(graph, manager)
        finally:
            terminate_all_processes()

            for filename in phaseflow.common.logging.get_logfiles():
                self._log.info("Log-file written to %r", filename)

    def _run(self, graph: NodeGraph, manager: Manager) -> int:
        self._log.info("Running pipeline:")
        remaining = {
            task for task in graph.tasks if not graph.get_node_state(task).is_terminal
        }

        while (remaining and not self._interrupted) or any(manager.tasks):
            for event in manager.poll():
                if event["event"] == EVT_CAPACITY:
                    self._start_tasks(graph, manager, remaining, event["slots"])
                elif event["event"] == EVT_TASK_DONE:
                    self._task_done(
                        graph, event["task"], event["error"], event["backtrace"]
                    )
                else:
                    self._log.error("Unknown event in pipeline: %r", event)

            # A single failure may cause any number of downstream tasks to fail
            remaining = {
                task for task in remaining if not graph.get_node_state(task).is_terminal
            }

            if remaining and not (self._interrupted or any(manager.tasks)):
                states = {graph.get_node_state(task) for task in remaining}
                if StatusEnum.READY not in states:
                    self._log.error("No tasks can be scheduled; terminating")
                    break

        self._log.info("Shutting down workers")
        manager.shutdown()

        # Files are only removed once nothing is running, so that runs can resume
        self._remove_intermediate_files(graph)
        self._summarize(graph)

        counts = graph.get_state_counts()
        if counts[StatusEnum.SUCCEEDED] + counts[StatusEnum.SKIPPED] < len(graph.tasks):
            return EXIT_PARTIAL

        return EXIT_SUCCESS

    def _start_tasks(
        self,
        graph: NodeGraph,
        manager: Manager,
        remaining: set[Node],
        slots: int,
    ) -> None:
        if self._interrupted:
            return

        ready = [t for t in remaining if graph.get_node_state(t) == StatusEnum.READY]
        for task in sorted(ready, key=lambda it: it.id)[:slots]:
            if not manager.start_task(task):
                break

            self._set_state(graph, task, StatusEnum.RUNNING, "started")

    def _task_done(
        self,
        graph: NodeGraph,
        task: Node,
        error: BaseException | None,
        backtrace: list[str] | None,
    ) -> None:
        if error is None:
            self._set_state(graph, task, StatusEnum.SUCCEEDED, "completed")
            return

        exit_code = getattr(error, "exit_code", None)
        attempt = self._retries.get(task, 0) + 1
        if isinstance(error, TransientToolError) and attempt <= self._max_retries:
            self._retries[task] = attempt
            self._log.warning(
                "Transient failure in %s; retrying (attempt %i of %i)",
                task,
                attempt + 1,
                self._max_retries + 1,
            )

            cause = f"transient failure, retry {attempt}/{self._max_retries}"
            self._set_state(graph, task, StatusEnum.READY, cause, exit_code=exit_code)
            return

        cause = type(error).__name__
        if exit_code is not None:
            cause = f"{cause} (exit code {exit_code})"

        self._set_state(graph, task, StatusEnum.FAILED, cause, exit_code=exit_code)
        self._log.error("\n".join(_describe_error(task, error, backtrace)))

    def _set_state(
        self,
        graph: NodeGraph,
        task: Node,
        state: StatusEnum,
        cause: str,
        *,
        exit_code: int | None = None,
    ) -> None:
        transitions = graph.set_node_state(task, state)
        if self._state is not None:
            self._state.update(
                transitions,
                cause=cause,
                exit_code=exit_code,
                retries=self._retries,
            )

        self._log_transitions(graph, transitions)

    def _log_transitions(self, graph: NodeGraph, transitions: list[Transition]) -> None:
        for task, old_state, new_state in transitions:
            if new_state == StatusEnum.FAILED:
                self._failed = True
            elif new_state == StatusEnum.SKIPPED_DUE_TO_FAILURE:
                cause = transitions[0][0]
                self._log.warning("Skipping %s due to failure in %s", task, cause)
            elif new_state == StatusEnum.RUNNING:
                self._started[task] = time.time()
                self._log_progress(graph, "Started %s", task)
            elif new_state == StatusEnum.SUCCEEDED:
                runtime = time.time() - self._started.pop(task, time.time())
                self._log_progress(
                    graph, "Finished %s in %s", task, format_timespan(runtime)
                )
            else:
                self._log.debug("%s: %s -> %s", task, old_state, new_state)

    def _log_progress(self, graph: NodeGraph, fmt: str, *args: object) -> None:
        status = _Progress(graph.get_state_counts(), "red" if self._failed else None)
        self._log.info(fmt, *args, extra={"status": status})

    def _check_executables(self, graph: NodeGraph) -> bool:
        executables: set[str] = set()
        for task in graph.tasks:
            if not graph.get_node_state(task).is_terminal:
                executables.update(task.executables)

        missing = fileutils.missing_executables(sorted(executables))
        for executable in missing:
            self._log.error("Required executable not found: %s", quote(executable))

        return not missing

    def _remove_stale_temp_dirs(self) -> None:
        for dirpath in fileutils.stale_temp_dirs(self._temp_root):
            self._log.warning("Removing stale temporary directory %s", dirpath)
            fileutils.try_rmtree(dirpath)

    def _remove_intermediate_files(self, graph: NodeGraph) -> None:
        dirnames: set[str] = set()
        for filename in graph.get_removable_intermediate_files():
            if fileutils.try_remove(filename):
                self._log.debug("Removed intermediate file %s", quote(filename))
                dirnames.add(os.path.dirname(filename))

        # Deepest directories first, so that emptied parents are removed too
        for dirname in sorted(dirnames, reverse=True):
            fileutils.try_rmdirs(dirname)

    def _report(self, mode: str, graph: NodeGraph, fscache: FileStatusCache) -> int:
        self._log.info("Printing %s ..", mode.replace("_", " "))
        try:
            if mode == "input_files":
                return reports.input_files(graph)
            elif mode == "output_files":
                return reports.output_files(graph, fscache)
            elif mode == "executables":
                return reports.required_executables(graph)
            elif mode == "pipeline_tasks":
                return reports.pipeline_tasks(graph)
        except BrokenPipeError:
            return EXIT_SUCCESS

        raise ValueError(f"Unknown pipeline mode {mode!r}")

    def _summarize(self, graph: NodeGraph, *, dry_run: bool = False) -> None:
        counts = graph.get_state_counts()
        rows = [("Number of tasks:", sum(counts.values()))]
        for state, label in (
            (StatusEnum.SUCCEEDED, "succeeded tasks"),
            (StatusEnum.SKIPPED, "skipped tasks"),
            (StatusEnum.READY, "ready tasks"),
            (StatusEnum.PENDING, "pending tasks"),
            (StatusEnum.FAILED, "failed tasks"),
            (StatusEnum.SKIPPED_DUE_TO_FAILURE, "tasks skipped due to failures"),
        ):
            rows.append((f"Number of {label}:", counts[state]))

        for line in padded_table(rows):
            self._log.info(line)

        if counts[StatusEnum.FAILED]:
            self._log.warning("Errors were detected in pipeline")
        elif self._interrupted:
            self._log.info("Pipeline interrupted by user")
        elif dry_run:
            self._log.info("Dry run completed successfully")
        else:
            self._log.info("Pipeline completed successfully")

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        handlers = {
            signal.SIGINT: self._on_sigint,
            signal.SIGHUP: self._on_sigterm,
            signal.SIGTERM: self._on_sigterm,
        }

        previous = {sig: signal.signal(sig, fn) for sig, fn in handlers.items()}
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def _on_sigint(self, signum: int, frame: object) -> None:
        now = time.time()
        if self._interrupted and now - self._interrupted <= _SIGINT_WINDOW:
            self._on_sigterm(signum, frame)

        if not self._interrupted:
            message = "Keyboard interrupt detected; waiting for running tasks."
        else:
            message = "Pipeline is waiting for running tasks to terminate."

        self._interrupted = now
        self._log.warning(
            "%s Press CTRL-C again within %i seconds to terminate immediately.",
            message,
            _SIGINT_WINDOW,
        )

    def _on_sigterm(self, signum: int, _frame: object) -> NoReturn:
        self._log.warning("Terminating due to signal %i", signum)
        for value in (signal.SIGINT, signal.SIGHUP, signal.SIGTERM):
            signal.signal(value, signal.SIG_DFL)

        sys.exit(-signum)


def _pending_requirements(graph: NodeGraph) -> list[Requirement]:
    # Tools are not invoked, not even to check versions, if nothing needs to run
    requirements: set[Requirement] = set()
    for task in graph.tasks:
        if not graph.get_node_state(task).is_terminal:
            requirements.update(task.requirements)

    return sorted(requirements, key=lambda it: it.name)


def _describe_error(
    task: Node,
    error: BaseException,
    backtrace: list[str] | None,
) -> list[str]:
    if isinstance(error, NodeError):
        lines = str(error).split("\n")
    else:
        lines = [f"Unhandled exception while running {task}:"]

    if backtrace:
        lines.extend("".join(backtrace).rstrip().split("\n"))

    if isinstance(error, NodeError) and error.path:
        lines.append("For more information about this error, see")
        lines.append("  " + quote(os.path.join(error.path, "pipe.errors")))

    return lines


def add_argument_groups(parser: ArgumentParser) -> None:
    parser.set_defaults(pipeline_mode="run")

    group = parser.add_argument_group("Scheduling")
    group.add_argument(
        "--dry-run",
        dest="pipeline_mode",
        action="store_const",
        const="dry_run",
        help="Check inputs and required software and print the state of every "
        "task, but do not run anything",
    )
    group.add_argument(
        "--max-tasks",
        type=int,
        default=4,
        help="Maximum number of tasks running at the same time",
    )
    group.add_argument(
        "--max-retries",
        type=int,
        default=1,
        help="Maximum number of times a task is re-run after a transient failure, "
        "such as a tool running out of memory or file handles",
    )
    group.add_argument(
        "--temp-root",
        metavar="DIR",
        help="Directory in which per-task temporary directories are created "
        "[default: OUTPUT_DIR/cache/temp]",
    )
    group.add_argument(
        "--intermediate-files",
        type=CleanupStrategy,
        default=CleanupStrategy.DELETE,
        choices=tuple(CleanupStrategy),
        help="With 'delete', intermediate files of a chromosome are removed once "
        "the phased BCF for that chromosome has been written. With 'keep', these "
        "are kept, but missing intermediate files are not re-created unless needed",
    )

    group = parser.add_argument_group("Reports")
    for flag, mode, text in (
        ("--list-input-files", "input_files", "files read by the pipeline"),
        ("--list-output-files", "output_files", "files written by the pipeline"),
        ("--list-executables", "executables", "required tools and versions"),
        ("--list-pipeline-tasks", "pipeline_tasks", "the tree of tasks"),
    ):
        group.add_argument(
            flag,
            dest="pipeline_mode",
            action="store_const",
            const=mode,
            help=f"Print {text} and exit",
        )


class _Progress(phaseflow.common.logging.Status):
    """Percentage of tasks that have been completed, successfully or not."""

    def __init__(self, counts: dict[StatusEnum, int], color: str | None) -> None:
        super().__init__(color)
        self._done = sum(n for state, n in counts.items() if state.is_terminal)
        self._total = sum(counts.values())

    def __str__(self) -> str:
        if not self._total:
            return "N/A"
        elif self._total > 200:
            # One decimal place, rounded down so that 100% means done
            return f"{(1000 * self._done // self._total) / 10:>5.1f}%"

        return f"{100 * self._done // self._total:>3}%"
