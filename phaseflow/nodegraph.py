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
from __future__ import annotations

import collections
import enum
import logging
import os
from typing import Iterable, Iterator, Tuple

from phaseflow.common.versions import Requirement, RequirementError
from phaseflow.node import Node

# Max number of error messages of each type
_MAX_ERROR_MESSAGES = 10


class NodeGraphError(RuntimeError):
    pass


class CyclicGraphError(NodeGraphError):
    pass


class StatusEnum(enum.Enum):
    # Waiting for one or more dependencies to complete
    PENDING = "pending"
    # All dependencies are completed; the task may be started
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Output files already exist, or are no longer needed by any downstream task
    SKIPPED = "skipped"
    # A task that this task (directly or indirectly) depends on has failed
    SKIPPED_DUE_TO_FAILURE = "skipped-due-to-failure"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_completed(self) -> bool:
        return self in (StatusEnum.SUCCEEDED, StatusEnum.SKIPPED)


_TERMINAL_STATES = frozenset(
    (
        StatusEnum.SUCCEEDED,
        StatusEnum.FAILED,
        StatusEnum.SKIPPED,
        StatusEnum.SKIPPED_DUE_TO_FAILURE,
    )
)

# State changes that may be requested via NodeGraph.set_node_state
_VALID_TRANSITIONS = {
    StatusEnum.READY: (StatusEnum.RUNNING, StatusEnum.FAILED),
    StatusEnum.RUNNING: (StatusEnum.SUCCEEDED, StatusEnum.FAILED, StatusEnum.READY),
}


class CleanupStrategy(enum.Enum):
    DELETE = "delete"
    KEEP = "keep"

    def __str__(self) -> str:
        return self.value


class FileStatusCache:
    """Caches the size of files; a file is considered valid if it is a regular,
    non-empty file, since a failed tool never produces a final-named file."""

    def __init__(self) -> None:
        self._sizes: dict[str, int | None] = {}

    def missing_files(self, fpaths: Iterable[str]) -> list[str]:
        return [fpath for fpath in fpaths if self._size(fpath) is None]

    def invalid_files(self, fpaths: Iterable[str]) -> list[str]:
        return [fpath for fpath in fpaths if not self._size(fpath)]

    def _size(self, fpath: str) -> int | None:
        try:
            return self._sizes[fpath]
        except KeyError:
            pass

        try:
            stat = os.stat(fpath)
        except FileNotFoundError:
            size = None
        else:
            size = stat.st_size if os.path.isfile(fpath) else None

        self._sizes[fpath] = size
        return size


Transition = Tuple[Node, StatusEnum, StatusEnum]


class NodeGraph:
    def __init__(
        self,
        tasks: Iterable[Node],
        fscache: FileStatusCache | None = None,
        intermediate_files: CleanupStrategy = CleanupStrategy.DELETE,
    ) -> None:
        self._log = logging.getLogger(__name__)
        self._intermediate_files = intermediate_files
        self._reverse_dependencies: dict[Node, set[Node]] = collections.defaultdict(set)
        self._collect_reverse_dependencies(tasks)
        self._order = self._topological_order(self._reverse_dependencies)
        self._check_output_files(self._reverse_dependencies)
        self._check_input_dependencies(self._reverse_dependencies)

        if fscache is None:
            fscache = FileStatusCache()

        self._states: dict[Node, StatusEnum] = {}
        self._refresh_states(fscache)

    @property
    def tasks(self) -> frozenset[Node]:
        return frozenset(self._reverse_dependencies)

    @property
    def requirements(self) -> tuple[Requirement, ...]:
        requirements: set[Requirement] = set()
        for task in self._reverse_dependencies:
            requirements.update(task.requirements)

        return tuple(sorted(requirements, key=lambda it: it.name))

    @property
    def intermediate_files(self) -> CleanupStrategy:
        return self._intermediate_files

    def iterflat(self) -> Iterator[Node]:
        """Yields tasks such that every task follows all of its dependencies."""
        return iter(self._order)

    def dependents(self, task: Node) -> frozenset[Node]:
        return frozenset(self._reverse_dependencies[task])

    def get_node_state(self, task: Node) -> StatusEnum:
        return self._states[task]

    def get_state_counts(self) -> dict[StatusEnum, int]:
        counts = dict.fromkeys(StatusEnum, 0)
        for state in self._states.values():
            counts[state] += 1

        return counts

    def set_node_state(self, task: Node, state: StatusEnum) -> list[Transition]:
        """Changes the state of a task and returns every resulting transition, that
        of 'task' first. Success may make dependents READY once all of their
        dependencies have completed; failure marks every task downstream of 'task'
        as SKIPPED_DUE_TO_FAILURE."""
        old_state = self._states[task]
        if state not in _VALID_TRANSITIONS.get(old_state, ()):
            raise NodeGraphError(
                f"Cannot change state of {task} from {old_state} to {state}"
            )

        self._states[task] = state
        transitions: list[Transition] = [(task, old_state, state)]

        if state == StatusEnum.SUCCEEDED:
            for dependent in sorted(self._reverse_dependencies[task], key=_by_id):
                if self._states[dependent] == StatusEnum.PENDING and all(
                    self._states[dep].is_completed for dep in dependent.dependencies
                ):
                    self._states[dependent] = StatusEnum.READY
                    transitions.append(
                        (dependent, StatusEnum.PENDING, StatusEnum.READY)
                    )
        elif state == StatusEnum.FAILED:
            queue = list(self._reverse_dependencies[task])
            while queue:
                dependent = queue.pop()
                dependent_state = self._states[dependent]
                if not dependent_state.is_terminal:
                    if dependent_state == StatusEnum.RUNNING:
                        raise AssertionError(f"downstream task running: {dependent}")

                    self._states[dependent] = StatusEnum.SKIPPED_DUE_TO_FAILURE
                    transitions.append(
                        (dependent, dependent_state, StatusEnum.SKIPPED_DUE_TO_FAILURE)
                    )
                    queue.extend(self._reverse_dependencies[dependent])

        return transitions

    def get_removable_intermediate_files(self) -> list[str]:
        """Returns intermediate files for every chromosome (tasks sharing the same
        key.chromosome) whose tasks have all succeeded or been skipped. Files for
        chromosomes with failed or unfinished tasks are kept for inspection."""
        if self._intermediate_files != CleanupStrategy.DELETE:
            return []

        by_chromosome: dict[str | None, list[Node]] = collections.defaultdict(list)
        for task in self._order:
            chromosome = None if task.key is None else task.key.chromosome
            by_chromosome[chromosome].append(task)

        filenames: list[str] = []
        for tasks in by_chromosome.values():
            if all(self._states[task].is_completed for task in tasks):
                for task in tasks:
                    filenames.extend(sorted(task.intermediate_output_files))

        return filenames

    def check_file_dependencies(self, fscache: FileStatusCache) -> bool:
        """Checks that input files not created by any task in the graph exist."""
        output_files: set[str] = set()
        for task in self._reverse_dependencies:
            output_files.update(task.output_files)

        missing: dict[str, list[Node]] = collections.defaultdict(list)
        for task in self._order:
            if self._states[task].is_terminal:
                continue

            filenames = (task.input_files | task.auxiliary_files) - output_files
            for filename in fscache.missing_files(filenames):
                missing[filename].append(task)

        for filename, tasks in sorted(missing.items()):
            self._log.error(
                "Required file does not exist, and is not created by a task:\n"
                "    Filename: %s\n    Dependent task(s): %s",
                filename,
                "\n                       ".join(_summarize_nodes(tasks)),
            )

        return not missing

    @classmethod
    def check_version_requirements(
        cls,
        requirements: Iterable[Requirement],
        *,
        force: bool = False,
    ) -> bool:
        log = logging.getLogger(__name__)
        for requirement in sorted(requirements, key=lambda it: it.name):
            try:
                if not requirement.check(force=force):
                    log.error(
                        "Version requirements not met for %s; %s found, but %s "
                        "required",
                        requirement.name,
                        requirement.version_str(),
                        requirement.specifiers,
                    )
                    return False

                log.debug("  %s %s", requirement.name, requirement.version_str())
            except RequirementError as error:
                log.error(error)
                return False

        return True

    def _refresh_states(self, fscache: FileStatusCache) -> None:
        completed: set[Node] = set()
        skipped: set[Node] = set()
        # Dependents are visited before the tasks they depend upon
        for task in reversed(self._order):
            if task.output_files and not fscache.invalid_files(task.output_files):
                completed.add(task)
                skipped.add(task)
            elif (
                task.intermediate_output_files == task.output_files
                and task.output_files
                and self._reverse_dependencies[task]
                and self._reverse_dependencies[task] <= skipped
            ):
                skipped.add(task)

        for task in self._order:
            if task in skipped:
                self._states[task] = StatusEnum.SKIPPED
            elif all(self._states[dep].is_completed for dep in task.dependencies):
                self._states[task] = StatusEnum.READY
            else:
                self._states[task] = StatusEnum.PENDING

        self._warn_about_outdated_outputs(completed)

    def _warn_about_outdated_outputs(self, completed: set[Node]) -> None:
        """Warns about existing outputs of tasks whose dependencies will be re-run,
        since those outputs are kept even though their inputs may change."""
        outdated: set[Node] = set()
        for task in self._order:
            if not self._states[task].is_completed:
                outdated.update(self._reverse_dependencies[task] & completed)

        for task in sorted(outdated, key=_by_id):
            self._log.warning(
                "Outputs of %s already exist and are kept, but one or more of its "
                "dependencies will be run; remove these outputs to re-create them:"
                "\n    %s",
                task,
                "\n    ".join(sorted(task.output_files)),
            )

    def _collect_reverse_dependencies(self, tasks: Iterable[Node]) -> None:
        queue = list(tasks)
        seen: set[Node] = set()
        while queue:
            task = queue.pop()
            if not isinstance(task, Node):
                raise TypeError(f"Node object expected, received {task!r}")
            elif task not in seen:
                seen.add(task)
                # Initialize default-dict
                self._reverse_dependencies[task]  # noqa: B018

                for dependency in task.dependencies:
                    self._reverse_dependencies[dependency].add(task)
                    queue.append(dependency)

    @classmethod
    def _topological_order(
        cls, reverse_dependencies: dict[Node, set[Node]]
    ) -> list[Node]:
        """Returns tasks ordered such that all dependencies precede their dependents;
        raises CyclicGraphError if the dependencies contain a cycle."""
        order: list[Node] = []
        # Tasks currently on the stack
        visiting: set[Node] = set()
        visited: set[Node] = set()

        for root in sorted(reverse_dependencies, key=_by_id):
            if root in visited:
                continue

            stack: list[tuple[Node, Iterator[Node]]] = [
                (root, iter(sorted(root.dependencies, key=_by_id)))
            ]
            visiting.add(root)

            while stack:
                task, dependencies = stack[-1]
                for dependency in dependencies:
                    if dependency in visiting:
                        raise CyclicGraphError(
                            f"Cycle detected in task graph involving {dependency} "
                            f"and {task}"
                        )
                    elif dependency not in visited:
                        visiting.add(dependency)
                        next_deps = sorted(dependency.dependencies, key=_by_id)
                        stack.append((dependency, iter(next_deps)))
                        break
                else:
                    stack.pop()
                    visiting.remove(task)
                    visited.add(task)
                    order.append(task)

        return order

    @classmethod
    def _check_output_files(cls, tasks: Iterable[Node]) -> None:
        """Checks for multiple tasks creating the same output file; paths are
        compared after resolving the directory component."""
        output_files: dict[str, list[Node]] = collections.defaultdict(list)
        for task in tasks:
            for filename in task.output_files:
                dirname = os.path.realpath(os.path.dirname(filename) or ".")
                real_filename = os.path.join(dirname, os.path.basename(filename))
                output_files[real_filename].append(task)

        errors: list[str] = []
        for filename, creators in sorted(output_files.items()):
            if len(creators) > 1:
                errors.append(
                    "Multiple tasks create the same (clobber) output-file:\n"
                    "    Filename: {}\n    Tasks: {}".format(
                        filename,
                        "\n           ".join(_summarize_nodes(creators)),
                    )
                )

        cls._raise_errors(errors)

    def _check_input_dependencies(self, tasks: Iterable[Node]) -> None:
        producers: dict[str, Node] = {}
        for task in tasks:
            for filename in task.output_files:
                producers[filename] = task

        upstream: dict[Node, frozenset[Node]] = {}
        for task in self._order:
            collected = set(task.dependencies)
            for dependency in task.dependencies:
                collected.update(upstream[dependency])
            upstream[task] = frozenset(collected)

        errors: list[str] = []
        for task in self._order:
            for filename in sorted(task.input_files | task.auxiliary_files):
                producer = producers.get(filename)
                if producer is not None and producer not in upstream[task]:
                    errors.append(
                        "Task depends on dynamically created file, but not on the "
                        "task creating it:\n    Filename: {}\n    Created by: {}\n"
                        "    Dependent task: {}".format(filename, producer, task)
                    )

        self._raise_errors(errors)

    @staticmethod
    def _raise_errors(errors: list[str]) -> None:
        if errors:
            messages: list[str] = []
            for error in errors[:_MAX_ERROR_MESSAGES]:
                messages.extend("  " + line for line in error.split("\n"))

            raise NodeGraphError(
                "Errors detected during graph construction (max %i shown):\n%s"
                % (_MAX_ERROR_MESSAGES, "\n".join(messages))
            )


def _by_id(task: Node) -> int:
    return task.id


def _summarize_nodes(nodes: Iterable[Node]) -> list[str]:
    names = sorted(set(map(str, nodes)))
    if len(names) > 4:
        names = [*names[:4], f"and {len(names) - 4} more tasks ..."]
    return names
