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
"""Reports printed by the --list-* options and by dry runs."""

from __future__ import annotations

import os
import sys
from collections import Counter
from typing import IO, TYPE_CHECKING, Iterator

from humanfriendly.terminal import ansi_wrap, terminal_supports_colors

from phaseflow.common.text import padded_table
from phaseflow.common.utilities import natural_sort_key
from phaseflow.common.versions import RequirementError
from phaseflow.nodegraph import FileStatusCache, NodeGraph, StatusEnum

if TYPE_CHECKING:
    from phaseflow.node import Node


def input_files(graph: NodeGraph, file: IO[str] = sys.stdout) -> int:
    """Prints files read by the pipeline that are not produced by any task."""
    produced = {os.path.abspath(it) for task in graph.tasks for it in task.output_files}
    required = {os.path.abspath(it) for task in graph.tasks for it in task.input_files}

    for filename in sorted(required - produced):
        print(filename, file=file)

    return 0


def output_files(
    graph: NodeGraph,
    fscache: FileStatusCache,
    file: IO[str] = sys.stdout,
) -> int:
    """Prints every output file along with its state: 'Ready' if the file exists,
    'Missing' if it is (re)created by this run, and 'Skipped' for intermediate files
    that are not re-created because they are no longer needed."""
    states: dict[str, str] = {}
    for task in graph.tasks:
        if graph.get_node_state(task) == StatusEnum.SKIPPED:
            missing = set(fscache.missing_files(task.output_files))
            for filename in task.output_files:
                state = "Skipped" if filename in missing else "Ready"
                states[os.path.abspath(filename)] = state
        else:
            for filename in task.output_files:
                states[os.path.abspath(filename)] = "Missing"

    rows = [(state, filename) for filename, state in sorted(states.items())]
    if file.isatty():
        for line in padded_table(rows):
            print(line, file=file)
    else:
        for state, filename in rows:
            print(state, filename, sep="\t", file=file)

    return 0


def required_executables(graph: NodeGraph, file: IO[str] = sys.stdout) -> int:
    """Prints executables along with their current and required versions."""
    versions = {name: ("-", "any") for task in graph.tasks for name in task.executables}

    for requirement in graph.requirements:
        try:
            version = requirement.version_str()
        except RequirementError:
            version = "ERROR"

        versions[requirement.name] = (version, str(requirement.specifiers))

    rows = [("Executable", "Version", "Required version")]
    rows.extend((name, *values) for name, values in sorted(versions.items()))

    for line in padded_table(rows, min_padding=2):
        print(f"  {line}", file=file)

    return 0


def pipeline_tasks(graph: NodeGraph, file: IO[str] = sys.stdout) -> int:
    """Prints the tree of tasks, starting from the tasks that nothing depends on.
    Tasks shared by several branches are printed only the first time."""
    roots = [task for task in graph.tasks if not graph.dependents(task)]
    roots.sort(key=lambda task: natural_sort_key(str(task.key or task)))

    visited: set[Node] = set()
    colors = terminal_supports_colors(file)
    for task in roots:
        for line, done in _task_tree(graph, task, visited, 0):
            if colors and done:
                line = ansi_wrap(line, color="black", bold=True)

            print(line, file=file)

    return 0


def state_summary(graph: NodeGraph, file: IO[str] = sys.stdout) -> int:
    """Prints the number of tasks per chromosome and stage, and how many of these
    are skipped or ready to run."""
    # Visited in dependency order, so that stages are listed in the order they run
    counts: dict[tuple[str, str], Counter[StatusEnum]] = {}
    for task in graph.iterflat():
        if task.key is not None:
            key = (f"chr{task.key.chromosome}", task.key.stage)
            counts.setdefault(key, Counter())[graph.get_node_state(task)] += 1

    rows: list[tuple[str | int, ...]] = [
        ("Chromosome", "Stage", "Tasks", "Skipped", "Ready")
    ]

    for (chromosome, stage), states in sorted(
        counts.items(), key=lambda it: natural_sort_key(it[0][0])
    ):
        total = sum(states.values())
        rows.append(
            (
                chromosome,
                stage,
                total,
                states[StatusEnum.SKIPPED],
                states[StatusEnum.READY],
            )
        )

    for line in padded_table(rows):
        print(line, file=file)

    return 0


def _task_tree(
    graph: NodeGraph,
    task: Node,
    visited: set[Node],
    depth: int,
) -> Iterator[tuple[str, bool]]:
    state = graph.get_node_state(task)
    yield f"{'    ' * depth}+ {task} [{state}]", state.is_completed

    visited.add(task)
    repeated: list[Node] = []
    for subtask in sorted(task.dependencies, key=lambda it: it.id):
        if subtask in visited:
            repeated.append(subtask)
        else:
            yield from _task_tree(graph, subtask, visited, depth + 1)

    if repeated:
        done = all(graph.get_node_state(it).is_completed for it in repeated)
        yield f"{'    ' * (depth + 1)}+ {len(repeated)} sub-task(s) ...", done
