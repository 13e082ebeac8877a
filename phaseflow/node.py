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
"""Tasks in the phasing graph.

A Node describes a unit of work by the files it reads and writes, the tools it
needs, and the tasks it depends on. Running a node happens in a fresh temporary
directory; output files are only moved into place once the work has completed,
and the directory is kept, along with a 'pipe.errors' report, if it fails.
"""

from __future__ import annotations

import errno
import itertools
import logging
import os
import shlex
import shutil
import signal
import sys
from typing import TYPE_CHECKING, Any, Iterable, NamedTuple

import phaseflow
from phaseflow.common import fileutils
from phaseflow.common.command import AtomicCmd, CmdError, ParallelCmds, SequentialCmds
from phaseflow.common.utilities import safe_coerce_to_frozenset
from phaseflow.common.versions import Requirement

if TYPE_CHECKING:
    from phaseflow.common.fileutils import PathTypes

_NEXT_ID = itertools.count()

# Messages printed by tools (or by the C library on their behalf) when a failure was
# caused by a temporary shortage of resources on the host, rather than by the input
TRANSIENT_SIGNATURES = (
    "Resource temporarily unavailable",
    "Cannot allocate memory",
    "Too many open files",
    "Stale file handle",
    "Connection reset by peer",
)


class TaskKey(NamedTuple):
    """Identifies a task by chromosome, stage, and optionally chunk and sample."""

    chromosome: str
    stage: str
    chunk: int | None = None
    sample: str | None = None

    def __str__(self) -> str:
        fields = [f"chr{self.chromosome}", self.stage]
        if self.chunk is not None:
            fields.append(str(self.chunk))
        if self.sample is not None:
            fields.append(self.sample)

        return ":".join(fields)


class NodeError(RuntimeError):
    def __init__(self, *args: object, path: str | None = None) -> None:
        super().__init__(*args)
        # Temporary directory kept for inspection, if any
        self.path = path


class NodeMissingFilesError(NodeError):
    pass


class CmdNodeError(NodeError):
    def __init__(
        self,
        *args: object,
        path: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(*args, path=path)
        self.exit_code = exit_code


class TransientToolError(CmdNodeError):
    """A tool failed in a manner that may succeed if the task is run again."""


class PermanentToolError(CmdNodeError):
    """A tool failed in a manner that is not expected to change on a re-run."""


class NodeUnhandledError(NodeError):
    """Wraps exceptions other than NodeErrors raised while running a task."""


def is_transient_failure(stderr: str) -> bool:
    return any(signature in stderr for signature in TRANSIENT_SIGNATURES)


class Node:
    def __init__(
        self,
        description: str | None = None,
        key: TaskKey | None = None,
        threads: int = 1,
        input_files: Iterable[str] = (),
        output_files: Iterable[str] = (),
        executables: Iterable[str] = (),
        auxiliary_files: Iterable[str] = (),
        requirements: Iterable[Requirement] = (),
        dependencies: Iterable[Node] = (),
    ) -> None:
        if description is not None and not isinstance(description, str):
            raise TypeError(description)
        elif key is not None and not isinstance(key, TaskKey):
            raise TypeError(key)
        elif not isinstance(threads, int):
            raise TypeError(f"'threads' must be a positive integer, not {threads!r}")
        elif threads < 1:
            raise ValueError(f"'threads' must be a positive integer, not {threads}")

        self._description = description
        self.key = key
        self.threads = threads

        self.input_files = _filenames(input_files)
        self.output_files = _filenames(output_files)
        # Outputs that may be removed once they are no longer needed
        self.intermediate_output_files: frozenset[str] = frozenset()
        self.executables = _filenames(executables)
        self.auxiliary_files = _filenames(auxiliary_files)
        self.requirements: frozenset[Requirement]
        self.requirements = _instances(requirements, Requirement)
        self.dependencies: frozenset[Node] = _instances(dependencies, Node)

        # Completion is judged by the presence of outputs, which requires some input
        if self.output_files and not self.input_files:
            raise NodeError(f"Task not dependent upon input files: {self}")

        self.id = next(_NEXT_ID)

    def run(self, temp_root: PathTypes) -> None:
        """Runs `_setup`, `_run`, and `_teardown` in a new temporary directory in
        'temp_root', which is removed once the outputs have been moved into place.

        On failure the directory is kept and a 'pipe.errors' report is written to
        it. Exceptions other than NodeErrors are raised as a NodeUnhandledError,
        so that these can be reported by the main process."""
        temp = fileutils.create_temp_dir(temp_root)

        try:
            self._setup(temp)
            self._run(temp)
            self._teardown(temp)
        except NodeMissingFilesError:
            # Nothing has been written to the directory at this point
            fileutils.try_rmtree(temp)
            raise
        except NodeError as error:
            self._write_error_log(temp, error)

            details = str(error).replace("\n", "\n  ")
            message = f"Error while running {self}:\n  {details}"
            if isinstance(error, CmdNodeError):
                exit_code = error.exit_code
                raise type(error)(message, path=temp, exit_code=exit_code) from None

            raise NodeError(message, path=temp) from None
        except Exception as error:  # noqa: BLE001
            self._write_error_log(temp, error)

            message = f"Error while running {self}"
            raise NodeUnhandledError(message, path=temp) from error

        self._remove_temp_dir(temp)

    def mark_intermediate_files(self) -> None:
        """Outputs of this task are only needed by downstream tasks, and may be
        removed once every task for the same chromosome has completed."""
        self.intermediate_output_files = self.output_files

    def _setup(self, _temp: PathTypes) -> None:
        """Checks that executables and input files are available. Subclasses may
        write additional files to the temporary directory."""
        missing = fileutils.missing_executables(self.executables)
        if missing:
            raise NodeError(f"Executable(s) not found: {missing}")

        self._check_files(self.input_files | self.auxiliary_files, "input")

    def _run(self, _temp: PathTypes) -> None:
        pass

    def _teardown(self, _temp: PathTypes) -> None:
        self._check_files(self.output_files, "output")

    def _check_files(self, filenames: Iterable[str], kind: str) -> None:
        missing = fileutils.missing_files(sorted(filenames))
        if missing:
            error = NodeMissingFilesError if kind == "input" else NodeError
            files = "\n\t         ".join(missing)

            raise error(
                f"Missing {kind} files for command:\n"
                f"\t- Command: {self}\n"
                f"\t- Files: {files}"
            )

    def _remove_temp_dir(self, temp: str) -> None:
        log = logging.getLogger(__name__)
        for filename in self._collect_files(temp):
            log.warning("Unexpected file in temporary directory: %r", filename)

        try:
            shutil.rmtree(temp)
        except OSError as error:
            # Typically files held open on network filesystems
            if error.errno != errno.EBUSY:
                raise

            log.warning("Could not remove temporary directory: %r", error)

    def _write_error_log(self, temp: str, error: Exception) -> None:
        fields: dict[str, str | list[str]] = {
            "phaseflow": f"v{phaseflow.__version__}",
            "Command": shlex.join(sys.argv),
            "CWD": repr(os.getcwd()),
            "PATH": repr(os.environ.get("PATH", "")),
            "Task": str(self),
            "Task key": str(self.key),
            "Threads": str(self.threads),
            "Input files": sorted(self.input_files),
            "Output files": sorted(self.output_files),
            "Auxiliary files": sorted(self.auxiliary_files),
            "Executables": sorted(self.executables),
        }

        lines: list[str] = []
        for name, value in fields.items():
            label = f"{name:<16} = "
            items = [value] if isinstance(value, str) else value
            for idx, item in enumerate(items or [""]):
                lines.append((label if not idx else " " * len(label)) + item)

        lines.extend(("", "Errors =", str(error), ""))

        try:
            with open(os.path.join(temp, "pipe.errors"), "w") as handle:
                handle.write("\n".join(lines))
        except OSError as oserror:
            sys.stderr.write(f"ERROR: Could not write failure log: {oserror}\n")

    @staticmethod
    def _collect_files(root: PathTypes) -> Iterable[str]:
        """Yields paths, relative to 'root', of files in the 'root' tree."""
        root = os.fspath(root)
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                yield os.path.relpath(os.path.join(dirpath, filename), root)

    def __str__(self) -> str:
        if self._description:
            return self._description
        elif self.key is not None:
            return str(self.key)

        return repr(self)

    def __getstate__(self) -> dict[str, Any]:
        """Requirements and dependencies are not needed to run the task, and are not
        pickled when the task is sent to a worker process."""
        return {**self.__dict__, "requirements": (), "dependencies": ()}


class CommandNode(Node):
    _command: AtomicCmd | ParallelCmds | SequentialCmds

    def __init__(
        self,
        command: AtomicCmd | ParallelCmds | SequentialCmds,
        description: str | None = None,
        key: TaskKey | None = None,
        threads: int = 1,
        dependencies: Iterable[Node] = (),
    ) -> None:
        Node.__init__(
            self,
            description=description,
            key=key,
            input_files=command.input_files,
            output_files=command.output_files,
            auxiliary_files=command.auxiliary_files,
            executables=command.executables,
            requirements=command.requirements,
            threads=threads,
            dependencies=dependencies,
        )

        self._command = command

    @property
    def command(self) -> AtomicCmd | ParallelCmds | SequentialCmds:
        return self._command

    def _run(self, temp: PathTypes) -> None:
        """Runs the command and waits for it to terminate. Failures are raised as
        TransientToolError if the captured STDERR of the command matches one of the
        TRANSIENT_SIGNATURES, and as PermanentToolError otherwise."""
        try:
            self._command.run(temp)
        except CmdError as error:
            raise PermanentToolError(f"{self._command!s}\n\n{error}") from error

        return_codes = self._command.join()
        if any(return_codes):
            exit_code = _first_failure(return_codes)
            stderr = "\n".join(self._command.captured_stderr())

            if is_transient_failure(stderr):
                raise TransientToolError(str(self._command), exit_code=exit_code)
            raise PermanentToolError(str(self._command), exit_code=exit_code)

    def _teardown(self, temp: PathTypes) -> None:
        required_files = self._command.expected_temp_files
        current_files = set(self._collect_files(temp))

        missing_files = required_files - current_files
        if missing_files:
            raise PermanentToolError(
                (
                    "Error running task, required files were not created:\n"
                    "Temporary directory: {!r}\n"
                    "\tRequired files missing from temporary directory:\n\t    - {}"
                ).format(temp, "\n\t    - ".join(sorted(map(repr, missing_files))))
            )

        self._command.commit()

        super()._teardown(temp)


class FileListNode(CommandNode):
    """CommandNode for tools that take their inputs as a file listing one path per
    line. The list is written to the temporary directory before the command is run,
    in the order given, which is the order in which the tool combines the files."""

    def __init__(
        self,
        command: AtomicCmd | ParallelCmds | SequentialCmds,
        list_file: str,
        filenames: Iterable[str],
        description: str | None = None,
        key: TaskKey | None = None,
        threads: int = 1,
        dependencies: Iterable[Node] = (),
    ) -> None:
        if os.path.dirname(list_file):
            raise ValueError(f"directory component in list file {list_file!r}")

        self._list_file = list_file
        self._filenames = tuple(filenames)
        if not self._filenames:
            raise ValueError("no files for file list")

        CommandNode.__init__(
            self,
            command=command,
            description=description,
            key=key,
            threads=threads,
            dependencies=dependencies,
        )

    @property
    def filenames(self) -> tuple[str, ...]:
        return self._filenames

    def _setup(self, temp: PathTypes) -> None:
        super()._setup(temp)

        with open(os.path.join(temp, self._list_file), "w") as handle:
            for filename in self._filenames:
                print(filename, file=handle)

    def _teardown(self, temp: PathTypes) -> None:
        fileutils.try_remove(os.path.join(temp, self._list_file))

        super()._teardown(temp)


def _first_failure(return_codes: Iterable[int | str | None]) -> int | None:
    for value in return_codes:
        if isinstance(value, str):
            # Killed by a signal; reported the same way as by subprocess
            return -signal.Signals[value].value
        elif value:
            return value

    return None


def _filenames(values: Iterable[PathTypes]) -> frozenset[str]:
    return frozenset(fileutils.validate_filenames(values))


def _instances(values: Iterable[Any], cls: type) -> frozenset[Any]:
    values = safe_coerce_to_frozenset(values)
    for value in values:
        if not isinstance(value, cls):
            raise TypeError(value)

    return values
