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
"""External commands run inside a temporary directory.

Output files are written to the temporary directory and are only moved to their
final location by `commit`, once the command has completed successfully. A file
with a final name is therefore never the product of a failed or interrupted tool.
Paths on the command line are wrapped in the file classes below, which lets the
command be redirected into the temporary directory and lets the task graph know
which files each command reads and writes.
"""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Iterable, List, Union

from phaseflow.common import fileutils
from phaseflow.common.procs import RegisteredPopen
from phaseflow.common.versions import Requirement

if TYPE_CHECKING:
    from typing_extensions import Self

    from phaseflow.common.fileutils import PathTypes


class CmdError(RuntimeError):
    pass


@dataclass(frozen=True)
class _File:
    path: str

    def __post_init__(self) -> None:
        value = os.fspath(self.path)
        if not isinstance(value, str):
            raise TypeError(f"invalid path {self.path!r}")

        object.__setattr__(self, "path", value)

    @property
    def basename(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class AuxiliaryFile(_File):
    """A file required by a command that is not a product of the pipeline."""


@dataclass(frozen=True)
class Executable(_File):
    """A program invoked indirectly, e.g. by a shell script."""


@dataclass(frozen=True)
class _IOFile(_File):
    # Temporary files live in the temporary directory and are never committed
    temporary: bool = field(default=False)

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.temporary and os.path.dirname(self.path):
            raise ValueError(f"directory component in temporary path {self.path!r}")


@dataclass(frozen=True)
class InputFile(_IOFile):
    pass


@dataclass(frozen=True)
class OutputFile(_IOFile):
    pass


def TempInputFile(path: PathTypes) -> InputFile:  # noqa: N802
    """A file written to the temporary directory by the task itself."""
    return InputFile(os.path.basename(path), temporary=True)


AtomicFileTypes = Union[AuxiliaryFile, Executable, InputFile, OutputFile]

# DEVNULL, PIPE, a file, or the command whose STDOUT is piped into this command
WrappedPipeType = Union[int, InputFile, OutputFile, "AtomicCmd"]

JoinType = List[Union[str, None, int]]


class AtomicCmd:
    """A single invocation of an external tool.

    The command is a list starting with the executable, followed by arguments, so
    that `bcftools index --csi -o /out/chr21.bcf.csi /out/chr21.bcf` becomes

        AtomicCmd(["bcftools", "index", "--csi",
                   "-o", OutputFile("/out/chr21.bcf.csi"),
                   InputFile("/out/chr21.bcf")])

    STDIN defaults to /dev/null, and may be a path, an InputFile, or a command whose
    STDOUT is PIPE. STDOUT and STDERR are captured to files in the temporary
    directory by default; the captured STDERR is what `captured_stderr` returns
    when the command has failed. Files that are read or written but do not appear
    on the command line, e.g. index files, are given using 'extra_files'.
    """

    PIPE = subprocess.PIPE
    DEVNULL = subprocess.DEVNULL

    def __init__(
        self,
        command: Iterable[str | int | float | Path | AtomicFileTypes],
        *,
        stdin: int | str | Path | InputFile | AtomicCmd | None = None,
        stdout: int | str | Path | OutputFile | None = None,
        stderr: int | str | Path | OutputFile | None = None,
        extra_files: Iterable[AtomicFileTypes] = (),
        requirements: Iterable[Requirement] = (),
    ) -> None:
        self._argv: list[str | AtomicFileTypes] = []
        self._files: set[AtomicFileTypes] = set()
        self._requirements = frozenset(requirements)
        self._proc: subprocess.Popen[bytes] | None = None
        self._temp: str | None = None
        self._joined = False
        self.terminated = False

        for value in self._requirements:
            if not isinstance(value, Requirement):
                raise TypeError(value)

        self.append(*command)
        if not self._argv or not self._argv[0]:
            raise ValueError("Empty command")

        executable = self._argv[0]
        if isinstance(executable, str):
            self._argv[0] = executable = Executable(executable)
            self._files.add(executable)
        elif not isinstance(executable, Executable):
            raise TypeError(f"exe must be str or Executable, not {executable!r}")

        self.stdin = self._stdin_pipe(stdin)
        self.stdout = self._output_pipe(stdout, "stdout")
        self.stderr = self._output_pipe(stderr, "stderr")

        self.add_extra_files(extra_files)
        for pipe in (self.stdin, self.stdout, self.stderr):
            if isinstance(pipe, _File):
                self._add_file(pipe)

    def append(self, *args: AtomicFileTypes | str | float | Path) -> None:
        self._check_not_started()
        for value in args:
            if isinstance(value, _File):
                self._add_file(value)
                self._argv.append(value)
            else:
                self._argv.append(str(value))

    def add_extra_files(self, files: Iterable[AtomicFileTypes]) -> None:
        self._check_not_started()
        for value in files:
            if not isinstance(value, _File):
                raise TypeError(value)

            self._add_file(value)

    @property
    def input_files(self) -> set[str]:
        return {
            it.path
            for it in self._files
            if isinstance(it, InputFile) and not it.temporary
        }

    @property
    def output_files(self) -> set[str]:
        return {it.path for it in self._outputs(temporary=False)}

    @property
    def expected_temp_files(self) -> set[str]:
        return {it.basename for it in self._outputs(temporary=False)}

    @property
    def optional_temp_files(self) -> set[str]:
        return {it.basename for it in self._outputs(temporary=True)}

    @property
    def auxiliary_files(self) -> set[str]:
        return {it.path for it in self._files if isinstance(it, AuxiliaryFile)}

    @property
    def executables(self) -> set[str]:
        return {it.path for it in self._files if isinstance(it, Executable)}

    @property
    def requirements(self) -> set[Requirement]:
        return set(self._requirements)

    @property
    def temp_dir(self) -> str | None:
        return self._temp

    def to_call(self, temp: PathTypes) -> list[str]:
        return [self._resolve(temp, value) for value in self._argv]

    def run(self, temp: PathTypes) -> None:
        """Starts the command with outputs written to 'temp' and returns at once."""
        if self._proc is not None and not self._joined:
            raise CmdError("command is already running")

        self._temp = os.fspath(temp)
        self._joined = False
        self.terminated = False

        handles: list[int | IO[bytes] | None] = []
        try:
            handles.append(self._open(self.stdin, "rb"))
            handles.append(self._open(self.stdout, "wb"))
            handles.append(self._open(self.stderr, "wb"))

            self._proc = RegisteredPopen(
                self.to_call(self._temp),
                stdin=handles[0],
                stdout=handles[1],
                stderr=handles[2],
            )
        except (OSError, ValueError, CmdError) as error:
            raise CmdError(
                f"Error running commands:\n  Call = {self._argv!r}\n  Error = {error!r}"
            ) from error
        finally:
            # The child holds its own copies; ours must be closed for SIGPIPE to work
            for handle in handles:
                if handle is not None and not isinstance(handle, int):
                    handle.close()

    def ready(self) -> bool:
        """Returns true once the command has exited, successfully or not."""
        return self._proc is not None and self._proc.poll() is not None

    def join(self, timeout: float | None = None) -> JoinType:
        """Waits for the command to exit. Returns a list containing the exit code,
        the name of the signal that killed the command, or None if never started."""
        if self._proc is None:
            return [None]

        returncode = self._proc.wait(timeout)
        self._joined = True

        if returncode < 0:
            return [signal.Signals(-returncode).name]

        return [returncode]

    def terminate(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()
            self.terminated = True

    def commit(self) -> None:
        """Moves output files from the temporary directory to their destinations.
        Committed files are removed again if any file could not be moved."""
        if not self.ready():
            raise CmdError("Attempting to commit before command has completed")
        elif not self._joined:
            raise CmdError("Attempting to commit before calling 'join'")

        temp = self._temp
        assert temp is not None

        missing = self.expected_temp_files.difference(os.listdir(temp))
        if missing:
            raise CmdError(f"Expected files not created: {', '.join(sorted(missing))}")

        committed: list[str] = []
        try:
            for it in self._outputs(temporary=True):
                fileutils.try_remove(os.path.join(temp, it.path))

            for it in self._outputs(temporary=False):
                fileutils.move_file(os.path.join(temp, it.basename), it.path)
                committed.append(it.path)
        except Exception:
            for filename in committed:
                fileutils.try_remove(filename)
            raise

        self._proc = None
        self._temp = None

    def captured_stderr(self) -> list[str]:
        """Returns the STDERR captured in the temporary directory, if any."""
        if self._temp is None or not isinstance(self.stderr, OutputFile):
            return []
        elif not self.stderr.temporary:
            return []

        filename = os.path.join(self._temp, self.stderr.path)
        try:
            with open(filename, errors="replace") as handle:
                return [handle.read()]
        except FileNotFoundError:
            return []

    def _add_file(self, value: _File) -> None:
        if isinstance(value, OutputFile) and value not in self._files:
            # Every output file is written to the same temporary directory
            if any(it.basename == value.basename for it in self._outputs()):
                raise CmdError(f"multiple output files with name {value.basename!r}")
        elif not isinstance(value, (AuxiliaryFile, Executable, InputFile, OutputFile)):
            raise TypeError(value)

        self._files.add(value)  # type: ignore[arg-type]

    def _outputs(self, temporary: bool | None = None) -> list[OutputFile]:
        return [
            it
            for it in self._files
            if isinstance(it, OutputFile)
            and (temporary is None or it.temporary == temporary)
        ]

    def _stdin_pipe(
        self, pipe: int | str | Path | InputFile | AtomicCmd | None
    ) -> WrappedPipeType:
        if pipe is None or pipe == self.DEVNULL:
            return self.DEVNULL
        elif isinstance(pipe, (InputFile, AtomicCmd)):
            return pipe
        elif isinstance(pipe, (str, Path)):
            return InputFile(pipe)

        raise ValueError(f"invalid STDIN {pipe!r}")

    def _output_pipe(
        self, pipe: int | str | Path | OutputFile | None, name: str
    ) -> WrappedPipeType:
        if pipe is None:
            executable = self._argv[0]
            assert isinstance(executable, Executable)

            basename = f"pipe_{executable.basename}_{id(self)}.{name}"
            return OutputFile(basename, temporary=True)
        elif pipe == self.DEVNULL or (pipe == self.PIPE and name == "stdout"):
            return pipe  # type: ignore[return-value]
        elif isinstance(pipe, OutputFile):
            return pipe
        elif isinstance(pipe, (str, Path)):
            return OutputFile(pipe)

        raise ValueError(f"invalid {name.upper()} {pipe!r}")

    def _open(self, pipe: WrappedPipeType, mode: str) -> int | IO[bytes] | None:
        assert self._temp is not None
        if isinstance(pipe, int):
            return pipe
        elif isinstance(pipe, AtomicCmd):
            if pipe._proc is None or pipe._proc.stdout is None:
                raise CmdError("can only pipe from running command with stdout=PIPE")

            return pipe._proc.stdout

        return open(self._resolve(self._temp, pipe), mode)  # noqa: SIM115

    def _check_not_started(self) -> None:
        if self._proc is not None:
            raise CmdError("cannot modify already started command")

    @staticmethod
    def _resolve(temp: PathTypes, value: str | _File) -> str:
        if isinstance(value, OutputFile):
            return os.path.join(temp, value.basename)
        elif isinstance(value, InputFile) and value.temporary:
            return os.path.join(temp, value.path)
        elif isinstance(value, _File):
            return value.path

        return value

    def __enter__(self) -> Self:
        return self

    def __exit__(self, typ: object, exc: object, tb: object) -> None:
        self.terminate()
        self.join()

    def __str__(self) -> str:
        return pformat(self)


class _CommandSet:
    """Commands that are committed together; files committed by earlier commands
    are removed if a later command fails to commit."""

    def __init__(self, commands: Iterable[AtomicCmd | _CommandSet]) -> None:
        self._commands: tuple[CommandTypes, ...] = tuple(commands)  # type: ignore
        if not self._commands:
            raise CmdError("Empty list passed to command set")
        elif len(set(self._commands)) != len(self._commands):
            raise ValueError(
                f"Same command included multiple times in {type(self).__name__}"
            )

        names = Counter(
            name
            for command in self._commands
            for group in (command.expected_temp_files, command.optional_temp_files)
            for name in group
        )

        clobbered = sorted(name for name, count in names.items() if count > 1)
        if clobbered:
            raise CmdError(f"Commands clobber each others' files: {clobbered}")

    @property
    def input_files(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.input_files}

    @property
    def output_files(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.output_files}

    @property
    def auxiliary_files(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.auxiliary_files}

    @property
    def executables(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.executables}

    @property
    def requirements(self) -> set[Requirement]:
        return {it for cmd in self._commands for it in cmd.requirements}

    @property
    def expected_temp_files(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.expected_temp_files}

    @property
    def optional_temp_files(self) -> set[str]:
        return {it for cmd in self._commands for it in cmd.optional_temp_files}

    def commit(self) -> None:
        committed: set[str] = set()
        try:
            for command in self._commands:
                command.commit()
                committed.update(command.output_files)
        except Exception:
            for filename in committed:
                fileutils.try_remove(filename)
            raise

    def captured_stderr(self) -> list[str]:
        return [text for cmd in self._commands for text in cmd.captured_stderr()]

    def terminate(self) -> None:
        for command in self._commands:
            command.terminate()

    def __str__(self) -> str:
        return pformat(self)  # type: ignore[arg-type]


class ParallelCmds(_CommandSet):
    """Commands run at the same time, typically connected by pipes:

        $ bcftools norm -m -any in.bcf | bcftools view -Ob -o out.bcf

    If any command fails then the remaining commands are terminated, so that a
    command waiting on a pipe is not left running.
    """

    def __init__(self, commands: Iterable[AtomicCmd]) -> None:
        commands = tuple(commands)
        if not all(isinstance(command, AtomicCmd) for command in commands):
            raise CmdError("ParallelCmds must only contain AtomicCmds")

        super().__init__(commands)
        self._started = False

    def run(self, temp: PathTypes) -> None:
        for command in self._commands:
            command.run(temp)
        self._started = True

    def ready(self) -> bool:
        return all(command.ready() for command in self._commands)

    def join(self) -> JoinType:
        codes: JoinType = [None] * len(self._commands)
        if not self._started:
            return codes

        delay = 0.05
        running = dict(enumerate(self._commands))
        while running:
            for idx, command in list(running.items()):
                if command.ready():
                    (codes[idx],) = command.join()
                    del running[idx]
                    delay = 0.05

            if any(codes):
                for idx, command in running.items():
                    command.terminate()
                    (codes[idx],) = command.join()
                break
            elif running:
                time.sleep(delay)
                delay = min(1.0, delay * 2)

        return codes


class SequentialCmds(_CommandSet):
    """Commands run one after another, each only if the previous one succeeded;
    used to index the output of tools that cannot do so themselves:

        $ shapeit5_ligate --input list.txt --output out.bcf
        $ bcftools index --csi -o out.bcf.csi out.bcf
    """

    def __init__(self, commands: Iterable[AtomicCmd | _CommandSet]) -> None:
        commands = tuple(commands)
        for command in commands:
            if not isinstance(command, (AtomicCmd, _CommandSet)):
                raise CmdError("SequentialCmds must only contain commands")

        super().__init__(commands)
        self._done = False

    def run(self, temp: PathTypes) -> None:
        self._done = False
        for command in self._commands:
            command.run(temp)
            if any(command.join()):
                break

        self._done = True

    def ready(self) -> bool:
        return self._done

    def join(self) -> JoinType:
        return [code for command in self._commands for code in command.join()]


CommandTypes = Union[AtomicCmd, ParallelCmds, SequentialCmds]


def pformat(command: CommandTypes) -> str:
    """Returns a human readable description of a command or set of commands."""
    if not isinstance(command, (AtomicCmd, ParallelCmds, SequentialCmds)):
        raise TypeError(command)

    numbers = {cmd: idx for idx, cmd in enumerate(_flatten(command), start=1)}

    return "\n".join(_describe(command, numbers, ""))


def _flatten(command: CommandTypes) -> Iterable[AtomicCmd]:
    if isinstance(command, AtomicCmd):
        yield command
    else:
        for subcommand in command._commands:
            yield from _flatten(subcommand)


def _describe(
    command: CommandTypes,
    numbers: dict[AtomicCmd, int],
    indent: str,
) -> Iterable[str]:
    if not isinstance(command, AtomicCmd):
        kind = "Parallel" if isinstance(command, ParallelCmds) else "Sequential"
        yield f"{indent}{kind} processes:"

        for idx, subcommand in enumerate(command._commands):
            if idx:
                yield ""
            yield from _describe(subcommand, numbers, indent + "  ")
        return

    if len(numbers) > 1:
        yield f"{indent}Process {numbers[command]}:"
        indent += "  "

    temp = command.temp_dir or "${TEMP_DIR}"
    label = f"{indent}Command = "
    for idx, line in enumerate(_wrap_call(command.to_call(temp))):
        yield (label if not idx else " " * len(label)) + line

    if command.ready():
        (code,) = command.join()
        if command.terminated:
            yield f"{indent}Status  = Terminated by phaseflow"
        elif isinstance(code, str):
            yield f"{indent}Status  = Terminated with signal {code}"
        else:
            yield f"{indent}Status  = Exited with return-code {code}"

    yield f"{indent}STDIN   = {_describe_pipe(command, command.stdin, numbers, temp)}"
    yield f"{indent}STDOUT  = {_describe_pipe(command, command.stdout, numbers, temp)}"
    yield f"{indent}STDERR  = {_describe_pipe(command, command.stderr, numbers, temp)}"


def _describe_pipe(
    command: AtomicCmd,
    pipe: WrappedPipeType,
    numbers: dict[AtomicCmd, int],
    temp: str,
) -> str:
    if isinstance(pipe, AtomicCmd):
        return f"Piped from process {numbers[pipe]}" if pipe in numbers else "<PIPE>"
    elif isinstance(pipe, _File):
        return shlex.quote(command._resolve(temp, pipe))
    elif pipe == AtomicCmd.PIPE:
        for other, idx in numbers.items():
            if other.stdin is command:
                return f"Piped to process {idx}"
        return "<PIPE>"

    return "/dev/null"


def _wrap_call(call: list[str], width: int = 80) -> list[str]:
    """Joins quoted arguments into lines of at most 'width' characters, unless a
    single argument is longer; lines are joined by escaped newlines."""
    lines: list[list[str]] = [[]]
    length = 0
    for value in map(shlex.quote, call):
        if lines[-1] and length + len(value) + 1 > width:
            lines.append([])
            length = 0

        lines[-1].append(value)
        length += len(value) + 1

    rows = [" ".join(line) for line in lines]

    return [
        ("    " if idx else "") + row + (" \\" if idx + 1 < len(rows) else "")
        for idx, row in enumerate(rows)
    ]
