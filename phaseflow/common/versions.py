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
"""Version requirements for the tools invoked by tasks.

A Requirement runs a command, typically `tool --version`, and extracts a version
from the combined STDOUT and STDERR using a regular expression. Every group in
the expression is one component of the version; trailing groups that did not
match are ignored, so that e.g. both '1.17' and '1.18.1' may be matched by

    r"bcftools (\\d+\\.\\d+)(?:\\.(\\d+))?"

The version is then compared against a PEP 440 specifier such as '>=1.17'.
"""

from __future__ import annotations

import re
import shlex
import subprocess
from typing import Any, Iterable

from packaging.specifiers import SpecifierSet


class RequirementError(Exception):
    """Raised if the version of a tool could not be determined."""


class Requirement:
    def __init__(
        self,
        call: str | Iterable[str],
        regexp: str | None = None,
        specifiers: str | None = None,
        name: str | None = None,
    ) -> None:
        if specifiers and not regexp:
            raise RequirementError("specifiers require a regexp str")

        self.call = (call,) if isinstance(call, str) else tuple(call)
        self.name = name or self.call[0]
        self.regexp = re.compile(regexp) if regexp else None
        self.specifiers = SpecifierSet(specifiers or "")
        # Either the version string or the error raised when determining it
        self._result: str | RequirementError | None = None

    @property
    def executable(self) -> str:
        return self.call[0]

    def version(self, force: bool = False) -> str:
        """Returns the version of the tool, running the command the first time this
        is called (or if 'force' is set). An empty string is returned if there is no
        regexp; a RequirementError is raised if the version could not be found."""
        if force or self._result is None:
            self._result = self._determine_version()

        if isinstance(self._result, RequirementError):
            raise self._result

        return self._result

    def version_str(self, force: bool = False) -> str:
        version = self.version(force)

        return f"v{version}" if version else "N/A"

    def check(self, force: bool = False) -> bool:
        """Returns true if the version satisfies the specifiers."""
        version = self.version(force)

        return not self.specifiers or version in self.specifiers

    def _determine_version(self) -> str | RequirementError:
        try:
            proc = subprocess.run(
                self.call,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as error:
            return self._error([f"Exception was raised: {error!r}"])

        if self.regexp is None:
            return ""

        match = self.regexp.search(proc.stdout)
        if match is None:
            return self._error(
                [
                    "Program may be broken or a version not supported by phaseflow.",
                    "",
                    f"Requirements:   {self.specifiers}",
                    f"Search string:  {self.regexp.pattern!r}",
                    "",
                    f"{'-' * 22} Command output {'-' * 22}",
                    proc.stdout,
                ]
            )

        fields = list(match.groups())
        while fields and fields[-1] is None:
            fields.pop()

        return ".".join(field.strip(".") for field in fields)

    def _error(self, details: list[str]) -> RequirementError:
        lines = [
            "Version could not be determined for:",
            f"Command  = {shlex.join(self.call)}",
            "",
            *details,
        ]

        return RequirementError("\n".join(lines))

    def _key(self) -> tuple[Any, ...]:
        pattern = self.regexp.pattern if self.regexp else None

        return (self.call, self.name, pattern, str(self.specifiers))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Requirement):
            return self._key() == other._key()

        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return (
            f"Requirement(call={self.call!r}, name={self.name!r}, "
            f"specifiers={str(self.specifiers)!r})"
        )
