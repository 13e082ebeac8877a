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
"""Pedigree and haploid-sample lists passed to the phasing tools.

The pedigree is not used by phaseflow itself, beyond checking that it is
structurally sound: a malformed pedigree would otherwise only be reported hours
into a run, once the first phasing task is started.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, Optional, Tuple

from phaseflow.manifest import FatalPreflightError

if TYPE_CHECKING:
    from phaseflow.common.fileutils import PathTypes

# Values used to indicate that a parent is unknown
MISSING_PARENT = frozenset(("NA", "0"))

Parents = Tuple[Optional[str], Optional[str]]
Pedigree = Dict[str, Parents]


class PedigreeError(FatalPreflightError):
    pass


def read_pedigree(filename: PathTypes) -> Pedigree:
    try:
        with open(filename) as handle:
            return parse_pedigree(handle, filename=filename)
    except OSError as error:
        raise PedigreeError(f"could not read pedigree {filename!r}: {error}") from error


def parse_pedigree(lines: Iterable[str], *, filename: PathTypes = "-") -> Pedigree:
    """Parses a whitespace separated 'sample father mother' table, as used by
    SHAPEIT5. Returns a dict of sample -> (father, mother), with unknown parents
    represented as None."""
    pedigree: Pedigree = {}
    for linenum, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        fields = line.split()
        if len(fields) < 3:
            raise PedigreeError(
                f"{filename}:{linenum}: expected 'sample father mother', "
                f"found {line!r}"
            )

        sample, father, mother = fields[:3]
        if sample in MISSING_PARENT:
            raise PedigreeError(f"{filename}:{linenum}: invalid sample id {sample!r}")
        elif sample in pedigree:
            raise PedigreeError(f"{filename}:{linenum}: duplicate sample {sample!r}")

        pedigree[sample] = (_parent(father), _parent(mother))

    validate_pedigree(pedigree, filename=filename)

    return pedigree


def validate_pedigree(pedigree: Pedigree, *, filename: PathTypes = "-") -> None:
    for sample, parents in pedigree.items():
        for parent in parents:
            if parent is None:
                continue
            elif parent == sample:
                raise PedigreeError(
                    f"{filename}: sample {sample!r} is listed as its own parent"
                )
            elif parent not in pedigree:
                raise PedigreeError(
                    f"{filename}: parent {parent!r} of sample {sample!r} is not "
                    "listed in the pedigree"
                )

    cycle = _find_cycle(pedigree)
    if cycle is not None:
        raise PedigreeError(
            "{}: samples are their own ancestors: {}".format(
                filename, " -> ".join(cycle)
            )
        )


def read_sample_list(filename: PathTypes) -> tuple[str, ...]:
    """Reads a list of sample names, one per line, e.g. haploid males for chrX."""
    samples: list[str] = []
    try:
        with open(filename) as handle:
            for line in handle:
                line = line.strip()
                if line and not line.startswith("#"):
                    samples.append(line.split()[0])
    except OSError as error:
        raise FatalPreflightError(
            f"could not read sample list {filename!r}: {error}"
        ) from error

    if not samples:
        raise FatalPreflightError(f"sample list {filename!r} is empty")

    return tuple(samples)


def _parent(value: str) -> str | None:
    return None if value in MISSING_PARENT else value


def _find_cycle(pedigree: Pedigree) -> list[str] | None:
    # 0 = unvisited, 1 = on the current path, 2 = done
    visited: dict[str, int] = dict.fromkeys(pedigree, 0)

    for root in sorted(pedigree):
        if visited[root]:
            continue

        path: list[str] = [root]
        stack = [iter(_known_parents(pedigree, root))]
        visited[root] = 1
        while stack:
            for parent in stack[-1]:
                if visited[parent] == 1:
                    return [*path[path.index(parent) :], parent]
                elif not visited[parent]:
                    visited[parent] = 1
                    path.append(parent)
                    stack.append(iter(_known_parents(pedigree, parent)))
                    break
            else:
                visited[path.pop()] = 2
                stack.pop()

    return None


def _known_parents(pedigree: Pedigree, sample: str) -> list[str]:
    return [parent for parent in pedigree[sample] if parent is not None]
