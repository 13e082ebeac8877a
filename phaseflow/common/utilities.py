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

import re
from typing import Any, FrozenSet, Iterable, Tuple, TypeVar

T = TypeVar("T")

_NATURAL_KEY = re.compile(r"(\d+)")


def safe_coerce_to_tuple(value: Any) -> Tuple[Any, ...]:
    """Convert value to a tuple, unless it is a string or a non-sequence, in which case
    it is return as a single-element tuple."""
    if isinstance(value, str):
        return (value,)

    try:
        return tuple(value)
    except TypeError:
        return (value,)


def safe_coerce_to_frozenset(value: Any) -> FrozenSet[Any]:
    """Convert value to a frozenset, unless it is a string or a non-sequence, in which
    case it is return as a single-element frozenset."""
    if isinstance(value, str):
        return frozenset((value,))

    try:
        return frozenset(value)
    except TypeError:
        return frozenset((value,))


def natural_sort_key(value: str) -> tuple[str | int, ...]:
    """Key for sorting strings with embedded numbers numerically, similar to
    `ls -v`; 'chunk2' sorts before 'chunk10'."""
    return tuple(
        int(field) if field.isdigit() else field
        for field in _NATURAL_KEY.split(value)
    )


def parse_ranges(value: str, universe: Iterable[str]) -> tuple[str, ...]:
    """Parses a comma separated list of values and numerical ranges ('1-22,X') into a
    tuple of values ordered as in 'universe'. Unknown values raise a ValueError."""
    universe = tuple(universe)
    selection: set[str] = set()
    for field in value.split(","):
        field = field.strip()
        if not field:
            continue

        start, sep, end = field.partition("-")
        if sep:
            if not (start.isdigit() and end.isdigit()):
                raise ValueError(f"invalid range {field!r}")

            values = [str(idx) for idx in range(int(start), int(end) + 1)]
            if not values:
                raise ValueError(f"empty range {field!r}")
        else:
            values = [field]

        for it in values:
            if it not in universe:
                raise ValueError(f"unknown value {it!r}")

            selection.add(it)

    return tuple(it for it in universe if it in selection)
