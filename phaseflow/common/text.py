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

from typing import Any, Iterable, Iterator


def format_timespan(seconds: float) -> str:
    """Formats a runtime as '12.3s', '12:34s' or '1:02:03s'."""
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes, seconds = divmod(round(seconds), 60)
    if minutes < 60:
        return f"{minutes}:{seconds:02}s"

    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02}:{seconds:02}s"


def padded_table(
    table: Iterable[str | Iterable[Any]],
    min_padding: int = 4,
) -> Iterator[str]:
    """Left-aligns the columns of a table of rows, with at least 'min_padding'
    spaces between columns. Strings in place of rows (e.g. comments) are passed
    through unchanged and do not affect the width of columns."""
    rows: list[str | list[str]] = []
    widths: dict[int, int] = {}
    for row in table:
        if not isinstance(row, str):
            row = [str(value) for value in row]
            for column, value in enumerate(row):
                widths[column] = max(widths.get(column, 0), len(value))

        rows.append(row)

    for row in rows:
        if isinstance(row, str):
            yield row
        else:
            fields = (
                value.ljust(widths[idx] + min_padding) for idx, value in enumerate(row)
            )
            yield "".join(fields).rstrip()
