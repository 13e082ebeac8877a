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
"""Logging setup: coloured console output and a file log for errors.

Messages may carry a progress indicator via `extra={"status": Status(...)}`; this
is printed in square brackets before the message, and coloured on terminals that
support it. Messages spanning multiple lines are formatted line by line, so that
every line carries the timestamp and level.
"""

from __future__ import annotations

import copy
import logging
import os
import sys
import time
from typing import TYPE_CHECKING, Iterator

import coloredlogs
from humanfriendly.terminal import ansi_wrap, terminal_supports_colors

if TYPE_CHECKING:
    from io import TextIOWrapper

    from phaseflow.common.argparse import ArgumentParser

_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(status)s%(message)s"
_FILE_FORMAT = "%(asctime)s %(name)s %(levelname)s %(status)s%(message)s"

LOG_LEVELS = ("debug", "info", "warning", "error")

# Handlers added to the root logger by `initialize`
_HANDLERS: list[logging.Handler] = []


class Status:
    """Progress indicator included in log messages via `extra={"status": ...}`."""

    def __init__(self, color: str | None = None) -> None:
        self.color = color

    def __str__(self) -> str:
        raise NotImplementedError


class StatusFormatter(coloredlogs.ColoredFormatter):
    def __init__(self, fmt: str, *, colors: bool = False) -> None:
        if colors:
            super().__init__(fmt=fmt)
        else:
            # Empty styles disable the ANSI codes added by coloredlogs
            super().__init__(fmt=fmt, level_styles={}, field_styles={})

        self._colors = colors

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record = copy.copy(record)
        record.status = self._status(getattr(record, "status", None))

        lines = record.getMessage().split("\n")
        record.args = ()

        # Tracebacks are only included after the last line of the message
        extra = (record.exc_info, record.exc_text, record.stack_info)
        record.exc_info = record.exc_text = record.stack_info = None

        formatted: list[str] = []
        for idx, line in enumerate(lines, start=1):
            if idx == len(lines):
                record.exc_info, record.exc_text, record.stack_info = extra

            record.msg = line
            formatted.append(super().format(record))

        return "\n".join(formatted)

    def _status(self, status: object) -> str:
        if status is None:
            return ""
        elif self._colors and isinstance(status, Status) and status.color:
            return f"[{ansi_wrap(str(status), color=status.color)}] "

        return f"[{status}] "


class ErrorLogFile(logging.FileHandler):
    """Log file that is only created once a message is logged; the name is made
    unique by appending a counter, so that logs of earlier runs are kept."""

    def __init__(self, prefix: str, level: int = logging.ERROR) -> None:
        self._prefix = "{}.{}".format(
            os.path.abspath(prefix), time.strftime("%Y%m%d_%H%M%S")
        )

        super().__init__(f"{self._prefix}_01.log", delay=True)
        self.setLevel(level)

    def _open(self) -> TextIOWrapper:
        os.makedirs(os.path.dirname(self._prefix), exist_ok=True)

        counter = 1
        while True:
            filename = f"{self._prefix}_{counter:02}.log"
            try:
                handle = open(filename, "x")  # noqa: SIM115
            except FileExistsError:
                counter += 1
                continue

            self.baseFilename = filename
            logging.getLogger(__name__).info("Saving error log to %r", filename)

            return handle


def initialize(
    log_level: str = "info",
    log_file: str | None = None,
    auto_log_file: str | None = None,
) -> None:
    """Configures the root logger. Messages at 'log_level' and above are printed to
    STDERR and written to 'log_file'; if no 'log_file' is given, then errors are
    written to a log file named after 'auto_log_file', if set."""
    level = coloredlogs.level_to_number(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    # Handlers from earlier calls, e.g. when called repeatedly by tests
    while _HANDLERS:
        handler = _HANDLERS.pop()
        root.removeHandler(handler)
        handler.close()

    colors = terminal_supports_colors(sys.stderr)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    handlers[0].setFormatter(StatusFormatter(_CONSOLE_FORMAT, colors=colors))

    if log_file:
        handlers.append(logging.FileHandler(log_file))
        handlers[-1].setLevel(level)
        logging.getLogger(__name__).info("Writing %s log to %r", log_level, log_file)
    elif auto_log_file:
        handlers.append(ErrorLogFile(auto_log_file))

    for handler in handlers:
        if isinstance(handler, logging.FileHandler):
            handler.setFormatter(StatusFormatter(_FILE_FORMAT))

        root.addHandler(handler)
        _HANDLERS.append(handler)


def get_logfiles() -> Iterator[str]:
    """Yields the log files that have been written to."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.FileHandler) and handler.stream:
            yield handler.baseFilename


def add_argument_group(parser: ArgumentParser) -> None:
    group = parser.add_argument_group("Logging")
    group.add_argument(
        "--log-file",
        help="Write log messages to this file. Otherwise errors, and only errors, "
        "are written to a log file in OUTPUT_DIR/logs",
    )
    group.add_argument(
        "--log-level",
        default="info",
        type=str.lower,
        choices=LOG_LEVELS,
        help="Minimum level of messages printed to the terminal and to --log-file",
    )
