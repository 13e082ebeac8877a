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
"""Command-line parsing with support for config files (via configargparse).

Every long option may also be set in a config file, using either the option name
(`max-tasks = 8`) or the option name with underscores (`max_tasks = 8`).
"""

from __future__ import annotations

import argparse
from typing import Any

import configargparse

import phaseflow

Namespace = configargparse.Namespace
ArgumentGroup = argparse._ArgumentGroup  # noqa: SLF001
SubParsersAction = argparse._SubParsersAction  # noqa: SLF001


class HelpFormatter(configargparse.ArgumentDefaultsHelpFormatter):
    """Appends non-trivial defaults to help texts as ' [default]'."""

    def __init__(self, prog: str, **kwargs: Any) -> None:
        kwargs.setdefault("max_help_position", 24)
        kwargs.setdefault("width", 79)

        super().__init__(prog, **kwargs)

    def _get_help_string(self, action: argparse.Action) -> str | None:
        text = action.help
        default = action.default
        if text is None or isinstance(default, bool) or default in (None, [], ()):
            return text
        elif default is argparse.SUPPRESS or action.option_strings == []:
            return text

        return f"{text} [%(default)s]"


class ArgumentParser(configargparse.ArgumentParser):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("formatter_class", HelpFormatter)
        # Abbreviated options would not override values read from config files
        kwargs.setdefault("allow_abbrev", False)

        super().__init__(*args, **kwargs)

        self.add_argument(
            "-v",
            "--version",
            action="version",
            version=f"%(prog)s v{phaseflow.__version__}",
        )

    def add_subparsers(self, **kwargs: Any) -> SubParsersAction[ArgumentParser]:
        kwargs.setdefault("parser_class", ArgumentParser)

        return super().add_subparsers(**kwargs)

    def get_possible_config_keys(self, action: argparse.Action) -> list[str]:
        keys = super().get_possible_config_keys(action)
        aliases = (key.lstrip("-").replace("-", "_") for key in keys)

        return list(dict.fromkeys([*keys, *aliases]))

    def convert_item_to_command_line_arg(
        self, action: argparse.Action | None, key: str, value: Any
    ) -> list[str]:
        # Empty values in config files leave the default in place
        if action is not None and value in ("", "="):
            return []

        return super().convert_item_to_command_line_arg(action, key, value)
