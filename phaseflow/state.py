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

import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Iterable, Tuple

from phaseflow.common import fileutils
from phaseflow.common.yaml import YAMLError, safe_dump, safe_load
from phaseflow.node import Node
from phaseflow.nodegraph import StatusEnum

TransitionType = Tuple[Node, "StatusEnum | None", StatusEnum]


class StateRecord:
    """Durable record of the state of every task in a run.

    The record is stored as YAML, with one entry per task keyed by the task key
    (e.g. 'chr21:phase-rare:2'), and is rewritten atomically after every change. In
    addition, every change is appended to a JSON-lines log. Output files remain the
    authoritative signal that a task is done; the record exists for inspection.
    """

    def __init__(self, filename: str, log_filename: str | None = None) -> None:
        self.filename = filename
        self.log_filename = log_filename
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._log = logging.getLogger(__name__)

    @property
    def records(self) -> dict[str, dict[str, Any]]:
        return {key: dict(value) for key, value in self._records.items()}

    def load(self) -> None:
        """Loads the record written by a previous run, if any."""
        try:
            with open(self.filename) as handle:
                data = safe_load(handle)
        except FileNotFoundError:
            return
        except (OSError, YAMLError) as error:
            self._log.warning(
                "Ignoring unreadable state file %r: %s", self.filename, error
            )
            return

        if not isinstance(data, dict):
            self._log.warning("Ignoring malformed state file %r", self.filename)
            return

        with self._lock:
            self._records = {
                str(key): dict(value)
                for key, value in data.items()
                if isinstance(value, dict)
            }

    def update(
        self,
        transitions: Iterable[TransitionType],
        *,
        cause: str,
        exit_code: int | None = None,
        retries: dict[Node, int] | None = None,
        cascade: bool = True,
    ) -> None:
        """Records a set of transitions and writes the updated record to disk.

        If 'cascade' is set, the first transition is the one that caused the rest
        (e.g. a failure causing downstream tasks to be skipped); 'cause' and
        'exit_code' then apply to the first transition, and the remaining
        transitions are attributed to the first task.
        """
        now = _timestamp()
        lines: list[str] = []
        primary: str | None = None

        with self._lock:
            for task, old_state, new_state in transitions:
                if task.key is None:
                    continue

                record = self._records.setdefault(str(task.key), {})
                record["chromosome"] = task.key.chromosome
                record["stage"] = task.key.stage
                record["chunk"] = task.key.chunk
                record["sample"] = task.key.sample
                record["state"] = str(new_state)
                record.setdefault("started", None)
                record.setdefault("finished", None)
                record.setdefault("exit_code", None)

                if new_state == StatusEnum.RUNNING:
                    record["started"] = now
                    record["finished"] = None
                    record["exit_code"] = None
                elif new_state.is_terminal:
                    record["finished"] = now

                if primary is None and exit_code is not None:
                    record["exit_code"] = exit_code

                if retries is not None and task in retries:
                    record["retries"] = retries[task]
                else:
                    record.setdefault("retries", 0)

                entry = {
                    "time": now,
                    "task": str(task.key),
                    "old": None if old_state is None else str(old_state),
                    "new": str(new_state),
                    "cause": cause if primary is None else primary,
                }
                lines.append(json.dumps(entry))

                if cascade and primary is None:
                    primary = f"{task.key} {new_state}"

            if lines:
                fileutils.write_atomically(self.filename, safe_dump(self._records))

                if self.log_filename is not None:
                    fileutils.make_dirs(os.path.dirname(self.log_filename) or ".")
                    with open(self.log_filename, "a") as handle:
                        for line in lines:
                            print(line, file=handle)


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")
