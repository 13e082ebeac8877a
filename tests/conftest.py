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

import os
import stat
from pathlib import Path
from typing import Any

import pytest

from phaseflow.manifest import Executables, RunManifest
from phaseflow.nodegraph import CleanupStrategy

# Stand-in for bcftools and the SHAPEIT5 tools. Every invocation is logged as a
# 'CALL' line, and the contents of file lists (concat/ligate) as 'LIST' lines.
# Outputs given via -o/--output are written, as is an index for --write-index.
# Files named 'fail_*' and 'sleep_*' in the tool directory inject failures and
# delays for invocations whose command line contains the first line of the file.
_FAKE_TOOL = """#!/bin/sh
NAME="{name}"
LOG="{log}"
CONTROL="{control}"
CMDLINE="$NAME $*"

echo "CALL $CMDLINE" >> "$LOG"

for arg in "$@"; do
    if [ "$arg" = "--version" ]; then
        echo "bcftools 1.18 (fake)"
        exit 0
    fi
done

cat > /dev/null

for rule in "$CONTROL"/sleep_*; do
    [ -f "$rule" ] || continue
    {{ read -r pattern; read -r seconds; }} < "$rule"
    case "$CMDLINE" in
        *"$pattern"*) sleep "$seconds";;
    esac
done

for rule in "$CONTROL"/fail_*; do
    [ -f "$rule" ] || continue
    {{ read -r pattern; read -r code; read -r message; }} < "$rule"
    case "$CMDLINE" in
        *"$pattern"*)
            case "$rule" in
                *.once) rm -f "$rule";;
            esac
            echo "$message" >&2
            exit "$code";;
    esac
done

prev=""
out=""
index=""
for arg in "$@"; do
    case "$prev" in
        -o|--output)
            out="$arg"
            echo "$CMDLINE" > "$out";;
        --file-list|--input)
            case "$arg" in
                *.txt)
                    echo "LIST $NAME $(tr "\\n" " " < "$arg")" >> "$LOG";;
            esac;;
    esac

    if [ "$arg" = "--write-index=csi" ]; then
        index=1
    fi

    prev="$arg"
done

if [ -n "$index" ] && [ -n "$out" ]; then
    echo "index" > "$out.csi"
fi
"""


class FakeTools:
    NAMES = (
        "bcftools",
        "shapeit5_phase_common",
        "shapeit5_ligate",
        "shapeit5_phase_rare",
    )

    def __init__(self, root: Path) -> None:
        self.root = root
        self.log = root / "calls.log"
        self._rules = 0

        root.mkdir(parents=True)
        for name in self.NAMES:
            script = root / name
            script.write_text(
                _FAKE_TOOL.format(name=name, log=self.log, control=root)
            )
            script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP)

    @property
    def executables(self) -> Executables:
        return Executables(
            bcftools=self.path("bcftools"),
            phase_common=self.path("shapeit5_phase_common"),
            ligate=self.path("shapeit5_ligate"),
            phase_rare=self.path("shapeit5_phase_rare"),
        )

    def options(self) -> list[str]:
        return [
            "--bcftools",
            self.path("bcftools"),
            "--phase-common",
            self.path("shapeit5_phase_common"),
            "--ligate",
            self.path("shapeit5_ligate"),
            "--phase-rare",
            self.path("shapeit5_phase_rare"),
        ]

    def path(self, name: str) -> str:
        return str(self.root / name)

    def fail(
        self,
        pattern: str,
        *,
        exit_code: int = 1,
        message: str = "[E::main] failed to process input",
        once: bool = False,
    ) -> None:
        self._rules += 1
        filename = f"fail_{self._rules}" + (".once" if once else "")
        (self.root / filename).write_text(f"{pattern}\n{exit_code}\n{message}\n")

    def delay(self, pattern: str, seconds: float) -> None:
        self._rules += 1
        (self.root / f"sleep_{self._rules}").write_text(f"{pattern}\n{seconds}\n")

    def clear_rules(self) -> None:
        for filename in self.root.iterdir():
            if filename.name.startswith(("fail_", "sleep_")):
                filename.unlink()

    def calls(self, name: str | None = None) -> list[str]:
        """Returns the command lines of every invocation, excluding version checks."""
        calls: list[str] = []
        for line in self._read_log():
            if line.startswith("CALL ") and not line.endswith(" --version"):
                cmdline = line[5:]
                if name is None or cmdline.split(" ", 1)[0] == name:
                    calls.append(cmdline)

        return calls

    def lists(self, name: str) -> list[list[str]]:
        """Returns the file lists passed to each invocation of a tool."""
        lists: list[list[str]] = []
        for line in self._read_log():
            if line.startswith(f"LIST {name} "):
                lists.append(line.split()[2:])

        return lists

    def reset(self) -> None:
        if self.log.exists():
            self.log.unlink()

    def _read_log(self) -> list[str]:
        if not self.log.exists():
            return []

        return self.log.read_text().splitlines()


class Project:
    """Inputs for a small run: two samples and two chunks per autosome."""

    def __init__(self, root: Path, tools: FakeTools) -> None:
        self.root = root
        self.tools = tools
        self.input_dir = root / "input"
        self.output_dir = root / "output"
        self.map_dir = root / "maps"
        self.pedigree = root / "pedigree.txt"
        self.haploids = root / "haploids.txt"

        self.input_dir.mkdir()
        self.map_dir.mkdir()
        for sample in ("NA00001", "NA00002"):
            (self.input_dir / f"{sample}.vcf.gz").write_text(f"{sample}\n")
            (self.input_dir / f"{sample}.vcf.gz.csi").write_text(f"{sample}\n")

        for chrom in ("7", "8", "21", "X"):
            self.set_chunks(chrom, ["1-1000000", "1000001-2000000"])
            (self.map_dir / f"chr{chrom}.b38.gmap.gz").write_text("pos\tchr\tcM\n")

        self.pedigree.write_text("NA00001 NA NA\nNA00002 0 0\n")
        self.haploids.write_text("NA00002\n")

    def set_chunks(self, chrom: str, regions: list[str]) -> None:
        lines = [f"chr{chrom}:{region}\n" for region in regions]
        (self.map_dir / f"chunks_chr{chrom}.txt").write_text("".join(lines))

    def manifest(self, **kwargs: Any) -> RunManifest:
        kwargs.setdefault("chromosomes", ("21",))
        kwargs.setdefault("threads", 1)
        kwargs.setdefault("max_tasks", 2)
        kwargs.setdefault("intermediate_files", CleanupStrategy.DELETE)

        return RunManifest(
            input_dir=str(self.input_dir),
            output_dir=str(self.output_dir),
            map_dir=str(self.map_dir),
            pedigree=str(self.pedigree),
            executables=self.tools.executables,
            **kwargs,
        )

    def argv(self, *args: str, chromosomes: str = "21") -> list[str]:
        return [
            "run",
            str(self.input_dir),
            str(self.output_dir),
            str(self.map_dir),
            str(self.pedigree),
            "--chromosomes",
            chromosomes,
            "--threads",
            "1",
            "--max-tasks",
            "2",
            *self.tools.options(),
            *args,
        ]

    def output(self, *parts: str) -> str:
        return os.path.join(self.output_dir, *parts)


@pytest.fixture
def tools(tmp_path: Path) -> FakeTools:
    return FakeTools(tmp_path / "tools")


@pytest.fixture
def project(tmp_path: Path, tools: FakeTools) -> Project:
    return Project(tmp_path, tools)
