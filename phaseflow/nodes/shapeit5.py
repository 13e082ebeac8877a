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
"""Nodes for the SHAPEIT5 phasing tools.

SHAPEIT5 writes unindexed BCFs, so every node runs the tool followed by
`bcftools index`, in the same temporary directory, so that a BCF is never
committed without its index.
"""

from __future__ import annotations

from typing import Iterable

from phaseflow.common.command import (
    AtomicCmd,
    InputFile,
    OutputFile,
    SequentialCmds,
    TempInputFile,
)
from phaseflow.node import CommandNode, FileListNode, Node, TaskKey
from phaseflow.nodes.bcftools import index_command
from phaseflow.store import index_of


class PhaseCommonNode(CommandNode):
    def __init__(
        self,
        in_bcf: str,
        out_bcf: str,
        genetic_map: str,
        pedigree: str,
        key: TaskKey,
        region: str | None = None,
        haploids: str | None = None,
        filter_maf: float = 0.001,
        threads: int = 1,
        executable: str = "shapeit5_phase_common",
        bcftools: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        command = AtomicCmd(
            [
                executable,
                "--input",
                InputFile(in_bcf),
                "--map",
                InputFile(genetic_map),
                "--output",
                OutputFile(out_bcf),
                "--thread",
                threads,
                "--filter-maf",
                filter_maf,
                "--pedigree",
                InputFile(pedigree),
            ],
            extra_files=[InputFile(index_of(in_bcf))],
        )

        _append_region_and_haploids(command, region, haploids)

        CommandNode.__init__(
            self,
            command=SequentialCmds(
                [command, index_command(bcftools, out_bcf, threads)]
            ),
            description=f"phasing common variants in {region or in_bcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


class LigateNode(FileListNode):
    """Ligates phased chunks into a single chromosome-wide scaffold; the chunks are
    ligated in the order given and must be sorted by position."""

    def __init__(
        self,
        in_bcfs: Iterable[str],
        out_bcf: str,
        key: TaskKey,
        threads: int = 1,
        executable: str = "shapeit5_ligate",
        bcftools: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        in_bcfs = tuple(in_bcfs)
        command = AtomicCmd(
            [
                executable,
                "--input",
                TempInputFile("ligate.txt"),
                "--output",
                OutputFile(out_bcf),
                "--thread",
                threads,
            ],
            extra_files=[
                extra_file
                for filename in in_bcfs
                for extra_file in (InputFile(filename), InputFile(index_of(filename)))
            ],
        )

        FileListNode.__init__(
            self,
            command=SequentialCmds(
                [command, index_command(bcftools, out_bcf, threads)]
            ),
            list_file="ligate.txt",
            filenames=in_bcfs,
            description=f"ligating {len(in_bcfs)} chunk(s) into {out_bcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


class PhaseRareNode(CommandNode):
    def __init__(
        self,
        in_bcf: str,
        scaffold_bcf: str,
        out_bcf: str,
        key: TaskKey,
        region: str | None = None,
        haploids: str | None = None,
        threads: int = 1,
        executable: str = "shapeit5_phase_rare",
        bcftools: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        command = AtomicCmd(
            [
                executable,
                "--input",
                InputFile(in_bcf),
                "--input-scaffold",
                InputFile(scaffold_bcf),
                "--output",
                OutputFile(out_bcf),
                "--thread",
                threads,
            ],
            extra_files=[
                InputFile(index_of(in_bcf)),
                InputFile(index_of(scaffold_bcf)),
            ],
        )

        _append_region_and_haploids(command, region, haploids)

        CommandNode.__init__(
            self,
            command=SequentialCmds(
                [command, index_command(bcftools, out_bcf, threads)]
            ),
            description=f"phasing rare variants in {region or in_bcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


def _append_region_and_haploids(
    command: AtomicCmd,
    region: str | None,
    haploids: str | None,
) -> None:
    if region is not None:
        command.append("--region", region)
    if haploids is not None:
        command.append("--haploid", InputFile(haploids))
