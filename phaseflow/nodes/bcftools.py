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

import functools
from typing import Iterable

from phaseflow.common.command import (
    AtomicCmd,
    InputFile,
    OutputFile,
    ParallelCmds,
    TempInputFile,
)
from phaseflow.common.versions import Requirement
from phaseflow.node import CommandNode, FileListNode, Node, TaskKey
from phaseflow.store import index_of

_VERSION_REGEX = r"bcftools (\d+\.\d+)(?:\.(\d+))?"

# Tags added to every site during QC; HWE and AF are used by the exclusion filter
QC_FILL_TAGS = "HWE,AF,ExcHet"


@functools.lru_cache
def bcftools_requirement(executable: str = "bcftools") -> Requirement:
    """Version required for --write-index."""
    return Requirement(
        call=(executable, "--version"),
        regexp=_VERSION_REGEX,
        specifiers=">=1.17",
        name="bcftools",
    )


def index_command(
    executable: str,
    filename: str,
    threads: int = 1,
) -> AtomicCmd:
    """Creates a CSI index for a file written to the temporary directory by another
    command in the same task, e.g. by a tool that cannot write indexes itself."""
    return AtomicCmd(
        [
            executable,
            "index",
            "--csi",
            "--threads",
            threads,
            "-o",
            OutputFile(index_of(filename)),
            TempInputFile(filename),
        ],
        requirements=[bcftools_requirement(executable)],
    )


class SplitVCFNode(CommandNode):
    """Extracts a single chromosome from a per-sample VCF."""

    def __init__(
        self,
        in_vcf: str,
        out_vcf: str,
        contig: str,
        key: TaskKey,
        threads: int = 1,
        executable: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        command = AtomicCmd(
            [
                executable,
                "view",
                "--threads",
                threads,
                "--regions",
                contig,
                "-Oz",
                "-o",
                OutputFile(out_vcf),
                "--write-index=csi",
                InputFile(in_vcf),
            ],
            extra_files=[OutputFile(index_of(out_vcf))],
            requirements=[bcftools_requirement(executable)],
        )

        CommandNode.__init__(
            self,
            command=command,
            description=f"splitting {contig} from {in_vcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


class QCNode(CommandNode):
    """Merges per-sample VCFs for a region and filters the merged sites:

        bcftools merge --regions REGION ... \\
            | bcftools norm -m -any \\
            | bcftools annotate -x FORMAT \\
            | bcftools +fill-tags -- -t HWE,AF,ExcHet -S PEDIGREE \\
            | bcftools view -f PASS -e EXPR -o OUT.bcf --write-index=csi

    Multi-allelic sites are split into bi-allelic records and FORMAT fields other
    than GT are dropped, since neither is supported by the phasing tools.
    """

    def __init__(
        self,
        in_vcfs: Iterable[str],
        out_bcf: str,
        region: str,
        pedigree: str,
        exclude: str,
        key: TaskKey,
        threads: int = 1,
        executable: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        in_vcfs = tuple(in_vcfs)
        if not in_vcfs:
            raise ValueError("no input VCFs for QC")

        requirement = bcftools_requirement(executable)

        # Samples are merged into a single file; merge requires 2+ files
        method = "merge" if len(in_vcfs) > 1 else "view"
        extract = AtomicCmd(
            [executable, method, "--threads", threads, "--regions", region, "-Ou"],
            stdout=AtomicCmd.PIPE,
            requirements=[requirement],
        )

        for filename in in_vcfs:
            extract.append(InputFile(filename))
            extract.add_extra_files([InputFile(index_of(filename))])

        normalize = AtomicCmd(
            [executable, "norm", "--threads", threads, "-m", "-any", "-Ou"],
            stdin=extract,
            stdout=AtomicCmd.PIPE,
            requirements=[requirement],
        )

        annotate = AtomicCmd(
            [executable, "annotate", "-x", "FORMAT", "-Ou"],
            stdin=normalize,
            stdout=AtomicCmd.PIPE,
            requirements=[requirement],
        )

        fill_tags = AtomicCmd(
            [
                executable,
                "+fill-tags",
                "--threads",
                threads,
                "-Ou",
                "--",
                "-t",
                QC_FILL_TAGS,
                "-S",
                InputFile(pedigree),
            ],
            stdin=annotate,
            stdout=AtomicCmd.PIPE,
            requirements=[requirement],
        )

        select = AtomicCmd(
            [
                executable,
                "view",
                "--threads",
                threads,
                "-f",
                "PASS",
                "-e",
                exclude,
                "-Ob",
                "-o",
                OutputFile(out_bcf),
                "--write-index=csi",
            ],
            stdin=fill_tags,
            extra_files=[OutputFile(index_of(out_bcf))],
            requirements=[requirement],
        )

        CommandNode.__init__(
            self,
            command=ParallelCmds([extract, normalize, annotate, fill_tags, select]),
            description=f"filtering {len(in_vcfs)} sample(s) for {region}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


class RegionNode(CommandNode):
    """Extracts a region from an indexed BCF, e.g. the non-PAR region of chrX."""

    def __init__(
        self,
        in_bcf: str,
        out_bcf: str,
        region: str,
        key: TaskKey,
        threads: int = 1,
        executable: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        command = AtomicCmd(
            [
                executable,
                "view",
                "--threads",
                threads,
                "--regions",
                region,
                "-Ob",
                "-o",
                OutputFile(out_bcf),
                "--write-index=csi",
                InputFile(in_bcf),
            ],
            extra_files=[
                InputFile(index_of(in_bcf)),
                OutputFile(index_of(out_bcf)),
            ],
            requirements=[bcftools_requirement(executable)],
        )

        CommandNode.__init__(
            self,
            command=command,
            description=f"extracting {region} from {in_bcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )


class ConcatNode(FileListNode):
    """Concatenates per-chunk BCFs in the order given; chunks must be disjoint and
    sorted by position, since records are not re-sorted (--naive)."""

    def __init__(
        self,
        in_bcfs: Iterable[str],
        out_bcf: str,
        key: TaskKey,
        threads: int = 1,
        executable: str = "bcftools",
        dependencies: Iterable[Node] = (),
    ) -> None:
        in_bcfs = tuple(in_bcfs)
        command = AtomicCmd(
            [
                executable,
                "concat",
                "--naive",
                "--threads",
                threads,
                "--file-list",
                TempInputFile("concat.txt"),
                "-Ob",
                "-o",
                OutputFile(out_bcf),
                "--write-index=csi",
            ],
            extra_files=[
                OutputFile(index_of(out_bcf)),
                *(InputFile(filename) for filename in in_bcfs),
            ],
            requirements=[bcftools_requirement(executable)],
        )

        FileListNode.__init__(
            self,
            command=command,
            list_file="concat.txt",
            filenames=in_bcfs,
            description=f"concatenating {len(in_bcfs)} chunk(s) into {out_bcf}",
            key=key,
            threads=threads,
            dependencies=dependencies,
        )
