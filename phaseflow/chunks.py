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
"""Per-chromosome chunk definitions.

Chunks are read from one file per chromosome, with one region per line written as
'CONTIG:START-END' (1-based, inclusive) in the first column. Chunks are validated,
de-duplicated, sorted by position, and numbered from 1; these numbers are used to
name intermediate files and determine the order in which chunks are ligated and
concatenated.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from phaseflow.common.fileutils import PathTypes


class ChunkCatalogError(RuntimeError):
    pass


class MalformedChunkFileError(ChunkCatalogError):
    def __init__(self, filename: PathTypes, linenum: int | None, message: str) -> None:
        self.filename = os.fspath(filename)
        self.linenum = linenum

        location = self.filename
        if linenum is not None:
            location = f"{location}:{linenum}"

        super().__init__(f"malformed chunk file {location}: {message}")


class EmptyChunkSetError(ChunkCatalogError):
    def __init__(self, filename: PathTypes, chromosome: str) -> None:
        self.filename = os.fspath(filename)
        self.chromosome = chromosome

        super().__init__(f"no chunks for chromosome {chromosome} in {self.filename}")


@dataclass(frozen=True)
class Chunk:
    chromosome: str
    # 1-based position of the chunk within the chromosome
    index: int
    contig: str
    start: int
    end: int

    @property
    def region(self) -> str:
        return f"{self.contig}:{self.start}-{self.end}"

    def overlaps(self, other: Chunk) -> bool:
        return (
            self.contig == other.contig
            and self.start <= other.end
            and other.start <= self.end
        )

    def __str__(self) -> str:
        return self.region


class ChunkCatalog:
    """Loads chunks for a chromosome from the file named by 'template' in 'root',
    e.g. 'chunks_chr{chrom}.txt'."""

    def __init__(
        self,
        root: PathTypes,
        template: str = "chunks_chr{chrom}.txt",
        contig_prefix: str = "chr",
    ) -> None:
        self.root = os.fspath(root)
        self.template = template
        self.contig_prefix = contig_prefix

    def filename(self, chromosome: str) -> str:
        return os.path.join(self.root, self.template.format(chrom=chromosome))

    def load(self, chromosome: str) -> tuple[Chunk, ...]:
        filename = self.filename(chromosome)
        with open(filename) as handle:
            return parse_chunks(
                handle,
                chromosome=chromosome,
                filename=filename,
                contig_prefix=self.contig_prefix,
            )


def parse_chunks(
    lines: Iterable[str],
    *,
    chromosome: str,
    filename: PathTypes = "<chunks>",
    contig_prefix: str = "chr",
) -> tuple[Chunk, ...]:
    contig = f"{contig_prefix}{chromosome}"
    # Regions may be written with or without the prefix used for contig names
    valid_contigs = {contig, chromosome}

    regions: dict[tuple[int, int], int] = {}
    for linenum, line in enumerate(lines, start=1):
        fields = line.split()
        if not fields or fields[0].startswith("#"):
            continue

        name, start, end = _parse_region(filename, linenum, fields[0])
        if name not in valid_contigs:
            raise MalformedChunkFileError(
                filename,
                linenum,
                f"region {fields[0]!r} is not located on {contig}",
            )

        regions.setdefault((start, end), linenum)

    if not regions:
        raise EmptyChunkSetError(filename, chromosome)

    chunks: list[Chunk] = []
    # Chunk with the greatest end position seen so far
    furthest: Chunk | None = None
    for index, (start, end) in enumerate(sorted(regions), start=1):
        chunk = Chunk(
            chromosome=chromosome,
            index=index,
            contig=contig,
            start=start,
            end=end,
        )

        if furthest is not None and furthest.overlaps(chunk):
            raise MalformedChunkFileError(
                filename,
                regions[(start, end)],
                f"region {chunk} overlaps region {furthest}",
            )
        elif furthest is None or chunk.end > furthest.end:
            furthest = chunk

        chunks.append(chunk)

    return tuple(chunks)


def _parse_region(
    filename: PathTypes, linenum: int, value: str
) -> tuple[str, int, int]:
    region = value.replace(",", "")
    name, sep, span = region.rpartition(":")
    start, dash, end = span.partition("-")
    if not (sep and dash and name):
        raise MalformedChunkFileError(
            filename, linenum, f"expected region 'CONTIG:START-END', found {value!r}"
        )

    try:
        start_pos = int(start)
        end_pos = int(end)
    except ValueError:
        raise MalformedChunkFileError(
            filename, linenum, f"non-numeric coordinates in region {value!r}"
        ) from None

    if start_pos < 1:
        raise MalformedChunkFileError(
            filename, linenum, f"start position must be at least 1 in {value!r}"
        )
    elif end_pos < start_pos:
        raise MalformedChunkFileError(
            filename, linenum, f"end position before start position in {value!r}"
        )

    return name, start_pos, end_pos
