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

from pathlib import Path

import pytest

from phaseflow.chunks import (
    Chunk,
    ChunkCatalog,
    EmptyChunkSetError,
    MalformedChunkFileError,
    parse_chunks,
)


def _parse(*lines: str, chromosome: str = "21") -> tuple[Chunk, ...]:
    return parse_chunks(lines, chromosome=chromosome, filename="chunks.txt")


def _regions(chunks: tuple[Chunk, ...]) -> list[tuple[int, str]]:
    return [(chunk.index, chunk.region) for chunk in chunks]


###############################################################################
# Chunk


def test_chunk__region() -> None:
    chunk = Chunk(chromosome="21", index=1, contig="chr21", start=10, end=20)

    assert chunk.region == "chr21:10-20"
    assert str(chunk) == "chr21:10-20"


@pytest.mark.parametrize(
    ("start", "end", "expected"),
    [
        (1, 9, False),
        (1, 10, True),
        (15, 16, True),
        (20, 30, True),
        (21, 30, False),
    ],
)
def test_chunk__overlaps(start: int, end: int, expected: bool) -> None:
    chunk_1 = Chunk(chromosome="21", index=1, contig="chr21", start=10, end=20)
    chunk_2 = Chunk(chromosome="21", index=2, contig="chr21", start=start, end=end)

    assert chunk_1.overlaps(chunk_2) == expected
    assert chunk_2.overlaps(chunk_1) == expected


###############################################################################
# parse_chunks


def test_parse_chunks__single_region() -> None:
    assert _regions(_parse("chr21:1-1000\n")) == [(1, "chr21:1-1000")]


def test_parse_chunks__chunks_are_sorted_and_numbered_by_position() -> None:
    chunks = _parse(
        "chr21:2001-3000\n",
        "chr21:1-1000\n",
        "chr21:1001-2000\n",
    )

    assert _regions(chunks) == [
        (1, "chr21:1-1000"),
        (2, "chr21:1001-2000"),
        (3, "chr21:2001-3000"),
    ]


def test_parse_chunks__numeric_not_lexical_order() -> None:
    chunks = _parse("chr21:900-999\n", "chr21:10000-20000\n", "chr21:1-899\n")

    assert [chunk.start for chunk in chunks] == [1, 900, 10000]


def test_parse_chunks__identical_regions_are_merged() -> None:
    chunks = _parse("chr21:1-1000\n", "chr21:1001-2000\n", "chr21:1-1000\n")

    assert _regions(chunks) == [(1, "chr21:1-1000"), (2, "chr21:1001-2000")]


def test_parse_chunks__comments_blank_lines_and_extra_columns() -> None:
    chunks = _parse(
        "# region\tsize\n",
        "\n",
        "chr21:1-1000\t1000\n",
        "   \n",
        "chr21:1,001-2,000 1000\n",
    )

    assert _regions(chunks) == [(1, "chr21:1-1000"), (2, "chr21:1001-2000")]


def test_parse_chunks__contig_without_prefix() -> None:
    assert _regions(_parse("21:5-10\n")) == [(1, "chr21:5-10")]


def test_parse_chunks__custom_prefix() -> None:
    chunks = parse_chunks(["21:5-10\n"], chromosome="21", contig_prefix="")

    assert _regions(chunks) == [(1, "21:5-10")]


def test_parse_chunks__gaps_between_chunks_are_allowed() -> None:
    chunks = _parse("chr21:1-1000\n", "chr21:5001-6000\n")

    assert len(chunks) == 2


@pytest.mark.parametrize(
    "regions",
    [
        ("chr21:1-1000", "chr21:1000-2000"),
        ("chr21:1-1000", "chr21:500-600"),
        ("chr21:1-1000", "chr21:2-3", "chr21:50-60"),
        ("chr21:500-2000", "chr21:1-600"),
    ],
)
def test_parse_chunks__overlapping_chunks_are_rejected(
    regions: tuple[str, ...],
) -> None:
    with pytest.raises(MalformedChunkFileError, match="overlaps"):
        _parse(*regions)


@pytest.mark.parametrize(
    "value",
    [
        "chr21",
        "chr21:100",
        "chr21:-100",
        "chr21:a-100",
        "chr21:1-b",
        ":1-100",
        "chr21:0-100",
        "chr21:200-100",
    ],
)
def test_parse_chunks__malformed_regions(value: str) -> None:
    with pytest.raises(MalformedChunkFileError) as error:
        _parse("chr21:1-10\n", value + "\n")

    assert error.value.filename == "chunks.txt"
    assert error.value.linenum == 2


def test_parse_chunks__region_on_other_chromosome() -> None:
    with pytest.raises(MalformedChunkFileError, match="not located on chr21"):
        _parse("chr22:1-1000\n")


def test_parse_chunks__no_regions() -> None:
    with pytest.raises(EmptyChunkSetError) as error:
        _parse("# nothing here\n", "\n")

    assert error.value.chromosome == "21"


###############################################################################
# ChunkCatalog


def test_chunk_catalog__load(tmp_path: Path) -> None:
    (tmp_path / "chunks_chr21.txt").write_text("chr21:1001-2000\nchr21:1-1000\n")
    catalog = ChunkCatalog(tmp_path)

    assert catalog.filename("21") == str(tmp_path / "chunks_chr21.txt")
    assert _regions(catalog.load("21")) == [
        (1, "chr21:1-1000"),
        (2, "chr21:1001-2000"),
    ]


def test_chunk_catalog__custom_template(tmp_path: Path) -> None:
    (tmp_path / "21.regions").write_text("21:1-1000\n")
    catalog = ChunkCatalog(tmp_path, template="{chrom}.regions", contig_prefix="")

    assert _regions(catalog.load("21")) == [(1, "21:1-1000")]


def test_chunk_catalog__empty_file(tmp_path: Path) -> None:
    (tmp_path / "chunks_chr21.txt").write_text("")
    catalog = ChunkCatalog(tmp_path)

    with pytest.raises(EmptyChunkSetError):
        catalog.load("21")


def test_chunk_catalog__missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ChunkCatalog(tmp_path).load("21")
