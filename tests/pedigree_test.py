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

from phaseflow.manifest import FatalPreflightError
from phaseflow.pedigree import (
    PedigreeError,
    parse_pedigree,
    read_pedigree,
    read_sample_list,
)

###############################################################################
# parse_pedigree


def test_parse_pedigree__trio() -> None:
    pedigree = parse_pedigree(
        [
            "child father mother\n",
            "father NA NA\n",
            "mother 0 0\n",
        ]
    )

    assert pedigree == {
        "child": ("father", "mother"),
        "father": (None, None),
        "mother": (None, None),
    }


def test_parse_pedigree__comments_blank_lines_and_extra_columns() -> None:
    pedigree = parse_pedigree(
        [
            "# sample father mother\n",
            "\n",
            "child NA mother 2 extra\n",
            "mother NA NA\n",
        ]
    )

    assert pedigree == {"child": (None, "mother"), "mother": (None, None)}


def test_parse_pedigree__empty() -> None:
    assert parse_pedigree([]) == {}


def test_parse_pedigree__too_few_columns() -> None:
    with pytest.raises(PedigreeError, match=r"ped.txt:2: expected"):
        parse_pedigree(["a NA NA\n", "b NA\n"], filename="ped.txt")


@pytest.mark.parametrize("sample", ["NA", "0"])
def test_parse_pedigree__missing_value_as_sample(sample: str) -> None:
    with pytest.raises(PedigreeError, match="invalid sample id"):
        parse_pedigree([f"{sample} NA NA\n"])


def test_parse_pedigree__duplicate_sample() -> None:
    with pytest.raises(PedigreeError, match="duplicate sample 'a'"):
        parse_pedigree(["a NA NA\n", "b NA NA\n", "a NA NA\n"])


def test_parse_pedigree__own_parent() -> None:
    with pytest.raises(PedigreeError, match="its own parent"):
        parse_pedigree(["a a NA\n"])


def test_parse_pedigree__unknown_parent() -> None:
    with pytest.raises(PedigreeError, match="'b' of sample 'a' is not listed"):
        parse_pedigree(["a b NA\n"])


def test_parse_pedigree__two_sample_cycle() -> None:
    with pytest.raises(PedigreeError, match="a -> b -> a"):
        parse_pedigree(["a b NA\n", "b NA a\n"])


def test_parse_pedigree__long_cycle() -> None:
    lines = [
        "a NA b\n",
        "b c NA\n",
        "c NA d\n",
        "d a NA\n",
        "e a b\n",
    ]

    with pytest.raises(PedigreeError, match="a -> b -> c -> d -> a"):
        parse_pedigree(lines)


def test_parse_pedigree__shared_ancestors_are_not_cycles() -> None:
    lines = [
        "grandfather NA NA\n",
        "grandmother NA NA\n",
        "father grandfather grandmother\n",
        "uncle grandfather grandmother\n",
        "mother NA NA\n",
        "child father mother\n",
        "cousin uncle NA\n",
    ]

    assert len(parse_pedigree(lines)) == 7


def test_pedigree_error_is_fatal_preflight_error() -> None:
    assert issubclass(PedigreeError, FatalPreflightError)


###############################################################################
# read_pedigree


def test_read_pedigree(tmp_path: Path) -> None:
    filename = tmp_path / "samples.ped"
    filename.write_text("a NA NA\nb a NA\n")

    assert read_pedigree(filename) == {"a": (None, None), "b": ("a", None)}


def test_read_pedigree__missing_file(tmp_path: Path) -> None:
    with pytest.raises(PedigreeError, match="could not read pedigree"):
        read_pedigree(tmp_path / "missing.ped")


def test_read_pedigree__errors_include_filename(tmp_path: Path) -> None:
    filename = tmp_path / "samples.ped"
    filename.write_text("a NA NA\na NA NA\n")

    with pytest.raises(PedigreeError, match=f"{filename}:2: duplicate"):
        read_pedigree(filename)


###############################################################################
# read_sample_list


def test_read_sample_list(tmp_path: Path) -> None:
    filename = tmp_path / "haploids.txt"
    filename.write_text("# males\nNA00001\n\n  NA00002 extra\n")

    assert read_sample_list(filename) == ("NA00001", "NA00002")


def test_read_sample_list__empty(tmp_path: Path) -> None:
    filename = tmp_path / "haploids.txt"
    filename.write_text("# nothing\n\n")

    with pytest.raises(FatalPreflightError, match="is empty"):
        read_sample_list(filename)


def test_read_sample_list__missing_file(tmp_path: Path) -> None:
    with pytest.raises(FatalPreflightError, match="could not read sample list"):
        read_sample_list(tmp_path / "haploids.txt")
