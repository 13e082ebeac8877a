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

import dataclasses
from typing import TYPE_CHECKING

import pytest

from phaseflow.config import build_parser
from phaseflow.manifest import (
    CHROMOSOMES,
    DEFAULT_QC_EXCLUDE,
    Executables,
    FatalPreflightError,
    RunManifest,
)
from phaseflow.nodegraph import CleanupStrategy

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import Project


def test_manifest__defaults() -> None:
    manifest = RunManifest(
        input_dir="/in",
        output_dir="/out",
        map_dir="/maps",
        pedigree="/in/samples.ped",
    )

    assert manifest.chromosomes == CHROMOSOMES
    assert manifest.chromosomes[-1] == "X"
    assert len(manifest.chromosomes) == 23
    assert manifest.threads == 4
    assert manifest.max_tasks == 4
    assert manifest.max_retries == 1
    assert manifest.haploids is None
    assert manifest.qc_exclude == DEFAULT_QC_EXCLUDE
    assert manifest.intermediate_files == CleanupStrategy.DELETE
    assert manifest.executables == Executables()


def test_manifest__paths() -> None:
    manifest = RunManifest(
        input_dir="/in",
        output_dir="/out",
        map_dir="/maps",
        pedigree="/in/samples.ped",
    )

    assert manifest.contig("21") == "chr21"
    assert manifest.chunks_file("21") == "/maps/chunks_chr21.txt"
    assert manifest.genetic_map("X") == "/maps/chrX.b38.gmap.gz"


def test_manifest__custom_templates() -> None:
    manifest = RunManifest(
        input_dir="/in",
        output_dir="/out",
        map_dir="/maps",
        pedigree="/in/samples.ped",
        contig_prefix="",
        chunks_template="{chrom}/chunks.txt",
        map_template="{chrom}.map",
    )

    assert manifest.contig("21") == "21"
    assert manifest.chunks_file("21") == "/maps/21/chunks.txt"
    assert manifest.genetic_map("21") == "/maps/21.map"


@pytest.mark.parametrize(
    ("prefix", "region", "expected"),
    [
        ("chr", None, "chrX:2781480-155701384"),
        ("", None, "X:2781480-155701384"),
        ("chr", "chrX:1-100", "chrX:1-100"),
    ],
)
def test_manifest__nonpar(prefix: str, region: str | None, expected: str) -> None:
    manifest = RunManifest(
        input_dir="/in",
        output_dir="/out",
        map_dir="/maps",
        pedigree="/in/samples.ped",
        contig_prefix=prefix,
        nonpar_region=region,
    )

    assert manifest.nonpar == expected


def test_manifest__input_vcfs(project: Project) -> None:
    (project.input_dir / "notes.txt").write_text("")
    (project.input_dir / "NA00000.vcf").write_text("")

    assert project.manifest().input_vcfs() == {
        "NA00001": str(project.input_dir / "NA00001.vcf.gz"),
        "NA00002": str(project.input_dir / "NA00002.vcf.gz"),
    }


def test_manifest__from_args(
    project: Project, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    args = build_parser().parse_args(
        [
            "run",
            "input",
            "output",
            "maps",
            "pedigree.txt",
            "--chromosomes",
            "21,X",
            "--haploids",
            "haploids.txt",
            "--threads",
            "2",
            "--max-tasks",
            "3",
            "--max-retries",
            "0",
            "--intermediate-files",
            "keep",
            "--bcftools",
            "/opt/bin/bcftools",
        ]
    )

    manifest = RunManifest.from_args(args)

    assert manifest.input_dir == str(project.input_dir)
    assert manifest.output_dir == str(project.output_dir)
    assert manifest.map_dir == str(project.map_dir)
    assert manifest.pedigree == str(project.pedigree)
    assert manifest.haploids == str(project.haploids)
    assert manifest.chromosomes == ("21", "X")
    assert manifest.threads == 2
    assert manifest.max_tasks == 3
    assert manifest.max_retries == 0
    assert manifest.temp_root is None
    assert manifest.intermediate_files == CleanupStrategy.KEEP
    assert manifest.executables.bcftools == "/opt/bin/bcftools"
    assert manifest.executables.ligate == "shapeit5_ligate"


###############################################################################
# check_inputs


def test_check_inputs(project: Project) -> None:
    project.manifest(chromosomes=("7", "21", "X")).check_inputs()


def test_check_inputs__with_haploids(project: Project) -> None:
    manifest = project.manifest(haploids=str(project.haploids))

    manifest.check_inputs()


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"threads": 0}, "--threads must be at least 1"),
        ({"max_tasks": 0}, "--max-tasks must be at least 1"),
        ({"max_retries": -1}, "--max-retries must be at least 0"),
        ({"chromosomes": ()}, "no chromosomes selected"),
    ],
)
def test_check_inputs__invalid_settings(
    project: Project, kwargs: dict[str, object], message: str
) -> None:
    with pytest.raises(FatalPreflightError, match=message):
        project.manifest(**kwargs).check_inputs()


@pytest.mark.parametrize(
    ("kwargs", "option"),
    [
        ({"chunks_template": "chunks_{chromosome}.txt"}, "--chunks-template"),
        ({"chunks_template": "chunks_{}.txt"}, "--chunks-template"),
        ({"map_template": "chr{chrom.b38.gmap.gz"}, "--map-template"),
        ({"map_template": "chr{chrom.name}.gmap.gz"}, "--map-template"),
    ],
)
def test_check_inputs__invalid_templates(
    project: Project, kwargs: dict[str, str], option: str
) -> None:
    with pytest.raises(FatalPreflightError, match=f"invalid {option}"):
        project.manifest(**kwargs).check_inputs()


def test_check_inputs__missing_input_dir(project: Project) -> None:
    for filename in project.input_dir.iterdir():
        filename.unlink()
    project.input_dir.rmdir()

    with pytest.raises(FatalPreflightError, match="input directory not found"):
        project.manifest().check_inputs()


def test_check_inputs__missing_map_dir(project: Project, tmp_path: Path) -> None:
    manifest = dataclasses.replace(project.manifest(), map_dir=str(tmp_path / "x"))

    with pytest.raises(FatalPreflightError, match="map directory not found"):
        manifest.check_inputs()


def test_check_inputs__missing_pedigree(project: Project) -> None:
    project.pedigree.unlink()

    with pytest.raises(FatalPreflightError, match="pedigree file not found"):
        project.manifest().check_inputs()


def test_check_inputs__missing_haploids(project: Project) -> None:
    project.haploids.unlink()
    manifest = project.manifest(haploids=str(project.haploids))

    with pytest.raises(FatalPreflightError, match="haploid samples list not found"):
        manifest.check_inputs()


def test_check_inputs__missing_chunk_file(project: Project) -> None:
    (project.map_dir / "chunks_chr21.txt").unlink()

    with pytest.raises(FatalPreflightError, match="chunk file not found"):
        project.manifest().check_inputs()


def test_check_inputs__chunk_file_not_required_for_chrx(project: Project) -> None:
    (project.map_dir / "chunks_chrX.txt").unlink()

    project.manifest(chromosomes=("X",)).check_inputs()


def test_check_inputs__missing_genetic_map(project: Project) -> None:
    (project.map_dir / "chrX.b38.gmap.gz").unlink()

    with pytest.raises(FatalPreflightError, match="genetic map not found"):
        project.manifest(chromosomes=("21", "X")).check_inputs()


def test_check_inputs__no_input_vcfs(project: Project) -> None:
    for filename in project.input_dir.iterdir():
        filename.unlink()

    with pytest.raises(FatalPreflightError, match="no input VCFs"):
        project.manifest().check_inputs()
