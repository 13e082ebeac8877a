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

import argparse

import phaseflow.common.logging
import phaseflow.pipeline
from phaseflow.common.argparse import ArgumentParser, SubParsersAction
from phaseflow.common.utilities import parse_ranges
from phaseflow.manifest import CHROMOSOMES, DEFAULT_QC_EXCLUDE, Executables

_DEFAULT_CONFIG_FILES = [
    "/etc/phaseflow/phaseflow.ini",
    "~/.phaseflow/phaseflow.ini",
]


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="phaseflow")
    parser.set_defaults(command=None)

    subparsers = parser.add_subparsers()
    _build_run_parser(subparsers)
    _build_dryrun_parser(subparsers)

    return parser


def _build_run_parser(subparsers: SubParsersAction[ArgumentParser]) -> None:
    parser = subparsers.add_parser(
        "run",
        help="Phase per-sample VCFs in INPUT_DIR, writing results to OUTPUT_DIR",
        default_config_files=_DEFAULT_CONFIG_FILES,
    )
    parser.set_defaults(command="run")

    _add_pipeline_arguments(parser)


def _build_dryrun_parser(subparsers: SubParsersAction[ArgumentParser]) -> None:
    parser = subparsers.add_parser(
        "dryrun",
        help="Equivalent to 'run --dry-run'; checks inputs and prints the state of "
        "every task without running anything",
        default_config_files=_DEFAULT_CONFIG_FILES,
    )
    parser.set_defaults(command="run")

    _add_pipeline_arguments(parser)
    parser.set_defaults(pipeline_mode="dry_run")


def _add_pipeline_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "input_dir",
        metavar="INPUT_DIR",
        help="Directory containing one bgzipped and indexed VCF per sample "
        "(*.vcf.gz); sample names are taken from the filenames",
    )
    parser.add_argument(
        "output_dir",
        metavar="OUTPUT_DIR",
        help="Directory in which phased BCFs and intermediate files are written",
    )
    parser.add_argument(
        "map_dir",
        metavar="MAP_DIR",
        help="Directory containing genetic maps and chunk definitions",
    )
    parser.add_argument(
        "pedigree",
        metavar="PEDIGREE",
        help="Pedigree file with the columns 'sample father mother'",
    )

    group = parser.add_argument_group("Phasing")
    group.add_argument(
        "--chromosomes",
        type=_chromosomes,
        default="1-22,X",
        metavar="LIST",
        help="Comma separated list of chromosomes (1-22 and X) to phase; ranges "
        "such as '1-22' are allowed",
    )
    group.add_argument(
        "--haploids",
        metavar="FILE",
        help="File listing haploid samples (males), one per line; used when "
        "phasing chrX",
    )
    group.add_argument(
        "--threads",
        type=int,
        default=4,
        help="Number of threads used by each invocation of an external tool",
    )
    group.add_argument(
        "--filter-maf",
        type=float,
        default=0.001,
        help="Only variants with a MAF above this value are phased as common "
        "variants",
    )
    group.add_argument(
        "--qc-exclude",
        default=DEFAULT_QC_EXCLUDE,
        metavar="EXPR",
        help="bcftools expression used to exclude sites during QC",
    )
    group.add_argument(
        "--nonpar-region",
        metavar="REGION",
        help="Non-pseudoautosomal region of chrX [PREFIXX:2781480-155701384]",
    )

    group = parser.add_argument_group("Input layout")
    group.add_argument(
        "--contig-prefix",
        default="chr",
        help="Prefix of contig names in input VCFs and chunk files",
    )
    group.add_argument(
        "--chunks-template",
        default="chunks_chr{chrom}.txt",
        help="Name of chunk files in MAP_DIR; '{chrom}' is replaced with the "
        "chromosome",
    )
    group.add_argument(
        "--map-template",
        default="chr{chrom}.b38.gmap.gz",
        help="Name of genetic maps in MAP_DIR; '{chrom}' is replaced with the "
        "chromosome",
    )

    defaults = Executables()
    group = parser.add_argument_group("Executables")
    group.add_argument(
        "--bcftools",
        default=defaults.bcftools,
        metavar="EXE",
        help="bcftools executable",
    )
    group.add_argument(
        "--phase-common",
        default=defaults.phase_common,
        metavar="EXE",
        help="SHAPEIT5 common-variant phasing executable",
    )
    group.add_argument(
        "--ligate",
        default=defaults.ligate,
        metavar="EXE",
        help="SHAPEIT5 ligation executable",
    )
    group.add_argument(
        "--phase-rare",
        default=defaults.phase_rare,
        metavar="EXE",
        help="SHAPEIT5 rare-variant phasing executable",
    )

    phaseflow.pipeline.add_argument_groups(parser)
    phaseflow.common.logging.add_argument_group(parser)


def _chromosomes(value: str) -> tuple[str, ...]:
    # 'chr21' and '21' are both accepted
    fields = []
    for field in value.split(","):
        field = field.strip()
        if field.lower().startswith("chr"):
            field = field[3:]
        fields.append(field.upper() if field.lower() == "x" else field)

    try:
        return parse_ranges(",".join(fields), CHROMOSOMES)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"invalid chromosomes: {error}") from None
