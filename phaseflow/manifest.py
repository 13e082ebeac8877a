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

import glob
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from phaseflow.nodegraph import CleanupStrategy

if TYPE_CHECKING:
    from phaseflow.common.argparse import Namespace

# Chromosomes that may be phased, in the order in which they are processed
CHROMOSOMES = tuple(str(idx) for idx in range(1, 23)) + ("X",)

# The non-pseudoautosomal region of chromosome X in GRCh38
DEFAULT_NONPAR_REGION = "{prefix}X:2781480-155701384"

# Sites excluded during QC, in addition to sites not passing filters
DEFAULT_QC_EXCLUDE = (
    'ALT="*" | F_MISSING>0.1 | INFO/AAScore<0.8 | INFO/AF=0 | INFO/AF=1 '
    "| INFO/HWE<1e-30"
)


class FatalPreflightError(RuntimeError):
    """Required input is missing or invalid; raised before any task is run."""


def _check_template(option: str, template: str) -> None:
    try:
        template.format(chrom="1")
    except (AttributeError, IndexError, KeyError, ValueError) as error:
        raise FatalPreflightError(
            f"invalid {option} {template!r}; only the field {{chrom}} may be used "
            f"({error.__class__.__name__}: {error})"
        ) from None


@dataclass(frozen=True)
class Executables:
    bcftools: str = "bcftools"
    phase_common: str = "shapeit5_phase_common"
    ligate: str = "shapeit5_ligate"
    phase_rare: str = "shapeit5_phase_rare"


@dataclass(frozen=True)
class RunManifest:
    """Settings for a run; created once at startup and shared by all components."""

    input_dir: str
    output_dir: str
    map_dir: str
    pedigree: str
    chromosomes: tuple[str, ...] = CHROMOSOMES
    haploids: str | None = None
    # Threads used by each invocation of an external tool
    threads: int = 4
    # Max number of tasks running at the same time
    max_tasks: int = 4
    max_retries: int = 1
    contig_prefix: str = "chr"
    chunks_template: str = "chunks_chr{chrom}.txt"
    map_template: str = "chr{chrom}.b38.gmap.gz"
    filter_maf: float = 0.001
    qc_exclude: str = DEFAULT_QC_EXCLUDE
    nonpar_region: str | None = None
    intermediate_files: CleanupStrategy = CleanupStrategy.DELETE
    temp_root: str | None = None
    executables: Executables = field(default_factory=Executables)

    @classmethod
    def from_args(cls, args: Namespace) -> RunManifest:
        return cls(
            input_dir=os.path.abspath(args.input_dir),
            output_dir=os.path.abspath(args.output_dir),
            map_dir=os.path.abspath(args.map_dir),
            pedigree=os.path.abspath(args.pedigree),
            chromosomes=tuple(args.chromosomes),
            haploids=os.path.abspath(args.haploids) if args.haploids else None,
            threads=args.threads,
            max_tasks=args.max_tasks,
            max_retries=args.max_retries,
            contig_prefix=args.contig_prefix,
            chunks_template=args.chunks_template,
            map_template=args.map_template,
            filter_maf=args.filter_maf,
            qc_exclude=args.qc_exclude,
            nonpar_region=args.nonpar_region,
            intermediate_files=args.intermediate_files,
            temp_root=os.path.abspath(args.temp_root) if args.temp_root else None,
            executables=Executables(
                bcftools=args.bcftools,
                phase_common=args.phase_common,
                ligate=args.ligate,
                phase_rare=args.phase_rare,
            ),
        )

    @property
    def nonpar(self) -> str:
        if self.nonpar_region is not None:
            return self.nonpar_region

        return DEFAULT_NONPAR_REGION.format(prefix=self.contig_prefix)

    def contig(self, chromosome: str) -> str:
        return f"{self.contig_prefix}{chromosome}"

    def chunks_file(self, chromosome: str) -> str:
        return os.path.join(self.map_dir, self.chunks_template.format(chrom=chromosome))

    def genetic_map(self, chromosome: str) -> str:
        return os.path.join(self.map_dir, self.map_template.format(chrom=chromosome))

    def input_vcfs(self) -> dict[str, str]:
        """Returns per-sample VCFs in the input directory, keyed by sample name."""
        vcfs: dict[str, str] = {}
        for filename in sorted(glob.glob(os.path.join(self.input_dir, "*.vcf.gz"))):
            name = os.path.basename(filename)[: -len(".vcf.gz")]
            vcfs[name] = filename

        return vcfs

    def check_inputs(self) -> None:
        """Checks that required inputs exist; raises FatalPreflightError otherwise."""
        if self.threads < 1:
            raise FatalPreflightError(
                f"--threads must be at least 1, not {self.threads}"
            )
        elif self.max_tasks < 1:
            raise FatalPreflightError(
                f"--max-tasks must be at least 1, not {self.max_tasks}"
            )
        elif self.max_retries < 0:
            raise FatalPreflightError(
                f"--max-retries must be at least 0, not {self.max_retries}"
            )
        elif not self.chromosomes:
            raise FatalPreflightError("no chromosomes selected")

        for option, template in (
            ("--chunks-template", self.chunks_template),
            ("--map-template", self.map_template),
        ):
            _check_template(option, template)

        for name, path in (
            ("input directory", self.input_dir),
            ("map directory", self.map_dir),
        ):
            if not os.path.isdir(path):
                raise FatalPreflightError(f"{name} not found: {path!r}")

        required_files = [("pedigree file", self.pedigree)]
        if self.haploids is not None:
            required_files.append(("haploid samples list", self.haploids))

        for chromosome in self.chromosomes:
            # chrX is phased as a single region
            if chromosome != "X":
                required_files.append(("chunk file", self.chunks_file(chromosome)))
            required_files.append(("genetic map", self.genetic_map(chromosome)))

        for name, path in required_files:
            if not os.path.isfile(path):
                raise FatalPreflightError(f"{name} not found: {path!r}")

        if not self.input_vcfs():
            raise FatalPreflightError(
                f"no input VCFs (*.vcf.gz) found in {self.input_dir!r}"
            )
