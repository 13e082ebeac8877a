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
import string

# Extension of index files written alongside every BCF/VCF
INDEX_EXT = ".csi"

# Paths relative to the output directory; fields are filled in by ArtifactStore.path
_PATHS = {
    "final_bcf": "chr{chrom}.phased.bcf",
    "split_vcf": "cache/split/chr{chrom}/{sample}.vcf.gz",
    "qc_bcf": "cache/qc/chr{chrom}/chunk{chunk:03}.bcf",
    "qc_whole_bcf": "cache/qc/chr{chrom}/whole.bcf",
    "qc_nonpar_bcf": "cache/qc/chr{chrom}/nonpar.bcf",
    "phase_common_bcf": "cache/phase_common/chr{chrom}/chunk{chunk:03}.bcf",
    "phase_common_whole_bcf": "cache/phase_common/chr{chrom}/whole.bcf",
    "ligated_bcf": "cache/ligate/chr{chrom}.ligated.bcf",
    "phase_rare_bcf": "cache/phase_rare/chr{chrom}/chunk{chunk:03}.bcf",
    # Files describing the run itself
    "state": "cache/state.yaml",
    "temp": "cache/temp",
    "transitions": "logs/transitions.jsonl",
    "log_prefix": "logs/phaseflow",
}


def _fields(template: str) -> frozenset[str]:
    return frozenset(
        name for _, name, _, _ in string.Formatter().parse(template) if name
    )


_FIELDS = {key: _fields(template) for key, template in _PATHS.items()}


class ArtifactStore:
    """Maps (stage, chromosome, chunk, sample) to paths in the output directory.

    Every artifact is a BCF/VCF with a CSI index; the index is a sidecar of the
    artifact and is created and removed together with it. Once a chromosome has
    been completed, its split, QC, common-phase and ligate artifacts may be
    removed, while 'final_bcf' and the per-chunk 'phase_rare_bcf' are kept.
    """

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def path(self, key: str, **fields: str | int) -> str:
        try:
            template = _PATHS[key]
        except KeyError:
            raise KeyError(f"unknown artifact {key!r}") from None

        missing = _FIELDS[key].difference(fields)
        if missing:
            raise KeyError(f"{key!r} requires field(s) {', '.join(sorted(missing))}")

        unexpected = set(fields).difference(_FIELDS[key])
        if unexpected:
            raise ValueError(
                f"{key!r} does not take field(s) {', '.join(sorted(unexpected))}"
            )

        return os.path.join(self.root, template.format(**fields))

    def artifact(self, key: str, **fields: str | int) -> tuple[str, str]:
        """Returns the path of an artifact and of its index."""
        path = self.path(key, **fields)

        return path, index_of(path)

    def final(self, chromosome: str) -> tuple[str, str]:
        return self.artifact("final_bcf", chrom=chromosome)

    @property
    def state_file(self) -> str:
        return self.path("state")

    @property
    def temp_dir(self) -> str:
        return self.path("temp")

    @property
    def transitions_log(self) -> str:
        return self.path("transitions")

    @property
    def log_prefix(self) -> str:
        return self.path("log_prefix")


def index_of(path: str) -> str:
    return path + INDEX_EXT
