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
"""Builds the graph of tasks used to phase each chromosome.

Autosomes are phased in chunks:

    split (per sample) -> qc (per chunk) -> phase-common (per chunk)
        -> ligate -> phase-rare (per chunk) -> concat

where ligate waits for every phase-common task and concat for every phase-rare
task of the chromosome. Each phase-rare task also depends on the QC'd chunk that
it phases. chrX is phased as a single region after removing the PARs:

    split (per sample) -> qc -> chrX-nonpar -> phase-common -> ligate -> phase-rare

with the output of phase-rare being the final artifact. The graphs for different
chromosomes share no tasks, so a failure in one chromosome never affects another.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Sequence

from phaseflow.chunks import ChunkCatalog
from phaseflow.node import Node, TaskKey
from phaseflow.nodegraph import FileStatusCache, NodeGraph
from phaseflow.nodes.bcftools import ConcatNode, QCNode, RegionNode, SplitVCFNode
from phaseflow.nodes.shapeit5 import LigateNode, PhaseCommonNode, PhaseRareNode
from phaseflow.store import ArtifactStore

if TYPE_CHECKING:
    from phaseflow.chunks import Chunk
    from phaseflow.manifest import RunManifest

# Names of stages, as used in task keys
STAGE_SPLIT = "split"
STAGE_QC = "qc"
STAGE_NONPAR = "chrX-nonpar"
STAGE_PHASE_COMMON = "phase-common"
STAGE_LIGATE = "ligate"
STAGE_PHASE_RARE = "phase-rare"
STAGE_CONCAT = "concat"


def build(
    manifest: RunManifest,
    catalog: ChunkCatalog | None = None,
    fscache: FileStatusCache | None = None,
) -> NodeGraph:
    """Builds the task graph for every chromosome in the manifest. Raises
    ChunkCatalogError for invalid chunk files and CyclicGraphError (or another
    NodeGraphError) if the resulting graph is invalid."""
    return NodeGraph(
        tasks=build_tasks(manifest, catalog),
        fscache=fscache,
        intermediate_files=manifest.intermediate_files,
    )


def build_tasks(
    manifest: RunManifest,
    catalog: ChunkCatalog | None = None,
) -> list[Node]:
    """Returns the final task for each chromosome in the manifest."""
    if catalog is None:
        catalog = ChunkCatalog(
            root=manifest.map_dir,
            template=manifest.chunks_template,
            contig_prefix=manifest.contig_prefix,
        )

    log = logging.getLogger(__name__)
    store = ArtifactStore(manifest.output_dir)
    samples = manifest.input_vcfs()

    tasks: list[Node] = []
    for chromosome in manifest.chromosomes:
        if chromosome == "X":
            log.debug("Building tasks for chrX")
            tasks.append(_build_chrx(manifest, store, samples))
        else:
            chunks = catalog.load(chromosome)
            log.debug("Building tasks for chr%s (%i chunks)", chromosome, len(chunks))
            tasks.append(_build_autosome(manifest, store, samples, chromosome, chunks))

    return tasks


def _build_autosome(
    manifest: RunManifest,
    store: ArtifactStore,
    samples: dict[str, str],
    chromosome: str,
    chunks: Sequence[Chunk],
) -> Node:
    exe = manifest.executables
    splits = _build_splits(manifest, store, samples, chromosome)
    split_vcfs = _split_vcfs(store, samples, chromosome)

    qc_tasks: list[Node] = []
    phase_common_tasks: list[Node] = []
    for chunk in chunks:
        qc = QCNode(
            in_vcfs=split_vcfs,
            out_bcf=store.path("qc_bcf", chrom=chromosome, chunk=chunk.index),
            region=chunk.region,
            pedigree=manifest.pedigree,
            exclude=manifest.qc_exclude,
            key=TaskKey(chromosome, STAGE_QC, chunk.index),
            threads=manifest.threads,
            executable=exe.bcftools,
            dependencies=splits,
        )

        phase_common = PhaseCommonNode(
            in_bcf=store.path("qc_bcf", chrom=chromosome, chunk=chunk.index),
            out_bcf=store.path("phase_common_bcf", chrom=chromosome, chunk=chunk.index),
            genetic_map=manifest.genetic_map(chromosome),
            pedigree=manifest.pedigree,
            key=TaskKey(chromosome, STAGE_PHASE_COMMON, chunk.index),
            region=chunk.region,
            filter_maf=manifest.filter_maf,
            threads=manifest.threads,
            executable=exe.phase_common,
            bcftools=exe.bcftools,
            dependencies=[qc],
        )

        qc_tasks.append(qc)
        phase_common_tasks.append(phase_common)

    ligated_bcf = store.path("ligated_bcf", chrom=chromosome)
    ligate = LigateNode(
        # Chunks are ligated in index order, regardless of completion order
        in_bcfs=[
            store.path("phase_common_bcf", chrom=chromosome, chunk=chunk.index)
            for chunk in chunks
        ],
        out_bcf=ligated_bcf,
        key=TaskKey(chromosome, STAGE_LIGATE),
        threads=manifest.threads,
        executable=exe.ligate,
        bcftools=exe.bcftools,
        dependencies=phase_common_tasks,
    )

    phase_rare_tasks: list[Node] = []
    for chunk, qc in zip(chunks, qc_tasks):
        phase_rare = PhaseRareNode(
            in_bcf=store.path("qc_bcf", chrom=chromosome, chunk=chunk.index),
            scaffold_bcf=ligated_bcf,
            out_bcf=store.path("phase_rare_bcf", chrom=chromosome, chunk=chunk.index),
            key=TaskKey(chromosome, STAGE_PHASE_RARE, chunk.index),
            region=chunk.region,
            threads=manifest.threads,
            executable=exe.phase_rare,
            bcftools=exe.bcftools,
            dependencies=[ligate, qc],
        )

        phase_rare_tasks.append(phase_rare)

    final_bcf, _ = store.final(chromosome)
    concat = ConcatNode(
        in_bcfs=[
            store.path("phase_rare_bcf", chrom=chromosome, chunk=chunk.index)
            for chunk in chunks
        ],
        out_bcf=final_bcf,
        key=TaskKey(chromosome, STAGE_CONCAT),
        threads=manifest.threads,
        executable=exe.bcftools,
        dependencies=phase_rare_tasks,
    )

    _mark_intermediate_files((*splits, *qc_tasks, *phase_common_tasks, ligate))

    return concat


def _build_chrx(
    manifest: RunManifest,
    store: ArtifactStore,
    samples: dict[str, str],
) -> Node:
    chromosome = "X"
    exe = manifest.executables
    splits = _build_splits(manifest, store, samples, chromosome)

    qc_bcf = store.path("qc_whole_bcf", chrom=chromosome)
    qc = QCNode(
        in_vcfs=_split_vcfs(store, samples, chromosome),
        out_bcf=qc_bcf,
        region=manifest.contig(chromosome),
        pedigree=manifest.pedigree,
        exclude=manifest.qc_exclude,
        key=TaskKey(chromosome, STAGE_QC),
        threads=manifest.threads,
        executable=exe.bcftools,
        dependencies=splits,
    )

    nonpar_bcf = store.path("qc_nonpar_bcf", chrom=chromosome)
    nonpar = RegionNode(
        in_bcf=qc_bcf,
        out_bcf=nonpar_bcf,
        region=manifest.nonpar,
        key=TaskKey(chromosome, STAGE_NONPAR),
        threads=manifest.threads,
        executable=exe.bcftools,
        dependencies=[qc],
    )

    phase_common_bcf = store.path("phase_common_whole_bcf", chrom=chromosome)
    phase_common = PhaseCommonNode(
        in_bcf=nonpar_bcf,
        out_bcf=phase_common_bcf,
        genetic_map=manifest.genetic_map(chromosome),
        pedigree=manifest.pedigree,
        key=TaskKey(chromosome, STAGE_PHASE_COMMON),
        haploids=manifest.haploids,
        filter_maf=manifest.filter_maf,
        threads=manifest.threads,
        executable=exe.phase_common,
        bcftools=exe.bcftools,
        dependencies=[nonpar],
    )

    ligated_bcf = store.path("ligated_bcf", chrom=chromosome)
    ligate = LigateNode(
        in_bcfs=[phase_common_bcf],
        out_bcf=ligated_bcf,
        key=TaskKey(chromosome, STAGE_LIGATE),
        threads=manifest.threads,
        executable=exe.ligate,
        bcftools=exe.bcftools,
        dependencies=[phase_common],
    )

    final_bcf, _ = store.final(chromosome)
    phase_rare = PhaseRareNode(
        in_bcf=nonpar_bcf,
        scaffold_bcf=ligated_bcf,
        out_bcf=final_bcf,
        key=TaskKey(chromosome, STAGE_PHASE_RARE),
        haploids=manifest.haploids,
        threads=manifest.threads,
        executable=exe.phase_rare,
        bcftools=exe.bcftools,
        dependencies=[ligate, nonpar],
    )

    _mark_intermediate_files((*splits, qc, nonpar, phase_common, ligate))

    return phase_rare


def _build_splits(
    manifest: RunManifest,
    store: ArtifactStore,
    samples: dict[str, str],
    chromosome: str,
) -> list[Node]:
    return [
        SplitVCFNode(
            in_vcf=in_vcf,
            out_vcf=store.path("split_vcf", chrom=chromosome, sample=sample),
            contig=manifest.contig(chromosome),
            key=TaskKey(chromosome, STAGE_SPLIT, sample=sample),
            threads=manifest.threads,
            executable=manifest.executables.bcftools,
        )
        for sample, in_vcf in samples.items()
    ]


def _split_vcfs(
    store: ArtifactStore,
    samples: dict[str, str],
    chromosome: str,
) -> list[str]:
    return [store.path("split_vcf", chrom=chromosome, sample=it) for it in samples]


def _mark_intermediate_files(tasks: Iterable[Node]) -> None:
    for task in tasks:
        task.mark_intermediate_files()
