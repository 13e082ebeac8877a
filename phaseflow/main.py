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

import logging
import multiprocessing
import sys

import phaseflow.common.logging
from phaseflow import phasing
from phaseflow.chunks import ChunkCatalogError
from phaseflow.common.argparse import Namespace
from phaseflow.config import build_parser
from phaseflow.manifest import FatalPreflightError, RunManifest
from phaseflow.nodegraph import NodeGraphError
from phaseflow.pedigree import read_pedigree, read_sample_list
from phaseflow.pipeline import EXIT_FATAL, EXIT_SUCCESS, Pypeline
from phaseflow.state import StateRecord
from phaseflow.store import ArtifactStore


def main(argv: list[str]) -> int:
    parser = build_parser()
    if not argv:
        parser.print_help()
        return EXIT_SUCCESS

    args = parser.parse_args(argv)
    if args.command == "run":
        return _main_run(args)

    parser.print_help()
    return EXIT_SUCCESS


def _main_run(args: Namespace) -> int:
    store = ArtifactStore(args.output_dir)
    phaseflow.common.logging.initialize(
        log_level=args.log_level,
        log_file=args.log_file,
        auto_log_file=store.log_prefix,
    )

    log = logging.getLogger(__name__)
    manifest = RunManifest.from_args(args)

    try:
        manifest.check_inputs()

        pedigree = read_pedigree(manifest.pedigree)
        log.info("Read pedigree with %i sample(s)", len(pedigree))
        if manifest.haploids is not None:
            haploids = read_sample_list(manifest.haploids)
            log.info("Read list of %i haploid sample(s)", len(haploids))
        elif "X" in manifest.chromosomes:
            log.warning("No list of haploid samples given; chrX is phased as diploid")

        log.info("Building tasks for %i chromosome(s)", len(manifest.chromosomes))
        tasks = phasing.build_tasks(manifest)
    except (FatalPreflightError, ChunkCatalogError, NodeGraphError) as error:
        log.error("%s", error)
        return EXIT_FATAL
    except OSError as error:
        log.error("Error reading inputs: %s", error)
        return EXIT_FATAL

    _check_cpu_budget(manifest)

    state = StateRecord(store.state_file, store.transitions_log)
    state.load()

    pipeline = Pypeline(
        nodes=tasks,
        temp_root=manifest.temp_root or store.temp_dir,
        max_tasks=manifest.max_tasks,
        max_retries=manifest.max_retries,
        intermediate_files=manifest.intermediate_files,
        state=state,
    )

    return pipeline.run(mode=args.pipeline_mode)


def _check_cpu_budget(manifest: RunManifest) -> None:
    ncpus = multiprocessing.cpu_count()
    nthreads = manifest.max_tasks * manifest.threads
    if nthreads > ncpus:
        log = logging.getLogger(__name__)
        log.warning(
            "Up to %i tasks with %i threads each may run at once, but only %i "
            "CPUs are available; consider lowering --max-tasks or --threads",
            manifest.max_tasks,
            manifest.threads,
            ncpus,
        )


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
