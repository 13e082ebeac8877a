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

import json
import os
from typing import TYPE_CHECKING, Any

from phaseflow import phasing
from phaseflow.nodegraph import CleanupStrategy
from phaseflow.pipeline import EXIT_FATAL, EXIT_PARTIAL, EXIT_SUCCESS, Pypeline
from phaseflow.state import StateRecord
from phaseflow.store import ArtifactStore

if TYPE_CHECKING:
    from conftest import FakeTools, Project


def _run(
    project: Project, mode: str = "run", **kwargs: Any
) -> tuple[int, StateRecord]:
    manifest = project.manifest(**kwargs)
    store = ArtifactStore(manifest.output_dir)
    state = StateRecord(store.state_file, store.transitions_log)
    state.load()

    pipeline = Pypeline(
        nodes=phasing.build_tasks(manifest),
        temp_root=store.temp_dir,
        max_tasks=manifest.max_tasks,
        max_retries=manifest.max_retries,
        intermediate_files=manifest.intermediate_files,
        state=state,
    )

    return pipeline.run(mode=mode), state


def _intermediate_files(project: Project, chrom: str = "21") -> list[str]:
    files: list[str] = []
    for sample in ("NA00001", "NA00002"):
        filename = f"{sample}.vcf.gz"
        files.append(project.output("cache", "split", f"chr{chrom}", filename))

    for stage in ("qc", "phase_common"):
        for chunk in ("chunk001.bcf", "chunk002.bcf"):
            files.append(project.output("cache", stage, f"chr{chrom}", chunk))

    files.append(project.output("cache", "ligate", f"chr{chrom}.ligated.bcf"))

    return files + [filename + ".csi" for filename in files]


def _states(state: StateRecord) -> dict[str, str]:
    return {key: value["state"] for key, value in state.records.items()}


def _stages(calls: list[str]) -> list[tuple[str, str]]:
    return sorted((name, arg) for name, arg, *_ in (it.split() for it in calls))


def test_pipeline__phases_chromosome(project: Project, tools: FakeTools) -> None:
    returncode, state = _run(project, intermediate_files=CleanupStrategy.KEEP)

    assert returncode == EXIT_SUCCESS
    assert os.path.getsize(project.output("chr21.phased.bcf"))
    assert os.path.getsize(project.output("chr21.phased.bcf.csi"))
    for filename in _intermediate_files(project):
        assert os.path.exists(filename), filename

    assert _stages(tools.calls("shapeit5_phase_common")) == [
        ("shapeit5_phase_common", "--input"),
    ] * 2
    assert len(tools.calls("shapeit5_ligate")) == 1
    assert len(tools.calls("shapeit5_phase_rare")) == 2
    assert len([it for it in tools.calls("bcftools") if " concat " in it]) == 1

    states = _states(state)
    assert len(states) == 10
    assert set(states.values()) == {"succeeded"}


def test_pipeline__removes_intermediate_files(project: Project) -> None:
    returncode, _ = _run(project, intermediate_files=CleanupStrategy.DELETE)

    assert returncode == EXIT_SUCCESS
    assert os.path.exists(project.output("chr21.phased.bcf"))
    assert os.path.exists(project.output("chr21.phased.bcf.csi"))
    for filename in _intermediate_files(project):
        assert not os.path.exists(filename), filename

    # Per-chromosome folders are removed once empty
    assert not os.path.exists(project.output("cache", "qc", "chr21"))
    # Phased chunks are kept alongside the concatenated BCF
    for chunk in ("chunk001.bcf", "chunk002.bcf"):
        filename = project.output("cache", "phase_rare", "chr21", chunk)
        assert os.path.exists(filename), filename
        assert os.path.exists(filename + ".csi"), filename
    # The record of the run is kept
    assert os.path.exists(project.output("cache", "state.yaml"))
    assert os.path.exists(project.output("logs", "transitions.jsonl"))


def test_pipeline__rerun_does_nothing(project: Project, tools: FakeTools) -> None:
    returncode, _ = _run(project)
    assert returncode == EXIT_SUCCESS

    final_bcf = project.output("chr21.phased.bcf")
    mtime = os.stat(final_bcf).st_mtime_ns
    tools.reset()

    returncode, state = _run(project)

    assert returncode == EXIT_SUCCESS
    assert tools.calls() == []
    # Not even version checks are performed
    assert not tools.log.exists()
    assert os.stat(final_bcf).st_mtime_ns == mtime
    assert set(_states(state).values()) == {"skipped"}


def test_pipeline__rerun_with_kept_intermediate_files(
    project: Project, tools: FakeTools
) -> None:
    assert _run(project, intermediate_files=CleanupStrategy.KEEP)[0] == EXIT_SUCCESS
    tools.reset()

    returncode, state = _run(project, intermediate_files=CleanupStrategy.KEEP)

    assert returncode == EXIT_SUCCESS
    assert tools.calls() == []
    assert set(_states(state).values()) == {"skipped"}


def test_pipeline__resumes_after_failure(project: Project, tools: FakeTools) -> None:
    qc_chunk = project.output("cache", "qc", "chr21", "chunk002.bcf")
    tools.fail(f"shapeit5_phase_rare --input {qc_chunk}")

    returncode, state = _run(project)

    assert returncode == EXIT_PARTIAL
    assert not os.path.exists(project.output("chr21.phased.bcf"))
    records = state.records
    assert records["chr21:phase-rare:2"]["state"] == "failed"
    assert records["chr21:phase-rare:2"]["exit_code"] == 1
    assert records["chr21:phase-rare:1"]["state"] == "succeeded"
    assert records["chr21:concat"]["state"] == "skipped-due-to-failure"
    # Intermediate files are kept for chromosomes that were not completed
    assert os.path.exists(qc_chunk)
    assert os.path.exists(project.output("cache", "ligate", "chr21.ligated.bcf"))

    tools.clear_rules()
    tools.reset()

    returncode, state = _run(project)

    assert returncode == EXIT_SUCCESS
    assert os.path.exists(project.output("chr21.phased.bcf"))
    calls = tools.calls()
    assert _stages(calls) == [
        ("bcftools", "concat"),
        ("bcftools", "index"),
        ("shapeit5_phase_rare", "--input"),
    ]
    assert qc_chunk in tools.calls("shapeit5_phase_rare")[0]

    states = _states(state)
    assert states["chr21:phase-rare:2"] == "succeeded"
    assert states["chr21:concat"] == "succeeded"
    assert states["chr21:phase-rare:1"] == "skipped"
    assert states["chr21:ligate"] == "skipped"


def test_pipeline__failure_does_not_affect_other_chromosomes(
    project: Project, tools: FakeTools
) -> None:
    qc_chunk = project.output("cache", "qc", "chr7", "chunk001.bcf")
    tools.fail(f"shapeit5_phase_common --input {qc_chunk}", exit_code=3)

    returncode, state = _run(project, chromosomes=("7", "8"))

    assert returncode == EXIT_PARTIAL
    assert not os.path.exists(project.output("chr7.phased.bcf"))
    assert os.path.exists(project.output("chr8.phased.bcf"))

    states = _states(state)
    assert states["chr7:phase-common:1"] == "failed"
    assert states["chr7:ligate"] == "skipped-due-to-failure"
    assert states["chr7:phase-rare:1"] == "skipped-due-to-failure"
    assert states["chr7:phase-rare:2"] == "skipped-due-to-failure"
    assert states["chr7:concat"] == "skipped-due-to-failure"
    assert states["chr7:phase-common:2"] == "succeeded"
    assert {value for key, value in states.items() if key.startswith("chr8:")} == {
        "succeeded"
    }
    assert state.records["chr7:phase-common:1"]["exit_code"] == 3

    # Cleanup is per chromosome
    assert os.path.exists(qc_chunk)
    for filename in _intermediate_files(project, "8"):
        assert not os.path.exists(filename), filename


def test_pipeline__failure_cascade_is_logged(
    project: Project, tools: FakeTools
) -> None:
    qc_chunk = project.output("cache", "qc", "chr21", "chunk001.bcf")
    tools.fail(f"shapeit5_phase_common --input {qc_chunk}")

    returncode, _ = _run(project)
    assert returncode == EXIT_PARTIAL

    with open(project.output("logs", "transitions.jsonl")) as handle:
        entries = [json.loads(line) for line in handle]

    cascade = [it for it in entries if it["new"] == "skipped-due-to-failure"]
    assert sorted(it["task"] for it in cascade) == [
        "chr21:concat",
        "chr21:ligate",
        "chr21:phase-rare:1",
        "chr21:phase-rare:2",
    ]
    assert {it["cause"] for it in cascade} == {"chr21:phase-common:1 failed"}

    failure = [it for it in entries if it["new"] == "failed"]
    assert len(failure) == 1
    assert failure[0]["task"] == "chr21:phase-common:1"
    assert failure[0]["cause"] == "PermanentToolError (exit code 1)"


def test_pipeline__retries_transient_failures(
    project: Project, tools: FakeTools
) -> None:
    tools.fail("shapeit5_ligate", message="Resource temporarily unavailable", once=True)

    returncode, state = _run(project, max_retries=1)

    assert returncode == EXIT_SUCCESS
    assert os.path.exists(project.output("chr21.phased.bcf"))
    assert len(tools.calls("shapeit5_ligate")) == 2
    assert state.records["chr21:ligate"]["retries"] == 1
    assert state.records["chr21:ligate"]["state"] == "succeeded"


def test_pipeline__retries_are_limited(project: Project, tools: FakeTools) -> None:
    tools.fail("shapeit5_ligate", message="Cannot allocate memory")

    returncode, state = _run(project, max_retries=2)

    assert returncode == EXIT_PARTIAL
    assert len(tools.calls("shapeit5_ligate")) == 3
    assert state.records["chr21:ligate"]["retries"] == 2
    assert state.records["chr21:ligate"]["state"] == "failed"


def test_pipeline__permanent_failures_are_not_retried(
    project: Project, tools: FakeTools
) -> None:
    tools.fail("shapeit5_ligate", exit_code=2, message="[E::ligate] bad input")

    returncode, state = _run(project, max_retries=3)

    assert returncode == EXIT_PARTIAL
    assert len(tools.calls("shapeit5_ligate")) == 1
    assert state.records["chr21:ligate"]["retries"] == 0
    assert state.records["chr21:ligate"]["exit_code"] == 2


def test_pipeline__chunks_are_combined_in_position_order(
    project: Project, tools: FakeTools
) -> None:
    # The first chunk finishes last
    tools.delay(
        "shapeit5_phase_common --input "
        + project.output("cache", "qc", "chr21", "chunk001.bcf"),
        1,
    )
    tools.delay(
        "shapeit5_phase_rare --input "
        + project.output("cache", "qc", "chr21", "chunk001.bcf"),
        1,
    )

    returncode, _ = _run(project, max_tasks=2)

    assert returncode == EXIT_SUCCESS
    assert tools.lists("shapeit5_ligate") == [
        [
            project.output("cache", "phase_common", "chr21", "chunk001.bcf"),
            project.output("cache", "phase_common", "chr21", "chunk002.bcf"),
        ]
    ]
    assert tools.lists("bcftools") == [
        [
            project.output("cache", "phase_rare", "chr21", "chunk001.bcf"),
            project.output("cache", "phase_rare", "chr21", "chunk002.bcf"),
        ]
    ]


def test_pipeline__phases_chrx(project: Project, tools: FakeTools) -> None:
    returncode, state = _run(
        project, chromosomes=("X",), haploids=str(project.haploids)
    )

    assert returncode == EXIT_SUCCESS
    assert os.path.exists(project.output("chrX.phased.bcf"))
    assert os.path.exists(project.output("chrX.phased.bcf.csi"))
    assert len(_states(state)) == 7

    (phase_rare,) = tools.calls("shapeit5_phase_rare")
    assert f"--haploid {project.haploids}" in phase_rare
    assert "--region" not in phase_rare


def test_pipeline__missing_input_file(project: Project, tools: FakeTools) -> None:
    os.unlink(project.map_dir / "chr21.b38.gmap.gz")

    returncode, state = _run(project)

    assert returncode == EXIT_FATAL
    assert tools.calls() == []
    assert state.records == {}


def test_pipeline__missing_executable(project: Project, tools: FakeTools) -> None:
    os.unlink(tools.path("shapeit5_phase_rare"))

    returncode, _ = _run(project)

    assert returncode == EXIT_FATAL
    assert tools.calls() == []


def test_pipeline__dry_run(project: Project, tools: FakeTools) -> None:
    returncode, state = _run(project, mode="dry_run")

    assert returncode == EXIT_SUCCESS
    assert tools.calls() == []
    assert not os.path.exists(project.output("chr21.phased.bcf"))
    assert state.records == {}


def test_pipeline__removes_stale_temp_dirs(project: Project) -> None:
    store = ArtifactStore(str(project.output_dir))
    stale = os.path.join(store.temp_dir, "20230102_030405_abcdefgh")
    other = os.path.join(store.temp_dir, "not_a_temp_dir")
    os.makedirs(stale)
    os.makedirs(other)

    returncode, _ = _run(project)

    assert returncode == EXIT_SUCCESS
    assert not os.path.exists(stale)
    assert os.path.exists(other)
