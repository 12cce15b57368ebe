"""
Reconciliation and progress arithmetic of the pilot.
"""

import copy
import itertools

from pilot_platform.plan_model import ProgressPlan, Stage, Subtask
from pilot_platform.progress_tracker import (
    collect_subtask_updates,
    count_active_subtasks,
    map_step_status,
    recompute_overall_progress,
    recompute_stage_progress,
    reconcile_subtasks,
    round_half_up,
    select_pending_subtasks,
    summarize_stage,
)
from pilot_platform.session_state import ActionResultRecord, PilotStepRecord


def _stage(*statuses, status="in_progress"):
    return Stage(
        id="s",
        name="Research",
        status=status,
        subtasks=[Subtask(id=f"t{i}", name=f"task {i}", status=st) for i, st in enumerate(statuses)],
    )


def test_round_half_up():
    assert round_half_up(62.5) == 63
    assert round_half_up(2.5) == 3
    assert round_half_up(66.666) == 67
    assert round_half_up(0.49) == 0


def test_map_step_status():
    assert map_step_status("waiting") == "pending"
    assert map_step_status("executing") == "executing"
    assert map_step_status("finish") == "completed"
    assert map_step_status("failed") == "failed"
    assert map_step_status("mystery") == "pending"
    assert map_step_status(None) == "pending"


def test_two_completed_one_failed_one_pending_is_75():
    stage = _stage("completed", "completed", "failed", "pending")
    assert recompute_stage_progress(stage) == 75
    assert stage.status == "in_progress"


def test_all_finished_completes_the_stage_once():
    stage = _stage("completed", "failed")
    assert recompute_stage_progress(stage) == 100
    assert stage.status == "completed"
    stamp = stage.completed_at
    assert stamp
    recompute_stage_progress(stage)
    assert stage.completed_at == stamp


def test_pending_stage_starts_on_first_progress():
    stage = _stage("completed", "pending", "pending", status="pending")
    assert recompute_stage_progress(stage) == 33
    assert stage.status == "in_progress"
    assert stage.started_at


def test_completed_stage_never_regresses():
    stage = _stage("completed", status="completed")
    stage.subtasks.append(Subtask(id="late", name="late"))
    assert recompute_stage_progress(stage) == 100
    assert stage.status == "completed"


def test_empty_stage_is_zero():
    stage = _stage()
    assert recompute_stage_progress(stage) == 0


def test_overall_progress_weights_in_progress_stages():
    plan = ProgressPlan(
        stages=[
            Stage(id="a", name="a", status="completed", stage_progress=100),
            Stage(id="b", name="b", status="in_progress", stage_progress=40),
        ]
    )
    assert recompute_overall_progress(plan) == 70


def test_overall_progress_ignores_pending_and_handles_no_stages():
    plan = ProgressPlan(
        stages=[
            Stage(id="a", name="a", status="in_progress", stage_progress=50),
            Stage(id="b", name="b", status="pending", stage_progress=80),
            Stage(id="c", name="c", status="pending"),
        ]
    )
    assert recompute_overall_progress(plan) == 17
    assert recompute_overall_progress(ProgressPlan()) == 0


def _records():
    steps = [
        PilotStepRecord(step_id="t0", epoch=0, entity_id="r0", name="task 0", status="finish"),
        PilotStepRecord(step_id="t1", epoch=0, entity_id="r1", name="task 1", status="failed"),
        PilotStepRecord(step_id="new", epoch=0, entity_id="r9", name="walk-in", status="executing"),
        PilotStepRecord(step_id="t2", epoch=0, entity_id="missing", name="task 2", status="finish"),
        PilotStepRecord(step_id="old", epoch=1, entity_id="r0", name="other epoch", status="finish"),
    ]
    results = [
        ActionResultRecord(result_id="r0", output="done"),
        ActionResultRecord(result_id="r1", errors={"reason": "timeout"}),
        ActionResultRecord(result_id="r9"),
    ]
    return steps, results


def test_reconcile_updates_appends_and_skips_misses():
    stage = _stage("pending", "executing", "pending")
    steps, results = _records()
    updates = collect_subtask_updates(steps, results, epoch=0)
    assert [u.step_id for u in updates] == ["t0", "t1", "new"]

    reconcile_subtasks(stage, updates)
    by_id = {s.id: s for s in stage.subtasks}
    assert by_id["t0"].status == "completed" and by_id["t0"].output == "done"
    assert by_id["t1"].status == "failed" and "timeout" in by_id["t1"].error_message
    # no result for t2: status untouched
    assert by_id["t2"].status == "pending"
    assert by_id["new"].status == "executing" and by_id["new"].result_id == "r9"


def test_reconcile_matches_by_result_id():
    stage = Stage(id="s", name="s", subtasks=[Subtask(id="sub-1", name="x", result_id="r0")])
    reconcile_subtasks(
        stage,
        collect_subtask_updates(
            [PilotStepRecord(step_id="step-xyz", epoch=0, entity_id="r0", status="finish")],
            [ActionResultRecord(result_id="r0", output="ok")],
            epoch=0,
        ),
    )
    assert len(stage.subtasks) == 1
    assert stage.subtasks[0].status == "completed"


def test_reconcile_is_idempotent():
    stage = _stage("pending", "executing", "pending")
    steps, results = _records()
    updates = collect_subtask_updates(steps, results, epoch=0)
    reconcile_subtasks(stage, updates)
    once = copy.deepcopy(stage)
    assert reconcile_subtasks(stage, updates) == 0
    assert [s.to_dict() for s in stage.subtasks] == [s.to_dict() for s in once.subtasks]
    assert len({s.id for s in stage.subtasks}) == len(stage.subtasks)


def test_terminal_status_never_changes():
    stage = _stage("failed")
    reconcile_subtasks(
        stage,
        collect_subtask_updates(
            [PilotStepRecord(step_id="t0", epoch=0, entity_id="r", status="executing")],
            [ActionResultRecord(result_id="r")],
            epoch=0,
        ),
    )
    assert stage.subtasks[0].status == "failed"


def test_progress_is_monotonic_as_statuses_advance():
    stage = _stage("pending", "pending", "pending", "pending")
    seen = [recompute_stage_progress(stage)]
    for subtask, status in itertools.product(stage.subtasks, ("executing", "finish")):
        update = collect_subtask_updates(
            [PilotStepRecord(step_id=subtask.id, epoch=0, entity_id=f"r-{subtask.id}", status=status)],
            [ActionResultRecord(result_id=f"r-{subtask.id}")],
            epoch=0,
        )
        reconcile_subtasks(stage, update)
        seen.append(recompute_stage_progress(stage))
    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert all(0 <= p <= 100 for p in seen)


def test_summary_prefers_summary_steps():
    stage = _stage("completed", "pending")
    steps = [PilotStepRecord(step_id="sum", epoch=0, execution_mode="summary", entity_id="rs")]
    results = [ActionResultRecord(result_id="rs", output="Findings so far")]
    assert summarize_stage(stage, steps, results, 0) == "Findings so far"

    basic = _stage("completed", "completed", "pending")
    assert summarize_stage(basic, [], [], 0) == 'Stage "Research" completed 2 actions successfully.'
    assert summarize_stage(_stage("pending"), [], [], 0) is None


def test_active_count_and_pending_selection():
    stage = _stage("pending", "executing", "completed", "pending", "pending")
    assert count_active_subtasks(stage) == 4
    assert [s.id for s in select_pending_subtasks(stage, 2)] == ["t0", "t3"]
    assert select_pending_subtasks(stage, 0) == []


def test_reconcile_matches_dispatched_step_by_name_and_links_result():
    stage = Stage(
        id="s",
        name="Research",
        subtasks=[Subtask(id="sub-a", name="Survey sales"), Subtask(id="sub-b", name="Survey sales")],
    )
    steps = [PilotStepRecord(step_id="step-9", epoch=0, entity_id="res-9", name="  Survey sales ", status="finish")]
    results = [ActionResultRecord(result_id="res-9", output="sales table")]
    updates = collect_subtask_updates(steps, results, epoch=0)

    assert reconcile_subtasks(stage, updates) == 1
    first, second = stage.subtasks
    assert len(stage.subtasks) == 2, "A name match must not append a duplicate"
    assert first.id == "sub-a" and first.result_id == "res-9"
    assert first.status == "completed" and first.output == "sales table"
    assert second.status == "pending" and second.result_id is None

    # the linked result id keeps the second pass on the same subtask
    assert reconcile_subtasks(stage, updates) == 0
    assert second.status == "pending"
