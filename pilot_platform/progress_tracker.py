"""
Pure helpers that fold executor reports back into a ProgressPlan.

Nothing here talks to a model or to storage. Every function works on the
objects it is given, so the engine can call them on a private copy of the
plan and tests can call them directly.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .plan_model import ProgressPlan, Stage, Subtask, utc_now_iso
from .protocol import ExecutionMode, StageStatus, StepStatus, SubtaskStatus
from .session_state import ActionResultRecord, PilotStepRecord

logger = logging.getLogger(__name__)

_STEP_TO_SUBTASK = {
    StepStatus.WAITING.value: SubtaskStatus.PENDING.value,
    StepStatus.EXECUTING.value: SubtaskStatus.EXECUTING.value,
    StepStatus.FINISH.value: SubtaskStatus.COMPLETED.value,
    StepStatus.FAILED.value: SubtaskStatus.FAILED.value,
}

_STATUS_RANK = {
    SubtaskStatus.PENDING.value: 0,
    SubtaskStatus.EXECUTING.value: 1,
    SubtaskStatus.COMPLETED.value: 2,
    SubtaskStatus.FAILED.value: 2,
}

_STAGE_RANK = {
    StageStatus.PENDING.value: 0,
    StageStatus.IN_PROGRESS.value: 1,
    StageStatus.COMPLETED.value: 2,
}


def round_half_up(value: float) -> int:
    """0.5 always rounds up (Python's round() would give banker's rounding)."""
    return int(math.floor(value + 0.5))


def map_step_status(status: Optional[str]) -> str:
    return _STEP_TO_SUBTASK.get(status or "", SubtaskStatus.PENDING.value)


@dataclass
class SubtaskUpdate:
    step_id: str
    entity_id: Optional[str]
    name: str
    status: str
    output: Optional[str] = None
    error_message: Optional[str] = None


def _results_by_id(results: Iterable[ActionResultRecord]) -> Dict[str, ActionResultRecord]:
    return {r.result_id: r for r in results or []}


def collect_subtask_updates(
    steps: Sequence[PilotStepRecord],
    results: Sequence[ActionResultRecord],
    epoch: int,
) -> List[SubtaskUpdate]:
    """
    Pair the epoch's subtask-mode steps with their results.

    Steps without a matching result are skipped, so their subtasks keep the
    status they already had.
    """
    by_id = _results_by_id(results)
    updates: List[SubtaskUpdate] = []
    for step in steps or []:
        if step.epoch != epoch or step.execution_mode != ExecutionMode.SUBTASK.value:
            continue
        result = by_id.get(step.entity_id) if step.entity_id else None
        if result is None:
            logger.debug("[Pilot] no result for step %s (entity %s)", step.step_id, step.entity_id)
            continue
        updates.append(
            SubtaskUpdate(
                step_id=step.step_id,
                entity_id=step.entity_id,
                name=step.name,
                status=map_step_status(step.status),
                output=result.output,
                error_message=result.error_message,
            )
        )
    return updates


def _find_target(stage: Stage, update: SubtaskUpdate) -> Subtask | None:
    """Match by subtask id, then by result id, then by trimmed name among unlinked subtasks."""
    for subtask in stage.subtasks:
        if subtask.id == update.step_id:
            return subtask
    if update.entity_id:
        for subtask in stage.subtasks:
            if subtask.result_id == update.entity_id:
                return subtask
    name = update.name.strip()
    if name:
        for subtask in stage.subtasks:
            if subtask.result_id is None and subtask.name.strip() == name:
                return subtask
    return None


def _link(subtask: Subtask, update: SubtaskUpdate) -> None:
    if update.entity_id and not subtask.result_id:
        subtask.result_id = update.entity_id


def _apply(subtask: Subtask, update: SubtaskUpdate) -> bool:
    if subtask.is_finished:
        return False
    if _STATUS_RANK[update.status] <= _STATUS_RANK[subtask.status]:
        return False
    subtask.status = update.status
    if subtask.is_finished:
        subtask.output = update.output
        subtask.error_message = update.error_message
        subtask.completed_at = utc_now_iso()
    return True


def reconcile_subtasks(stage: Stage, updates: Sequence[SubtaskUpdate]) -> int:
    """
    Fold status updates into the stage's subtasks in place.

    Status only advances (pending < executing < completed | failed) and
    terminal states never change, so applying the same updates twice leaves
    the stage as it was after the first pass. Returns the number of changed
    or appended subtasks.
    """
    changed = 0
    for update in updates:
        target = _find_target(stage, update)
        if target is not None:
            linked = target.result_id is None and bool(update.entity_id)
            _link(target, update)
            if _apply(target, update) or linked:
                changed += 1
            continue

        subtask = Subtask(
            id=update.step_id,
            name=update.name.strip() or "Unnamed Subtask",
            query=update.name.strip(),
            result_id=update.entity_id,
        )
        _apply(subtask, update)
        stage.subtasks.append(subtask)
        changed += 1
    return changed


def summarize_stage(
    stage: Stage,
    steps: Sequence[PilotStepRecord],
    results: Sequence[ActionResultRecord],
    epoch: int,
) -> Optional[str]:
    """Set stage.summary from summary-mode outputs, else a basic completion count."""
    by_id = _results_by_id(results)
    outputs: List[str] = []
    for step in steps or []:
        if step.epoch != epoch or step.execution_mode != ExecutionMode.SUMMARY.value:
            continue
        result = by_id.get(step.entity_id) if step.entity_id else None
        if result is not None and result.output:
            outputs.append(result.output)

    if outputs:
        stage.summary = "\n\n".join(outputs)
        return stage.summary

    completed = sum(1 for s in stage.subtasks if s.status == SubtaskStatus.COMPLETED.value)
    if completed:
        stage.summary = f'Stage "{stage.name}" completed {completed} actions successfully.'
        return stage.summary
    return None


def recompute_stage_progress(stage: Stage) -> int:
    if stage.status == StageStatus.COMPLETED.value:
        stage.stage_progress = 100
        return 100

    total = len(stage.subtasks)
    if total == 0:
        stage.stage_progress = 0
        return 0

    finished = sum(1 for s in stage.subtasks if s.is_finished)
    progress = max(0, min(100, round_half_up(100 * finished / total)))
    stage.stage_progress = progress

    now = utc_now_iso()
    if progress == 100:
        stage.status = StageStatus.COMPLETED.value
        stage.started_at = stage.started_at or now
        stage.completed_at = stage.completed_at or now
    elif progress > 0 and _STAGE_RANK[stage.status] < _STAGE_RANK[StageStatus.IN_PROGRESS.value]:
        stage.status = StageStatus.IN_PROGRESS.value
        stage.started_at = stage.started_at or now
    return progress


def recompute_overall_progress(plan: ProgressPlan) -> int:
    if not plan.stages:
        plan.overall_progress = 0
        return 0
    completed = len(plan.stages_with_status(StageStatus.COMPLETED))
    partial = sum(s.stage_progress for s in plan.stages_with_status(StageStatus.IN_PROGRESS))
    overall = round_half_up((100 * completed + partial) / len(plan.stages))
    plan.overall_progress = max(0, min(100, overall))
    return plan.overall_progress


def count_active_subtasks(stage: Stage) -> int:
    return sum(1 for s in stage.subtasks if s.is_active)


def select_pending_subtasks(stage: Stage, limit: int) -> List[Subtask]:
    if limit <= 0:
        return []
    return [s for s in stage.subtasks if s.status == SubtaskStatus.PENDING.value][:limit]


__all__ = [
    "SubtaskUpdate",
    "collect_subtask_updates",
    "count_active_subtasks",
    "map_step_status",
    "recompute_overall_progress",
    "recompute_stage_progress",
    "reconcile_subtasks",
    "round_half_up",
    "select_pending_subtasks",
    "summarize_stage",
]
