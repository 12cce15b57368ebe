from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from .agent_runner import ChatModel
from .config import PilotSettings, load_settings
from .plan_model import ProgressPlan, Stage, Subtask
from .planner_agent import analyze_intent_and_plan, merge_replanned_plan
from .prompt_registry import format_todo_markdown
from .progress_tracker import (
    collect_subtask_updates,
    count_active_subtasks,
    recompute_overall_progress,
    recompute_stage_progress,
    reconcile_subtasks,
    select_pending_subtasks,
    summarize_stage,
)
from .protocol import StageStatus, StepDescriptor, StepValidator, WorkflowStage
from .session_state import ActionResultRecord, CanvasContentItem, PilotSessionRecord, PilotStepRecord, ToolsetEntry
from .subtask_agent import generate_subtasks
from .workflow_stage import recommend_stage

logger = logging.getLogger(__name__)


class PlanningError(RuntimeError):
    """Raised when no usable plan (at least one stage) can be obtained."""


@dataclass
class PilotRunResult:
    plan: ProgressPlan
    steps: List[StepDescriptor] = field(default_factory=list)
    current_stage_index: int = 0
    generated: bool = False

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "currentStageIndex": self.current_stage_index,
            "generated": self.generated,
        }


def load_progress_plan(progress: Any) -> Optional[ProgressPlan]:
    """Deserialize a stored plan (JSON text or dict). None when absent or unreadable."""
    if progress is None or progress == "":
        return None
    try:
        if isinstance(progress, ProgressPlan):
            return ProgressPlan.from_dict(progress.to_dict())
        if isinstance(progress, str):
            return ProgressPlan.from_json(progress)
        return ProgressPlan.from_dict(copy.deepcopy(progress))
    except (ValueError, TypeError, KeyError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.warning("[Pilot] stored progress plan is unreadable, re-planning: %s", exc)
        return None


class PilotEngine:
    """
    One epoch tick of the pilot:
    1) load or create the plan
    2) reconcile subtask statuses from executor reports
    3) recompute stage and overall progress
    4) optionally re-plan, then recompute again
    5) pick or generate subtasks and emit step descriptors

    The engine never persists anything; the caller stores result.plan.
    A session must not be run concurrently.
    """

    def __init__(
        self,
        model: ChatModel,
        session: PilotSessionRecord,
        steps: Sequence[PilotStepRecord] = (),
        results: Sequence[ActionResultRecord] = (),
        *,
        tools: Sequence[ToolsetEntry] = (),
        canvas_content: Sequence[CanvasContentItem] = (),
        locale: Optional[str] = None,
        settings: Optional[PilotSettings] = None,
    ) -> None:
        self.model = model
        self.session = session
        self.steps = list(steps or [])
        self.results = list(results or [])
        self.tools = list(tools or [])
        self.canvas_content = list(canvas_content or [])
        self.settings = settings or load_settings()
        self.locale = locale or self.settings.locale
        self._validator = StepValidator()

    async def _acquire_plan(self) -> ProgressPlan:
        plan = load_progress_plan(self.session.progress)
        if plan is None:
            logger.info("[Pilot] no plan for session %s, running initial planning", self.session.session_id)
            planned = await analyze_intent_and_plan(
                self.model,
                self.session.user_question,
                None,
                self.tools,
                self.canvas_content,
                self.locale,
                current_epoch=self.session.current_epoch,
                max_epoch=self.session.max_epoch,
            )
            plan = planned.to_progress_plan()
        if not plan.stages:
            raise PlanningError(f"Plan for session {self.session.session_id} has no stages")
        return plan

    def _recompute(self, plan: ProgressPlan, stage: Stage) -> None:
        recompute_stage_progress(stage)
        recompute_overall_progress(plan)

    async def _replan(self, plan: ProgressPlan, index: int) -> ProgressPlan:
        replanned = await analyze_intent_and_plan(
            self.model,
            self.session.user_question,
            plan,
            self.tools,
            self.canvas_content,
            self.locale,
            current_epoch=self.session.current_epoch,
            max_epoch=self.session.max_epoch,
            todo=format_todo_markdown(self.session, self.steps),
        )
        if replanned.planning_context.is_fallback:
            logger.warning("[Pilot] re-planning produced no usable plan, keeping the current one")
            return plan
        merged = merge_replanned_plan(plan, replanned, index)
        for stage in merged.stages:
            recompute_stage_progress(stage)
        recompute_overall_progress(merged)
        return merged

    def _descriptor(self, subtask: Subtask) -> StepDescriptor:
        if subtask.workflow_stage in {w.value for w in WorkflowStage}:
            phase = WorkflowStage(subtask.workflow_stage)
        else:
            phase = recommend_stage(self.session.current_epoch, self.session.max_epoch)
        return StepDescriptor(
            name=subtask.name,
            query=subtask.query or subtask.name,
            workflow_stage=phase,
            context_item_ids=[],
        )

    async def run(self, max_steps_per_epoch: Optional[int] = None, *, replan: bool = False) -> PilotRunResult:
        limit = max_steps_per_epoch if max_steps_per_epoch is not None else self.settings.max_steps_per_epoch
        epoch = self.session.current_epoch

        plan = await self._acquire_plan()
        if epoch >= len(plan.stages):
            logger.warning(
                "[Pilot] epoch %d has no stage (plan has %d stages), nothing to do", epoch, len(plan.stages)
            )
            plan.touch()
            return PilotRunResult(plan=plan, steps=[], current_stage_index=plan.current_stage_index)

        scanned = plan.find_in_progress_index()
        if scanned != epoch:
            logger.warning("[Pilot] in_progress stage is %d but epoch selects stage %d", scanned, epoch)
        plan.current_stage_index = epoch
        stage = plan.stages[epoch]

        updates = collect_subtask_updates(self.steps, self.results, epoch)
        changed = reconcile_subtasks(stage, updates)
        summarize_stage(stage, self.steps, self.results, epoch)
        self._recompute(plan, stage)
        logger.info(
            "[Pilot] stage '%s' reconciled (%d changed), stage %d%%, overall %d%%",
            stage.name,
            changed,
            stage.stage_progress,
            plan.overall_progress,
        )

        if replan or self.settings.replan_each_tick:
            plan = await self._replan(plan, epoch)
            stage = plan.stages[epoch]

        generated = False
        chosen: List[Subtask] = []
        if stage.status == StageStatus.COMPLETED.value:
            logger.info("[Pilot] stage '%s' is completed, no new steps", stage.name)
        elif count_active_subtasks(stage) >= limit:
            chosen = select_pending_subtasks(stage, limit)
            logger.info("[Pilot] reusing %d pending subtasks of '%s'", len(chosen), stage.name)
        else:
            chosen = await generate_subtasks(
                self.model,
                stage,
                self.tools,
                self.canvas_content,
                limit,
                self.locale,
                recommend_stage(epoch, self.session.max_epoch),
            )
            stage.subtasks.extend(chosen)
            generated = bool(chosen)
            self._recompute(plan, stage)

        descriptors = [self._descriptor(s) for s in chosen]
        self._validator.validate_descriptors(descriptors)
        plan.touch()
        logger.info("[Pilot] emitting %d steps for epoch %d", len(descriptors), epoch)
        return PilotRunResult(plan=plan, steps=descriptors, current_stage_index=epoch, generated=generated)


__all__ = ["PilotEngine", "PilotRunResult", "PlanningError", "load_progress_plan"]
