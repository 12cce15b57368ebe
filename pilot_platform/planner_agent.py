from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .agent_runner import ChatModel
from .json_extract import extract_json_from_markdown
from .plan_model import (
    PlanningContext,
    PlanWithSubtasks,
    ProgressPlan,
    Stage,
    Subtask,
    new_stage_id,
    new_subtask_id,
    utc_now_iso,
)
from .prompt_registry import build_planning_prompt
from .protocol import (
    PLAN_RESPONSE_SCHEMA,
    SchemaValidationError,
    StageStatus,
    StepValidator,
    SubtaskStatus,
    TaskComplexity,
)
from .session_state import CanvasContentItem, ToolsetEntry

logger = logging.getLogger(__name__)

DEFAULT_STAGE_NAME = "Unnamed Stage"
DEFAULT_SUBTASK_NAME = "Unnamed Subtask"
DEFAULT_OBJECTIVES = ["Complete the stage objectives"]
DEFAULT_TOOL_CATEGORIES = ["web_search", "analysis", "generation"]
DEFAULT_QUERY = "Analyze the request and produce a useful answer"

_validator = StepValidator()


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _number(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def _normalize_stage(raw: Dict[str, Any], position: int) -> Dict[str, Any]:
    objectives = [o for o in raw.get("objectives") or [] if isinstance(o, str) and o.strip()]
    categories = [c for c in raw.get("toolCategories") or [] if isinstance(c, str) and c.strip()]
    status = raw.get("status")
    return {
        "name": _text(raw.get("name")) or DEFAULT_STAGE_NAME,
        "description": _text(raw.get("description")),
        "objectives": objectives or list(DEFAULT_OBJECTIVES),
        "toolCategories": categories or list(DEFAULT_TOOL_CATEGORIES),
        "priority": _number(raw.get("priority"), position + 1),
        "estimatedEpochs": max(1, _number(raw.get("estimatedEpochs"), 1)),
        "status": status if status in {s.value for s in StageStatus} else StageStatus.PENDING.value,
    }


def _normalize_subtask(raw: Dict[str, Any]) -> Dict[str, Any]:
    name = _text(raw.get("name")) or DEFAULT_SUBTASK_NAME
    status = raw.get("status")
    normalized = {
        "name": name,
        "query": _text(raw.get("query")) or name,
        "status": status if status in {s.value for s in SubtaskStatus} else SubtaskStatus.PENDING.value,
    }
    for key in ("context", "scope", "outputRequirements"):
        if isinstance(raw.get(key), str):
            normalized[key] = raw[key]
    return normalized


def normalize_plan_response(raw: Any) -> Dict[str, Any]:
    """
    Fill defaults into a raw planner response and validate the result.

    Raises SchemaValidationError when nothing usable is left (e.g. no stages).
    """
    if not isinstance(raw, dict):
        raise SchemaValidationError("Plan response must be a JSON object")

    stages = [
        _normalize_stage(s, i)
        for i, s in enumerate(x for x in raw.get("stages") or [] if isinstance(x, dict))
    ]
    subtasks = [_normalize_subtask(s) for s in raw.get("currentStageSubtasks") or [] if isinstance(s, dict)]
    complexity = raw.get("taskComplexity")
    if complexity not in {c.value for c in TaskComplexity}:
        complexity = TaskComplexity.MEDIUM.value

    normalized = {
        "userIntent": _text(raw.get("userIntent")),
        "taskComplexity": complexity,
        "stages": stages,
        "currentStageSubtasks": subtasks,
        "planningLogic": _text(raw.get("planningLogic")),
        "estimatedTotalEpochs": max(1, _number(raw.get("estimatedTotalEpochs"), len(stages) or 1)),
    }
    summary = raw.get("previousExecutionSummary")
    if isinstance(summary, str):
        normalized["previousExecutionSummary"] = summary
    return _validator.validate_plan_response(normalized)


def _build_plan(
    response: Dict[str, Any],
    user_question: str,
    existing_plan: Optional[ProgressPlan],
) -> PlanWithSubtasks:
    initial = existing_plan is None
    now = utc_now_iso()

    stages: List[Stage] = []
    for index, raw in enumerate(response["stages"]):
        status = raw["status"]
        if initial:
            status = StageStatus.IN_PROGRESS.value if index == 0 else StageStatus.PENDING.value
        stages.append(
            Stage(
                id=new_stage_id(),
                name=raw["name"],
                description=raw["description"],
                objectives=list(raw["objectives"]),
                status=status,
                tool_categories=list(raw["toolCategories"]),
                priority=raw["priority"],
                estimated_epochs=raw["estimatedEpochs"],
                created_at=now,
                started_at=now if status == StageStatus.IN_PROGRESS.value else None,
            )
        )

    subtasks = [
        Subtask(
            id=new_subtask_id(),
            name=raw["name"],
            query=raw["query"],
            status=SubtaskStatus.PENDING.value,
            context=raw.get("context", ""),
            scope=raw.get("scope", ""),
            output_requirements=raw.get("outputRequirements", ""),
            created_at=now,
        )
        for raw in response["currentStageSubtasks"]
    ]

    current_index = 0 if initial else min(existing_plan.current_stage_index, len(stages) - 1)
    plan = ProgressPlan(
        stages=stages,
        current_stage_index=current_index,
        planning_logic=response["planningLogic"],
        user_intent=response["userIntent"] or user_question,
        estimated_total_epochs=int(response["estimatedTotalEpochs"]),
        task_complexity=response["taskComplexity"],
    )
    context = PlanningContext(
        is_initial_plan=initial,
        user_intent=plan.user_intent,
        current_stage_index=current_index,
        previous_execution_summary=response.get("previousExecutionSummary"),
    )
    return PlanWithSubtasks(plan=plan, current_stage_subtasks=subtasks, planning_context=context)


def build_default_plan(user_question: str) -> PlanWithSubtasks:
    """Deterministic single-stage plan used when every planning attempt failed."""
    now = utc_now_iso()
    question = (user_question or "").strip()
    stage = Stage(
        id=new_stage_id(),
        name="General Task Execution",
        description="Execute the user's request directly",
        objectives=list(DEFAULT_OBJECTIVES),
        status=StageStatus.IN_PROGRESS.value,
        tool_categories=list(DEFAULT_TOOL_CATEGORIES),
        priority=1,
        estimated_epochs=2,
        created_at=now,
        started_at=now,
    )
    subtask = Subtask(
        id=new_subtask_id(),
        name="Address the user request",
        query=question or DEFAULT_QUERY,
        created_at=now,
    )
    plan = ProgressPlan(
        stages=[stage],
        current_stage_index=0,
        planning_logic="Fallback plan: the request is handled in a single stage",
        user_intent=question,
        estimated_total_epochs=2,
        task_complexity=TaskComplexity.SIMPLE.value,
    )
    return PlanWithSubtasks(
        plan=plan,
        current_stage_subtasks=[subtask],
        planning_context=PlanningContext(is_initial_plan=True, user_intent=question, is_fallback=True),
    )


async def _plan_structured(model: ChatModel, prompt: str) -> Dict[str, Any]:
    raw = await model.invoke_structured(prompt, PLAN_RESPONSE_SCHEMA)
    return normalize_plan_response(raw)


async def _plan_from_text(model: ChatModel, prompt: str) -> Dict[str, Any]:
    response = await model.invoke(prompt)
    extraction = extract_json_from_markdown(response.content)
    if not extraction.ok:
        raise SchemaValidationError(
            f"Planner reply held no usable JSON: {extraction.error.message}",
            errors=extraction.error.kind.value,
        )
    return normalize_plan_response(extraction.result)


async def analyze_intent_and_plan(
    model: ChatModel,
    user_question: str,
    existing_plan: Optional[ProgressPlan],
    available_tools: Sequence[ToolsetEntry],
    canvas_content: Sequence[CanvasContentItem],
    locale: Optional[str] = None,
    *,
    current_epoch: int = 0,
    max_epoch: int = 3,
    todo: Optional[str] = None,
) -> PlanWithSubtasks:
    """
    Turn the user request (and, when re-planning, the current plan) into a
    staged plan plus subtasks for the active stage.

    Tries structured output first, then free text with JSON extraction.
    Never raises: when both attempts fail the default single-stage plan is
    returned.
    """
    prompt = build_planning_prompt(
        user_question,
        existing_plan,
        available_tools,
        canvas_content,
        locale,
        current_epoch=current_epoch,
        max_epoch=max_epoch,
        todo=todo,
    )
    mode = "initial" if existing_plan is None else "re-planning"

    try:
        response = await _plan_structured(model, prompt)
        logger.info("[Planner] %s plan via structured output: %d stages", mode, len(response["stages"]))
        return _build_plan(response, user_question, existing_plan)
    except Exception as exc:
        logger.warning("[Planner] structured planning failed (%s), falling back to text", exc)

    try:
        response = await _plan_from_text(model, prompt)
        logger.info("[Planner] %s plan via text fallback: %d stages", mode, len(response["stages"]))
        return _build_plan(response, user_question, existing_plan)
    except Exception as exc:
        logger.error("[Planner] text planning failed (%s), using default plan", exc)

    return build_default_plan(user_question)


def merge_replanned_plan(
    current: ProgressPlan,
    replanned: PlanWithSubtasks,
    current_index: int,
) -> ProgressPlan:
    """
    Merge a re-planned plan into the live one without losing execution state.

    - stages up to and including current_index keep ids, statuses, subtasks
      and timestamps; the current stage takes the refreshed description,
      objectives and tool categories
    - planner subtasks with names new to the current stage are appended
    - later stages are replaced by the replanned ones; a pending stage with
      the same name keeps its id
    """
    merged = ProgressPlan.from_dict(current.to_dict())
    new_stages = replanned.plan.stages
    if not merged.stages:
        return replanned.to_progress_plan()

    anchor = max(0, min(current_index, len(merged.stages) - 1))
    kept = merged.stages[: anchor + 1]
    live = kept[anchor]

    if anchor < len(new_stages):
        fresh = new_stages[anchor]
        live.description = fresh.description or live.description
        live.objectives = list(fresh.objectives) or live.objectives
        live.tool_categories = list(fresh.tool_categories) or live.tool_categories

    known_names = {s.name for s in live.subtasks}
    for subtask in replanned.current_stage_subtasks:
        if subtask.name in known_names:
            continue
        live.subtasks.append(Subtask.from_dict(subtask.to_dict()))
        known_names.add(subtask.name)

    pending_ids = {
        s.name: s.id for s in merged.stages[anchor + 1 :] if s.status == StageStatus.PENDING.value
    }
    for stage in new_stages[anchor + 1 :]:
        copy = Stage.from_dict(stage.to_dict())
        copy.id = pending_ids.pop(stage.name, copy.id)
        copy.status = StageStatus.PENDING.value
        copy.stage_progress = 0
        copy.started_at = None
        copy.completed_at = None
        copy.subtasks = []
        kept.append(copy)

    merged.stages = kept
    merged.current_stage_index = anchor
    merged.planning_logic = replanned.plan.planning_logic or merged.planning_logic
    merged.estimated_total_epochs = replanned.plan.estimated_total_epochs or merged.estimated_total_epochs
    merged.touch()
    logger.info(
        "[Planner] merged re-plan: %d stages kept, %d stages after current",
        anchor + 1,
        len(kept) - anchor - 1,
    )
    return merged


__all__ = [
    "analyze_intent_and_plan",
    "build_default_plan",
    "merge_replanned_plan",
    "normalize_plan_response",
]
