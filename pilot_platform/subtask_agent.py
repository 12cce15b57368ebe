from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .agent_runner import ChatModel
from .json_extract import extract_json_from_markdown
from .plan_model import Stage, Subtask, new_subtask_id, utc_now_iso
from .prompt_registry import build_subtask_prompt
from .protocol import PILOT_STEP_BATCH_SCHEMA, SchemaValidationError, StepValidator, WorkflowStage
from .session_state import CanvasContentItem, ToolsetEntry

logger = logging.getLogger(__name__)

_validator = StepValidator()


def filter_tools_for_stage(stage: Stage, catalog: Sequence[ToolsetEntry]) -> List[ToolsetEntry]:
    """Keep toolsets whose name or declared tools mention one of the stage's tool categories."""
    categories = [c.lower() for c in stage.tool_categories if c]
    if not categories:
        return []
    matched: List[ToolsetEntry] = []
    for toolset in catalog or []:
        names = [toolset.name.lower()] + [n.lower() for n in toolset.declared_tool_names]
        if any(category in name for category in categories for name in names):
            matched.append(toolset)
    return matched


def _validated_steps(raw: Any, default_stage: WorkflowStage) -> List[Dict[str, Any]]:
    if isinstance(raw, list):
        raw = {"steps": raw}
    if not isinstance(raw, dict):
        raise SchemaValidationError("Step batch must be a JSON object with a 'steps' list")
    steps = raw.get("steps")
    if isinstance(steps, list):
        raw = dict(raw)
        raw["steps"] = [
            _validator.normalize_step(s, default_stage) if isinstance(s, dict) else s for s in steps
        ]
    return _validator.validate_batch(raw)


def _to_subtasks(steps: List[Dict[str, Any]], max_count: int) -> List[Subtask]:
    now = utc_now_iso()
    return [
        Subtask(
            id=new_subtask_id(),
            name=step["name"].strip(),
            query=step["query"].strip(),
            context=step.get("context", ""),
            scope=step.get("scope", ""),
            output_requirements=step.get("outputRequirements", ""),
            workflow_stage=step["workflowStage"],
            context_item_ids=list(step.get("contextItemIds") or []),
            created_at=now,
        )
        for step in steps[:max_count]
    ]


async def generate_subtasks(
    model: ChatModel,
    stage: Stage,
    tool_catalog: Sequence[ToolsetEntry],
    canvas_content: Sequence[CanvasContentItem],
    max_count: int,
    locale: Optional[str] = None,
    workflow_stage: Optional[WorkflowStage] = None,
) -> List[Subtask]:
    """
    Generate at most max_count independent, parallel-safe subtasks for the stage.
    Never raises; an empty list means nothing usable came back. An unknown
    workflow_stage tag falls back to research.
    """
    if max_count <= 0:
        return []

    try:
        phase = WorkflowStage(workflow_stage) if workflow_stage else WorkflowStage.RESEARCH
    except ValueError:
        logger.warning("[Subtasks] unknown workflow stage %r, using research", workflow_stage)
        phase = WorkflowStage.RESEARCH
    tools = filter_tools_for_stage(stage, tool_catalog)

    try:
        prompt = build_subtask_prompt(stage, tools, canvas_content, max_count, locale, workflow_stage=phase)
        raw = await model.invoke_structured(prompt, PILOT_STEP_BATCH_SCHEMA)
        subtasks = _to_subtasks(_validated_steps(raw, phase), max_count)
        logger.info("[Subtasks] %d subtasks for stage '%s' via structured output", len(subtasks), stage.name)
        return subtasks
    except Exception as exc:
        logger.warning("[Subtasks] structured generation failed for '%s' (%s)", stage.name, exc)

    try:
        prompt = build_subtask_prompt(
            stage, tools, canvas_content, max_count, locale, workflow_stage=phase, fallback=True
        )
        response = await model.invoke(prompt)
        extraction = extract_json_from_markdown(response.content)
        if not extraction.ok:
            raise SchemaValidationError(extraction.error.message, errors=extraction.error.kind.value)
        subtasks = _to_subtasks(_validated_steps(extraction.result, phase), max_count)
        logger.info("[Subtasks] %d subtasks for stage '%s' via text fallback", len(subtasks), stage.name)
        return subtasks
    except Exception as exc:
        logger.error("[Subtasks] text generation failed for '%s' (%s)", stage.name, exc)

    return []


__all__ = ["filter_tools_for_stage", "generate_subtasks"]
