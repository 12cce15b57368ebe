from __future__ import annotations

import json
import re
from typing import Iterable, List, Optional, Sequence

from .plan_model import ProgressPlan, Stage
from .protocol import PILOT_STEP_SCHEMA, StageStatus, StepStatus, WorkflowStage
from .session_state import CanvasContentItem, PilotSessionRecord, PilotStepRecord, ToolsetEntry
from .workflow_stage import recommend_stage, stage_guidance


def locale_instructions(locale: Optional[str]) -> str:
    if not locale:
        return ""
    return (
        "\n## LANGUAGE REQUIREMENT\n"
        f"Write every stage name, objective, subtask name and query in {locale}.\n"
    )


def format_canvas_content(items: Sequence[CanvasContentItem]) -> str:
    """Render canvas items as markdown blocks that carry their context ids."""
    blocks: List[str] = []
    for index, item in enumerate(items or []):
        header = f"## Canvas Item {index + 1} (ID: {item.id}, Type: {item.type})"
        body = item.content or item.content_preview

        if item.type == "skillResponse":
            blocks.append(
                f"{header}\n**Question:** {item.title or 'No title'}\n"
                f"**Answer:**\n{item.content or 'No content'}\n**Context ID:** {item.id}"
            )
        elif item.type == "document" and item.title and body:
            label = "Document Content" if item.content else "Document Preview"
            blocks.append(
                f"{header}\n**Document Title:** {item.title}\n**{label}:**\n{body}\n**Context ID:** {item.id}"
            )
        elif item.type == "codeArtifact":
            blocks.append(
                f"{header}\n**Code Snippet:** {item.title or 'Untitled Code'}\n"
                f"```\n{body or 'No code available'}\n```\n**Context ID:** {item.id}"
            )
        elif item.title and body:
            blocks.append(
                f"{header}\n**Title:** {item.title}\n**Content:**\n{body}\n**Context ID:** {item.id}"
            )
    return "\n\n---\n\n".join(blocks)


def _mermaid_id(index: int, item_id: str) -> str:
    return f"node_{index}_{re.sub(r'[^a-zA-Z0-9]', '_', item_id)}"


def format_canvas_mermaid(items: Sequence[CanvasContentItem]) -> str:
    """Canvas structure as a mermaid flowchart; edges follow input_ids."""
    if not items:
        return "```mermaid\ngraph TD\n    EmptyCanvas[Canvas is empty]\n```"

    ids = {item.id: _mermaid_id(i, item.id) for i, item in enumerate(items)}
    lines = ["```mermaid", "graph TD"]
    for item in items:
        title = (item.title or "Untitled").replace('"', '\\"')
        lines.append(f'    {ids[item.id]}["{title}"]')
    for item in items:
        for input_id in item.input_ids:
            if input_id in ids:
                lines.append(f"    {ids[input_id]} --> {ids[item.id]}")
    lines.append("```")
    return "\n".join(lines)


def format_tool_catalog(tools: Iterable[ToolsetEntry], locale: Optional[str] = None) -> str:
    lines = []
    for toolset in tools or []:
        line = f"- {toolset.name}: {toolset.description(locale)}"
        names = toolset.declared_tool_names
        if names:
            line += f" (tools: {', '.join(names)})"
        lines.append(line)
    return "\n".join(lines) if lines else "No tools available"


def format_todo_markdown(session: PilotSessionRecord, steps: Sequence[PilotStepRecord]) -> str:
    """Session and dispatched steps as a markdown TODO list."""
    finished = [s for s in steps if s.status == StepStatus.FINISH.value]
    remaining = [s for s in steps if s.status != StepStatus.FINISH.value]

    out = [f"# Todo: {session.title or 'Research Plan'}", ""]
    out += ["## Original Request", session.user_question, ""]
    out += ["## Status", session.status or "pending", ""]
    out += [f"## Current Epoch: {session.current_epoch + 1}/{session.max_epoch + 1}", ""]
    out += ["## Tasks", "", "### Completed"]
    out += [f"- [x] {s.step_id}: {s.name}" for s in finished]
    out += ["", "### Pending"]
    for step in remaining:
        raw = {}
        if step.raw_output:
            try:
                raw = json.loads(step.raw_output)
            except json.JSONDecodeError:
                raw = {}
        if not isinstance(raw, dict):
            raw = {}
        out.append(f"- [ ] {step.name}: {raw.get('query', '')} (Priority: {raw.get('priority', 3)})")
        if raw.get("workflowStage"):
            out.append(f"  - Stage: {raw['workflowStage']}")
    return "\n".join(out)


def format_progress_context(plan: ProgressPlan) -> str:
    """Digest of execution so far for dynamic re-planning."""
    completed = plan.stages_with_status(StageStatus.COMPLETED)
    pending = plan.stages_with_status(StageStatus.PENDING)
    current = plan.current_stage()

    lines = [
        "## CURRENT PROGRESS CONTEXT",
        f"**Overall Progress**: {plan.overall_progress}%",
        f"**Completed Stages**: {len(completed)}/{len(plan.stages)}",
        f"**Current Stage**: {current.name if current else 'None'}",
        "",
        "### Completed Stages Summary:",
    ]
    for stage in completed:
        digest = stage.summary or stage.description
        suffix = " (finished with failures)" if stage.outcome == "completed_with_failures" else ""
        lines.append(f"- {stage.name}{suffix}: {digest}")

    lines += ["", "### Current Stage Details:"]
    if current is not None:
        done = sum(1 for s in current.subtasks if s.is_finished)
        lines += [
            f"- Name: {current.name}",
            f"- Description: {current.description}",
            f"- Objectives: {', '.join(current.objectives)}",
            f"- Progress: {current.stage_progress}% ({done}/{len(current.subtasks)} subtasks finished)",
            f"- Tool Categories: {', '.join(current.tool_categories)}",
        ]
        for subtask in current.subtasks:
            lines.append(f"  - [{subtask.status}] {subtask.name}")
    else:
        lines.append("No current stage")

    lines += ["", "### Pending Stages:"]
    for stage in pending:
        if stage is current:
            continue
        lines.append(f"- {stage.name}: {stage.description} (objectives: {', '.join(stage.objectives)})")
    return "\n".join(lines)


_PLAN_OUTPUT_EXAMPLE = {
    "userIntent": "Clear description of what the user wants to achieve",
    "taskComplexity": "simple|medium|complex",
    "stages": [
        {
            "name": "Data Collection",
            "description": "What this stage accomplishes and why it is needed",
            "objectives": ["Specific objective 1", "Specific objective 2"],
            "toolCategories": ["web_search", "analysis"],
            "priority": 1,
            "estimatedEpochs": 1,
            "status": "pending",
        }
    ],
    "currentStageSubtasks": [
        {
            "name": "Clear, specific task name",
            "query": "Objective of the subtask and the outcome it must deliver",
            "status": "pending",
        }
    ],
    "planningLogic": "Why the stages are ordered this way",
    "estimatedTotalEpochs": 3,
    "previousExecutionSummary": "What has been accomplished so far",
}


def build_planning_prompt(
    user_question: str,
    progress_plan: Optional[ProgressPlan],
    tools: Sequence[ToolsetEntry],
    canvas_content: Sequence[CanvasContentItem],
    locale: Optional[str] = None,
    *,
    current_epoch: int = 0,
    max_epoch: int = 3,
    todo: Optional[str] = None,
) -> str:
    initial = progress_plan is None
    mode = "INITIAL PLANNING" if initial else "DYNAMIC RE-PLANNING"
    canvas = format_canvas_content(canvas_content)
    sections = [
        "# ROLE: Comprehensive Task Planner",
        "You split a user request into sequential stages and produce parallel subtasks "
        "for the active stage, in one response.",
        "",
        f"## PLANNING MODE\n**Mode**: {mode}",
        "Creating a new execution plan from scratch." if initial
        else "Re-planning from the current progress and execution history.",
        "",
        f'## USER REQUEST\n"{user_question}"',
        "",
        f"## AVAILABLE TOOLS\n{format_tool_catalog(tools, locale)}",
        "",
        f"## CANVAS CONTENT\n{canvas or 'No existing canvas content'}",
    ]
    if canvas_content:
        sections += ["", f"## CANVAS STRUCTURE\n{format_canvas_mermaid(canvas_content)}"]
    if not initial:
        sections += ["", format_progress_context(progress_plan)]
    if todo:
        sections += ["", "## EXECUTION LOG", todo]

    sections += [
        "",
        "## STAGE SPLITTING HEURISTICS",
        "- If the request lists explicit numbered steps, map them onto stages in order.",
        "- A stage that needs another stage's output must come after it.",
        "- If the request depends on the current date or recent events, start with a short "
        "stage that acquires the current time before any time-sensitive research.",
        "- Stages run one after another; subtasks inside a stage run in parallel.",
        "",
        "## SUBTASK RULES",
        "- Generate subtasks only for the active stage.",
        "- Subtasks must be independent of each other and startable immediately.",
        "- Phrase each subtask as an objective and its expected outcome, not as a tool call.",
    ]
    if not initial:
        sections += [
            "",
            "## RE-PLANNING RULES",
            "- Keep completed stages as they are.",
            "- Adjust objectives of remaining stages using what completed stages produced.",
            "- Insert new stages when execution revealed a hidden dependency.",
            "- Refresh subtasks for the current stage without repeating finished ones.",
        ]
    sections += [
        "",
        stage_guidance(recommend_stage(current_epoch, max_epoch)),
        "",
        "## OUTPUT FORMAT",
        "Respond with a JSON object of the form:",
        "```json",
        json.dumps(_PLAN_OUTPUT_EXAMPLE, ensure_ascii=False, indent=2),
        "```",
        locale_instructions(locale),
    ]
    return "\n".join(sections).strip()


def build_subtask_prompt(
    stage: Stage,
    tools: Sequence[ToolsetEntry],
    canvas_content: Sequence[CanvasContentItem],
    max_count: int,
    locale: Optional[str] = None,
    *,
    workflow_stage: WorkflowStage = WorkflowStage.RESEARCH,
    fallback: bool = False,
) -> str:
    canvas = format_canvas_content(canvas_content)
    existing = [f"- [{s.status}] {s.name}" for s in stage.subtasks]
    objectives = "\n".join(f"- {o}" for o in stage.objectives) or "- Complete the stage"
    sections = [
        "You decompose one stage of a larger plan into parallel subtasks.",
        "",
        f"## STAGE\n**Name**: {stage.name}\n**Description**: {stage.description}",
        f"**Objectives**:\n{objectives}",
        "",
        f"## RELEVANT TOOLS\n{format_tool_catalog(tools, locale)}",
        "",
        f"## CANVAS CONTENT\n{canvas or 'No existing canvas content'}",
        "",
        f"## CANVAS STRUCTURE\n{format_canvas_mermaid(canvas_content)}",
        "",
        "## EXISTING SUBTASKS",
        "\n".join(existing) if existing else "None",
        "",
        "## REQUIREMENTS",
        f"- Produce at most {max_count} subtasks.",
        "- Every subtask must be completable starting now, without waiting for or referring to "
        "any sibling subtask.",
        "- Describe each as an objective plus the outcome it must deliver; do not name a tool call.",
        "- Do not repeat existing subtasks.",
        "- Put relevant canvas item ids into contextItemIds, or [] when none apply.",
        f'- Use workflowStage "{WorkflowStage(workflow_stage).value}" unless a subtask clearly belongs '
        "to another phase.",
        "",
        stage_guidance(workflow_stage),
        "",
        "## STEP SCHEMA",
        "```json",
        json.dumps({k: v for k, v in PILOT_STEP_SCHEMA.items() if k != "$schema"}, indent=2),
        "```",
        'Return {"steps": [ ... ]}.',
        locale_instructions(locale),
    ]
    if fallback:
        sections.append('Respond ONLY with the JSON object wrapped in ```json and ``` tags.')
    return "\n".join(sections).strip()
