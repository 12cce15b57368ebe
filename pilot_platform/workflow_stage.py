from __future__ import annotations

from typing import Dict, Tuple

from .protocol import WorkflowStage

# Fraction of the epoch budget consumed before moving to the next phase.
RESEARCH_UNTIL = 0.40
ANALYSIS_UNTIL = 0.70
SYNTHESIS_UNTIL = 0.85

WORKFLOW_STAGE_ORDER: Tuple[WorkflowStage, ...] = (
    WorkflowStage.RESEARCH,
    WorkflowStage.ANALYSIS,
    WorkflowStage.SYNTHESIS,
    WorkflowStage.CREATION,
)

WORKFLOW_STAGE_TOOLS: Dict[WorkflowStage, Tuple[str, ...]] = {
    WorkflowStage.RESEARCH: ("web_search", "library_search", "common_qna"),
    WorkflowStage.ANALYSIS: ("common_qna", "analysis"),
    WorkflowStage.SYNTHESIS: ("common_qna", "analysis"),
    WorkflowStage.CREATION: ("generate_doc", "code_artifacts", "generation"),
}


def recommend_stage(current_epoch: int, total_epochs: int) -> WorkflowStage:
    """Map epoch progress onto research -> analysis -> synthesis -> creation."""
    current = max(0, int(current_epoch or 0))
    total = max(1, int(total_epochs or 0))
    progress = current / total

    if progress < RESEARCH_UNTIL:
        return WorkflowStage.RESEARCH
    if progress < ANALYSIS_UNTIL:
        return WorkflowStage.ANALYSIS
    if progress < SYNTHESIS_UNTIL:
        return WorkflowStage.SYNTHESIS
    return WorkflowStage.CREATION


def _pct(value: float) -> str:
    return f"{int(round(value * 100))}%"


def stage_guidance(stage: WorkflowStage | str) -> str:
    try:
        stage = WorkflowStage(stage)
    except ValueError:
        stage = WorkflowStage.RESEARCH
    tools = ", ".join(WORKFLOW_STAGE_TOOLS[stage])

    if stage is WorkflowStage.RESEARCH:
        return (
            f"## CURRENT WORKFLOW PHASE: RESEARCH (first {_pct(RESEARCH_UNTIL)} of epochs)\n"
            "- Gather information broadly; collect facts and diverse perspectives.\n"
            f"- Prefer tools in these categories: {tools}.\n"
            "- Do not produce final documents or code yet.\n"
            '- Every step should have workflowStage="research".'
        )
    if stage is WorkflowStage.ANALYSIS:
        return (
            f"## CURRENT WORKFLOW PHASE: ANALYSIS (up to {_pct(ANALYSIS_UNTIL)} of epochs)\n"
            "- Build on what earlier epochs collected; find patterns, gaps and contradictions.\n"
            f"- Prefer tools in these categories: {tools}.\n"
            "- No creation steps yet.\n"
            '- Most steps should have workflowStage="analysis".'
        )
    if stage is WorkflowStage.SYNTHESIS:
        return (
            f"## CURRENT WORKFLOW PHASE: SYNTHESIS (up to {_pct(SYNTHESIS_UNTIL)} of epochs)\n"
            "- Organise findings into a coherent structure and outline deliverables.\n"
            f"- Prefer tools in these categories: {tools}.\n"
            "- At most one creation step.\n"
            '- Most steps should have workflowStage="synthesis".'
        )
    return (
        f"## CURRENT WORKFLOW PHASE: CREATION (from {_pct(SYNTHESIS_UNTIL)} of epochs)\n"
        "- Produce the polished deliverables, grounded in earlier results.\n"
        f"- Prefer tools in these categories: {tools}.\n"
        "- Creation steps must reference previous context items.\n"
        '- Most steps should have workflowStage="creation".'
    )
