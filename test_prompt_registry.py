import json

from pilot_platform.plan_model import ProgressPlan, Stage, Subtask
from pilot_platform.prompt_registry import (
    build_subtask_prompt,
    format_canvas_content,
    format_canvas_mermaid,
    format_progress_context,
    format_todo_markdown,
    locale_instructions,
)
from pilot_platform.session_state import CanvasContentItem, PilotSessionRecord, PilotStepRecord


def test_canvas_content_renders_each_type():
    items = [
        CanvasContentItem(id="q1", type="skillResponse", title="What is EV?", content="Electric vehicle"),
        CanvasContentItem(id="d1", type="document", title="Report", content_preview="Draft..."),
        CanvasContentItem(id="c1", type="codeArtifact", content="print(1)"),
        CanvasContentItem(id="x1", type="other"),
    ]
    text = format_canvas_content(items)
    assert "**Answer:**\nElectric vehicle" in text
    assert "**Document Preview:**\nDraft..." in text
    assert "print(1)" in text
    # untitled, empty "other" items are skipped
    assert "x1" not in text
    assert format_canvas_content([]) == ""


def test_mermaid_edges_follow_input_ids():
    items = [
        CanvasContentItem(id="a-1", title="Source"),
        CanvasContentItem(id="b-2", title='Say "hi"', input_ids=["a-1", "ghost"]),
    ]
    chart = format_canvas_mermaid(items)
    assert "node_0_a_1 --> node_1_b_2" in chart
    assert 'Say \\"hi\\"' in chart
    assert "ghost" not in chart
    assert "Canvas is empty" in format_canvas_mermaid([])


def test_todo_markdown_splits_finished_steps():
    session = PilotSessionRecord(session_id="s", title="EV", input={"query": "EV market"}, current_epoch=1, max_epoch=2)
    steps = [
        PilotStepRecord(step_id="st-1", name="Collect", status="finish"),
        PilotStepRecord(
            step_id="st-2",
            name="Compare",
            raw_output=json.dumps({"query": "Compare brands", "priority": 2, "workflowStage": "analysis"}),
        ),
        PilotStepRecord(step_id="st-3", name="Broken", raw_output="{oops"),
    ]
    todo = format_todo_markdown(session, steps)
    assert "# Todo: EV" in todo
    assert "## Current Epoch: 2/3" in todo
    assert "- [x] st-1: Collect" in todo
    assert "- [ ] Compare: Compare brands (Priority: 2)" in todo
    assert "  - Stage: analysis" in todo
    assert "- [ ] Broken:  (Priority: 3)" in todo


def test_progress_context_lists_stage_groups():
    plan = ProgressPlan(
        stages=[
            Stage(id="a", name="Research", status="completed", summary="done research",
                  subtasks=[Subtask(id="t", name="x", status="failed")]),
            Stage(id="b", name="Analyse", status="in_progress", stage_progress=50,
                  subtasks=[Subtask(id="u", name="Compare", status="completed"), Subtask(id="v", name="Rank")]),
            Stage(id="c", name="Write", status="pending"),
        ],
        current_stage_index=1,
        overall_progress=50,
    )
    text = format_progress_context(plan)
    assert "**Completed Stages**: 1/3" in text
    assert "Research (finished with failures): done research" in text
    assert "(1/2 subtasks finished)" in text
    assert "- Write:" in text


def test_subtask_prompt_fallback_asks_for_fenced_json():
    stage = Stage(id="s", name="Research", objectives=["Find data"])
    plain = build_subtask_prompt(stage, [], [], 3)
    fallback = build_subtask_prompt(stage, [], [], 3, "en", fallback=True)
    assert "```json and ```" not in plain
    assert "```json and ```" in fallback
    assert "No tools available" in plain


def test_locale_instructions_optional():
    assert locale_instructions(None) == ""
    assert "ja" in locale_instructions("ja")


def test_subtask_prompt_includes_canvas_structure():
    stage = Stage(id="s", name="Research")
    canvas = [
        CanvasContentItem(id="a", title="Sources"),
        CanvasContentItem(id="b", title="Digest", input_ids=["a"]),
    ]
    prompt = build_subtask_prompt(stage, [], canvas, 2)
    assert "## CANVAS STRUCTURE" in prompt
    assert "node_0_a --> node_1_b" in prompt
    assert "Canvas is empty" in build_subtask_prompt(stage, [], [], 2)
