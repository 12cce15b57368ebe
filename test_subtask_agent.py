import asyncio
import json

from conftest import ScriptedChatModel, step_batch
from pilot_platform.plan_model import Stage, Subtask
from pilot_platform.protocol import PILOT_STEP_BATCH_SCHEMA, WorkflowStage
from pilot_platform.session_state import ToolsetEntry
from pilot_platform.subtask_agent import filter_tools_for_stage, generate_subtasks


def _stage(categories=("web_search",)):
    return Stage(id="s1", name="Market Research", objectives=["Size the EV market"], tool_categories=list(categories))


def _toolset(name, *declared):
    return ToolsetEntry.model_validate(
        {"name": name, "tool_definition": {"declared_tools": [{"name": d} for d in declared]}}
    )


def _generate(model, max_count=3, stage=None, **kwargs):
    return asyncio.run(generate_subtasks(model, stage or _stage(), [], [], max_count, **kwargs))


def test_filter_tools_matches_names_and_declared_tools():
    catalog = [
        _toolset("Web_Search"),
        _toolset("builtin", "tavily_web_search"),
        _toolset("code_runner", "python"),
    ]
    matched = filter_tools_for_stage(_stage(), catalog)
    assert [t.name for t in matched] == ["Web_Search", "builtin"]
    assert filter_tools_for_stage(_stage(categories=()), catalog) == []


def test_structured_generation_is_capped():
    model = ScriptedChatModel(structured=[step_batch("a", "b", "c", "d")])
    subtasks = _generate(model, max_count=2)
    assert [s.name for s in subtasks] == ["a", "b"]
    assert all(s.status == "pending" for s in subtasks)
    assert all(s.workflow_stage == "research" for s in subtasks)
    assert model.schemas == [PILOT_STEP_BATCH_SCHEMA]


def test_zero_budget_skips_the_model():
    model = ScriptedChatModel()
    assert _generate(model, max_count=0) == []
    assert model.call_count == 0


def test_fallback_accepts_bare_array_and_fills_workflow_stage():
    reply = "```json\n" + json.dumps([{"name": "Compare brands", "query": "Compare the top EV brands"}]) + "\n```"
    model = ScriptedChatModel(structured=[RuntimeError("no structured output")], text=[reply])
    subtasks = _generate(model, workflow_stage=WorkflowStage.ANALYSIS)
    assert len(subtasks) == 1
    assert subtasks[0].query == "Compare the top EV brands"
    assert subtasks[0].workflow_stage == "analysis"
    assert subtasks[0].context_item_ids == []


def test_invalid_steps_fall_through_to_empty_list():
    bad = {"steps": [{"name": "", "query": "x", "contextItemIds": [], "workflowStage": "research"}]}
    model = ScriptedChatModel(structured=[bad], text=["no json here"])
    assert _generate(model) == []
    assert model.call_count == 2


def test_never_raises_when_model_is_down():
    model = ScriptedChatModel(structured=[ConnectionError("offline")], text=[TimeoutError("slow")])
    assert _generate(model) == []


def test_prompt_lists_existing_subtasks_and_budget():
    stage = _stage()
    stage.subtasks.append(Subtask(id="t", name="Already collected sales", status="completed"))
    model = ScriptedChatModel(structured=[step_batch("a")])
    _generate(model, max_count=2, stage=stage)
    prompt = model.structured_prompts[0]
    assert "at most 2 subtasks" in prompt
    assert "Already collected sales" in prompt
    assert "Size the EV market" in prompt


def test_generated_ids_are_unique():
    model = ScriptedChatModel(structured=[step_batch("a", "b", "c")])
    subtasks = _generate(model)
    assert len({s.id for s in subtasks}) == 3


def test_unknown_workflow_stage_falls_back_to_research():
    model = ScriptedChatModel(structured=[{"steps": [{"name": "a", "query": "do a", "contextItemIds": []}]}])
    subtasks = _generate(model, workflow_stage="deploy")
    assert [s.workflow_stage for s in subtasks] == ["research"]
    assert 'workflowStage "research"' in model.structured_prompts[0]
