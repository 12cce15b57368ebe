from __future__ import annotations

from typing import Any, List

import pytest

from pilot_platform.agent_runner import ModelResponse


class ScriptedChatModel:
    """
    Fake ChatModel for tests. Each call pops the next scripted reply;
    an Exception instance in the script is raised instead of returned.
    An exhausted script raises RuntimeError.
    """

    def __init__(self, structured: List[Any] | None = None, text: List[Any] | None = None) -> None:
        self.structured = list(structured or [])
        self.text = list(text or [])
        self.structured_prompts: List[str] = []
        self.text_prompts: List[str] = []
        self.schemas: List[Any] = []

    @staticmethod
    def _next(script: List[Any], label: str) -> Any:
        if not script:
            raise RuntimeError(f"no scripted {label} reply left")
        reply = script.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def invoke(self, prompt: str) -> ModelResponse:
        self.text_prompts.append(prompt)
        return ModelResponse(content=self._next(self.text, "text"))

    async def invoke_structured(self, prompt: str, schema: Any) -> Any:
        self.structured_prompts.append(prompt)
        self.schemas.append(schema)
        return self._next(self.structured, "structured")

    @property
    def call_count(self) -> int:
        return len(self.structured_prompts) + len(self.text_prompts)


@pytest.fixture
def scripted_model():
    return ScriptedChatModel


def plan_response(stage_names=("Research", "Write Report"), subtask_names=("Collect data",)):
    return {
        "userIntent": "Understand the market and write a report",
        "taskComplexity": "medium",
        "stages": [
            {
                "name": name,
                "description": f"{name} stage",
                "objectives": [f"Finish {name.lower()}"],
                "toolCategories": ["web_search"],
                "priority": i + 1,
                "estimatedEpochs": 1,
                "status": "pending",
            }
            for i, name in enumerate(stage_names)
        ],
        "currentStageSubtasks": [
            {"name": name, "query": f"{name} thoroughly", "status": "pending"} for name in subtask_names
        ],
        "planningLogic": "Research before writing",
        "estimatedTotalEpochs": len(stage_names),
    }


def step_batch(*names, stage="research"):
    return {
        "steps": [
            {"name": name, "query": f"Do {name}", "contextItemIds": [], "workflowStage": stage} for name in names
        ]
    }
