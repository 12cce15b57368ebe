"""
Shapes of the external records the pilot core reads.

Sessions, dispatched steps, execution results, canvas items and the tool
catalogue all belong to the calling service. The core only reads them; it
never writes session records back.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .protocol import ExecutionMode, StepStatus


class PilotSessionRecord(BaseModel):
    session_id: str
    current_epoch: int = Field(default=0, ge=0)
    max_epoch: int = Field(default=3, ge=0)
    title: str = ""
    input: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[Any] = None  # serialized ProgressPlan (str) or its dict form
    status: str = "executing"

    @field_validator("input", mode="before")
    @classmethod
    def _parse_input(cls, value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return {}
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                return {"query": value}
            return parsed if isinstance(parsed, dict) else {"query": value}
        return value

    @property
    def user_question(self) -> str:
        query = self.input.get("query")
        return query.strip() if isinstance(query, str) else ""


class PilotStepRecord(BaseModel):
    """A step previously dispatched by the caller."""

    step_id: str
    epoch: int = 0
    execution_mode: str = ExecutionMode.SUBTASK.value
    entity_id: Optional[str] = None
    name: str = ""
    status: str = StepStatus.WAITING.value
    raw_output: Optional[str] = None


class ActionResultRecord(BaseModel):
    """Externally reported execution result, keyed by result_id."""

    result_id: str
    output: Optional[str] = None
    errors: Any = None

    @property
    def error_message(self) -> Optional[str]:
        if self.errors is None:
            return None
        if isinstance(self.errors, str):
            return self.errors or None
        if not self.errors:
            return None
        try:
            return json.dumps(self.errors, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(self.errors)


class CanvasContentItem(BaseModel):
    id: str
    type: Literal["document", "skillResponse", "codeArtifact", "other"] = "other"
    title: Optional[str] = None
    content: Optional[str] = None
    content_preview: Optional[str] = None
    input_ids: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _unknown_type_is_other(cls, value: Any) -> str:
        if value in ("document", "skillResponse", "codeArtifact"):
            return value
        return "other"


class DeclaredTool(BaseModel):
    name: str
    description: str = ""


class ToolDefinition(BaseModel):
    description_by_locale: Dict[str, str] = Field(default_factory=dict)
    declared_tools: List[DeclaredTool] = Field(default_factory=list)


class ToolsetEntry(BaseModel):
    name: str
    tool_definition: ToolDefinition = Field(default_factory=ToolDefinition)

    def description(self, locale: Optional[str] = None) -> str:
        by_locale = self.tool_definition.description_by_locale
        if locale and by_locale.get(locale):
            return by_locale[locale]
        return by_locale.get("en") or next(iter(by_locale.values()), "") or "No description available"

    @property
    def declared_tool_names(self) -> List[str]:
        return [tool.name for tool in self.tool_definition.declared_tools]
