"""
Step/plan schemas and JSON Schema validation for the pilot planning core.

This module defines:
    * Enumerations covering stage, subtask and external step status values.
    * JSON Schema documents for a single step proposal, a batch of steps and
      the planner response.
    * A StepValidator helper that validates model output end-to-end.
    * A StepDescriptor dataclass emitted to the caller for dispatch.

The same schema documents are handed to the model's structured output
capability and used to validate manually extracted JSON, so both paths accept
exactly the same shapes.
"""

from __future__ import annotations

from collections.abc import Mapping as _MappingABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

try:  # pragma: no cover - optional dependency guard
    from jsonschema import Draft202012Validator
    from jsonschema.exceptions import ValidationError as JSONSchemaValidationError
except ImportError as exc:  # pragma: no cover - bubble up clear guidance
    raise RuntimeError(
        "The 'jsonschema' package is required to use pilot validation utilities. "
        "Install it via `pip install jsonschema`."
    ) from exc


class WorkflowStage(str, Enum):
    RESEARCH = "research"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    CREATION = "creation"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SubtaskStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status vocabulary of dispatched steps as reported by the executor."""

    WAITING = "waiting"
    EXECUTING = "executing"
    FINISH = "finish"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    SUBTASK = "subtask"
    SUMMARY = "summary"


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


def _non_empty_string(description: str) -> Dict[str, Any]:
    return {
        "type": "string",
        "minLength": 1,
        "pattern": r"\S",
        "description": description,
    }


PILOT_STEP_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "description": "A single action step of the pilot",
    "required": ["name", "query", "contextItemIds", "workflowStage"],
    "properties": {
        "name": _non_empty_string("A clear and concise title for the step"),
        "query": _non_empty_string(
            "The objective of the step and the outcome it must produce"
        ),
        "contextItemIds": {
            "type": "array",
            "items": {"type": "string"},
            "default": [],
            "description": "The ID list of the relevant canvas items for this step",
        },
        "workflowStage": {
            "type": "string",
            "enum": [stage.value for stage in WorkflowStage],
            "description": "research (early) -> analysis -> synthesis -> creation (final)",
        },
        "context": {"type": "string"},
        "scope": {"type": "string"},
        "outputRequirements": {"type": "string"},
        "priority": {"type": "integer", "minimum": 1, "maximum": 5},
    },
}


PILOT_STEP_BATCH_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "description": "A list of steps of the pilot",
    "required": ["steps"],
    "properties": {
        "steps": {
            "type": "array",
            "items": {k: v for k, v in PILOT_STEP_SCHEMA.items() if k != "$schema"},
        },
    },
}


PLAN_RESPONSE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": [
        "userIntent",
        "taskComplexity",
        "stages",
        "currentStageSubtasks",
        "planningLogic",
        "estimatedTotalEpochs",
    ],
    "properties": {
        "userIntent": {"type": "string"},
        "taskComplexity": {
            "type": "string",
            "enum": [c.value for c in TaskComplexity],
        },
        "stages": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": [
                    "name",
                    "description",
                    "objectives",
                    "toolCategories",
                    "priority",
                    "estimatedEpochs",
                    "status",
                ],
                "properties": {
                    "name": _non_empty_string("Stage name"),
                    "description": {"type": "string"},
                    "objectives": {"type": "array", "items": {"type": "string"}},
                    "toolCategories": {"type": "array", "items": {"type": "string"}},
                    "priority": {"type": "number"},
                    "estimatedEpochs": {"type": "number"},
                    "status": {
                        "type": "string",
                        "enum": [s.value for s in StageStatus],
                    },
                },
            },
        },
        "currentStageSubtasks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "query", "status"],
                "properties": {
                    "name": _non_empty_string("Subtask name"),
                    "query": _non_empty_string("What this subtask accomplishes"),
                    "status": {
                        "type": "string",
                        "enum": [s.value for s in SubtaskStatus],
                    },
                    "context": {"type": "string"},
                    "scope": {"type": "string"},
                    "outputRequirements": {"type": "string"},
                },
            },
        },
        "planningLogic": {"type": "string"},
        "estimatedTotalEpochs": {"type": "number"},
        "previousExecutionSummary": {"type": "string"},
    },
}


class SchemaValidationError(ValueError):
    """Raised when a step, batch or plan response fails schema validation."""

    def __init__(self, message: str, errors: Optional[str] = None) -> None:
        super().__init__(message)
        self.errors = errors


def _field_path(exc: JSONSchemaValidationError, prefix: str = "") -> str:
    """Render the failing location as `steps[0].name` for error messages."""
    parts: List[str] = [prefix] if prefix else []
    for piece in exc.absolute_path:
        if isinstance(piece, int):
            if parts:
                parts[-1] = f"{parts[-1]}[{piece}]"
            else:
                parts.append(f"[{piece}]")
        else:
            parts.append(str(piece))
    # required-property failures point at the parent; name the missing key instead
    if exc.validator == "required" and isinstance(exc.instance, _MappingABC):
        for key in exc.validator_value:
            if key not in exc.instance:
                parts.append(str(key))
                break
    return ".".join(parts) or "<root>"


@dataclass
class StepDescriptor:
    """One ready-to-dispatch step returned to the caller."""

    name: str
    query: str
    workflow_stage: WorkflowStage
    context_item_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "query": self.query,
            "contextItemIds": list(self.context_item_ids),
            "workflowStage": WorkflowStage(self.workflow_stage).value,
        }


class StepValidator:
    def __init__(
        self,
        step_schema: Optional[Mapping[str, Any]] = None,
        batch_schema: Optional[Mapping[str, Any]] = None,
        plan_schema: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._step_validator = Draft202012Validator(dict(step_schema or PILOT_STEP_SCHEMA))
        self._batch_validator = Draft202012Validator(dict(batch_schema or PILOT_STEP_BATCH_SCHEMA))
        self._plan_validator = Draft202012Validator(dict(plan_schema or PLAN_RESPONSE_SCHEMA))

    @staticmethod
    def _validate(validator: Draft202012Validator, document: Any, label: str, prefix: str = "") -> None:
        errors = sorted(validator.iter_errors(document), key=lambda e: [str(p) for p in e.absolute_path])
        error = errors[0] if errors else None
        if error is None:
            return
        location = _field_path(error, prefix)
        raise SchemaValidationError(
            f"{label} validation failed at '{location}': {error.message}",
            errors=str(error),
        )

    def normalize_step(
        self,
        step: Mapping[str, Any],
        default_stage: Optional[WorkflowStage] = None,
    ) -> Dict[str, Any]:
        """
        Fill defaults for absent keys only: contextItemIds -> [] and, when a
        default is supplied, workflowStage. Present-but-invalid values are kept
        so validation can reject them.
        """
        normalized = dict(step)
        if normalized.get("contextItemIds") is None:
            normalized["contextItemIds"] = []
        if "workflowStage" not in normalized and default_stage is not None:
            normalized["workflowStage"] = WorkflowStage(default_stage).value
        return normalized

    def validate_step(self, step: Any) -> Dict[str, Any]:
        if not isinstance(step, _MappingABC):
            raise SchemaValidationError("Step must be a JSON object")
        self._validate(self._step_validator, step, "Step")
        return dict(step)

    def validate_batch(self, batch: Any) -> List[Dict[str, Any]]:
        if not isinstance(batch, _MappingABC):
            raise SchemaValidationError("Step batch must be a JSON object with a 'steps' list")
        self._validate(self._batch_validator, batch, "Step batch")
        return [dict(step) for step in batch["steps"]]

    def validate_plan_response(self, response: Any) -> Dict[str, Any]:
        if not isinstance(response, _MappingABC):
            raise SchemaValidationError("Plan response must be a JSON object")
        self._validate(self._plan_validator, response, "Plan response")
        return dict(response)

    def validate_descriptors(self, descriptors: Sequence[StepDescriptor]) -> None:
        for index, descriptor in enumerate(descriptors):
            self._validate(self._step_validator, descriptor.to_dict(), "Step", prefix=f"steps[{index}]")


__all__ = [
    "WorkflowStage",
    "StageStatus",
    "SubtaskStatus",
    "StepStatus",
    "ExecutionMode",
    "TaskComplexity",
    "PILOT_STEP_SCHEMA",
    "PILOT_STEP_BATCH_SCHEMA",
    "PLAN_RESPONSE_SCHEMA",
    "SchemaValidationError",
    "StepDescriptor",
    "StepValidator",
]
