from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
import json
import uuid

from .protocol import StageStatus, SubtaskStatus


def utc_now_iso() -> str:
    """UTC ISO-8601 timestamp with a trailing 'Z'."""
    iso = datetime.now(timezone.utc).isoformat()
    if iso.endswith("+00:00"):
        iso = iso[:-6] + "Z"
    return iso


def new_stage_id() -> str:
    return f"stage-{uuid.uuid4().hex[:12]}"


def new_subtask_id() -> str:
    return f"subtask-{uuid.uuid4().hex[:12]}"


def _coerce_status(value: Any, allowed: type, default: str) -> str:
    try:
        return allowed(value).value
    except ValueError:
        return default


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _has_id(record: Any) -> bool:
    """Stored records without an id cannot be reconciled and are skipped."""
    return isinstance(record, dict) and record.get("id") not in (None, "")


@dataclass
class Subtask:
    """
    One independent, parallel-safe unit of work inside a stage.

    - id: stable across reconciliation cycles; status updates attach to it
    - status: pending / executing / completed / failed
    - result_id: weak reference to the externally owned execution result
    """
    id: str
    name: str
    query: str = ""
    status: str = SubtaskStatus.PENDING.value
    context: str = ""
    scope: str = ""
    output_requirements: str = ""
    workflow_stage: Optional[str] = None
    context_item_ids: List[str] = field(default_factory=list)
    result_id: Optional[str] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in (SubtaskStatus.PENDING.value, SubtaskStatus.EXECUTING.value)

    @property
    def is_finished(self) -> bool:
        return self.status in (SubtaskStatus.COMPLETED.value, SubtaskStatus.FAILED.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "query": self.query,
            "status": self.status,
            "context": self.context,
            "scope": self.scope,
            "outputRequirements": self.output_requirements,
            "workflowStage": self.workflow_stage,
            "contextItemIds": list(self.context_item_ids),
            "resultId": self.result_id,
            "output": self.output,
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subtask":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unnamed Subtask",
            query=data.get("query") or "",
            status=_coerce_status(data.get("status"), SubtaskStatus, SubtaskStatus.PENDING.value),
            context=data.get("context") or "",
            scope=data.get("scope") or "",
            output_requirements=data.get("outputRequirements") or "",
            workflow_stage=data.get("workflowStage"),
            context_item_ids=_str_list(data.get("contextItemIds")),
            result_id=data.get("resultId"),
            output=data.get("output"),
            error_message=data.get("errorMessage"),
            created_at=data.get("createdAt") or utc_now_iso(),
            completed_at=data.get("completedAt"),
        )


@dataclass
class Stage:
    """
    A sequential phase of the plan.

    status only moves forward: pending -> in_progress -> completed.
    stage_progress is derived from the subtask completion ratio.
    """
    id: str
    name: str
    description: str = ""
    objectives: List[str] = field(default_factory=list)
    status: str = StageStatus.PENDING.value
    tool_categories: List[str] = field(default_factory=list)
    priority: int = 1
    estimated_epochs: int = 1
    stage_progress: int = 0
    summary: str = ""
    subtasks: List[Subtask] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def outcome(self) -> Optional[str]:
        if self.status != StageStatus.COMPLETED.value:
            return None
        if any(s.status == SubtaskStatus.FAILED.value for s in self.subtasks):
            return "completed_with_failures"
        return "succeeded"

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "objectives": list(self.objectives),
            "status": self.status,
            "toolCategories": list(self.tool_categories),
            "priority": self.priority,
            "estimatedEpochs": self.estimated_epochs,
            "stageProgress": self.stage_progress,
            "summary": self.summary,
            "outcome": self.outcome,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        subtasks = [Subtask.from_dict(s) for s in data.get("subtasks") or [] if _has_id(s)]
        progress = _coerce_int(data.get("stageProgress"), 0)
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unnamed Stage",
            description=data.get("description") or "",
            objectives=_str_list(data.get("objectives")),
            status=_coerce_status(data.get("status"), StageStatus, StageStatus.PENDING.value),
            tool_categories=_str_list(data.get("toolCategories")),
            priority=_coerce_int(data.get("priority"), 1),
            estimated_epochs=_coerce_int(data.get("estimatedEpochs"), 1),
            stage_progress=min(100, max(0, progress)),
            summary=data.get("summary") or "",
            subtasks=subtasks,
            created_at=data.get("createdAt") or utc_now_iso(),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class ProgressPlan:
    """
    Root aggregate for one user request.

    The plan is a value object: the engine receives it, works on a copy and
    hands the result back for the caller to persist.
    """
    stages: List[Stage] = field(default_factory=list)
    current_stage_index: int = 0
    overall_progress: int = 0
    last_updated: str = field(default_factory=utc_now_iso)
    planning_logic: str = ""
    user_intent: str = ""
    estimated_total_epochs: int = 1
    task_complexity: Optional[str] = None

    def touch(self) -> None:
        self.last_updated = utc_now_iso()

    def current_stage(self) -> Stage | None:
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    def find_in_progress_index(self) -> int:
        """First in_progress stage, 0 when none is. Diagnostic only."""
        for index, stage in enumerate(self.stages):
            if stage.status == StageStatus.IN_PROGRESS.value:
                return index
        return 0

    def stages_with_status(self, status: StageStatus) -> List[Stage]:
        return [s for s in self.stages if s.status == status.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [s.to_dict() for s in self.stages],
            "currentStageIndex": self.current_stage_index,
            "overallProgress": self.overall_progress,
            "lastUpdated": self.last_updated,
            "planningLogic": self.planning_logic,
            "userIntent": self.user_intent,
            "estimatedTotalEpochs": self.estimated_total_epochs,
            "taskComplexity": self.task_complexity,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressPlan":
        if not isinstance(data, dict):
            raise ValueError("Progress plan must be a JSON object")
        raw_stages = data.get("stages")
        if not isinstance(raw_stages, list):
            raise ValueError("Progress plan is missing its stage list")
        stages = [Stage.from_dict(s) for s in raw_stages if _has_id(s)]
        progress = _coerce_int(data.get("overallProgress"), 0)
        return cls(
            stages=stages,
            current_stage_index=max(0, _coerce_int(data.get("currentStageIndex"), 0)),
            overall_progress=min(100, max(0, progress)),
            last_updated=data.get("lastUpdated") or utc_now_iso(),
            planning_logic=data.get("planningLogic") or "",
            user_intent=data.get("userIntent") or "",
            estimated_total_epochs=_coerce_int(data.get("estimatedTotalEpochs"), 1),
            task_complexity=data.get("taskComplexity"),
        )

    @classmethod
    def from_json(cls, text: str) -> "ProgressPlan":
        return cls.from_dict(json.loads(text))

    def to_brief_text(self) -> str:
        """
        Compact text digest of the plan, used in re-planning prompts and logs.
        """
        lines = [f"Plan: {self.user_intent or 'untitled'} (overall {self.overall_progress}%)"]
        if self.planning_logic:
            lines.append(f"Logic: {self.planning_logic}")
        for index, stage in enumerate(self.stages):
            marker = "*" if index == self.current_stage_index else "-"
            lines.append(
                f"{marker} [{stage.status}] {stage.name} ({stage.stage_progress}%, "
                f"{len(stage.subtasks)} subtasks)"
            )
            if stage.summary:
                lines.append(f"    summary: {stage.summary}")
        return "\n".join(lines)


@dataclass
class PlanningContext:
    is_initial_plan: bool
    user_intent: str = ""
    current_stage_index: int = 0
    previous_execution_summary: Optional[str] = None
    is_fallback: bool = False


@dataclass
class PlanWithSubtasks:
    """Planner output: the staged plan plus subtasks for its active stage."""
    plan: ProgressPlan
    current_stage_subtasks: List[Subtask] = field(default_factory=list)
    planning_context: PlanningContext = field(
        default_factory=lambda: PlanningContext(is_initial_plan=True)
    )

    def to_progress_plan(self) -> ProgressPlan:
        """Attach the current-stage subtasks to the stage they were generated for."""
        plan = self.plan
        stage = plan.current_stage()
        if stage is not None and self.current_stage_subtasks:
            stage.subtasks = list(self.current_stage_subtasks)
        return plan
