"""Progress-plan orchestration for multi-stage LLM task execution."""

from .run_flow import PilotEngine, PilotRunResult, PlanningError

__all__ = ["PilotEngine", "PilotRunResult", "PlanningError"]
