from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_MODEL = "gpt-4.1-mini"
MAX_STEPS_PER_EPOCH = 3
MAX_EPOCH = 3

_TRUE_VALUES = ("1", "true", "yes")


class PilotSettings(BaseModel):
    model: str = DEFAULT_MODEL
    max_steps_per_epoch: int = Field(default=MAX_STEPS_PER_EPOCH, ge=1)
    max_epoch: int = Field(default=MAX_EPOCH, ge=0)
    replan_each_tick: bool = False
    locale: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None


def load_settings(env: Optional[Mapping[str, str]] = None) -> PilotSettings:
    """
    Build settings from environment variables (or an explicit mapping).

    Numeric values are validated by pydantic, so a malformed
    PILOT_MAX_STEPS_PER_EPOCH raises a ValidationError instead of silently
    falling back.
    """
    source = os.environ if env is None else env

    def _get(key: str) -> Optional[str]:
        value = source.get(key)
        if value is None or not value.strip():
            return None
        return value.strip()

    values = {
        "model": _get("PILOT_MODEL"),
        "max_steps_per_epoch": _get("PILOT_MAX_STEPS_PER_EPOCH"),
        "max_epoch": _get("PILOT_MAX_EPOCH"),
        "locale": _get("PILOT_LOCALE"),
        "openai_api_key": _get("OPENAI_API_KEY"),
        "openai_base_url": _get("OPENAI_BASE_URL"),
    }
    replan = _get("PILOT_REPLAN_EACH_TICK")
    if replan is not None:
        values["replan_each_tick"] = replan.lower() in _TRUE_VALUES

    return PilotSettings(**{k: v for k, v in values.items() if v is not None})
