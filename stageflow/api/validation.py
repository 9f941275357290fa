"""
Input Validation
================

Pydantic models for API request bodies and responses.

Stage names are resolved through the stage alias table, so ``info`` and
``code_generation`` are accepted wherever a stage is expected.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from stageflow.agent.models import Stage
from stageflow.agent.stages import parse_stage
from stageflow.utils.errors import InvalidStageError

MAX_MESSAGE_LENGTH = 20000


def _stage_name(value: str, allow_terminal: bool) -> str:
    try:
        stage = parse_stage(value)
    except InvalidStageError as e:
        raise ValueError(str(e)) from None
    if stage == Stage.DONE and not allow_terminal:
        raise ValueError("The done stage has no agent to run")
    return stage.value


# =============================================================================
# API Request Models
# =============================================================================

class TurnRequest(BaseModel):
    """One user turn, with optional structured directives."""
    message: str = Field(
        ...,
        max_length=MAX_MESSAGE_LENGTH,
        description="User message; leading [FORCE_AGENT:<stage>] / [TEST_MODE] directives are honoured"
    )
    force_stage: Optional[str] = Field(
        None,
        description="Run this stage's agent for the turn regardless of the session stage"
    )
    test_mode: bool = Field(False, description="Skip prerequisites and cap output size")

    @field_validator('message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message must not be empty")
        return v

    @field_validator('force_stage')
    @classmethod
    def validate_force_stage(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return _stage_name(v, allow_terminal=False)


class ResetRequest(BaseModel):
    """Administrative reset of a session's stage."""
    stage: str = Field(..., description="Stage to move the session to")

    @field_validator('stage')
    @classmethod
    def validate_stage(cls, v: str) -> str:
        return _stage_name(v, allow_terminal=True)


# =============================================================================
# API Response Models
# =============================================================================

class SessionCreatedResponse(BaseModel):
    session_id: str


class SessionStatusResponse(BaseModel):
    """Summary returned after a reset."""
    model_config = {"extra": "ignore"}

    session_id: str
    status: str
    current_stage: str
    completed_stages: List[str] = []
    progress: int = 0
    metrics: Dict[str, Any] = {}
    running: bool = False
    health: str = "healthy"
