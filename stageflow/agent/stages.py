"""
Stage table: ordering, progress and forward transitions.
"""

from typing import Dict, List, Optional

from stageflow.agent.models import Stage
from stageflow.utils.errors import InvalidStageError

STAGE_ORDER: List[Stage] = [
    Stage.WELCOME,
    Stage.INFO_COLLECTION,
    Stage.DESIGN,
    Stage.CODING,
    Stage.DONE,
]

# Progress reported once a session is positioned at the stage
STAGE_PROGRESS: Dict[Stage, int] = {
    Stage.WELCOME: 10,
    Stage.INFO_COLLECTION: 40,
    Stage.DESIGN: 70,
    Stage.CODING: 90,
    Stage.DONE: 100,
}

# Accepted spellings for stage names coming from users and models
STAGE_ALIASES: Dict[str, Stage] = {
    "info": Stage.INFO_COLLECTION,
    "info_collection": Stage.INFO_COLLECTION,
    "prompt_output": Stage.DESIGN,
    "page_design": Stage.DESIGN,
    "code_generation": Stage.CODING,
}


def parse_stage(name: str) -> Stage:
    """
    Resolve a stage name or alias.

    Raises:
        InvalidStageError: If the name matches no stage
    """
    key = (name or "").strip().lower().replace("-", "_")
    if key in STAGE_ALIASES:
        return STAGE_ALIASES[key]
    try:
        return Stage(key)
    except ValueError:
        raise InvalidStageError(name) from None


def stage_index(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage) -> Optional[Stage]:
    """The stage after ``stage``, or None for the terminal stage."""
    index = stage_index(stage)
    if index + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[index + 1]


def is_terminal(stage: Stage) -> bool:
    return stage == Stage.DONE


def stages_before(stage: Stage) -> List[Stage]:
    return STAGE_ORDER[:stage_index(stage)]


def progress_for(stage: Stage) -> int:
    return STAGE_PROGRESS[stage]
