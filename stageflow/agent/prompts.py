"""
Prompt Loading Utilities
========================

Functions for loading stage prompt templates from the prompts directory.
"""

import json
from pathlib import Path
from typing import Any

from stageflow.agent.models import Stage

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

TEST_MODE_NOTE = (
    "\n\n## Test mode\n\n"
    "This is a test invocation. Keep every string short and generate at most "
    "two small files."
)


def load_prompt(name: str) -> str:
    """Load a prompt template from the prompts directory."""
    prompt_path = PROMPTS_DIR / f"{name}.md"
    return prompt_path.read_text(encoding="utf-8")


def render_prompt(name: str, **values: Any) -> str:
    """
    Load a template and fill its ``{placeholder}`` slots.

    Templates contain literal JSON braces, so only the named placeholders are
    replaced. Non-string values are rendered as indented JSON.
    """
    text = load_prompt(name)
    for key, value in values.items():
        if not isinstance(value, str):
            value = json.dumps(value, indent=2, ensure_ascii=False) if value else "(none yet)"
        text = text.replace("{" + key + "}", value)
    return text


def get_stage_prompt(stage: Stage, test_mode: bool = False, **values: Any) -> str:
    """
    Build the system prompt for a stage.

    Args:
        stage: Stage whose template to use
        test_mode: Append the test-mode note
        **values: Placeholder values for the template

    Returns:
        Stage instructions followed by the shared response format
    """
    prompt = render_prompt(stage.value, **values) + "\n\n" + load_prompt("response_format")
    if test_mode:
        prompt += TEST_MODE_NOTE
    return prompt
