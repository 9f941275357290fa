"""
Control Directives
==================

Users (and test harnesses) can prefix a message with bracketed directives:

    [FORCE_AGENT:coding] [TEST_MODE] build me a landing page

``[FORCE_AGENT:<stage>]`` (alias ``[STAGE:<stage>]``) runs that stage's
strategy for the turn; ``[TEST_MODE]`` lets strategies skip expensive
prerequisites. Directives are only recognised at the front of the message,
in any order and any case, and are stripped before the text reaches a model.
"""

import re
from dataclasses import dataclass
from typing import Optional

from stageflow.agent.models import Stage
from stageflow.agent.stages import parse_stage
from stageflow.utils.errors import InvalidDirectiveError, InvalidStageError

_LEADING_DIRECTIVE = re.compile(
    r'^\s*\[\s*(FORCE_AGENT|STAGE|TEST_MODE)\s*(?::\s*([^\]]*?))?\s*\]',
    re.IGNORECASE,
)


@dataclass
class ParsedInput:
    """User text with its directives stripped."""
    text: str
    force_stage: Optional[Stage] = None
    test_mode: bool = False

    @property
    def forced(self) -> bool:
        return self.force_stage is not None


def parse_directives(raw: str) -> ParsedInput:
    """
    Strip leading directives from raw user input.

    Args:
        raw: Message as typed, directives included

    Returns:
        ParsedInput with the remaining text and the directive values

    Raises:
        InvalidDirectiveError: If a directive names an unknown stage, names
            the terminal stage, or is missing its argument
    """
    text = raw or ""
    force_stage: Optional[Stage] = None
    test_mode = False

    while True:
        match = _LEADING_DIRECTIVE.match(text)
        if match is None:
            break
        name = match.group(1).upper()
        argument = match.group(2)
        directive = match.group(0).strip()

        if name == "TEST_MODE":
            test_mode = True
        else:
            if not argument:
                raise InvalidDirectiveError(directive, "a stage name is required")
            try:
                stage = parse_stage(argument)
            except InvalidStageError:
                raise InvalidDirectiveError(directive, f"unknown stage '{argument}'") from None
            if stage == Stage.DONE:
                raise InvalidDirectiveError(directive, "the terminal stage has no agent")
            force_stage = stage

        text = text[match.end():]

    return ParsedInput(text=text.strip(), force_stage=force_stage, test_mode=test_mode)


def build_directive_prefix(force_stage: Optional[str] = None, test_mode: bool = False) -> str:
    """Render structured request fields back into directive form."""
    parts = []
    if force_stage:
        parts.append(f"[FORCE_AGENT:{force_stage}]")
    if test_mode:
        parts.append("[TEST_MODE]")
    return " ".join(parts) + " " if parts else ""
