"""
Agent Strategies
================

One strategy per conversation stage. A strategy checks that the session holds
what its stage needs, builds the model request, and reads the stage outcome
out of the final assembled response.

Stages map to strategies through a closed table keyed by the Stage enum, and
``ensure_exhaustive`` rejects a table that leaves an agent stage unserved.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from stageflow.agent.models import HistoryEntry, PartialResponse, Session, Stage
from stageflow.agent.prompts import get_stage_prompt
from stageflow.agent.stages import STAGE_ORDER, is_terminal
from stageflow.llm.base import ModelRequest
from stageflow.utils.config import Config
from stageflow.utils.errors import ConfigurationError, MissingPrerequisiteError
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

ADVANCE_INTENTS = ("advance",)
READY = "ready"


@dataclass
class TurnContext:
    """Per-turn inputs that are not part of the session record."""
    text: str
    test_mode: bool = False
    forced: bool = False


@dataclass
class StageOutcome:
    """What a finished turn means for the session."""
    advance: bool = False
    done: bool = False
    output: Dict[str, Any] = field(default_factory=dict)


def _metadata(final: PartialResponse) -> Dict[str, Any]:
    if final.system_state is None:
        return {}
    return final.system_state.metadata or {}


def _history_messages(history: List[HistoryEntry], window: int) -> List[Dict[str, str]]:
    """Recent user/assistant turns in chat-API form."""
    turns = [entry for entry in history if entry.role in ("user", "assistant")]
    if window:
        turns = turns[-window:]
    else:
        turns = turns[-1:]
    return [{"role": entry.role, "content": entry.content} for entry in turns]


class AgentStrategy(ABC):
    """
    Base class for stage strategies.

    Subclasses set ``stage`` and ``agent_name`` and override the hooks whose
    default behaviour does not fit their stage.
    """
    stage: Stage
    agent_name: str
    extracts_files: bool = False

    def __init__(self, config: Config):
        self.config = config

    def check_prerequisites(self, session: Session, ctx: TurnContext) -> None:
        """
        Fail fast when upstream output is missing.

        Raises:
            MissingPrerequisiteError: If the stage cannot run yet
        """
        return None

    @abstractmethod
    def prompt_values(self, session: Session, ctx: TurnContext) -> Dict[str, Any]:
        """Placeholder values for the stage prompt template."""

    def max_tokens(self, ctx: TurnContext) -> int:
        if ctx.test_mode:
            return min(self.config.llm.max_tokens, self.config.orchestrator.test_mode_max_tokens)
        return self.config.llm.max_tokens

    def build_request(self, session: Session, ctx: TurnContext) -> ModelRequest:
        """Build the model request from session state and this turn's text."""
        messages = _history_messages(session.history, self.config.orchestrator.history_window)
        if not messages or messages[-1]["role"] != "user" or messages[-1]["content"] != ctx.text:
            messages.append({"role": "user", "content": ctx.text})

        return ModelRequest(
            model=self.config.models.for_stage(self.stage.value),
            system_prompt=get_stage_prompt(
                self.stage, ctx.test_mode, **self.prompt_values(session, ctx)
            ),
            messages=messages,
            max_tokens=self.max_tokens(ctx),
            temperature=self.config.llm.temperature,
            stage=self.stage.value,
        )

    def interpret(self, final: PartialResponse, session: Session, ctx: TurnContext) -> StageOutcome:
        """Read the stage outcome from the final assembled response."""
        state = final.system_state
        return StageOutcome(
            advance=bool(state and state.intent in ADVANCE_INTENTS),
            done=bool(state and state.done),
            output=final.to_dict(),
        )

    def record(self, session: Session, outcome: StageOutcome) -> None:
        """Store the stage's output on the session."""
        session.stage_outputs[self.stage.value] = outcome.output

    def _merge_collected(self, session: Session, outcome: StageOutcome) -> None:
        collected = (outcome.output.get("system_state") or {}).get("metadata", {}).get("collected_data")
        if isinstance(collected, dict) and collected:
            session.collected_data.update(collected)
            logger.debug(
                "strategy.collected_data.merged",
                extra={"stage": self.stage.value, "keys": sorted(collected)}
            )


class WelcomeStrategy(AgentStrategy):
    """Greets the user and works out what they want to build."""
    stage = Stage.WELCOME
    agent_name = "WelcomeAgent"

    def prompt_values(self, session: Session, ctx: TurnContext) -> Dict[str, Any]:
        return {}

    def interpret(self, final: PartialResponse, session: Session, ctx: TurnContext) -> StageOutcome:
        outcome = super().interpret(final, session, ctx)
        # Leaving welcome needs an explicit "ready" completion status
        status = _metadata(final).get("completion_status")
        if status != READY:
            outcome.advance = False
        return outcome

    def record(self, session: Session, outcome: StageOutcome) -> None:
        super().record(session, outcome)
        self._merge_collected(session, outcome)


class InfoCollectionStrategy(AgentStrategy):
    """Collects the facts the page will be built from."""
    stage = Stage.INFO_COLLECTION
    agent_name = "InfoCollectionAgent"

    def prompt_values(self, session: Session, ctx: TurnContext) -> Dict[str, Any]:
        return {"collected_data": session.collected_data}

    def record(self, session: Session, outcome: StageOutcome) -> None:
        super().record(session, outcome)
        self._merge_collected(session, outcome)


class DesignStrategy(AgentStrategy):
    """Turns collected data into a design brief."""
    stage = Stage.DESIGN
    agent_name = "DesignAgent"

    def check_prerequisites(self, session: Session, ctx: TurnContext) -> None:
        if not session.collected_data and not ctx.test_mode:
            raise MissingPrerequisiteError(self.stage.value, ["collected_data"])

    def prompt_values(self, session: Session, ctx: TurnContext) -> Dict[str, Any]:
        return {"collected_data": session.collected_data}

    def record(self, session: Session, outcome: StageOutcome) -> None:
        metadata = (outcome.output.get("system_state") or {}).get("metadata") or {}
        reply = (outcome.output.get("immediate_display") or {}).get("reply", "")
        session.stage_outputs[self.stage.value] = {
            "design": metadata.get("design"),
            "summary": reply,
        }


class CodingStrategy(AgentStrategy):
    """Generates the page's source files."""
    stage = Stage.CODING
    agent_name = "CodingAgent"
    extracts_files = True

    def check_prerequisites(self, session: Session, ctx: TurnContext) -> None:
        if ctx.test_mode:
            return
        if not session.stage_outputs.get(Stage.DESIGN.value):
            raise MissingPrerequisiteError(self.stage.value, ["design"])

    def prompt_values(self, session: Session, ctx: TurnContext) -> Dict[str, Any]:
        if ctx.test_mode:
            # The user's own text stands in for the design brief
            return {"design": ctx.text}
        return {"design": session.stage_outputs.get(Stage.DESIGN.value)}

    def interpret(self, final: PartialResponse, session: Session, ctx: TurnContext) -> StageOutcome:
        outcome = super().interpret(final, session, ctx)
        outcome.done = True
        outcome.advance = not ctx.test_mode
        return outcome


STRATEGY_CLASSES = (WelcomeStrategy, InfoCollectionStrategy, DesignStrategy, CodingStrategy)


def build_strategy_table(config: Config) -> Dict[Stage, AgentStrategy]:
    """Instantiate one strategy per agent stage."""
    table = {cls.stage: cls(config) for cls in STRATEGY_CLASSES}
    ensure_exhaustive(table)
    return table


def ensure_exhaustive(table: Dict[Stage, AgentStrategy]) -> None:
    """
    Check that every non-terminal stage has a strategy.

    Raises:
        ConfigurationError: Naming the unserved stages
    """
    missing = [stage.value for stage in STAGE_ORDER if not is_terminal(stage) and stage not in table]
    if missing:
        raise ConfigurationError(
            f"No strategy registered for stage(s): {', '.join(missing)}",
            context={"missing": missing},
        )
    mismatched = [stage.value for stage, strategy in table.items() if strategy.stage != stage]
    if mismatched:
        raise ConfigurationError(
            f"Strategy registered under the wrong stage: {', '.join(mismatched)}",
            context={"mismatched": mismatched},
        )
