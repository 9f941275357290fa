"""
Tests for stage strategies and the strategy table.
"""

import pytest

from stageflow.agent.models import (
    ImmediateDisplay,
    PartialResponse,
    Session,
    Stage,
    SystemState,
)
from stageflow.agent.prompts import TEST_MODE_NOTE, get_stage_prompt, render_prompt
from stageflow.agent.strategies import (
    CodingStrategy,
    DesignStrategy,
    InfoCollectionStrategy,
    TurnContext,
    WelcomeStrategy,
    build_strategy_table,
    ensure_exhaustive,
)
from stageflow.utils.errors import ConfigurationError, MissingPrerequisiteError


def final_response(intent="respond", done=False, metadata=None, reply="ok"):
    return PartialResponse(
        immediate_display=ImmediateDisplay(reply=reply),
        system_state=SystemState(intent=intent, done=done, metadata=metadata or {}),
    )


class TestStrategyTable:

    def test_table_covers_every_agent_stage(self, test_config):
        table = build_strategy_table(test_config)

        assert set(table) == {Stage.WELCOME, Stage.INFO_COLLECTION, Stage.DESIGN, Stage.CODING}
        assert all(strategy.stage == stage for stage, strategy in table.items())
        assert table[Stage.CODING].extracts_files is True
        assert table[Stage.WELCOME].extracts_files is False

    def test_missing_stage_is_rejected(self, test_config):
        table = build_strategy_table(test_config)
        del table[Stage.DESIGN]

        with pytest.raises(ConfigurationError) as exc_info:
            ensure_exhaustive(table)
        assert exc_info.value.context == {"missing": ["design"]}

    def test_strategy_under_wrong_stage_is_rejected(self, test_config):
        table = build_strategy_table(test_config)
        table[Stage.DESIGN] = WelcomeStrategy(test_config)

        with pytest.raises(ConfigurationError):
            ensure_exhaustive(table)


class TestPrerequisites:

    def test_coding_requires_design_output(self, test_config):
        with pytest.raises(MissingPrerequisiteError) as exc_info:
            CodingStrategy(test_config).check_prerequisites(Session(), TurnContext(text="go"))
        assert exc_info.value.context["missing"] == ["design"]

    def test_coding_runs_with_design_output_or_in_test_mode(self, test_config):
        strategy = CodingStrategy(test_config)
        session = Session(stage_outputs={"design": {"summary": "A landing page"}})

        strategy.check_prerequisites(session, TurnContext(text="go"))
        strategy.check_prerequisites(Session(), TurnContext(text="go", test_mode=True))

    def test_design_requires_collected_data(self, test_config):
        strategy = DesignStrategy(test_config)
        with pytest.raises(MissingPrerequisiteError):
            strategy.check_prerequisites(Session(), TurnContext(text="go"))

        strategy.check_prerequisites(Session(collected_data={"name": "Acme"}), TurnContext(text="go"))

    def test_early_stages_have_no_prerequisites(self, test_config):
        WelcomeStrategy(test_config).check_prerequisites(Session(), TurnContext(text="hi"))
        InfoCollectionStrategy(test_config).check_prerequisites(Session(), TurnContext(text="hi"))


class TestBuildRequest:

    def test_request_uses_stage_model_prompt_and_history(self, test_config):
        test_config.models.design = "design-model"
        test_config.orchestrator.history_window = 2
        session = Session(collected_data={"business": "Bakery"})
        session.add_message("user", "first")
        session.add_message("assistant", "reply one")
        session.add_message("system", "Error: ignored")
        session.add_message("user", "make it blue")

        request = DesignStrategy(test_config).build_request(session, TurnContext(text="make it blue"))

        assert request.model == "design-model"
        assert request.stage == "design"
        assert request.messages == [
            {"role": "assistant", "content": "reply one"},
            {"role": "user", "content": "make it blue"},
        ]
        assert '"business": "Bakery"' in request.system_prompt
        assert request.max_tokens == test_config.llm.max_tokens

    def test_current_text_is_appended_when_not_in_history(self, test_config):
        request = WelcomeStrategy(test_config).build_request(Session(), TurnContext(text="hello"))
        assert request.messages == [{"role": "user", "content": "hello"}]

    def test_test_mode_caps_tokens_and_uses_text_as_design(self, test_config):
        test_config.orchestrator.test_mode_max_tokens = 100
        ctx = TurnContext(text="a pricing table", test_mode=True, forced=True)

        request = CodingStrategy(test_config).build_request(Session(), ctx)

        assert request.max_tokens == 100
        assert "a pricing table" in request.system_prompt
        assert request.system_prompt.endswith(TEST_MODE_NOTE)


class TestInterpret:

    def test_advance_intent(self, test_config):
        strategy = InfoCollectionStrategy(test_config)
        outcome = strategy.interpret(final_response("advance"), Session(), TurnContext(text="x"))
        assert outcome.advance is True

        outcome = strategy.interpret(final_response("ask"), Session(), TurnContext(text="x"))
        assert outcome.advance is False

    def test_welcome_completion_status_vetoes_advance(self, test_config):
        strategy = WelcomeStrategy(test_config)
        ctx = TurnContext(text="x")

        vetoed = strategy.interpret(final_response("advance", metadata={"completion_status": "incomplete"}),
                                    Session(), ctx)
        ready = strategy.interpret(final_response("advance", metadata={"completion_status": "ready"}),
                                   Session(), ctx)

        assert vetoed.advance is False
        assert ready.advance is True

    def test_welcome_needs_explicit_ready_status(self, test_config):
        strategy = WelcomeStrategy(test_config)

        outcome = strategy.interpret(final_response("advance"), Session(), TurnContext(text="x"))

        assert outcome.advance is False

    def test_coding_is_always_done_and_advances_outside_test_mode(self, test_config):
        strategy = CodingStrategy(test_config)

        normal = strategy.interpret(final_response(), Session(), TurnContext(text="x"))
        test_run = strategy.interpret(final_response(), Session(), TurnContext(text="x", test_mode=True))

        assert normal.done is True and normal.advance is True
        assert test_run.done is True and test_run.advance is False

    def test_missing_system_state(self, test_config):
        outcome = WelcomeStrategy(test_config).interpret(PartialResponse(), Session(), TurnContext(text="x"))
        assert outcome.advance is False
        assert outcome.done is False


class TestRecord:

    def test_collected_data_is_merged(self, test_config):
        session = Session(collected_data={"name": "Acme"})
        strategy = InfoCollectionStrategy(test_config)
        final = final_response(metadata={"collected_data": {"colors": ["blue"]}})

        strategy.record(session, strategy.interpret(final, session, TurnContext(text="x")))

        assert session.collected_data == {"name": "Acme", "colors": ["blue"]}
        assert session.stage_outputs["info_collection"]["immediate_display"]["reply"] == "ok"

    def test_design_output_is_summarised(self, test_config):
        session = Session()
        strategy = DesignStrategy(test_config)
        final = final_response(reply="Two-column hero", metadata={"design": {"layout": "hero"}})

        strategy.record(session, strategy.interpret(final, session, TurnContext(text="x")))

        assert session.stage_outputs["design"] == {"design": {"layout": "hero"}, "summary": "Two-column hero"}


class TestPrompts:

    def test_every_stage_prompt_includes_the_response_format(self):
        for stage in (Stage.WELCOME, Stage.INFO_COLLECTION, Stage.DESIGN, Stage.CODING):
            prompt = get_stage_prompt(stage, collected_data={}, design="x")
            assert "immediate_display" in prompt
            assert "{collected_data}" not in prompt

    def test_empty_values_render_as_placeholder_text(self):
        assert "(none yet)" in render_prompt("info_collection", collected_data={})
