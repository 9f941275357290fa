"""
Conversation agents: data model, stage table, directives, prompts, stage
strategies, session health and the stage orchestrator.
"""
