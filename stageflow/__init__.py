"""
Stageflow
=========

Staged agent orchestration with incremental streaming responses.

Components:
- streaming: incremental parser, event router, response assembler, file extraction
- agent: session model, stage strategies and the stage orchestrator
- llm: streaming model clients
- database: session repositories
- api: FastAPI/SSE surface
"""

__version__ = "0.1.0"
