"""HTTP API: FastAPI app factory, request models and the server entry point."""
