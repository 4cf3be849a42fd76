"""Public HTTP API (FastAPI) for the Cabinet runtime."""
