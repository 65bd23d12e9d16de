"""Multi-bot Discord relay for remote LLM inference endpoints."""

__version__ = "0.1.0"
