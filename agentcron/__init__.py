"""agentcron — scheduled LLM agent jobs."""

__version__ = "0.3.0"
