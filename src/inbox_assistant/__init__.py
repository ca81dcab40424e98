"""inbox-assistant - Gmail inbox browser with a streaming local-LLM relay."""

__version__ = "0.1.0"
