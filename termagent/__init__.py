"""TermAgent: a terminal coding assistant driven by an LLM tool-call loop."""

__version__ = "0.1.0"
