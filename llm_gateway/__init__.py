"""Streaming chat gateway for interchangeable LLM backends."""

__version__ = "0.1.0"
