"""Streaming tool-calling chat engine for OpenAI-compatible endpoints."""

__version__ = "0.1.0"
