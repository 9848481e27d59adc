"""Async LLM client utilities."""

from .openai_client import LLMCompletionClient, OpenAIClient

__all__ = ["LLMCompletionClient", "OpenAIClient"]
