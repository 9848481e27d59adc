"""
Async LLM client utilities for OpenAI-compatible chat completion APIs.
"""

from typing import Dict, Any, List, Optional
import openai


class LLMCompletionClient:
    """
    Async generic wrapper for LLM chat completion endpoints.
    Accepts an async callable (OpenAI-compatible completion endpoint), error type, and an optional default_model.
    If model is not specified in completion/complete_text, self.default_model is used.
    """

    def __init__(self, completion_callable, error_type, default_model: str = None):
        self.completion_callable = completion_callable
        self.error_type = error_type
        self.default_model = default_model

    async def completion(
        self, messages: List[Dict[str, Any]], model: str = None, **kwargs
    ) -> Dict[str, Any]:
        """
        Run a chat completion. If model is not provided, uses self.default_model.
        """
        model_to_use = model or self.default_model
        if not model_to_use:
            raise ValueError("No model specified and no default_model set.")
        try:
            response = await self.completion_callable(
                model=model_to_use, messages=messages, **kwargs
            )
            return response.model_dump()
        except self.error_type as e:
            raise RuntimeError(f"LLM API error: {e}")

    async def complete_text(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        model: str = None,
        **kwargs,
    ) -> str:
        """
        Run a chat completion and return the first choice's text.
        A system prompt, when given, is prepended to the messages.
        """
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}] + list(messages)
        response = await self.completion(messages, model=model, **kwargs)
        choices = response.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""


class OpenAIClient(LLMCompletionClient):
    """
    Async OpenAI client for chat completion APIs.
    Optionally set a default_model for all completions.
    The base_url parameter can point at any OpenAI-compatible endpoint (Azure OpenAI, Gemini, local servers).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = None,
    ):
        self.async_client = openai.AsyncClient(api_key=api_key, base_url=base_url)
        super().__init__(
            self.async_client.chat.completions.create,
            openai.OpenAIError,
            default_model=default_model,
        )
