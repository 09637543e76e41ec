"""
Completion Transport Protocol

This module defines the interface every provider transport implements.
The Model Call Layer is the only caller; it owns retries, key resolution
and metering, so a transport makes exactly one request per `complete()`.

Example usage for a custom backend:

    from devpilot.llm_client import CompletionTransport

    class MyTransport(CompletionTransport):
        async def complete(self, prompt, provider, model, api_key):
            response = await my_internal_api.generate(prompt, model=model)
            return response.text

        async def close(self):
            pass
"""

from abc import ABC, abstractmethod
from typing import Optional


class TransportError(Exception):
    """
    A single provider request failed.

    `status` is the HTTP status for non-2xx replies and None for network
    errors or malformed response envelopes.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class CompletionTransport(ABC):
    """
    Abstract base class for provider transports.

    Required methods:
    - complete(): Send one prompt and return the completion text
    - close(): Clean up resources
    """

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        provider: str,
        model: str,
        api_key: str,
    ) -> str:
        """
        Send a single-turn prompt to a provider.

        Args:
            prompt: Full prompt text, sent as one user message
            provider: Provider name ("gemini", "openrouter", "groq", ...)
            model: Concrete model identifier
            api_key: Credential resolved by the Model Call Layer

        Returns:
            Raw completion text

        Raises:
            TransportError: on any failed request
        """
        pass

    @abstractmethod
    async def close(self):
        """Clean up resources (close HTTP clients, etc.)"""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SimpleTransport(CompletionTransport):
    """
    A transport that wraps an async callable.

    Useful for tests and quick integrations.

    Example:
        async def my_llm(prompt, provider, model):
            return '{"reasoning": "...", "plan": {}}'

        transport = SimpleTransport(my_llm)
    """

    def __init__(self, complete_fn):
        """
        Args:
            complete_fn: An async callable taking (prompt, provider, model)
                and returning the completion text
        """
        self.complete_fn = complete_fn
        self.requests: list[dict] = []

    async def complete(self, prompt: str, provider: str, model: str, api_key: str) -> str:
        self.requests.append({"prompt": prompt, "provider": provider, "model": model})
        return str(await self.complete_fn(prompt, provider, model))

    async def close(self):
        pass
