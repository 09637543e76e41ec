"""
HTTP Provider Transport

Async httpx transport for the supported completion providers:

- openrouter, groq: OpenAI-compatible chat completions
- gemini: Google Generative Language `generateContent`

One request per call; retries belong to the Model Call Layer.
"""

from typing import Optional

import httpx

from .llm_client import CompletionTransport, TransportError


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

CHAT_COMPLETION_URLS = {
    "openrouter": OPENROUTER_API_URL,
    "groq": GROQ_API_URL,
}


class HttpCompletionTransport(CompletionTransport):
    """
    Async HTTP transport for all supported providers.

    Usage:
        async with HttpCompletionTransport() as transport:
            text = await transport.complete("Hello", "openrouter", "mistralai/mistral-7b-instruct", key)
    """

    def __init__(
        self,
        timeout: float = 120.0,
        temperature: float = 0.7,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.temperature = temperature
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def complete(self, prompt: str, provider: str, model: str, api_key: str) -> str:
        if provider == "gemini":
            return await self._complete_gemini(prompt, model, api_key)
        if provider in CHAT_COMPLETION_URLS:
            return await self._complete_chat(CHAT_COMPLETION_URLS[provider], prompt, model, api_key)
        raise TransportError(f"Unsupported provider: {provider}")

    async def _post(self, url: str, payload: dict, headers: dict, params: Optional[dict] = None) -> dict:
        client = await self._get_client()
        try:
            response = await client.post(url, json=payload, headers=headers, params=params)
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}")

        if response.status_code >= 400:
            body = response.text[:500]  # Truncate HTML garbage
            raise TransportError(
                f"API request failed: {response.status_code} - {body}",
                status=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError:
            raise TransportError(f"Invalid API response: not JSON: {response.text[:200]}")

        if isinstance(data, dict) and "error" in data:
            raise TransportError(f"API error: {data['error']}", status=response.status_code)
        return data

    async def _complete_chat(self, url: str, prompt: str, model: str, api_key: str) -> str:
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        data = await self._post(url, payload, headers)

        # Validate response structure
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise TransportError(f"Invalid API response: no choices returned. Response: {data}")

        message = choices[0].get("message") or {}
        if not isinstance(message.get("content"), str):
            raise TransportError(f"Invalid choice format: {choices[0]}")
        return message["content"]

    async def _complete_gemini(self, prompt: str, model: str, api_key: str) -> str:
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
        data = await self._post(GEMINI_API_URL.format(model=model), payload, headers)

        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError):
            raise TransportError(f"Invalid Gemini response: {str(data)[:200]}")
        if not text:
            raise TransportError("Invalid Gemini response: empty candidate text")
        return text
