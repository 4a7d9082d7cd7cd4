"""
LLM completer collaborator.

The quality auditor hands a prompt to something with
``complete(prompt) -> str`` and treats the answer as advice. Any failure
(network, timeout, bad payload) is a CollaboratorError, which callers turn
into a graceful downgrade.
"""

from typing import Any, Dict, Optional

import httpx

from lore.errors import CollaboratorError
from lore.log import get_logger

logger = get_logger("lore.llm")


class Completer:
    """Collaborator contract: complete(prompt) -> text, or CollaboratorError."""

    name = "base"

    def complete(self, prompt: str) -> str:
        raise NotImplementedError


class OllamaCompleter(Completer):
    """Non-streaming completions from Ollama's /api/generate."""

    name = "ollama"

    def __init__(
        self,
        endpoint: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self._client = httpx.Client(
            base_url=endpoint.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def close(self):
        self._client.close()

    def complete(self, prompt: str) -> str:
        try:
            response = self._client.post(
                "/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False, "format": "json"},
            )
            response.raise_for_status()
            text = response.json().get("response", "")
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"LLM request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(f"LLM request failed: {e}") from e
        except ValueError as e:
            raise CollaboratorError(f"LLM sent malformed JSON: {e}") from e
        if not text:
            raise CollaboratorError("LLM returned an empty response")
        return text


def get_completer(config: Dict[str, Any]) -> OllamaCompleter:
    settings = config.get("llm", {})
    return OllamaCompleter(
        endpoint=settings.get("endpoint", "http://localhost:11434"),
        model=settings.get("model", "llama3.2"),
        timeout_seconds=float(settings.get("timeout_seconds", 30.0)),
    )
