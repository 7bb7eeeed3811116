"""Ollama client implementation.

This module provides a client for interacting with Ollama LLM: text
generation for digest summaries and embeddings for the search index.
"""

from __future__ import annotations

import asyncio
import json
import socket
import urllib.error
import urllib.request
from typing import Any, Optional

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import OllamaConnectionError, OllamaInferenceError

logger = structlog.get_logger()

_TRANSIENT_HTTP = {408, 429, 500, 502, 503, 504}


class OllamaClient:
    """Ollama LLM client for AI inference.

    This client handles communication with the Ollama API
    for language model inference tasks.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Ollama client.

        Args:
            settings: Application settings. If None, uses default settings.
        """
        from mailbrief.config import get_settings

        self.settings = settings or get_settings()
        logger.info(
            "ollama_client_initialized",
            host=self.settings.ollama_host,
            model=self.settings.ollama_model,
        )

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        system: Optional[str] = None,
    ) -> dict[str, Any]:
        """Generate text using Ollama.

        Args:
            prompt: The prompt to send to the model.
            model: Model name to use. If None, uses default from settings.
            system: Optional system prompt.

        Returns:
            Response dictionary containing generated text under ``response``.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaInferenceError: If inference fails.
        """
        model = model or self.settings.ollama_model
        logger.info("generating_text", model=model, prompt_length=len(prompt))

        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system

        data = await asyncio.to_thread(self._post, "/api/generate", payload)
        if not isinstance(data.get("response"), str):
            raise OllamaInferenceError("Ollama generate response missing 'response'")
        return data

    async def embed(self, text: str, model: Optional[str] = None) -> list[float]:
        """Return a single embedding vector for ``text``.

        Tries the older ``/api/embeddings`` endpoint first and falls back to
        ``/api/embed`` on 404.
        """
        model = model or self.settings.embedding_model
        return await asyncio.to_thread(self._embed_sync, model, text)

    def _embed_sync(self, model: str, text: str) -> list[float]:
        try:
            data = self._post("/api/embeddings", {"model": model, "prompt": text})
            emb = data.get("embedding")
            if not isinstance(emb, list) or not emb:
                raise OllamaInferenceError("Ollama embeddings response missing 'embedding'")
            return [float(x) for x in emb]
        except _EndpointMissing:
            pass

        data = self._post("/api/embed", {"model": model, "input": text})
        # /api/embed returns {embeddings: [[...]]}
        embs = data.get("embeddings")
        if isinstance(embs, list) and embs and isinstance(embs[0], list):
            return [float(x) for x in embs[0]]
        raise OllamaInferenceError("Ollama embed response missing 'embeddings'")

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        host = self.settings.ollama_host.rstrip("/")
        req = urllib.request.Request(
            url=f"{host}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.settings.ollama_timeout) as resp:  # noqa: S310
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise _EndpointMissing(path) from e
            if e.code in _TRANSIENT_HTTP:
                raise OllamaConnectionError(f"Ollama {path} returned {e.code}") from e
            raise OllamaInferenceError(f"Ollama {path} returned {e.code}: {e.reason}") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise OllamaConnectionError(f"Unable to reach Ollama at {host}: {e}") from e
        except json.JSONDecodeError as e:
            raise OllamaInferenceError(f"Ollama {path} returned invalid JSON") from e


class _EndpointMissing(OllamaInferenceError):
    """The Ollama server does not expose the requested endpoint."""
