from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Protocol

import httpx

from .config import HgaConfig

logger = logging.getLogger(__name__)

CLAUDE_API_URL = "https://api.anthropic.com/v1/messages"
CLAUDE_API_VERSION = "2023-06-01"

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


class AiProviderError(RuntimeError):
    """KI-Anbieter nicht erreichbar oder Antwort unbrauchbar."""


class AiProvider(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def analyze(self, prompt: str, timeout: float) -> dict[str, Any]:
        ...


def extract_json_object(raw: str) -> dict[str, Any]:
    """JSON-Objekt aus LLM-Output lesen (mit/ohne Markdown-Fences)."""
    if not raw or not raw.strip():
        raise AiProviderError("Leere Antwort vom KI-Anbieter.")

    candidates = []
    fence_match = FENCE_PATTERN.search(raw)
    if fence_match:
        candidates.append(fence_match.group(1))
    object_match = OBJECT_PATTERN.search(raw)
    if object_match:
        candidates.append(object_match.group())
    candidates.append(raw.strip())

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise AiProviderError(f"Kein JSON-Objekt in KI-Antwort gefunden: {raw[:200]}")


class _HttpProvider:
    name = ""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client

    def _post(self, url: str, *, timeout: float, **kwargs: Any) -> dict[str, Any]:
        started = time.monotonic()
        try:
            if self._client is not None:
                response = self._client.post(url, timeout=timeout, **kwargs)
            else:
                with httpx.Client() as client:
                    response = client.post(url, timeout=timeout, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise AiProviderError(f"{self.name}: Zeitüberschreitung nach {timeout:.0f}s.") from exc
        except httpx.HTTPStatusError as exc:
            raise AiProviderError(
                f"{self.name}: HTTP {exc.response.status_code} ({exc.response.text[:200]})."
            ) from exc
        except httpx.HTTPError as exc:
            raise AiProviderError(f"{self.name}: nicht erreichbar ({exc}).") from exc
        except ValueError as exc:
            raise AiProviderError(f"{self.name}: Antwort ist kein JSON.") from exc
        logger.info("%s-Anfrage abgeschlossen in %.1fs.", self.name, time.monotonic() - started)
        return data


class OllamaProvider(_HttpProvider):
    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: HgaConfig) -> "OllamaProvider":
        return cls(config.ollama_url, config.ollama_model, config.ai_timeout)

    def is_available(self) -> bool:
        return bool(self.base_url and self.model)

    def analyze(self, prompt: str, timeout: float | None = None) -> dict[str, Any]:
        data = self._post(
            f"{self.base_url}/api/generate",
            timeout=timeout or self.timeout,
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": 0.1, "num_predict": 2048},
            },
        )
        raw = data.get("response", "") if isinstance(data, dict) else ""
        if not isinstance(raw, str):
            raise AiProviderError(f"Ollama: unerwarteter Antworttyp {type(raw).__name__}.")
        logger.info("Ollama-Antwort: %s Zeichen.", len(raw))
        return extract_json_object(raw)


class ClaudeProvider(_HttpProvider):
    name = "claude"

    def __init__(
        self,
        api_key: str = "",
        model: str = "claude-3-haiku-20240307",
        enabled: bool = False,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(client)
        self.api_key = api_key
        self.model = model
        self.enabled = enabled
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: HgaConfig) -> "ClaudeProvider":
        return cls(
            config.claude_api_key,
            config.claude_model,
            config.claude_enabled,
            config.ai_timeout,
        )

    def is_available(self) -> bool:
        return self.enabled and bool(self.api_key)

    def analyze(self, prompt: str, timeout: float | None = None) -> dict[str, Any]:
        if not self.is_available():
            raise AiProviderError("Claude ist nicht aktiviert oder ohne API-Schlüssel konfiguriert.")
        data = self._post(
            CLAUDE_API_URL,
            timeout=timeout or self.timeout,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": CLAUDE_API_VERSION,
                "content-type": "application/json",
            },
            json={
                "model": self.model,
                "max_tokens": 2048,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        try:
            raw = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AiProviderError("Claude: unerwartetes Antwortformat.") from exc
        if not isinstance(raw, str):
            raise AiProviderError(f"Claude: unerwarteter Antworttyp {type(raw).__name__}.")
        usage = data.get("usage") or {}
        logger.info(
            "Claude-Antwort: %s Zeichen, Tokens ein/aus %s/%s.",
            len(raw),
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
        )
        return extract_json_object(raw)


def default_providers(config: HgaConfig) -> dict[str, AiProvider]:
    return {
        OllamaProvider.name: OllamaProvider.from_config(config),
        ClaudeProvider.name: ClaudeProvider.from_config(config),
    }
