"""LLM client wrappers used by the content generator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

import requests
from requests import RequestException

from admitpulse.config import secret_from_env
from admitpulse.errors import ContentUnavailableError


class BaseLLMClient(Protocol):
    def generate(self, prompt: str) -> str:
        """Generate text from a prompt."""
        ...


@dataclass
class OllamaClient:
    model: str
    endpoint: str
    temperature: float = 0.0
    max_tokens: int | None = None
    timeout_seconds: float = 30

    def generate(self, prompt: str) -> str:
        url = f"{self.endpoint.rstrip('/')}/api/generate"
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        if self.max_tokens:
            payload["options"]["num_predict"] = self.max_tokens
        try:
            response = requests.post(url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
        except RequestException as exc:
            raise ContentUnavailableError(
                f"Unable to reach Ollama at {self.endpoint}. Ensure the service is running."
            ) from exc

        try:
            return response.json().get("response", "")
        except (ValueError, AttributeError) as exc:
            raise ContentUnavailableError("Invalid response from Ollama") from exc


@dataclass
class OpenAICompatibleClient:
    endpoint: str
    model: str
    temperature: float = 0.2
    max_tokens: int = 350
    timeout_seconds: float = 30
    api_key: str | None = None

    def generate(self, prompt: str) -> str:
        url = f"{self.endpoint.rstrip('/')}/chat/completions"
        system_prompt = "You write short admission outreach messages and follow the output format exactly."
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout_seconds)
            response.raise_for_status()
        except RequestException as exc:
            raise ContentUnavailableError(f"LLM server not reachable at {self.endpoint}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ContentUnavailableError("Invalid response from LLM server.") from exc

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return ""


def build_llm_client(content_cfg: Mapping[str, Any]) -> BaseLLMClient:
    provider = content_cfg.get("provider", "ollama")
    if provider == "ollama":
        return OllamaClient(
            model=content_cfg.get("model", "llama3.1:8b"),
            endpoint=content_cfg.get("endpoint", "http://localhost:11434"),
            temperature=content_cfg.get("temperature", 0.0),
            max_tokens=content_cfg.get("max_tokens"),
            timeout_seconds=content_cfg.get("timeout_seconds", 30),
        )
    if provider in {"lmstudio", "openai_compatible"}:
        return OpenAICompatibleClient(
            model=content_cfg.get("model", "local-model"),
            endpoint=content_cfg.get("endpoint", "http://127.0.0.1:1234/v1"),
            temperature=content_cfg.get("temperature", 0.2),
            max_tokens=content_cfg.get("max_tokens", 350),
            timeout_seconds=content_cfg.get("timeout_seconds", 30),
            api_key=secret_from_env(content_cfg, "api_key"),
        )
    raise ValueError(f"Unsupported LLM provider: {provider}")
