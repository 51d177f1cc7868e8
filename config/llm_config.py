# llm_config.py — Optional narrative rewriting via Groq / Ollama
# Provider selection and stdlib HTTP clients
"""
llm_config.py — LLM Configuration & Factory

Supports:
1. Groq API (cloud) - used when GROQ_API_KEY is set
2. Ollama (local) - fallback when no API key

The LLM only rewrites the deterministic profile narrative into prose.
Classification never depends on it.
"""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from dataclasses import dataclass


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_OLLAMA_MODEL = "tinyllama"
DEFAULT_GROQ_MODEL = "llama-3.1-8b-instant"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
GROQ_API_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 1024
REQUEST_TIMEOUT = 60  # seconds

NARRATIVE_SYSTEM_PROMPT = (
    "You are a data analyst. Rewrite threshold-based segment profiles as a short, "
    "clear paragraph for a business reader. Keep every number exactly as given. "
    "Do not invent categories, fields or figures."
)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class LLMError(Exception):
    """Base exception for LLM errors."""
    pass


class LLMConnectionError(LLMError):
    """Raised when the provider is not reachable."""
    pass


# =============================================================================
# SHARED PROMPTS
# =============================================================================

class _NarrativeMixin:
    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        raise NotImplementedError

    def rewrite_narrative(self, narrative: str, context: str | None = None) -> str:
        """
        Rewrite a deterministic profile narrative into prose.

        Args:
            narrative: Generated threshold/category description
            context: Optional business context (e.g. what the subject field is)

        Returns:
            Rewritten paragraph
        """
        context_str = f"\nContext: {context}" if context else ""
        prompt = f"""Rewrite this segment profile as one readable paragraph.{context_str}

Profile:
{narrative}

Paragraph:"""
        return self.generate(prompt, system_prompt=NARRATIVE_SYSTEM_PROMPT)


# =============================================================================
# OLLAMA CLIENT
# =============================================================================

@dataclass
class OllamaConfig:
    model: str = DEFAULT_OLLAMA_MODEL
    base_url: str = DEFAULT_OLLAMA_BASE_URL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout: int = REQUEST_TIMEOUT


class OllamaLLM(_NarrativeMixin):
    """Ollama client over urllib."""

    provider = "ollama"

    def __init__(self, config: OllamaConfig | None = None):
        self.config = config or OllamaConfig()

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def is_available(self) -> bool:
        try:
            request = urllib.request.Request(f"{self.base_url}/api/tags", method="GET")
            with urllib.request.urlopen(request, timeout=5) as response:
                return response.status == 200
        except (urllib.error.URLError, OSError):
            return False

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        """
        Generate a completion (non-streaming).

        Raises:
            LLMConnectionError: If the server is not reachable
            LLMError: On HTTP or decoding errors
        """
        payload = {
            "model": self.config.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        if system_prompt:
            payload["system"] = system_prompt

        request = urllib.request.Request(
            f"{self.base_url}/api/generate",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout) as response:
                result = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise LLMError(f"Ollama HTTP error {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise LLMConnectionError(
                f"Cannot connect to Ollama at {self.base_url}. Ensure Ollama is running: `ollama serve`"
            ) from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Invalid response from Ollama: {e}") from e

        return result.get("response", "").strip()


# =============================================================================
# GROQ CLIENT (Cloud LLM)
# =============================================================================

@dataclass
class GroqConfig:
    model: str = DEFAULT_GROQ_MODEL
    api_key: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout: int = REQUEST_TIMEOUT


class GroqLLM(_NarrativeMixin):
    """Groq client using the OpenAI-compatible chat completions API."""

    provider = "groq"

    def __init__(self, config: GroqConfig | None = None):
        self.config = config or GroqConfig()
        if not self.config.api_key:
            self.config.api_key = os.environ.get("GROQ_API_KEY", "")

    def is_available(self) -> bool:
        return bool(self.config.api_key)

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        if not self.config.api_key:
            raise LLMError("Groq API key not configured")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        request = urllib.request.Request(
            f"{GROQ_API_BASE_URL}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout) as response:
                result = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else str(e)
            raise LLMError(f"Groq API error ({e.code}): {error_body}") from e
        except urllib.error.URLError as e:
            raise LLMConnectionError(f"Groq request failed: {e}") from e

        try:
            return result["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected Groq response shape: {e}") from e


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def get_llm(model: str | None = None, prefer_cloud: bool = True) -> GroqLLM | OllamaLLM | None:
    """
    Pick a narrative LLM.

    Priority order (when prefer_cloud=True):
    1. Groq API (if GROQ_API_KEY is available)
    2. Ollama (local, if running)
    3. None (deterministic narrative only)
    """
    if prefer_cloud:
        groq_llm = GroqLLM(GroqConfig(model=model or DEFAULT_GROQ_MODEL))
        if groq_llm.is_available():
            return groq_llm

    ollama_llm = OllamaLLM(OllamaConfig(model=model or DEFAULT_OLLAMA_MODEL))
    if ollama_llm.is_available():
        return ollama_llm

    return None
