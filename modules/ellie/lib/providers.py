"""Provider ABCs and concrete implementations for LLM and embeddings.

Providers are the lowest-level abstraction for calling models.  The LLM
gateway caller (lib.llm_clients.GatewayCaller) and the embedding helpers
(lib.embeddings) sit on top of them; workers never talk to a provider
directly.

Concrete providers shipped:

  LLM:
    AnthropicLLMProvider          Anthropic Messages API (API key)
    OpenAICompatibleLLMProvider   any /v1/chat/completions endpoint
    TestLLMProvider               canned responses for tests

  Embeddings:
    OllamaEmbeddingsProvider   HTTP call to a local Ollama instance
    OpenAIEmbeddingsProvider   /v1/embeddings on an OpenAI-compatible API
    MockEmbeddingsProvider     deterministic MD5 vectors for tests
"""

import abc
import hashlib
import json
import logging
import os
import re
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import List, Optional, Sequence

from lib.fail_policy import is_fail_hard_enabled
logger = logging.getLogger(__name__)

MAX_EMBEDDING_INPUT_CHARS = 8000
EMBED_RETRIES = 3
EMBED_RETRY_BASE_DELAY = 0.2  # seconds, doubled each retry


# ═══════════════════════════════════════════════════════════════════════
# Dataclasses
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LLMResult:
    """Result from an LLM call."""
    text: Optional[str]
    duration: float
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    truncated: bool = False
    # Provider-side request id, surfaced as the gateway trace id.
    trace_id: str = ""


# ═══════════════════════════════════════════════════════════════════════
# LLM Provider ABC
# ═══════════════════════════════════════════════════════════════════════

class LLMProvider(abc.ABC):
    """Abstract LLM provider."""

    @abc.abstractmethod
    def llm_call(self, messages: list, model_tier: str = "fast",
                 max_tokens: int = 4000, timeout: float = 90) -> LLMResult:
        """Make an LLM call.

        Args:
            messages: List of dicts with 'role' and 'content' keys.
                      Roles: 'system', 'user'.
            model_tier: 'deep' (quality/slow) or 'fast' (cheap/fast).
            max_tokens: Maximum output tokens.
            timeout: Request timeout in seconds.

        Returns:
            LLMResult with response text and usage metadata.
        """
        ...

    @abc.abstractmethod
    def get_profiles(self) -> dict:
        """Return model profiles for each tier.

        Returns:
            {"deep": {"model": "...", "available": bool},
             "fast": {"model": "...", "available": bool}}
        """
        ...


# ═══════════════════════════════════════════════════════════════════════
# Embeddings Provider ABC
# ═══════════════════════════════════════════════════════════════════════

class EmbeddingsProvider(abc.ABC):
    """Abstract embeddings provider."""

    @abc.abstractmethod
    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate one embedding vector per input text, in input order.

        Returns an empty list on provider failure when failHard is disabled.
        """
        ...

    @abc.abstractmethod
    def dimension(self) -> int:
        """Return the embedding vector dimension."""
        ...

    @property
    @abc.abstractmethod
    def model_name(self) -> str:
        """Return the model name used for embeddings."""
        ...


def _truncate_inputs(texts: Sequence[str]) -> List[str]:
    out = []
    for text in texts:
        value = str(text or "")
        if len(value) > MAX_EMBEDDING_INPUT_CHARS:
            value = value[:MAX_EMBEDDING_INPUT_CHARS]
        out.append(value)
    return out


# ═══════════════════════════════════════════════════════════════════════
# Concrete LLM Providers
# ═══════════════════════════════════════════════════════════════════════

class AnthropicLLMProvider(LLMProvider):
    """Calls the Anthropic Messages API directly with an API key.

    Supports prompt caching via cache_control on the system block.
    """

    ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION = "2023-06-01"

    def __init__(self, api_key: str = "",
                 deep_model: str = "claude-sonnet-4-5",
                 fast_model: str = "claude-haiku-4-5",
                 base_url: str = ""):
        self._api_key = api_key
        self._deep_model = deep_model
        self._fast_model = fast_model
        self._base_url = base_url or self.ANTHROPIC_API_URL

    def _resolve_model(self, model_tier: str) -> str:
        if model_tier == "fast" and self._fast_model:
            return self._fast_model
        return self._deep_model

    def llm_call(self, messages, model_tier="fast",
                 max_tokens=4000, timeout=90):
        model = self._resolve_model(model_tier)
        system_prompt = ""
        user_message = ""
        for m in messages:
            if m["role"] == "system":
                system_prompt = m["content"]
            elif m["role"] == "user":
                user_message = m["content"]

        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": self.ANTHROPIC_VERSION,
        }

        body = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": user_message}],
        }
        if system_prompt:
            body["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]

        start_time = time.time()
        try:
            req = urllib.request.Request(self._base_url, data=json.dumps(body).encode(),
                                         headers=headers, method="POST")
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                request_id = resp.headers.get("request-id", "") if resp.headers else ""
                data = json.loads(resp.read().decode())
        except Exception as e:
            logger.error("[providers] Anthropic API error model=%s: %s", model, e)
            raise
        duration = time.time() - start_time

        if not isinstance(data, dict):
            raise RuntimeError(
                f"Anthropic API returned non-object JSON for model={model}: {type(data).__name__}"
            )
        usage = data.get("usage", {})
        if not isinstance(usage, dict):
            usage = {}
        content_blocks = data.get("content", [])
        if not isinstance(content_blocks, list):
            raise RuntimeError(
                f"Anthropic API returned invalid content payload for model={model}"
            )
        text_parts = [
            b["text"]
            for b in content_blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        return LLMResult(
            text="\n".join(text_parts).strip(),
            duration=duration,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            model=data.get("model", model),
            truncated=data.get("stop_reason", "") == "max_tokens",
            trace_id=str(request_id or data.get("id", "") or ""),
        )

    def get_profiles(self):
        return {
            "deep": {"model": self._deep_model, "available": bool(self._api_key)},
            "fast": {"model": self._fast_model, "available": bool(self._api_key)},
        }


class OpenAICompatibleLLMProvider(LLMProvider):
    """Calls any OpenAI-compatible API (vLLM, Ollama chat, LiteLLM, etc.)."""

    def __init__(self, base_url: str = "http://localhost:8000",
                 api_key: str = "",
                 deep_model: str = "", fast_model: str = ""):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._deep_model = deep_model
        self._fast_model = fast_model or deep_model

    def _resolve_model(self, model_tier: str) -> str:
        if model_tier == "fast" and self._fast_model:
            return self._fast_model
        return self._deep_model

    def llm_call(self, messages, model_tier="fast",
                 max_tokens=4000, timeout=90):
        model = self._resolve_model(model_tier)
        payload = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "max_tokens": max_tokens,
            "temperature": 0.0,
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        req = urllib.request.Request(
            f"{self._base_url}/v1/chat/completions",
            data=json.dumps(payload).encode(),
            headers=headers,
        )
        t0 = time.time()
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read())
        elapsed = time.time() - t0

        if not isinstance(data, dict):
            raise RuntimeError(f"OpenAI-compatible response must be a JSON object, got {type(data).__name__}")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise RuntimeError("OpenAI-compatible response missing non-empty choices array")
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first, dict) else {}
        content = message.get("content") if isinstance(message, dict) else None
        if content is None:
            raise RuntimeError("OpenAI-compatible response missing choices[0].message.content")
        # Strip thinking tags (Qwen3 and similar models)
        text = re.sub(r"<think>[\s\S]*?</think>\s*", "", str(content)).strip()
        usage = data.get("usage", {}) if isinstance(data.get("usage"), dict) else {}
        return LLMResult(
            text=text,
            duration=elapsed,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=str(data.get("model") or model),
            truncated=first.get("finish_reason") == "length",
            trace_id=str(data.get("id") or ""),
        )

    def get_profiles(self):
        return {
            "deep": {"model": self._deep_model, "available": True},
            "fast": {"model": self._fast_model, "available": True},
        }


class TestLLMProvider(LLMProvider):
    """Canned responses and call recording for tests.

    ``responses`` is consumed in order; once exhausted the last entry is
    repeated.  An entry that is an Exception instance is raised instead.
    """
    __test__ = False  # Not a pytest test class

    def __init__(self, responses: Optional[Sequence[object]] = None,
                 model: str = "claude-haiku-4-5"):
        self.calls: List[dict] = []
        self._responses = list(responses or ['{"candidates": []}'])
        self._model = model

    def llm_call(self, messages, model_tier="fast",
                 max_tokens=4000, timeout=90):
        self.calls.append({
            "messages": messages,
            "model_tier": model_tier,
            "max_tokens": max_tokens,
        })
        idx = min(len(self.calls) - 1, len(self._responses) - 1)
        response = self._responses[idx]
        if isinstance(response, BaseException):
            raise response
        return LLMResult(
            text=str(response),
            duration=0.01,
            input_tokens=100,
            output_tokens=50,
            model=self._model,
            trace_id=f"trace-{len(self.calls)}",
        )

    def get_profiles(self):
        return {
            "deep": {"model": self._model, "available": True},
            "fast": {"model": self._model, "available": True},
        }


# ═══════════════════════════════════════════════════════════════════════
# Concrete Embeddings Providers
# ═══════════════════════════════════════════════════════════════════════

class _HTTPEmbeddingsProvider(EmbeddingsProvider):
    """Retry/fail-hard envelope shared by the HTTP embedding providers."""

    provider_name = "http"

    def __init__(self, url: str, model: str, dim: int, timeout: float = 30):
        if not str(model or "").strip():
            raise ValueError(f"{self.provider_name} embedding model is required")
        self._url = url.rstrip("/")
        self._model = model
        self._dim = dim
        self._timeout = timeout

    def _request(self, inputs: List[str]) -> List[List[float]]:
        raise NotImplementedError

    def embed(self, texts):
        inputs = _truncate_inputs(texts or [])
        if not inputs:
            raise ValueError("embedding input is required")
        last_error = None
        for attempt in range(EMBED_RETRIES):
            try:
                return self._request(inputs)
            except (urllib.error.URLError, TimeoutError, OSError, ConnectionError) as e:
                last_error = e
                if attempt < EMBED_RETRIES - 1:
                    time.sleep(EMBED_RETRY_BASE_DELAY * (2 ** attempt))
                    continue
            except Exception as e:
                last_error = e
                break
        logger.error(
            "[providers] embeddings call failed provider=%s model=%s url=%s inputs=%d error=%s",
            self.provider_name,
            self._model,
            self._url,
            len(inputs),
            last_error,
        )
        if is_fail_hard_enabled():
            raise RuntimeError(
                f"{self.provider_name} embeddings provider failed while failHard is enabled: model={self._model}"
            ) from last_error
        return []

    def dimension(self):
        return self._dim

    @property
    def model_name(self):
        return self._model


class OllamaEmbeddingsProvider(_HTTPEmbeddingsProvider):
    """Generates embeddings via a local Ollama instance."""

    provider_name = "ollama"

    def __init__(self, url: str = "http://localhost:11434",
                 model: str = "nomic-embed-text", dim: int = 768,
                 timeout: float = 30):
        super().__init__(url, model, dim, timeout)

    def _request(self, inputs):
        data = json.dumps({
            "model": self._model,
            "input": inputs,
            "keep_alive": -1,
        }).encode("utf-8")
        req = urllib.request.Request(
            f"{self._url}/api/embed",
            data=data,
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(req, timeout=self._timeout) as resp:
            result = json.loads(resp.read().decode("utf-8"))
        embeddings = result.get("embeddings", []) if isinstance(result, dict) else []
        if not isinstance(embeddings, list):
            raise RuntimeError("Ollama embed response missing embeddings array")
        return [[float(x) for x in vector] for vector in embeddings]


class OpenAIEmbeddingsProvider(_HTTPEmbeddingsProvider):
    """Generates embeddings via an OpenAI-compatible /v1/embeddings endpoint."""

    provider_name = "openai"

    def __init__(self, url: str = "https://api.openai.com",
                 model: str = "text-embedding-3-small", dim: int = 1536,
                 api_key: str = "", timeout: float = 30):
        super().__init__(url, model, dim, timeout)
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")

    def _request(self, inputs):
        if not self._api_key:
            raise ValueError("openai embeddings api key is required")
        req = urllib.request.Request(
            f"{self._url}/v1/embeddings",
            data=json.dumps({"model": self._model, "input": inputs}).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        )
        with urllib.request.urlopen(req, timeout=self._timeout) as resp:
            result = json.loads(resp.read().decode("utf-8"))
        rows = result.get("data", []) if isinstance(result, dict) else []
        if not isinstance(rows, list):
            raise RuntimeError("OpenAI embeddings response missing data array")
        ordered = sorted(
            (row for row in rows if isinstance(row, dict)),
            key=lambda row: int(row.get("index", 0)),
        )
        return [[float(x) for x in row.get("embedding") or []] for row in ordered]


class MockEmbeddingsProvider(EmbeddingsProvider):
    """Deterministic MD5-based embeddings for testing."""

    def __init__(self, dim: int = 128):
        self._dim = max(16, int(dim))

    def _vector(self, text: str) -> List[float]:
        h = hashlib.md5(str(text).encode()).digest()
        raw = ([float(b) / 255.0 for b in h] * (self._dim // 16 + 1))[: self._dim]
        magnitude = sum(x * x for x in raw) ** 0.5
        return [x / magnitude for x in raw] if magnitude > 0 else raw

    def embed(self, texts):
        return [self._vector(t) for t in _truncate_inputs(texts or [])]

    def dimension(self):
        return self._dim

    @property
    def model_name(self):
        return "mock-md5"
