"""
Shared LLM gateway caller and JSON response parsing.

Every LLM-mediated component (ingestion extractor, dedup reviewer,
taxonomy classifier, entity synthesizer) goes through GatewayCaller.call()
and then extracts JSON from the possibly markdown-fenced reply.

Model selection is config-driven via ellie.json (models section); callers
never know which provider is behind the gateway.
"""

import hashlib
import json
import logging
import os
import threading
import time
import urllib.error
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from lib.errors import ConfigurationError, GatewayError, MalformedOutputError
from lib.providers import (
    AnthropicLLMProvider,
    LLMProvider,
    OpenAICompatibleLLMProvider,
    TestLLMProvider,
)

logger = logging.getLogger(__name__)

JSON_ONLY_SYSTEM_PROMPT = "Respond with JSON only. No explanation, no markdown fencing."

_RETRY_BASE_DELAY = 1.0  # seconds, doubled each retry
_RETRYABLE_HTTP_CODES = {408, 429, 500, 502, 503, 504, 529}


# ==========================================================================
# Provider resolution
# ==========================================================================

_provider: Optional[LLMProvider] = None
_provider_lock = threading.Lock()


def _build_llm_provider() -> LLMProvider:
    from config import get_config

    models = get_config().models
    provider = str(models.llm_provider or "anthropic").strip().lower()
    api_key = os.environ.get(models.api_key_env, "")
    if provider == "anthropic":
        return AnthropicLLMProvider(
            api_key=api_key,
            deep_model=models.deep_reasoning,
            fast_model=models.fast_reasoning,
            base_url=models.base_url,
        )
    if provider in ("openai", "openai-compatible"):
        return OpenAICompatibleLLMProvider(
            base_url=models.base_url or "http://localhost:8000",
            api_key=api_key,
            deep_model=models.deep_reasoning,
            fast_model=models.fast_reasoning,
        )
    if provider == "test":
        return TestLLMProvider(model=models.fast_reasoning)
    raise ConfigurationError(f"Unknown llm provider: {models.llm_provider}")


def get_llm_provider() -> LLMProvider:
    """Get the configured LLM provider (resolved on first call)."""
    global _provider
    if _provider is not None:
        return _provider
    with _provider_lock:
        if _provider is None:
            _provider = _build_llm_provider()
        return _provider


def set_llm_provider(provider: Optional[LLMProvider]) -> None:
    """Override the LLM provider (for tests); None resets to config."""
    global _provider
    with _provider_lock:
        _provider = provider


# ==========================================================================
# Gateway caller
# ==========================================================================

@dataclass
class GatewayCallResult:
    text: str
    model: str
    trace_id: str


class GatewayCaller:
    """Sends one prompt to the generative model for an org.

    ``expected_model_token`` guards against a gateway silently routing to a
    different model family: when set, the reported model name must contain
    it (case-insensitive).
    """

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        *,
        model_tier: str = "fast",
        expected_model_token: str = "",
        timeout: float = 90.0,
        max_tokens: int = 4000,
        max_retries: int = 0,
        system_prompt: str = JSON_ONLY_SYSTEM_PROMPT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._provider = provider
        self.model_tier = model_tier
        self.expected_model_token = str(expected_model_token or "").strip().lower()
        self.timeout = timeout if timeout and timeout > 0 else 90.0
        self.max_tokens = max_tokens
        self.max_retries = max(0, int(max_retries))
        self.system_prompt = system_prompt
        self._sleep = sleep

    @classmethod
    def from_config(cls, provider: Optional[LLMProvider] = None) -> "GatewayCaller":
        from config import get_config

        models = get_config().models
        return cls(
            provider,
            model_tier=models.gateway_tier,
            expected_model_token=models.expected_model_token,
            timeout=models.gateway_timeout_seconds,
            max_tokens=models.gateway_max_output,
            max_retries=models.gateway_max_retries,
        )

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_llm_provider()

    def call(self, org_id: str, prompt: str) -> GatewayCallResult:
        org_id = str(org_id or "").strip()
        if not org_id:
            raise ConfigurationError("org_id is required")
        prompt = str(prompt or "").strip()
        if not prompt:
            raise ConfigurationError("prompt is required")

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]
        llm = self.provider
        provider_name = llm.__class__.__name__
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = llm.llm_call(messages, self.model_tier, self.max_tokens, self.timeout)
                break
            except Exception as e:
                last_error = e
                retryable = isinstance(e, (TimeoutError, ConnectionError, OSError))
                if isinstance(e, urllib.error.HTTPError):
                    retryable = e.code in _RETRYABLE_HTTP_CODES
                if retryable and attempt < self.max_retries:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "[llm_clients] Retryable gateway error (%s) org=%s, attempt %s/%s, retrying in %.1fs",
                        getattr(e, "code", type(e).__name__),
                        org_id,
                        attempt + 1,
                        self.max_retries + 1,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                logger.error(
                    "[llm_clients] gateway call failed provider=%s org=%s: %s",
                    provider_name,
                    org_id,
                    e,
                )
                raise GatewayError(
                    f"gateway call failed (provider={provider_name}, tier={self.model_tier}, "
                    f"error_type={type(e).__name__}, error={e})"
                ) from e
        else:  # pragma: no cover - loop always breaks or raises
            raise GatewayError(f"gateway call failed: {last_error}")

        if result.truncated:
            logger.warning("[llm_clients] Response truncated (max_tokens) for model=%s", result.model)
        text = str(result.text or "").strip()
        if not text:
            raise GatewayError(f"gateway payload is empty (provider={provider_name})")

        model = str(result.model or "").strip()
        if self.expected_model_token and self.expected_model_token not in model.lower():
            raise GatewayError(
                f"gateway model {model!r} does not include required token {self.expected_model_token!r}"
            )
        return GatewayCallResult(
            text=text,
            model=model,
            trace_id=str(result.trace_id or "").strip() or uuid.uuid4().hex,
        )


# ==========================================================================
# JSON extraction
# ==========================================================================

def parse_json_response(text: str) -> Optional[object]:
    """Strip markdown fences and parse JSON from an LLM response.

    Handles responses wrapped in ```json ... ``` blocks as well as bare JSON
    and JSON embedded in prose. Returns parsed JSON (dict or list) or None
    on failure.
    """
    if not text:
        return None

    cleaned = text.strip()
    parse_errors = []

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        parse_errors.append(f"direct parse failed at line {e.lineno}, col {e.colno}: {e.msg}")

    if "```" in cleaned:
        for part in cleaned.split("```"):
            candidate = part.strip()
            if candidate.startswith("json"):
                candidate = candidate[4:].strip()
            if candidate and candidate[0] in "{[":
                try:
                    return json.loads(candidate)
                except json.JSONDecodeError as e:
                    parse_errors.append(f"fenced parse failed at line {e.lineno}, col {e.colno}: {e.msg}")

    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start_idx = cleaned.find(start_char)
        end_idx = cleaned.rfind(end_char)
        if start_idx != -1 and end_idx > start_idx:
            try:
                return json.loads(cleaned[start_idx:end_idx + 1])
            except json.JSONDecodeError as e:
                parse_errors.append(
                    f"substring parse ({start_char}...{end_char}) failed at line {e.lineno}, col {e.colno}: {e.msg}"
                )

    content_hash = hashlib.sha256(cleaned.encode("utf-8")).hexdigest()[:16]
    logger.warning(
        "[llm_clients] parse_json_response failed: %s; content_len=%d; content_sha256_prefix=%s",
        "; ".join(parse_errors[:3]),
        len(cleaned),
        content_hash,
    )
    return None


def extract_json_payload(text: str) -> Any:
    """Parse JSON from model output or raise MalformedOutputError."""
    if not str(text or "").strip():
        raise MalformedOutputError("empty output")
    parsed = parse_json_response(text)
    if parsed is None:
        raise MalformedOutputError("no json object found")
    return parsed
