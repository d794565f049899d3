"""Shared embedding utilities for Ellie.

Manages an EmbeddingsProvider singleton and the checked embedding entry
point every worker uses.

Provider resolution order:
  1. MOCK_EMBEDDINGS=1 env                → MockEmbeddingsProvider
  2. embeddings.provider == "openai"      → OpenAIEmbeddingsProvider
  3. embeddings.provider == "mock"        → MockEmbeddingsProvider
  4. Default                              → OllamaEmbeddingsProvider
"""

import math
import os
import struct
import threading
from typing import List, Optional, Sequence

from lib.errors import EmbeddingMismatchError
from lib.providers import (
    EmbeddingsProvider,
    MockEmbeddingsProvider,
    OllamaEmbeddingsProvider,
    OpenAIEmbeddingsProvider,
)


# ── Provider singleton ────────────────────────────────────────────────

_provider: Optional[EmbeddingsProvider] = None
_provider_lock = threading.Lock()


def _build_provider() -> EmbeddingsProvider:
    if os.environ.get("MOCK_EMBEDDINGS"):
        return MockEmbeddingsProvider()

    from config import get_config
    from .config import get_ollama_url

    cfg = get_config().embeddings
    provider = str(cfg.provider or "ollama").strip().lower()
    if provider == "mock":
        return MockEmbeddingsProvider(dim=cfg.dim)
    if provider == "openai":
        return OpenAIEmbeddingsProvider(
            url=cfg.base_url or "https://api.openai.com",
            model=cfg.model,
            dim=cfg.dim,
            api_key=os.environ.get(cfg.api_key_env, ""),
            timeout=cfg.timeout_seconds,
        )
    if provider != "ollama":
        raise ValueError(f"Unknown embeddings provider: {cfg.provider}")
    return OllamaEmbeddingsProvider(
        url=get_ollama_url(),
        model=cfg.model,
        dim=cfg.dim,
        timeout=cfg.timeout_seconds,
    )


def get_embeddings_provider() -> EmbeddingsProvider:
    """Get the current embeddings provider (auto-resolved on first call)."""
    global _provider
    if _provider is not None:
        return _provider
    with _provider_lock:
        if _provider is None:
            _provider = _build_provider()
        return _provider


def set_embeddings_provider(provider: EmbeddingsProvider) -> None:
    """Override the embeddings provider (for tests)."""
    global _provider
    with _provider_lock:
        _provider = provider


def reset_embeddings_provider() -> None:
    """Reset to auto-detection."""
    global _provider
    with _provider_lock:
        _provider = None


# ── Checked embedding ─────────────────────────────────────────────────

def embed_texts(texts: Sequence[str],
                provider: Optional[EmbeddingsProvider] = None) -> List[List[float]]:
    """Embed ``texts`` and verify count and dimension.

    Raises EmbeddingMismatchError when the provider returns the wrong
    number of vectors or a vector whose length differs from
    ``provider.dimension()``.
    """
    items = list(texts)
    if not items:
        return []
    embedder = provider or get_embeddings_provider()
    vectors = embedder.embed(items)
    if len(vectors) != len(items):
        raise EmbeddingMismatchError(
            f"embedding count mismatch: expected {len(items)}, got {len(vectors)}"
        )
    dim = embedder.dimension()
    for idx, vector in enumerate(vectors):
        if len(vector) != dim:
            raise EmbeddingMismatchError(
                f"embedding dimension mismatch at index {idx}: expected {dim}, got {len(vector)}"
            )
    return [list(v) for v in vectors]


def embed_text(text: str, provider: Optional[EmbeddingsProvider] = None) -> List[float]:
    return embed_texts([text], provider)[0]


def pack_embedding(embedding: Sequence[float]) -> bytes:
    """Pack embedding as float32 blob."""
    return struct.pack(f'{len(embedding)}f', *embedding)


def unpack_embedding(blob: Optional[bytes]) -> List[float]:
    """Unpack embedding from float32 blob."""
    if not blob:
        return []
    count = len(blob) // 4  # 4 bytes per float
    return list(struct.unpack(f'{count}f', blob))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine similarity, or None when lengths differ or a vector is zero."""
    if not a or len(a) != len(b):
        return None
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return None
    value = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    if math.isnan(value) or math.isinf(value):
        return None
    return value
