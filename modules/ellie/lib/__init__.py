"""Shared library for the Ellie memory engine."""

from .config import get_db_path, get_ellie_home, get_ollama_url, get_embedding_model, get_embedding_dim
from .database import get_connection
from .embeddings import cosine_similarity, embed_text, embed_texts, pack_embedding, unpack_embedding
from .errors import (
    ConfigurationError,
    DecisionValidationError,
    EllieError,
    EmbeddingMismatchError,
    GatewayError,
    MalformedOutputError,
    RetrievalError,
)

__all__ = [
    # Config
    "get_db_path",
    "get_ellie_home",
    "get_ollama_url",
    "get_embedding_model",
    "get_embedding_dim",
    # Database
    "get_connection",
    # Embeddings
    "embed_text",
    "embed_texts",
    "pack_embedding",
    "unpack_embedding",
    "cosine_similarity",
    # Errors
    "EllieError",
    "ConfigurationError",
    "MalformedOutputError",
    "DecisionValidationError",
    "EmbeddingMismatchError",
    "RetrievalError",
    "GatewayError",
]
