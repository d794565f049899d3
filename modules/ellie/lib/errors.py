"""Error taxonomy shared by Ellie workers and services.

Workers distinguish four classes of failure:

  ConfigurationError      missing wiring (store, client, org id); never retried
  MalformedOutputError    LLM returned unusable output; counted and skipped
  DecisionValidationError output parsed but violates invariants; rejected
                          before any store mutation
  everything else         transient I/O, propagated to the polling loop
"""

from __future__ import annotations


class EllieError(Exception):
    """Base class for Ellie-specific failures."""


class ConfigurationError(EllieError, ValueError):
    """A required dependency or identifier is missing."""


class MalformedOutputError(EllieError):
    """An LLM response could not be parsed into the expected shape."""


class DecisionValidationError(EllieError):
    """A parsed decision violates a structural invariant."""


class EmbeddingMismatchError(EllieError):
    """Embedding count or dimension does not match what was requested."""


class RetrievalError(EllieError):
    """A retrieval tier lookup failed."""


class GatewayError(EllieError):
    """The LLM gateway call failed or returned an unexpected model."""
