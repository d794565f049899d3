"""Context injection worker: surfaces relevant memories into live rooms."""

import hashlib
import logging
from datetime import datetime
from typing import Optional

from core.contracts.records import InjectionMessage
from core.contracts.stores import InjectionQueue
from core.injection.proactive import InjectionCandidate, ProactiveInjectionService
from lib.embeddings import embed_texts
from lib.errors import ConfigurationError
from lib.normalize import utc_now
from lib.polling import PollingWorker
from lib.providers import EmbeddingsProvider

logger = logging.getLogger(__name__)

SKIPPED_MESSAGE_TYPES = ("system", "context_injection")
INJECTION_MESSAGE_TYPE = "context_injection"


def deterministic_sender_id(org_id: str) -> str:
    """Stable UUID-shaped sender id for Ellie's own messages in an org."""
    org = str(org_id or "").strip() or "unknown-org"
    digest = hashlib.md5(f"{org}:ellie".encode("utf-8")).hexdigest()
    return f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"


class ContextInjectionWorker(PollingWorker):
    name = "context-injection"

    def __init__(
        self,
        queue: InjectionQueue,
        embedder: EmbeddingsProvider,
        service: Optional[ProactiveInjectionService] = None,
        *,
        batch_size: int = 50,
        max_memories: int = 5,
        cooldown_messages: int = 4,
        threshold: float = 0.62,
        poll_interval: float = 3.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue = queue
        self.embedder = embedder
        self.batch_size = batch_size if batch_size > 0 else 50
        self.max_memories = max_memories if max_memories > 0 else 5
        self.cooldown_messages = cooldown_messages if cooldown_messages > 0 else 4
        self.service = service or ProactiveInjectionService(threshold=threshold, max_items=self.max_memories)
        self.poll_interval = poll_interval if poll_interval > 0 else 3.0
        self.logger = logger or logging.getLogger(__name__)
        self._last_created_at: Optional[datetime] = None
        self._last_message_id: Optional[str] = None

    @classmethod
    def from_config(cls, queue, embedder, **kwargs) -> "ContextInjectionWorker":
        from config import get_config

        cfg = get_config().injection
        return cls(
            queue,
            embedder,
            ProactiveInjectionService(threshold=cfg.threshold, max_items=cfg.max_items),
            batch_size=cfg.batch_size,
            max_memories=cfg.max_memories,
            cooldown_messages=cfg.cooldown_messages,
            poll_interval=cfg.poll_interval_seconds,
            **kwargs,
        )

    def _run_batch(self) -> int:
        return self.run_once()

    def run_once(self) -> int:
        """Process one batch of pending messages; return injections made."""
        if self.queue is None:
            raise ConfigurationError("context injection queue is required")
        if self.embedder is None:
            raise ConfigurationError("context injection embedder is required")

        try:
            pending = self.queue.list_pending_messages_since(
                self._last_created_at, self._last_message_id, self.batch_size
            )
        except Exception as e:
            raise RuntimeError(f"list pending context injection messages: {e}") from e

        processed = 0
        for message in pending:
            self._last_created_at = message.created_at
            self._last_message_id = message.message_id.strip()

            if message.message_type in SKIPPED_MESSAGE_TYPES:
                continue

            try:
                since_last = self.queue.count_messages_since_last_context_injection(
                    message.org_id, message.room_id
                )
            except Exception as e:
                raise RuntimeError(f"count messages since last context injection: {e}") from e
            if since_last <= self.cooldown_messages:
                continue

            vector = embed_texts([message.body], self.embedder)[0]
            if not message.has_embedding:
                try:
                    self.queue.update_message_embedding(message.message_id, vector)
                except Exception as e:
                    raise RuntimeError(
                        f"update context injection message embedding {message.message_id}: {e}"
                    ) from e

            try:
                found = self.queue.search_memory_candidates_by_embedding(
                    message.org_id, vector, self.max_memories
                )
            except Exception as e:
                raise RuntimeError(
                    f"search context injection memory candidates for {message.message_id}: {e}"
                ) from e

            candidates = []
            for row in found:
                try:
                    already = self.queue.was_injected_since_compaction(
                        message.org_id, message.room_id, row.memory_id
                    )
                except Exception as e:
                    raise RuntimeError(
                        f"check context injection dedupe for memory {row.memory_id}: {e}"
                    ) from e
                if already:
                    continue
                candidates.append(InjectionCandidate(
                    memory_id=row.memory_id,
                    title=row.title,
                    content=row.content,
                    similarity=row.similarity,
                    importance=row.importance,
                    confidence=row.confidence,
                    occurred_at=row.occurred_at,
                    supersedes_memory_id=row.superseded_by,
                ))
            if not candidates:
                continue

            bundle = self.service.build_bundle(utc_now(), 0, 0, candidates)
            if not bundle.items or not bundle.body.strip():
                continue

            try:
                self.queue.create_injection_message(InjectionMessage(
                    org_id=message.org_id,
                    room_id=message.room_id,
                    sender_id=deterministic_sender_id(message.org_id),
                    body=bundle.body,
                    message_type=INJECTION_MESSAGE_TYPE,
                    created_at=utc_now(),
                    conversation_id=message.conversation_id,
                ))
            except Exception as e:
                raise RuntimeError(
                    f"create context injection message for {message.message_id}: {e}"
                ) from e
            for item in bundle.items:
                try:
                    self.queue.record_injection(message.org_id, message.room_id, item.memory_id, utc_now())
                except Exception as e:
                    raise RuntimeError(
                        f"record context injection ledger for memory {item.memory_id}: {e}"
                    ) from e
            processed += 1
            self.logger.info(
                "[injection] injected %d memories into room=%s", len(bundle.items), message.room_id
            )
        return processed
