"""
Ellie ingestion worker: turns new chat messages into extracted memories.

Each room keeps a (created_at, id) cursor.  A run lists rooms needing
ingestion, fetches messages strictly after the cursor, groups them into
windows (time gap, or fixed count in backfill mode) and extracts memories
either through the LLM extractor or the keyword heuristics.  The cursor
only ever advances to the last window that was fully processed, so a
failed LLM window is retried on the next run.
"""

import logging
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from core.contracts.llm import IngestionExtractor, PromptBudgeter
from core.contracts.records import (
    ChatMessage,
    ExtractionResult,
    IngestionRunResult,
    NewMemory,
    RoomCursor,
    RoomIngestionCandidate,
    WindowRun,
)
from core.contracts.stores import IngestionStore, PauseChecker
from ingest.extractor import normalize_llm_candidate
from ingest.heuristics import derive_candidate_from_window
from ingest.windows import group_by_count, group_by_gap, split_window_by_prompt_budget
from lib.errors import ConfigurationError, GatewayError

logger = logging.getLogger(__name__)

MODE_NORMAL = "normal"
MODE_BACKFILL = "backfill"

LLM_MAX_ATTEMPTS = 3
LLM_BACKOFF_BASE = 0.5
LLM_BACKOFF_CAP = 8.0
LLM_JITTER_MS = 250

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class IngestionLLMError(GatewayError):
    """LLM extraction failed for at least one room and nothing was processed."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable


class _ExtractionFailed(Exception):
    def __init__(self, error: Exception, attempts: int):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


def is_retriable_llm_error(err: BaseException) -> bool:
    if err is None:
        return False
    if isinstance(err, (TimeoutError, ConnectionError)):
        return True
    if isinstance(err, IngestionLLMError) and err.retriable:
        return True
    msg = str(err).lower()
    if "not connected" in msg or "timed out" in msg or "deadline" in msg:
        return True
    if "websocket" in msg and any(code in msg for code in ("1006", "1001", "1012", "timeout")):
        return True
    if "bridge call failed" in msg:
        return True
    if "econnrefused" in msg or "connection refused" in msg:
        return True
    return "unexpected server response: 502" in msg or "bad gateway" in msg


def normalize_mode(mode: str) -> str:
    return MODE_BACKFILL if str(mode or "").strip().lower() == MODE_BACKFILL else MODE_NORMAL


class IngestionWorker:
    def __init__(
        self,
        store: IngestionStore,
        *,
        extractor: Optional[IngestionExtractor] = None,
        org_id: str = "",
        mode: str = MODE_NORMAL,
        batch_size: int = 100,
        max_per_room: int = 200,
        backfill_max_per_room: int = 250,
        backfill_window_size: int = 0,
        backfill_window_stride: int = 0,
        window_gap: timedelta = timedelta(minutes=15),
        interval: float = 300.0,
        bridge_retry_interval: float = 10.0,
        pause_checker: Optional[PauseChecker] = None,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.org_id = str(org_id or "").strip()
        self.mode = normalize_mode(mode)
        self.batch_size = batch_size if batch_size > 0 else 100
        self.max_per_room = max_per_room if max_per_room > 0 else 200
        self.backfill_max_per_room = backfill_max_per_room if backfill_max_per_room > 0 else 250
        self.backfill_window_size = max(0, int(backfill_window_size))
        self.backfill_window_stride = max(0, int(backfill_window_stride))
        self.window_gap = window_gap if window_gap and window_gap > timedelta(0) else timedelta(minutes=15)
        self.interval = interval if interval > 0 else 300.0
        self.bridge_retry_interval = bridge_retry_interval if bridge_retry_interval > 0 else 10.0
        self.pause_checker = pause_checker
        self.rng = rng or random.Random()
        self._sleep = sleep
        self._stop_event: Optional[threading.Event] = None
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, store, extractor=None, **kwargs) -> "IngestionWorker":
        from config import get_config

        cfg = get_config().ingestion
        return cls(
            store,
            extractor=extractor,
            mode=cfg.mode,
            batch_size=cfg.batch_size,
            max_per_room=cfg.max_per_room,
            backfill_max_per_room=cfg.backfill_max_per_room,
            backfill_window_size=cfg.backfill_window_size,
            backfill_window_stride=cfg.backfill_window_stride,
            window_gap=timedelta(minutes=cfg.window_gap_minutes),
            interval=cfg.interval_seconds,
            bridge_retry_interval=cfg.bridge_retry_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    def should_pause(self) -> bool:
        if self.pause_checker is None or not self.org_id:
            return False
        try:
            return bool(self.pause_checker.should_pause(self.org_id))
        except Exception as e:
            self.logger.warning("[ingest] pause check failed org=%s: %s", self.org_id, e)
            return False

    def start(self, stop_event: threading.Event) -> None:
        self._stop_event = stop_event
        while not stop_event.is_set():
            if self.should_pause():
                if stop_event.wait(self.interval):
                    break
                continue
            try:
                result = self.run_once()
            except ConfigurationError as e:
                self.logger.error("[ingest] stopping on configuration error: %s", e)
                raise
            except Exception as e:
                self.logger.error("[ingest] worker run failed: %s", e)
                wait_for = self.interval
                if isinstance(e, IngestionLLMError) and e.retriable:
                    wait_for = self.bridge_retry_interval
                if stop_event.wait(wait_for):
                    break
                continue
            if result.processed_messages > 0:
                continue
            if stop_event.wait(self.interval):
                break
        self.logger.info("[ingest] polling loop stopped")

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    def run_once(self) -> IngestionRunResult:
        if self.store is None:
            raise ConfigurationError("ingestion store is required")
        backfill = self.mode == MODE_BACKFILL
        max_per_room = self.backfill_max_per_room if backfill else self.max_per_room

        try:
            rooms = self.store.list_rooms_for_ingestion(self.batch_size, org_id=self.org_id or None)
        except Exception as e:
            raise RuntimeError(f"list rooms for ingestion: {e}") from e

        result = IngestionRunResult()
        saw_failure = False
        saw_retriable = False
        last_error: Optional[BaseException] = None

        for room in rooms:
            try:
                cursor = self.store.get_room_cursor(room.org_id, room.room_id)
            except Exception as e:
                raise RuntimeError(f"load room cursor {room.org_id}/{room.room_id}: {e}") from e

            after_created_at: Optional[datetime] = None
            after_message_id: Optional[str] = None
            if cursor is not None and cursor.last_message_id and cursor.last_message_created_at:
                after_created_at = cursor.last_message_created_at
                after_message_id = cursor.last_message_id
            elif backfill:
                after_created_at = EPOCH

            try:
                messages = self.store.list_room_messages_since(
                    room.org_id, room.room_id, after_created_at, after_message_id, max_per_room
                )
            except Exception as e:
                raise RuntimeError(
                    f"list room messages for ingestion {room.org_id}/{room.room_id}: {e}"
                ) from e
            if not messages:
                continue

            result.rooms_processed += 1
            error = self._ingest_room(room, messages, result)
            if error is not None:
                saw_failure = True
                last_error = error
                if is_retriable_llm_error(error):
                    saw_retriable = True

        if result.processed_messages == 0 and saw_failure:
            raise IngestionLLMError(
                f"ingestion llm extraction failed: {last_error}", retriable=saw_retriable
            ) from last_error

        self.logger.info(
            "[ingest] rooms=%d windows=%d messages=%d inserted=%d (llm=%d heuristic=%d)",
            result.rooms_processed,
            result.windows_processed,
            result.processed_messages,
            result.inserted_memories,
            result.inserted_llm_memories,
            result.inserted_heuristic_memories,
        )
        return result

    def _windows(self, messages: Sequence[ChatMessage]) -> List[List[ChatMessage]]:
        if self.mode == MODE_BACKFILL and self.backfill_window_size > 0:
            return group_by_count(messages, self.backfill_window_size, self.backfill_window_stride)
        return group_by_gap(messages, self.window_gap)

    def _sub_windows(self, room: RoomIngestionCandidate, window: List[ChatMessage]) -> List[List[ChatMessage]]:
        if self.extractor is not None and isinstance(self.extractor, PromptBudgeter):
            max_prompt_chars, max_message_chars = self.extractor.prompt_budget()
            return split_window_by_prompt_budget(
                room.org_id, room.room_id, window, max_prompt_chars, max_message_chars
            )
        return [window]

    def _ingest_room(
        self,
        room: RoomIngestionCandidate,
        messages: Sequence[ChatMessage],
        result: IngestionRunResult,
    ) -> Optional[BaseException]:
        """Process one room; return the LLM error that stopped it, if any."""
        last_successful: Optional[ChatMessage] = None
        failure: Optional[BaseException] = None

        for window in self._windows(messages):
            for sub in self._sub_windows(room, window):
                if not sub:
                    continue
                started = time.monotonic()
                run = WindowRun(
                    org_id=room.org_id,
                    room_id=room.room_id,
                    window_start_at=sub[0].created_at,
                    window_end_at=sub[-1].created_at,
                    first_message_id=sub[0].id.strip(),
                    last_message_id=sub[-1].id.strip(),
                    message_count=len(sub),
                    token_count=sum(m.token_count for m in sub if m.token_count > 0),
                )

                if self.extractor is not None:
                    run.llm_used = True
                    try:
                        candidates, extraction, attempts = self._extract_with_retry(room, sub)
                    except _ExtractionFailed as e:
                        self.logger.warning(
                            "[ingest] llm extraction failed room=%s: %s", room.room_id, e.error
                        )
                        run.llm_attempts = e.attempts
                        run.ok = False
                        run.error = str(e.error)
                        run.duration_ms = int((time.monotonic() - started) * 1000)
                        self._record_run(run)
                        failure = e.error
                        break

                    result.windows_processed += 1
                    result.processed_messages += len(sub)
                    for candidate in candidates:
                        if not self._insert(room, candidate):
                            continue
                        run.inserted_total += 1
                        result.inserted_memories += 1
                        result.inserted_llm_memories += 1
                        meta_type = str(candidate.metadata.get("type") or "").strip().lower()
                        if meta_type == "project":
                            run.inserted_projects += 1
                        elif meta_type == "issue":
                            run.inserted_issues += 1
                        else:
                            run.inserted_memories += 1
                        self.logger.debug(
                            "[ingest] extracted llm memory kind=%s room=%s", candidate.kind, room.room_id
                        )
                    run.llm_model = extraction.model
                    run.llm_trace_id = extraction.trace_id
                    run.llm_attempts = attempts
                else:
                    result.windows_processed += 1
                    result.processed_messages += len(sub)
                    candidate = derive_candidate_from_window(sub)
                    if candidate is not None and self._insert(room, candidate):
                        run.inserted_total = 1
                        run.inserted_memories = 1
                        result.inserted_memories += 1
                        result.inserted_heuristic_memories += 1
                        self.logger.debug(
                            "[ingest] extracted memory kind=%s room=%s", candidate.kind, room.room_id
                        )

                run.duration_ms = int((time.monotonic() - started) * 1000)
                self._record_run(run)
                last_successful = sub[-1]

            if failure is not None:
                break

        if last_successful is not None:
            try:
                self.store.upsert_room_cursor(RoomCursor(
                    org_id=room.org_id,
                    room_id=room.room_id,
                    last_message_id=last_successful.id,
                    last_message_created_at=last_successful.created_at,
                ))
            except Exception as e:
                raise RuntimeError(f"upsert room cursor {room.org_id}/{room.room_id}: {e}") from e
        return failure

    def _insert(self, room: RoomIngestionCandidate, memory: NewMemory) -> bool:
        try:
            return bool(self.store.insert_extracted_memory(memory))
        except Exception as e:
            raise RuntimeError(f"insert extracted memory for room {room.room_id}: {e}") from e

    def _record_run(self, run: WindowRun) -> None:
        try:
            self.store.create_window_run(run)
        except Exception as e:
            self.logger.warning("[ingest] failed to record window run room=%s: %s", run.room_id, e)

    def _backoff(self, seconds: float) -> None:
        """Retry delay; cut short when the polling loop is asked to stop."""
        if self._sleep is not None:
            self._sleep(seconds)
        elif self._stop_event is not None:
            self._stop_event.wait(seconds)
        else:
            time.sleep(seconds)

    def _extract_with_retry(
        self, room: RoomIngestionCandidate, window: List[ChatMessage]
    ) -> Tuple[List[NewMemory], ExtractionResult, int]:
        for attempt in range(1, LLM_MAX_ATTEMPTS + 1):
            try:
                extraction = self.extractor.extract(room.org_id, room.room_id, window)
            except Exception as e:
                if not is_retriable_llm_error(e) or attempt == LLM_MAX_ATTEMPTS:
                    raise _ExtractionFailed(e, attempt) from e
                backoff = min(LLM_BACKOFF_BASE * (2 ** (attempt - 1)), LLM_BACKOFF_CAP)
                jitter = self.rng.randrange(LLM_JITTER_MS) / 1000.0
                self.logger.info(
                    "[ingest] retrying llm extraction room=%s attempt=%d in %.2fs: %s",
                    room.room_id, attempt, backoff + jitter, e,
                )
                self._backoff(backoff + jitter)
                continue
            candidates = []
            for candidate in extraction.candidates:
                normalized = normalize_llm_candidate(room, window, extraction, candidate)
                if normalized is not None:
                    candidates.append(normalized)
            return candidates, extraction, attempt
        raise _ExtractionFailed(RuntimeError("llm extraction failed"), LLM_MAX_ATTEMPTS)
