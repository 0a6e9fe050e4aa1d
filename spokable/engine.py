from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence

from .config import EngineSettings
from .failover import FailoverPolicy, TerminalFailure
from .gemini_client import GeminiClient, GenerationError
from .models import Chunk, ChunkStatus, RunStats
from .segmenter import segment
from .storage import ChunkStore, StorageError

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str], None]
PAUSE_POLL_INTERVAL = 0.1


class RunAbortedError(RuntimeError):
    """Raised when a run cannot start, e.g. the store rejects the initial chunk states."""


class BatchObserver:
    """Receives run events. Subclass and override what you need."""

    def on_progress(self, completed: int, total: int, chunk: Chunk, stage: str) -> None:
        pass

    def on_chunk_complete(self, chunk: Chunk) -> None:
        pass

    def on_chunk_error(self, chunk: Chunk, index: int, error: Exception) -> None:
        pass


class BatchEngine:
    def __init__(
        self,
        client: GeminiClient,
        store: ChunkStore,
        settings: EngineSettings,
        *,
        observer: Optional[BatchObserver] = None,
        log_callback: Optional[LogCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.observer = observer or BatchObserver()
        self.log_callback = log_callback
        self._sleep = sleep
        self._clock = clock
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._cancel_event = threading.Event()
        # Set once a run has observed the cancel; the next run starts uncancelled.
        self._cancel_consumed = False
        self.chunks: List[Chunk] = []
        self.run_id: Optional[str] = None
        self.started_at: Optional[float] = None
        self.completed_count = 0

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _log(self, level: str, message: str) -> None:
        if self.log_callback:
            try:
                self.log_callback(level, message)
            except Exception:  # pragma: no cover
                logger.exception("Failed to emit log callback.")
        else:
            getattr(logger, level, logger.info)(message)

    # Run lifecycle -------------------------------------------------------
    def process_text(self, text: str, run_id: Optional[str] = None) -> List[Chunk]:
        chunks = segment(text, self.settings.batch_size, self.settings.overlap_size)
        if chunks:
            self._log("info", f"Split text into {len(chunks)} chunk(s).")
        else:
            self._log("warning", "No text to process.")
        return self.run(chunks, run_id=run_id)

    def run(
        self,
        chunks: Sequence[Chunk],
        run_id: Optional[str] = None,
        dispatch_width: Optional[int] = None,
    ) -> List[Chunk]:
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A run is already active on this engine.")
        try:
            self._start_run(chunks, run_id)
            try:
                for chunk in self.chunks:
                    self.store.save_chunk(self.run_id, chunk.snapshot())
            except (StorageError, OSError) as exc:
                raise RunAbortedError(f"Cannot persist initial chunk state: {exc}") from exc
            queue = [chunk for chunk in self.chunks if chunk.status is not ChunkStatus.SUCCESS]
            width = self._resolve_width(dispatch_width)
            if queue:
                self._log("info", f"Dispatching {len(queue)} chunk(s) with width {width}.")
            self._dispatch(queue, width)
            self._log_summary()
            return self.chunks
        finally:
            self._consume_cancel()
            self._run_lock.release()

    def retry_failed(self, dispatch_width: Optional[int] = None) -> List[Chunk]:
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A run is already active on this engine.")
        try:
            self._arm_cancel()
            with self._state_lock:
                failed = [chunk for chunk in self.chunks if chunk.status is ChunkStatus.ERROR]
            if failed:
                self._log("info", f"Retrying {len(failed)} failed chunk(s).")
                self._dispatch(failed, self._resolve_width(dispatch_width))
                self._log_summary()
            return self.chunks
        finally:
            self._consume_cancel()
            self._run_lock.release()

    def _start_run(self, chunks: Sequence[Chunk], run_id: Optional[str]) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.chunks = sorted(chunks, key=lambda chunk: chunk.index)
        for chunk in self.chunks:
            if chunk.status is not ChunkStatus.SUCCESS:
                chunk.reset()
        self.completed_count = sum(1 for chunk in self.chunks if chunk.status is ChunkStatus.SUCCESS)
        self.started_at = self._clock()
        self._arm_cancel()
        self._resume_event.set()

    def _resolve_width(self, dispatch_width: Optional[int]) -> int:
        return max(1, int(dispatch_width or self.settings.dispatch_width or 1))

    def _log_summary(self) -> None:
        stats = self.get_stats()
        level = "success" if not stats.failed and not stats.pending else "warning"
        self._log(
            level,
            f"Run {self.run_id}: {stats.completed}/{stats.total} chunk(s) succeeded, "
            f"{stats.failed} failed, {stats.pending} pending.",
        )

    # Controls ------------------------------------------------------------
    def pause(self) -> None:
        self._resume_event.clear()
        self._log("info", "Processing paused.")

    def resume(self) -> None:
        self._resume_event.set()
        self._log("info", "Processing resumed.")

    def cancel(self) -> None:
        with self._state_lock:
            self._cancel_event.set()
            self._cancel_consumed = False
        self._log("warning", "Processing cancelled.")

    def _arm_cancel(self) -> None:
        """Drop a cancel left over from a finished run; keep one requested since."""
        with self._state_lock:
            if self._cancel_consumed:
                self._cancel_event.clear()
                self._cancel_consumed = False

    def _consume_cancel(self) -> None:
        with self._state_lock:
            self._cancel_consumed = self._cancel_event.is_set()

    # Dispatch ------------------------------------------------------------
    def _dispatch(self, chunks: Sequence[Chunk], width: int) -> None:
        if width == 1:
            for position, chunk in enumerate(chunks):
                if not self._wait_for_dispatch():
                    return
                self._process_chunk(chunk)
                if position < len(chunks) - 1:
                    self._sleep(self.settings.rate_limit_delay)
            return
        groups = [list(chunks[i : i + width]) for i in range(0, len(chunks), width)]
        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="spokable-dispatch") as executor:
            for position, group in enumerate(groups):
                if not self._wait_for_dispatch():
                    return
                futures = [executor.submit(self._process_chunk, chunk) for chunk in group]
                for future in futures:
                    future.result()
                if position < len(groups) - 1:
                    self._sleep(self.settings.rate_limit_delay)

    def _wait_for_dispatch(self) -> bool:
        """Block while paused. Returns False once the run is cancelled."""
        if self.cancelled:
            return False
        while not self._resume_event.wait(PAUSE_POLL_INTERVAL):
            if self.cancelled:
                return False
        return not self.cancelled

    def _build_prompt(self, chunk: Chunk) -> str:
        instruction = self.settings.transform_prompt
        return f"{instruction}\n\n{chunk.text}" if instruction else chunk.text

    def _build_policy(self) -> FailoverPolicy:
        settings = self.settings
        return FailoverPolicy(
            self.client,
            settings.models,
            settings.api_key,
            settings.backup_api_key,
            settings.options,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            rate_limit_delay=settings.rate_limit_delay,
            timeout=settings.timeout,
            sleep=self._sleep,
        )

    def _process_chunk(self, chunk: Chunk) -> None:
        with self._state_lock:
            if self.cancelled:
                return
            if chunk.status is ChunkStatus.ERROR:
                chunk.reset()
            chunk.mark_processing()
        self._persist(chunk)
        self._notify_progress(chunk, "processing")

        try:
            result = self._build_policy().run(self._build_prompt(chunk))
        except (TerminalFailure, GenerationError) as exc:
            with self._state_lock:
                chunk.mark_error(str(exc))
            self._notify(self.observer.on_chunk_error, chunk, chunk.index, exc)
            self._log("error", f"Chunk {chunk.index + 1} failed after {chunk.attempts} attempt(s): {chunk.error}")
            self._record_log(
                {
                    "level": "error",
                    "type": "batch_error",
                    "run_id": self.run_id,
                    "chunk_id": chunk.id,
                    "chunk_index": chunk.index,
                    "error": chunk.error,
                    "attempts": chunk.attempts,
                }
            )
        else:
            with self._state_lock:
                chunk.mark_success(result.text, result.model, result.usage)
                self.completed_count += 1
            self._notify(self.observer.on_chunk_complete, chunk)

        self._persist(chunk)
        stage = "complete" if chunk.status is ChunkStatus.SUCCESS else "error"
        self._notify_progress(chunk, stage)

    def _persist(self, chunk: Chunk) -> None:
        with self._state_lock:
            snapshot = chunk.snapshot()
        try:
            self.store.save_chunk(self.run_id, snapshot)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to persist chunk %s: %s", chunk.id, exc)

    def _record_log(self, entry: dict) -> None:
        try:
            self.store.add_log_entry(entry)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to record %s log entry: %s", entry.get("type"), exc)

    def _notify_progress(self, chunk: Chunk, stage: str) -> None:
        self._notify(self.observer.on_progress, self.completed_count, len(self.chunks), chunk, stage)

    def _notify(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Observer callback %s failed.", getattr(callback, "__name__", callback))

    # Results -------------------------------------------------------------
    def assemble_text(self) -> str:
        with self._state_lock:
            parts = [
                (chunk.index, chunk.output or "")
                for chunk in self.chunks
                if chunk.status is ChunkStatus.SUCCESS
            ]
        parts.sort(key=lambda item: item[0])
        return "\n\n".join(output for _, output in parts)

    def get_stats(self) -> RunStats:
        with self._state_lock:
            statuses = [chunk.status for chunk in self.chunks]
        completed = statuses.count(ChunkStatus.SUCCESS)
        pending = statuses.count(ChunkStatus.PENDING)
        elapsed = self._clock() - self.started_at if self.started_at is not None else 0.0
        rate = elapsed / completed if completed else 0.0
        return RunStats(
            total=len(statuses),
            completed=completed,
            failed=statuses.count(ChunkStatus.ERROR),
            pending=pending,
            processing=statuses.count(ChunkStatus.PROCESSING),
            elapsed=elapsed,
            rate=rate,
            eta=rate * pending,
        )
