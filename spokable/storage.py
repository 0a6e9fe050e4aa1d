"""Persistence adapters for chunk state and structured log entries."""
from __future__ import annotations

import json
import logging
import re
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Chunk

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"[^0-9A-Za-z_.-]+")


class StorageError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class ChunkStore:
    """Interface every store implements; the engine only talks to these methods."""

    def save_chunk(self, run_id: str, chunk: Chunk) -> None:
        raise NotImplementedError

    def get_chunks_for_run(self, run_id: str) -> List[Chunk]:
        raise NotImplementedError

    def list_runs(self) -> List[str]:
        raise NotImplementedError

    def delete_run(self, run_id: str) -> None:
        raise NotImplementedError

    def add_log_entry(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def clear_logs(self) -> None:
        raise NotImplementedError


class MemoryChunkStore(ChunkStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Chunk]] = {}
        self._logs: List[Dict[str, Any]] = []

    def save_chunk(self, run_id: str, chunk: Chunk) -> None:
        with self._lock:
            self._runs.setdefault(run_id, {})[chunk.id] = chunk.snapshot()

    def get_chunks_for_run(self, run_id: str) -> List[Chunk]:
        with self._lock:
            chunks = [chunk.snapshot() for chunk in self._runs.get(run_id, {}).values()]
        return sorted(chunks, key=lambda chunk: chunk.index)

    def list_runs(self) -> List[str]:
        with self._lock:
            return sorted(self._runs)

    def delete_run(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def add_log_entry(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._logs.append({**entry, "timestamp": time.time()})

    def get_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            return list(reversed(self._logs))[:limit]

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()


class JsonChunkStore(ChunkStore):
    """
    Directory-backed store.

    Layout::

        <root>/runs/<run_id>/<chunk_id>.json
        <root>/logs.jsonl
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.runs_dir = self.root / "runs"
        self.log_path = self.root / "logs.jsonl"
        self._log_lock = threading.Lock()
        try:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create storage directory {self.runs_dir}: {exc}") from exc

    def _run_dir(self, run_id: str) -> Path:
        safe = _SAFE_ID_RE.sub("_", run_id).strip("._")
        if not safe:
            raise StorageError(f"Invalid run id: {run_id!r}")
        return self.runs_dir / safe

    def save_chunk(self, run_id: str, chunk: Chunk) -> None:
        path = self._run_dir(run_id) / f"{_SAFE_ID_RE.sub('_', chunk.id)}.json"
        try:
            self._write_json_atomic(path, chunk.to_dict())
        except OSError as exc:
            raise StorageError(f"Failed to save chunk {chunk.id}: {exc}") from exc

    def get_chunks_for_run(self, run_id: str) -> List[Chunk]:
        run_dir = self._run_dir(run_id)
        if not run_dir.is_dir():
            return []
        chunks: List[Chunk] = []
        for path in sorted(run_dir.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                chunks.append(Chunk.from_dict(payload))
            except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
                raise StorageError(f"Corrupt chunk file {path}: {exc}") from exc
        return sorted(chunks, key=lambda chunk: chunk.index)

    def list_runs(self) -> List[str]:
        return sorted(path.name for path in self.runs_dir.iterdir() if path.is_dir())

    def delete_run(self, run_id: str) -> None:
        run_dir = self._run_dir(run_id)
        if run_dir.exists():
            shutil.rmtree(run_dir, ignore_errors=True)

    def add_log_entry(self, entry: Dict[str, Any]) -> None:
        line = json.dumps({**entry, "timestamp": time.time()}, ensure_ascii=False, default=str)
        with self._log_lock:
            try:
                with self.log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                raise StorageError(f"Failed to write log entry: {exc}") from exc

    def get_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with self._log_lock:
            lines = self.log_path.read_text(encoding="utf-8").splitlines()
        for line in reversed(lines):
            if len(entries) >= limit:
                break
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable log line in %s", self.log_path)
        return entries

    def clear_logs(self) -> None:
        with self._log_lock:
            if self.log_path.exists():
                self.log_path.unlink()

    @staticmethod
    def _write_json_atomic(path: Path, payload: Any, *, indent: Optional[int] = 2) -> None:
        tmp = path.with_suffix(path.suffix + f".tmp_{uuid.uuid4().hex}")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=indent), encoding="utf-8")
        tmp.replace(path)
