from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ChunkStatus(str, Enum):
    """Lifecycle of a chunk inside a run."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def from_value(cls, value: str) -> "ChunkStatus":
        normalized = (value or "").strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        raise ValueError(f"Unsupported chunk status: {value}")


@dataclass
class Chunk:
    index: int
    text: str
    start: int
    end: int
    tokens: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = 0
    output: Optional[str] = None
    error: Optional[str] = None
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ChunkStatus.SUCCESS, ChunkStatus.ERROR)

    def mark_processing(self) -> None:
        self.status = ChunkStatus.PROCESSING
        self.attempts += 1

    def mark_success(self, output: str, model: str, usage: Optional[Dict[str, Any]] = None) -> None:
        self.status = ChunkStatus.SUCCESS
        self.output = output
        self.model = model
        self.usage = dict(usage or {})
        self.error = None

    def mark_error(self, message: str) -> None:
        self.status = ChunkStatus.ERROR
        self.error = message or "Unknown error"
        self.output = None

    def reset(self) -> None:
        """Return an errored chunk to the queue."""
        self.status = ChunkStatus.PENDING
        self.error = None

    def snapshot(self) -> "Chunk":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "text": self.text,
            "start": self.start,
            "end": self.end,
            "tokens": self.tokens,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "model": self.model,
            "usage": self.usage,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Chunk":
        return cls(
            id=str(payload["id"]),
            index=int(payload["index"]),
            text=payload.get("text") or "",
            start=int(payload.get("start") or 0),
            end=int(payload.get("end") or 0),
            tokens=int(payload.get("tokens") or 0),
            status=ChunkStatus.from_value(payload.get("status") or "pending"),
            attempts=int(payload.get("attempts") or 0),
            output=payload.get("output"),
            error=payload.get("error"),
            model=payload.get("model"),
            usage=dict(payload.get("usage") or {}),
        )


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 4000
    system_instruction: str = ""

    def generation_config(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "maxOutputTokens": self.max_output_tokens,
        }


@dataclass(frozen=True)
class GenerationResult:
    text: str
    model: str
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    processing: int = 0
    elapsed: float = 0.0
    rate: float = 0.0
    eta: float = 0.0

    @property
    def percentage(self) -> float:
        return round(self.completed / self.total * 100, 1) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "processing": self.processing,
            "percentage": self.percentage,
            "elapsed_seconds": round(self.elapsed, 2),
            "rate_seconds": round(self.rate, 2),
            "eta_seconds": round(self.eta, 2),
        }
