"""Chunked, failure-tolerant text rewriting through the Gemini API."""

from .config import AppConfig, EngineSettings
from .engine import BatchEngine, BatchObserver, RunAbortedError
from .failover import FailoverPolicy, TerminalFailure, generate_with_failover
from .gemini_client import FailureKind, GeminiClient, GenerationError
from .models import Chunk, ChunkStatus, GenerationOptions, GenerationResult, RunStats
from .segmenter import segment
from .storage import ChunkStore, JsonChunkStore, MemoryChunkStore, StorageError

__all__ = [
    "AppConfig",
    "BatchEngine",
    "BatchObserver",
    "Chunk",
    "ChunkStatus",
    "ChunkStore",
    "EngineSettings",
    "FailoverPolicy",
    "FailureKind",
    "GeminiClient",
    "GenerationError",
    "GenerationOptions",
    "GenerationResult",
    "JsonChunkStore",
    "MemoryChunkStore",
    "RunAbortedError",
    "RunStats",
    "StorageError",
    "TerminalFailure",
    "generate_with_failover",
    "segment",
]
