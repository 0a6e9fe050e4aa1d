"""Command line entry point: rewrite a text file chunk by chunk through Gemini."""
from __future__ import annotations

import argparse
import logging
from argparse import ArgumentParser
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from .config import DEFAULT_CONFIG_PATH, AppConfig, EngineSettings
from .engine import BatchEngine, BatchObserver, RunAbortedError
from .gemini_client import GeminiClient, GenerationError
from .models import Chunk
from .storage import JsonChunkStore, StorageError
from .token_utils import build_token_counter, configure_token_counter

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_parser() -> ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m spokable",
        description="Rewrite long text into TTS-friendly prose with Gemini, chunk by chunk.",
    )
    parser.add_argument("-i", "--input", type=Path, help="UTF-8 text file to transform.")
    parser.add_argument("-o", "--output", type=Path, default=None, help="Destination file (default: <input>_spoken.txt).")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json/.yaml (user profile by default).")
    parser.add_argument("--storage-dir", type=Path, default=None, help="Directory for persisted chunk state and logs.")
    parser.add_argument("--api-key", default=None, help="Primary Gemini API key.")
    parser.add_argument("--backup-api-key", default=None, help="Backup Gemini API key used on auth/quota failures.")
    parser.add_argument(
        "-m",
        "--model",
        action="append",
        help="Model to try, in priority order (can be provided multiple times).",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Target tokens per chunk.")
    parser.add_argument("--overlap", type=int, default=None, help="Tokens shared between consecutive chunks.")
    parser.add_argument(
        "--turbo",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Dispatch several chunks concurrently (see --parallel).",
    )
    parser.add_argument("--parallel", type=int, default=None, help="Chunks per concurrent group in turbo mode.")
    parser.add_argument("--run-id", default=None, help="Identifier for the persisted run.")
    parser.add_argument("--resume", default=None, metavar="RUN_ID", help="Continue a persisted run instead of reading --input.")
    parser.add_argument("--retry-failed", type=int, default=0, help="Extra passes over failed chunks after the run.")
    parser.add_argument("--partial", action="store_true", help="Write the output even if some chunks failed.")
    parser.add_argument("--list-models", action="store_true", help="List models available for the API key and exit.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    return parser


def apply_overrides(args: argparse.Namespace, config: AppConfig) -> EngineSettings:
    settings = EngineSettings.from_config(config)
    if args.api_key:
        settings.api_key = args.api_key
    if args.backup_api_key:
        settings.backup_api_key = args.backup_api_key
    if args.model:
        settings.models = [model.strip() for model in args.model if model and model.strip()]
    if args.batch_size is not None:
        settings.batch_size = args.batch_size
    if args.overlap is not None:
        settings.overlap_size = args.overlap
    turbo = config.get("turbo_mode") if args.turbo is None else args.turbo
    parallel = args.parallel if args.parallel is not None else config.get("parallel_chunks")
    settings.dispatch_width = max(1, parallel) if turbo else 1
    if not settings.api_key:
        raise ValueError("A Gemini API key is required (config, --api-key or GEMINI_API_KEY).")
    if not settings.models:
        raise ValueError("At least one model must be configured.")
    return settings


class ConsoleObserver(BatchObserver):
    def on_progress(self, completed: int, total: int, chunk: Chunk, stage: str) -> None:
        if stage != "processing":
            _console_log("info", f"[{completed}/{total}] chunk {chunk.index + 1}: {stage}")

    def on_chunk_error(self, chunk: Chunk, index: int, error: Exception) -> None:
        _console_log("error", f"Chunk {index + 1} failed: {error}")


def _console_log(level: str, message: str) -> None:
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    if level.lower() == "success":
        prefix = "[OK]"
    elif level.lower() == "warning":
        prefix = "[WARN]"
    elif level.lower() == "error":
        prefix = "[ERR]"
    else:
        prefix = "[INFO]"
    print(f"{prefix} [{timestamp}] {message}")


def _output_path(args: argparse.Namespace, run_id: str) -> Path:
    if args.output:
        return args.output
    if args.input:
        return args.input.with_name(f"{args.input.stem}_spoken.txt")
    return Path(f"{run_id}_spoken.txt")


def _list_models(client: GeminiClient, api_key: str) -> int:
    for entry in client.list_models(api_key):
        name = str(entry.get("name") or "").replace("models/", "")
        methods: List[Any] = entry.get("supportedGenerationMethods") or []
        if "generateContent" in methods or not methods:
            print(name)
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)
    config = AppConfig(args.config or DEFAULT_CONFIG_PATH)
    if config.load_warning:
        _console_log("warning", config.load_warning)
    try:
        settings = apply_overrides(args, config)
    except ValueError as exc:
        parser.error(str(exc))
    if not args.list_models and not args.resume and not args.input:
        parser.error("--input is required unless --resume or --list-models is given.")

    try:
        store = JsonChunkStore(args.storage_dir or Path(config.get("storage_dir")))
    except StorageError as exc:
        _console_log("error", str(exc))
        return 1
    client = GeminiClient(log_sink=store)
    if args.list_models:
        try:
            return _list_models(client, settings.api_key)
        except GenerationError as exc:
            _console_log("error", str(exc))
            return 1

    configure_token_counter(build_token_counter(settings.models[0]))
    engine = BatchEngine(client, store, settings, observer=ConsoleObserver(), log_callback=_console_log)
    try:
        if args.resume:
            chunks = store.get_chunks_for_run(args.resume)
            if not chunks:
                _console_log("error", f"No persisted chunks for run {args.resume}.")
                return 1
            engine.run(chunks, run_id=args.resume)
        else:
            text = args.input.read_text(encoding="utf-8")
            engine.process_text(text, run_id=args.run_id)
        for _ in range(max(0, args.retry_failed)):
            if not engine.get_stats().failed or engine.cancelled:
                break
            engine.retry_failed()
    except (RunAbortedError, StorageError, OSError, UnicodeDecodeError) as exc:
        _console_log("error", f"Processing failed: {exc}")
        return 1

    stats = engine.get_stats()
    target = _output_path(args, engine.run_id or "run")
    if stats.failed or stats.pending:
        if not args.partial:
            _console_log(
                "warning",
                f"{stats.failed} chunk(s) failed and {stats.pending} pending; "
                f"re-run with --resume {engine.run_id} or use --partial.",
            )
            return 2
    target.write_text(engine.assemble_text(), encoding="utf-8")
    _console_log(
        "success",
        f"Wrote {stats.completed}/{stats.total} chunk(s) to {target} in {stats.elapsed:.1f}s (run {engine.run_id}).",
    )
    return 0
