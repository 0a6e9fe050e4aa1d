from typing import Optional

from PyQt6.QtCore import QThread, pyqtSignal

from .engine import BatchEngine, BatchObserver
from .models import Chunk


class _SignalObserver(BatchObserver):
    def __init__(self, worker: "BatchWorker"):
        self._worker = worker

    def on_progress(self, completed: int, total: int, chunk: Chunk, stage: str) -> None:
        self._worker.progress.emit(completed, total, chunk.id, stage)

    def on_chunk_complete(self, chunk: Chunk) -> None:
        self._worker.chunk_completed.emit(chunk.id, chunk.index)

    def on_chunk_error(self, chunk: Chunk, index: int, error: Exception) -> None:
        self._worker.chunk_failed.emit(chunk.id, index, str(error))


class BatchWorker(QThread):
    """Runs a BatchEngine off the GUI thread and re-emits its events as signals."""

    progress = pyqtSignal(int, int, str, str)
    chunk_completed = pyqtSignal(str, int)
    chunk_failed = pyqtSignal(str, int, str)
    log_message = pyqtSignal(str, str)
    run_finished = pyqtSignal(str, str)
    run_failed = pyqtSignal(str)

    def __init__(self, engine: BatchEngine, text: str, run_id: Optional[str] = None):
        super().__init__()
        self.engine = engine
        self.text = text
        self.run_id = run_id
        engine.observer = _SignalObserver(self)
        engine.log_callback = lambda level, message: self.log_message.emit(level, message)

    def run(self):
        try:
            self.engine.process_text(self.text, run_id=self.run_id)
        except RuntimeError as exc:
            self.log_message.emit("error", f"Processing failed: {exc}")
            self.run_failed.emit(str(exc))
            return
        self.run_finished.emit(self.engine.run_id or "", self.engine.assemble_text())

    def pause(self):
        self.engine.pause()

    def resume(self):
        self.engine.resume()

    def cancel(self):
        self.engine.cancel()
