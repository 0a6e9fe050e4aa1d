import threading
from typing import Callable, List, Optional, Tuple

import pytest

from spokable import token_utils
from spokable.config import EngineSettings
from spokable.gemini_client import FailureKind, GenerationError
from spokable.models import GenerationOptions, GenerationResult


@pytest.fixture(autouse=True)
def heuristic_token_counter():
    token_utils.configure_token_counter(None)
    yield
    token_utils.configure_token_counter(None)


class ScriptedClient:
    """Stands in for GeminiClient; ``handler(model, api_key, prompt)`` returns text or raises."""

    def __init__(self, handler: Callable[[str, str, str], str]):
        self.handler = handler
        self.calls: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def generate(
        self,
        model: str,
        prompt: str,
        api_key: str,
        options: Optional[GenerationOptions] = None,
        timeout: float = 60.0,
    ) -> GenerationResult:
        with self._lock:
            self.calls.append((model, api_key, prompt))
        text = self.handler(model, api_key, prompt)
        return GenerationResult(text=text, model=model, usage={"totalTokenCount": 7})


class RecordingSleep:
    def __init__(self, on_sleep: Optional[Callable[[float], None]] = None):
        self.delays: List[float] = []
        self._on_sleep = on_sleep

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._on_sleep:
            self._on_sleep(seconds)


def fail(kind: FailureKind, message: str = "boom") -> GenerationError:
    return GenerationError(message, kind=kind)


@pytest.fixture
def make_settings():
    def factory(**overrides) -> EngineSettings:
        values = dict(
            api_key="primary-key-0001",
            backup_api_key="",
            models=["gemini-test"],
            transform_prompt="",
            batch_size=100,
            overlap_size=10,
            max_retries=1,
            retry_delay=0.5,
            rate_limit_delay=0.25,
            dispatch_width=1,
            timeout=5.0,
        )
        values.update(overrides)
        return EngineSettings(**values)

    return factory


def always_raise(error: GenerationError) -> Callable[[str, str, str], str]:
    def handler(model: str, api_key: str, prompt: str) -> str:
        raise error

    return handler
