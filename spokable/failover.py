from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

from .gemini_client import DEFAULT_TIMEOUT, FailureKind, GeminiClient, GenerationError
from .models import GenerationOptions, GenerationResult

logger = logging.getLogger(__name__)


class TerminalFailure(RuntimeError):
    """Raised when no model/credential combination produced a result."""

    def __init__(self, message: str, last_error: Optional[GenerationError] = None):
        super().__init__(message)
        self.last_error = last_error

    @property
    def kind(self) -> FailureKind:
        return self.last_error.kind if self.last_error else FailureKind.UNKNOWN


class FailoverPolicy:
    """
    Retry one prompt across an ordered model list and a primary/backup key pair.

    Instances hold the active credential for a single call and must not be
    shared between concurrently dispatched chunks.
    """

    def __init__(
        self,
        client: GeminiClient,
        models: Sequence[str],
        primary_key: str,
        backup_key: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        rate_limit_delay: float = 1.0,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not models:
            raise ValueError("At least one model is required.")
        self.client = client
        self.models = list(models)
        self.primary_key = primary_key
        self.backup_key = backup_key or None
        self.options = options or GenerationOptions()
        self.max_retries = max(1, int(max_retries))
        self.retry_delay = retry_delay
        self.rate_limit_delay = rate_limit_delay
        self.timeout = timeout
        self._sleep = sleep
        self.active_key = primary_key
        self.using_backup = False

    def switch_to_backup(self) -> bool:
        if self.backup_key and not self.using_backup:
            self.active_key = self.backup_key
            self.using_backup = True
            return True
        return False

    def reset_to_primary(self) -> None:
        self.active_key = self.primary_key
        self.using_backup = False

    def run(self, prompt: str) -> GenerationResult:
        last_error: Optional[GenerationError] = None
        for model in self.models:
            attempt = 0
            while attempt < self.max_retries:
                try:
                    result = self.client.generate(
                        model, prompt, self.active_key, self.options, timeout=self.timeout
                    )
                except GenerationError as exc:
                    last_error = exc
                    if exc.kind is FailureKind.AUTH:
                        if self.switch_to_backup():
                            logger.info("Auth error on %s; switched to backup API key.", model)
                            continue
                        raise TerminalFailure(str(exc), last_error=exc) from exc
                    if exc.kind is FailureKind.RATE_LIMITED:
                        self._sleep(self.rate_limit_delay * (attempt + 1))
                        if attempt == self.max_retries // 2 and self.switch_to_backup():
                            logger.info("Rate limited on %s; switched to backup API key.", model)
                        attempt += 1
                        continue
                    if attempt >= self.max_retries - 1:
                        logger.warning("Model %s exhausted %d attempt(s): %s", model, self.max_retries, exc)
                        break
                    self._sleep(self.retry_delay * (2 ** attempt))
                    attempt += 1
                    continue
                self.reset_to_primary()
                return result
        detail = str(last_error) if last_error else "Unknown error"
        raise TerminalFailure(
            f"All models failed after {self.max_retries} retries. Last error: {detail}",
            last_error=last_error,
        )


def generate_with_failover(
    client: GeminiClient,
    primary_key: str,
    backup_key: Optional[str],
    models: Sequence[str],
    prompt: str,
    options: Optional[GenerationOptions] = None,
    **policy_kwargs,
) -> GenerationResult:
    policy = FailoverPolicy(client, models, primary_key, backup_key, options, **policy_kwargs)
    return policy.run(prompt)
