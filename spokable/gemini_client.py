from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from requests import Response, Session
from requests.exceptions import RequestException, Timeout

from .models import GenerationOptions, GenerationResult

logger = logging.getLogger(__name__)

API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 60.0


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


_STATUS_NAME_KINDS = {
    "UNAUTHENTICATED": FailureKind.AUTH,
    "PERMISSION_DENIED": FailureKind.AUTH,
    "RESOURCE_EXHAUSTED": FailureKind.RATE_LIMITED,
    "INVALID_ARGUMENT": FailureKind.BAD_REQUEST,
    "FAILED_PRECONDITION": FailureKind.BAD_REQUEST,
    "NOT_FOUND": FailureKind.NOT_FOUND,
    "INTERNAL": FailureKind.SERVER_ERROR,
    "UNAVAILABLE": FailureKind.SERVER_ERROR,
    "DEADLINE_EXCEEDED": FailureKind.SERVER_ERROR,
}


class GenerationError(RuntimeError):
    """Raised when a single generation call fails."""

    def __init__(self, message: str, *, kind: FailureKind = FailureKind.UNKNOWN, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


def classify_failure(status_code: Optional[int], payload: Any = None) -> FailureKind:
    if status_code is not None:
        if status_code in (401, 403):
            return FailureKind.AUTH
        if status_code == 429:
            return FailureKind.RATE_LIMITED
        if status_code == 400:
            return FailureKind.BAD_REQUEST
        if status_code == 404:
            return FailureKind.NOT_FOUND
        if status_code >= 500:
            return FailureKind.SERVER_ERROR
    error_block = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error_block, dict):
        status_name = str(error_block.get("status") or "").strip().upper()
        if status_name in _STATUS_NAME_KINDS:
            return _STATUS_NAME_KINDS[status_name]
    return FailureKind.UNKNOWN


def describe_failure(status_code: int, payload: Any) -> str:
    error_block = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error_block, dict):
        return f"HTTP {status_code}: Request failed"
    message = error_block.get("message") or "Unknown error"
    code = error_block.get("code") or status_code
    kind = classify_failure(status_code, payload)
    if kind is FailureKind.AUTH:
        return f"API key invalid or unauthorized ({code}). Please check your API key in Settings."
    if kind is FailureKind.RATE_LIMITED:
        return (
            f"Rate limit exceeded ({code}). "
            "Try increasing Rate Limit Delay or reducing Parallel Chunks in Settings."
        )
    if kind is FailureKind.BAD_REQUEST:
        return f"Bad request ({code}): {message}. Check your prompt or model settings."
    if kind is FailureKind.NOT_FOUND:
        return f"Model not found ({code}). The selected model may not be available. Try a different model."
    if kind is FailureKind.SERVER_ERROR:
        return f"Server error ({code}): {message}. Please try again later."
    return f"API error ({code}): {message}"


def redact_api_key(key: Optional[str]) -> str:
    if not key or len(key) < 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


class GeminiClient:
    """Thin wrapper over the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        log_sink: Any = None,
        session: Optional[Session] = None,
        base_url: str = API_BASE_URL,
    ):
        self.log_sink = log_sink
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()

    @property
    def session(self) -> Session:
        return self._session

    def generate(
        self,
        model: str,
        prompt: str,
        api_key: str,
        options: Optional[GenerationOptions] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        body = self._build_body(prompt, options)
        url = f"{self.base_url}/models/{model}:generateContent"
        self._log_request(model, prompt, api_key, body)
        try:
            response: Response = self._session.post(
                url, json=body, headers=self._headers(api_key), timeout=timeout
            )
        except Timeout as exc:
            self._log_response(model, None, {}, error=f"timeout after {timeout}s")
            raise GenerationError(f"Request timeout after {timeout}s", kind=FailureKind.TIMEOUT) from exc
        except RequestException as exc:
            self._log_response(model, None, {}, error=str(exc))
            raise GenerationError(f"Failed to reach Gemini API: {exc}", kind=FailureKind.UNKNOWN) from exc

        data = self._parse_json(response)
        self._log_response(model, response.status_code, data)
        if response.status_code >= 400:
            raise GenerationError(
                describe_failure(response.status_code, data),
                kind=classify_failure(response.status_code, data),
                status_code=response.status_code,
            )
        if data is None:
            raise GenerationError(
                f"Invalid JSON response from Gemini API: {_clip_text(response.text)}",
                kind=FailureKind.UNKNOWN,
                status_code=response.status_code,
            )
        text = _extract_text(data)
        if not text:
            feedback = data.get("promptFeedback")
            blocked = isinstance(feedback, dict) and bool(feedback.get("blockReason"))
            raise GenerationError(
                f"Empty response from Gemini API ({_empty_reason(data)})",
                kind=FailureKind.BAD_REQUEST if blocked else FailureKind.UNKNOWN,
                status_code=response.status_code,
            )
        return GenerationResult(
            text=text,
            model=model,
            usage=dict(data.get("usageMetadata") or {}),
        )

    def list_models(self, api_key: str, timeout: float = 20.0) -> List[Dict[str, Any]]:
        try:
            response = self._session.get(
                f"{self.base_url}/models", headers={"x-goog-api-key": api_key}, timeout=timeout
            )
        except Timeout as exc:
            raise GenerationError(f"Request timeout after {timeout}s", kind=FailureKind.TIMEOUT) from exc
        except RequestException as exc:
            raise GenerationError(f"Failed to reach Gemini API: {exc}") from exc
        data = self._parse_json(response)
        if response.status_code >= 400:
            raise GenerationError(
                describe_failure(response.status_code, data),
                kind=classify_failure(response.status_code, data),
                status_code=response.status_code,
            )
        models = (data or {}).get("models") or []
        return [entry for entry in models if isinstance(entry, dict)]

    @staticmethod
    def _build_body(prompt: str, options: GenerationOptions) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": options.generation_config(),
        }
        if options.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": options.system_instruction}]}
        return body

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": api_key or ""}

    @staticmethod
    def _parse_json(response: Response) -> Optional[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _log_request(self, model: str, prompt: str, api_key: str, body: Dict[str, Any]) -> None:
        self._write_log(
            {
                "level": "info",
                "type": "api_request",
                "model": model,
                "prompt_length": len(prompt),
                "api_key": redact_api_key(api_key),
                "request_size": len(json.dumps(body, ensure_ascii=False)),
            }
        )

    def _log_response(
        self,
        model: str,
        status_code: Optional[int],
        data: Optional[Dict[str, Any]],
        error: Optional[str] = None,
    ) -> None:
        data = data or {}
        success = status_code is not None and status_code < 400
        if error is None and isinstance(data.get("error"), dict):
            error = data["error"].get("message")
        self._write_log(
            {
                "level": "info" if success else "error",
                "type": "api_response",
                "model": model,
                "status": status_code,
                "success": success,
                "usage": data.get("usageMetadata") or {},
                "error": error,
            }
        )

    def _write_log(self, entry: Dict[str, Any]) -> None:
        logger.debug("Gemini %s: %s", entry.get("type"), entry)
        if self.log_sink is None:
            return
        try:
            self.log_sink.add_log_entry(entry)
        except Exception:
            logger.exception("Failed to record %s log entry.", entry.get("type"))


def _extract_text(data: Dict[str, Any]) -> str:
    try:
        return data["candidates"][0]["content"]["parts"][0]["text"] or ""
    except (KeyError, IndexError, TypeError):
        return ""


def _clip_text(text: str, limit: int = 800) -> str:
    snippet = (text or "").strip()
    if not snippet:
        return "<empty response>"
    if len(snippet) <= limit:
        return snippet
    return f"{snippet[:limit]}…"


def _empty_reason(data: Dict[str, Any]) -> str:
    feedback = data.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return f"blocked: {feedback['blockReason']}"
    candidates = data.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        finish_reason = candidates[0].get("finishReason")
        if finish_reason:
            return f"finish reason: {finish_reason}"
    return "no candidates"
