from unittest.mock import MagicMock

import pytest
import requests

from spokable.gemini_client import (
    API_BASE_URL,
    FailureKind,
    GeminiClient,
    GenerationError,
    classify_failure,
    redact_api_key,
)
from spokable.models import GenerationOptions
from spokable.storage import MemoryChunkStore


def _response(status_code: int, payload=None, text: str = ""):
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    response.text = text
    return response


def _success_payload(text="Spoken text."):
    return {
        "candidates": [{"content": {"parts": [{"text": text}]}}],
        "usageMetadata": {"promptTokenCount": 12, "totalTokenCount": 30},
    }


def test_generate_posts_request_and_returns_result():
    session = MagicMock()
    session.post.return_value = _response(200, _success_payload())
    client = GeminiClient(session=session)
    options = GenerationOptions(temperature=0.4, top_p=0.9, top_k=20, max_output_tokens=256, system_instruction="Be clear.")

    result = client.generate("gemini-2.5-flash", "Rewrite this.", "key-1234567890", options, timeout=12.0)

    assert result.text == "Spoken text."
    assert result.model == "gemini-2.5-flash"
    assert result.usage == {"promptTokenCount": 12, "totalTokenCount": 30}
    args, kwargs = session.post.call_args
    assert args[0] == f"{API_BASE_URL}/models/gemini-2.5-flash:generateContent"
    assert kwargs["headers"]["x-goog-api-key"] == "key-1234567890"
    assert kwargs["timeout"] == 12.0
    body = kwargs["json"]
    assert body["contents"][0]["parts"][0]["text"] == "Rewrite this."
    assert body["generationConfig"] == {"temperature": 0.4, "topP": 0.9, "topK": 20, "maxOutputTokens": 256}
    assert body["systemInstruction"]["parts"][0]["text"] == "Be clear."


def test_generate_without_system_instruction_or_candidates():
    session = MagicMock()
    session.post.return_value = _response(200, {"candidates": []})
    client = GeminiClient(session=session)

    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")

    assert excinfo.value.kind is FailureKind.UNKNOWN
    assert "no candidates" in str(excinfo.value)
    assert "systemInstruction" not in session.post.call_args.kwargs["json"]


def test_blocked_prompt_is_an_error():
    session = MagicMock()
    session.post.return_value = _response(200, {"promptFeedback": {"blockReason": "SAFETY"}})
    client = GeminiClient(session=session)

    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")

    assert excinfo.value.kind is FailureKind.BAD_REQUEST
    assert "blocked: SAFETY" in str(excinfo.value)


def test_candidate_without_parts_reports_finish_reason():
    session = MagicMock()
    session.post.return_value = _response(200, {"candidates": [{"finishReason": "SAFETY"}]})
    client = GeminiClient(session=session)

    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")

    assert excinfo.value.kind is FailureKind.UNKNOWN
    assert "finish reason: SAFETY" in str(excinfo.value)


@pytest.mark.parametrize(
    "status,kind",
    [
        (401, FailureKind.AUTH),
        (403, FailureKind.AUTH),
        (429, FailureKind.RATE_LIMITED),
        (400, FailureKind.BAD_REQUEST),
        (404, FailureKind.NOT_FOUND),
        (500, FailureKind.SERVER_ERROR),
        (503, FailureKind.SERVER_ERROR),
        (418, FailureKind.UNKNOWN),
    ],
)
def test_http_errors_are_classified(status, kind):
    session = MagicMock()
    session.post.return_value = _response(status, {"error": {"code": status, "message": "nope"}})
    client = GeminiClient(session=session)

    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")

    assert excinfo.value.kind is kind
    assert excinfo.value.status_code == status
    assert str(status) in str(excinfo.value)


def test_classification_falls_back_to_upstream_status_name():
    assert classify_failure(None, {"error": {"status": "RESOURCE_EXHAUSTED"}}) is FailureKind.RATE_LIMITED
    assert classify_failure(None, {"error": {"status": "PERMISSION_DENIED"}}) is FailureKind.AUTH
    assert classify_failure(None, {"error": {"status": "SOMETHING_NEW"}}) is FailureKind.UNKNOWN
    assert classify_failure(None, None) is FailureKind.UNKNOWN


def test_timeout_is_distinct_from_transport_failure():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.Timeout("slow")
    client = GeminiClient(session=session)
    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890", timeout=3.0)
    assert excinfo.value.kind is FailureKind.TIMEOUT

    session.post.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")
    assert excinfo.value.kind is FailureKind.UNKNOWN


def test_non_json_error_body_is_still_classified():
    session = MagicMock()
    session.post.return_value = _response(502, None, text="<html>Bad gateway</html>")
    client = GeminiClient(session=session)
    with pytest.raises(GenerationError) as excinfo:
        client.generate("m", "prompt", "key-1234567890")
    assert excinfo.value.kind is FailureKind.SERVER_ERROR
    assert "HTTP 502" in str(excinfo.value)


def test_each_call_is_logged_with_redacted_key():
    store = MemoryChunkStore()
    session = MagicMock()
    session.post.return_value = _response(200, _success_payload())
    client = GeminiClient(log_sink=store, session=session)

    client.generate("gemini-2.5-flash", "x" * 42, "AIzaSECRETSECRET9876")

    response_entry, request_entry = store.get_logs()
    assert request_entry["type"] == "api_request"
    assert request_entry["model"] == "gemini-2.5-flash"
    assert request_entry["prompt_length"] == 42
    assert request_entry["api_key"] == "AIza...9876"
    assert response_entry["type"] == "api_response"
    assert response_entry["success"] is True
    assert response_entry["usage"]["totalTokenCount"] == 30


def test_log_sink_failures_do_not_break_generation():
    sink = MagicMock()
    sink.add_log_entry.side_effect = OSError("disk full")
    session = MagicMock()
    session.post.return_value = _response(200, _success_payload("fine"))
    client = GeminiClient(log_sink=sink, session=session)

    assert client.generate("m", "prompt", "key-1234567890").text == "fine"
    assert sink.add_log_entry.call_count == 2


def test_redact_api_key():
    assert redact_api_key("") == "***"
    assert redact_api_key("short") == "***"
    assert redact_api_key("abcdefghijkl") == "abcd...ijkl"


def test_list_models_returns_descriptors():
    session = MagicMock()
    session.get.return_value = _response(
        200, {"models": [{"name": "models/gemini-2.5-flash", "supportedGenerationMethods": ["generateContent"]}]}
    )
    client = GeminiClient(session=session)

    models = client.list_models("key-1234567890")

    assert models[0]["name"] == "models/gemini-2.5-flash"
    assert session.get.call_args.args[0] == f"{API_BASE_URL}/models"


def test_list_models_raises_on_auth_error():
    session = MagicMock()
    session.get.return_value = _response(401, {"error": {"code": 401, "message": "bad key"}})
    client = GeminiClient(session=session)
    with pytest.raises(GenerationError) as excinfo:
        client.list_models("bad")
    assert excinfo.value.kind is FailureKind.AUTH
