from types import SimpleNamespace
from unittest import mock

import pytest
from google.api_core import exceptions as google_exceptions

from services.exceptions import (
    AIEmptyResponse, AIServiceError, AITimeout, AITransientError, ConfigurationError
)
from services.gemini_service import GeminiService


class BlockedResponse:
    candidates = [SimpleNamespace(finish_reason=SimpleNamespace(name="SAFETY"))]
    usage_metadata = None

    @property
    def text(self):
        raise ValueError("Invalid operation: the response has no parts")


@pytest.fixture
def genai():
    with mock.patch("services.gemini_service.genai") as genai:
        yield genai


def model(genai):
    return genai.GenerativeModel.return_value


def answer(text):
    return SimpleNamespace(
        text=text,
        candidates=[],
        usage_metadata=SimpleNamespace(prompt_token_count=120, candidates_token_count=30),
    )


def test_missing_api_key():
    with pytest.raises(ConfigurationError):
        GeminiService(api_key="")


def test_returns_completion_text(genai):
    model(genai).generate_content.return_value = answer("condensed chapter")
    service = GeminiService(api_key="k", model_name="gemini-test", timeout=30)

    assert service.complete("prompt", purpose="condensation") == "condensed chapter"
    genai.configure.assert_called_once_with(api_key="k")


def test_single_attempt_with_timeout(genai):
    model(genai).generate_content.return_value = answer("ok")
    GeminiService(api_key="k", timeout=45).complete("prompt")

    _, kwargs = model(genai).generate_content.call_args
    assert kwargs["request_options"] == {"timeout": 45, "retry": None}
    assert model(genai).generate_content.call_count == 1


def test_generation_overrides(genai):
    model(genai).generate_content.return_value = answer("ok")
    GeminiService(api_key="k", temperature=0.3, max_output_tokens=8192).complete(
        "prompt", max_output_tokens=512, temperature=0.0
    )

    _, kwargs = genai.GenerativeModel.call_args
    assert kwargs["generation_config"] == {"temperature": 0.0, "max_output_tokens": 512}


@pytest.mark.parametrize("raised,expected", [
    (google_exceptions.DeadlineExceeded("deadline"), AITimeout),
    (TimeoutError("read timed out"), AITimeout),
    (google_exceptions.TooManyRequests("429"), AITransientError),
    (google_exceptions.ResourceExhausted("quota"), AITransientError),
    (google_exceptions.ServiceUnavailable("503"), AITransientError),
    (google_exceptions.InvalidArgument("bad prompt"), AIServiceError),
    (google_exceptions.PermissionDenied("bad key"), AIServiceError),
])
def test_errors_are_translated(genai, raised, expected):
    model(genai).generate_content.side_effect = raised

    with pytest.raises(expected):
        GeminiService(api_key="k").complete("prompt")


def test_blocked_response_is_empty(genai):
    model(genai).generate_content.return_value = BlockedResponse()

    with pytest.raises(AIEmptyResponse, match="SAFETY"):
        GeminiService(api_key="k").complete("prompt")


@pytest.mark.parametrize("text", ["", "   \n"])
def test_blank_text_is_empty(genai, text):
    model(genai).generate_content.return_value = answer(text)

    with pytest.raises(AIEmptyResponse):
        GeminiService(api_key="k").complete("prompt")
