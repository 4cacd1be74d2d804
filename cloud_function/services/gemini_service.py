from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config import (
    GEMINI_API_KEY, GEMINI_MODEL, GEMINI_TEMPERATURE,
    GEMINI_MAX_OUTPUT_TOKENS, GEMINI_TIMEOUT_SECONDS
)
from services.exceptions import (
    AIEmptyResponse, AIServiceError, AITimeout, AITransientError, ConfigurationError
)
from services.logging_service import get_logger

_TRANSIENT_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
)

_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


class GeminiService:
    """
    Thin text-completion adapter over Gemini.

    One call, one attempt: timeouts and provider errors are translated into
    the pipeline's AI exceptions and raised. Retrying is the caller's job.
    """

    def __init__(self, api_key: str = GEMINI_API_KEY, model_name: str = GEMINI_MODEL,
                 temperature: float = GEMINI_TEMPERATURE,
                 max_output_tokens: int = GEMINI_MAX_OUTPUT_TOKENS,
                 timeout: float = GEMINI_TIMEOUT_SECONDS):
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is not set.")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        get_logger().debug(f"GeminiService initialized with model {self.model_name}")

    def _model(self, max_output_tokens: Optional[int], temperature: Optional[float]):
        return genai.GenerativeModel(
            model_name=self.model_name,
            generation_config={
                "temperature": self.temperature if temperature is None else temperature,
                "max_output_tokens": max_output_tokens or self.max_output_tokens,
            },
            safety_settings=_SAFETY_SETTINGS,
        )

    def complete(self, prompt: str, max_output_tokens: Optional[int] = None,
                 temperature: Optional[float] = None, purpose: str = "completion") -> str:
        """Submits one prompt and returns the completion text."""
        logger = get_logger()
        model = self._model(max_output_tokens, temperature)

        try:
            # retry=None disables the SDK's own retry wrapper
            response = model.generate_content(
                prompt,
                request_options={"timeout": self.timeout, "retry": None},
            )
        except (google_exceptions.DeadlineExceeded, TimeoutError) as e:
            raise AITimeout(f"Gemini {purpose} timed out after {self.timeout}s: {e}") from e
        except _TRANSIENT_ERRORS as e:
            raise AITransientError(f"Gemini {purpose} failed transiently: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise AIServiceError(f"Gemini {purpose} failed: {e}") from e

        self._log_usage(response, purpose)

        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate has no text parts (blocked, max tokens, ...)
            raise AIEmptyResponse(f"Gemini {purpose} returned no text: {self._finish_reason(response)}") from e

        if not text or not text.strip():
            raise AIEmptyResponse(f"Gemini {purpose} returned no text: {self._finish_reason(response)}")
        return text

    @staticmethod
    def _finish_reason(response) -> str:
        candidates = getattr(response, "candidates", None)
        if candidates:
            reason = getattr(candidates[0], "finish_reason", None)
            return getattr(reason, "name", str(reason))
        return "Unknown"

    def _log_usage(self, response, purpose: str):
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return
        get_logger().info(
            f"Gemini usage for {purpose}",
            metric="gemini_tokens",
            model=self.model_name,
            prompt_tokens=getattr(usage, "prompt_token_count", None),
            output_tokens=getattr(usage, "candidates_token_count", None),
        )
