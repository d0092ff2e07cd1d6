"""LLM client for turning a transcript into a raw structured entry."""

import logging

import litellm
from litellm import acompletion

from entry_parser.config import Settings, settings as default_settings
from entry_parser.parsers.timezone import resolve_timezone
from entry_parser.resources import PromptTemplate

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Raised when an external AI service call fails."""

    pass


class ExtractionError(ServiceError):
    """Raised when structured extraction fails."""

    pass


def _get_model_name(settings: Settings) -> str:
    """Route the configured model through litellm's OpenAI provider."""
    model = settings.openai_llm_model
    if "/" in model:
        return model
    return f"openai/{model}"


def build_user_message(transcript: str, timezone: str, today: str) -> str:
    """Context message embedding the zone, its current date and the transcript."""
    return f"Context: Timezone is {timezone}. Today is {today}.\nText: {transcript}"


class ExtractionClient:
    """Sends transcripts to a chat-completion service in JSON-object mode."""

    def __init__(self, prompt: PromptTemplate, settings: Settings | None = None):
        self._prompt = prompt
        self._settings = settings or default_settings

    async def extract(self, transcript: str, timezone: str, timeout: float | None = None) -> str:
        """
        Extract a structured entry from a transcript.

        Args:
            transcript: Non-empty transcript text
            timezone: Requested timezone name, resolved through the fallback chain
            timeout: Seconds left on the caller's deadline

        Returns:
            The first completion's content, verbatim (JSON text, not parsed)

        Raises:
            ExtractionError: Missing credential, service error, undecodable
                response or zero completions
            TimeoutError: The call ran past the deadline
        """
        if not self._settings.openai_api_key:
            raise ExtractionError("OPENAI_API_KEY missing")

        zone = resolve_timezone(timezone, self._settings.tz_default)
        messages = [
            {"role": "system", "content": self._prompt.text},
            {"role": "user", "content": build_user_message(transcript, zone.name, zone.today_iso())},
        ]

        try:
            response = await acompletion(
                model=_get_model_name(self._settings),
                messages=messages,
                response_format={"type": "json_object"},
                api_base=self._settings.openai_base_url,
                api_key=self._settings.openai_api_key,
                timeout=timeout,
            )
        except TimeoutError:
            raise
        except litellm.Timeout as e:
            raise TimeoutError(f"LLM call timed out: {e}") from e
        except Exception as e:
            detail = getattr(e, "message", None) or str(e)
            logger.error(f"LLM call failed: {detail}")
            raise ExtractionError(f"llm error: {detail}") from e

        try:
            choices = response.choices
        except AttributeError as e:
            raise ExtractionError(f"undecodable LLM response: {e}") from e

        if not choices:
            raise ExtractionError("no choices")

        content = getattr(choices[0].message, "content", None)
        if not isinstance(content, str):
            raise ExtractionError("first choice has no text content")

        logger.info(f"LLM returned {len(content)} chars with model {self._settings.openai_llm_model}")
        return content
