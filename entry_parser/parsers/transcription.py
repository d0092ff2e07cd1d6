"""Speech-to-text client."""

import logging

import litellm
from litellm import atranscription

from entry_parser.config import Settings, settings as default_settings
from entry_parser.parsers.llm_client import ServiceError

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_FILENAME = "audio.webm"


class TranscriptionError(ServiceError):
    """Raised when speech-to-text fails."""

    pass


def _get_model_name(settings: Settings) -> str:
    model = settings.openai_whisper_model
    if "/" in model:
        return model
    return f"openai/{model}"


class TranscriptionClient:
    """Sends audio uploads to a speech-to-text service."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or default_settings

    async def transcribe(self, filename: str | None, audio: bytes, timeout: float | None = None) -> str:
        """
        Transcribe raw audio bytes.

        Args:
            filename: Original upload name; the service sniffs the format from it
            audio: Raw audio bytes
            timeout: Seconds left on the caller's deadline

        Returns:
            Trimmed transcript text (may be empty if nothing was heard)

        Raises:
            TranscriptionError: Missing credential, service error or undecodable response
            TimeoutError: The call ran past the deadline
        """
        if not self._settings.openai_api_key:
            raise TranscriptionError("OPENAI_API_KEY missing")

        try:
            response = await atranscription(
                model=_get_model_name(self._settings),
                file=(filename or DEFAULT_AUDIO_FILENAME, audio),
                api_base=self._settings.openai_base_url,
                api_key=self._settings.openai_api_key,
                timeout=timeout,
            )
        except TimeoutError:
            raise
        except litellm.Timeout as e:
            raise TimeoutError(f"transcription timed out: {e}") from e
        except Exception as e:
            detail = getattr(e, "message", None) or str(e)
            raise TranscriptionError(f"whisper error: {detail}") from e

        text = getattr(response, "text", None)
        if text is None and isinstance(response, dict):
            text = response.get("text")
        if not isinstance(text, str):
            raise TranscriptionError("undecodable transcription response")

        return text.strip()
