"""Data models for Entry Parser."""

from pydantic import BaseModel, ConfigDict, Field


class NeedsConfirmation(BaseModel):
    """Per-field markers for values the extraction could not fill confidently."""

    model_config = ConfigDict(extra="allow")

    date: bool | None = None


class ExtractedEntry(BaseModel):
    """A structured entry produced by the extraction stage.

    Every field is optional so a partial extraction still decodes; the schema
    contract decides which fields are required. Unknown keys are kept.
    """

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    type: str | None = None
    amount: float | None = None
    currency: str | None = None
    mode: str | None = None
    category: str | None = None
    merchant: str | None = None
    tag: str | None = None
    notes: str | None = None
    date: str | None = None
    time: str | None = None
    needs_confirmation: NeedsConfirmation | None = None


class ParseRequest(BaseModel):
    """A single parse request as received from the HTTP surface."""

    audio: bytes | None = None
    audio_filename: str | None = None
    hint_text: str | None = None
    tz: str | None = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio)


class ValidationResult(BaseModel):
    """Outcome of validating an extraction against the schema contract."""

    valid: bool
    violations: list[str] = Field(default_factory=list)


class ParseErrorResponse(BaseModel):
    """Error body returned by POST /parse."""

    error: str
    transcript: str | None = None
    details: list[str] | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    llm_model: str
    transcription_model: str
