"""Transcript-to-entry parsing pipeline.

Stages run strictly in order, once per request:

    Ingest → Transcribe | SkipTranscribe → RequireTranscript → Extract
           → DecodeJSON → ResolveDate → Validate → Done

Each stage records a StageOutcome. Transcription failures are soft: they are
logged and the hint text is used instead. Every other failure ends the run
with a FailureKind. Transcription and extraction share one deadline.
"""

import asyncio
import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from entry_parser.config import Settings, settings as default_settings
from entry_parser.models import ParseErrorResponse, ParseRequest
from entry_parser.parsers.dates import DateResolution, resolve_date
from entry_parser.parsers.llm_client import ExtractionClient, ExtractionError
from entry_parser.parsers.transcription import TranscriptionClient, TranscriptionError
from entry_parser.parsers.validation import SchemaEngineError, SchemaValidator, is_within_upload_limit
from entry_parser.resources import EntrySchema, PromptTemplate

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Stage(str, Enum):
    INGEST = "ingest"
    TRANSCRIBE = "transcribe"
    REQUIRE_TRANSCRIPT = "require_transcript"
    EXTRACT = "extract"
    DECODE_JSON = "decode_json"
    RESOLVE_DATE = "resolve_date"
    VALIDATE = "validate"
    DONE = "done"


class StageStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"


class ErrorCategory(str, Enum):
    """Failure taxonomy, from client-correctable to operator-visible."""

    SOFT_SERVICE_FAILURE = "soft_service_failure"
    INPUT_ERROR = "input_error"
    HARD_SERVICE_FAILURE = "hard_service_failure"
    MALFORMED_OUTPUT = "malformed_output"
    VALIDATION_FAILURE = "validation_failure"
    INTERNAL_ERROR = "internal_error"
    TIMEOUT = "timeout"


class FailureKind(str, Enum):
    """Terminal failures of a pipeline run."""

    NO_INPUT = "no_input"
    UPLOAD_TOO_LARGE = "upload_too_large"
    COULD_NOT_PARSE = "could_not_parse"
    INVALID_PARSE_RESPONSE = "invalid_parse_response"
    SERIALIZATION_FAILED = "serialization_failed"
    SCHEMA_INVALID = "schema_invalid"
    VALIDATION_FAILED = "validation_failed"
    TIMEOUT = "timeout"

    @property
    def category(self) -> ErrorCategory:
        return _FAILURES[self][0]

    @property
    def status_code(self) -> int:
        return _FAILURES[self][1]

    @property
    def message(self) -> str:
        return _FAILURES[self][2]


# kind -> (category, HTTP status, error string)
_FAILURES: dict[FailureKind, tuple[ErrorCategory, int, str]] = {
    FailureKind.NO_INPUT: (ErrorCategory.INPUT_ERROR, 400, "no audio or hint_text provided"),
    FailureKind.UPLOAD_TOO_LARGE: (ErrorCategory.INPUT_ERROR, 413, "file too large"),
    FailureKind.COULD_NOT_PARSE: (ErrorCategory.HARD_SERVICE_FAILURE, 422, "could_not_parse"),
    FailureKind.INVALID_PARSE_RESPONSE: (ErrorCategory.MALFORMED_OUTPUT, 500, "invalid_parse_response"),
    FailureKind.SERIALIZATION_FAILED: (ErrorCategory.INTERNAL_ERROR, 500, "serialization_failed"),
    FailureKind.SCHEMA_INVALID: (ErrorCategory.VALIDATION_FAILURE, 422, "schema_invalid"),
    FailureKind.VALIDATION_FAILED: (ErrorCategory.INTERNAL_ERROR, 500, "validation_failed"),
    FailureKind.TIMEOUT: (ErrorCategory.TIMEOUT, 504, "timeout"),
}


@dataclass(frozen=True)
class StageOutcome:
    """What happened at one stage of a run."""

    stage: Stage
    status: StageStatus
    detail: str | None = None
    category: ErrorCategory | None = None  # set for failures only


@dataclass
class PipelineResult:
    """Final result of one pipeline run: validated bytes or a typed failure."""

    payload: bytes | None = None
    failure: FailureKind | None = None
    transcript: str | None = None
    violations: list[str] = field(default_factory=list)
    outcomes: list[StageOutcome] = field(default_factory=list)
    date_resolution: DateResolution | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.payload is not None

    @property
    def status_code(self) -> int:
        return 200 if self.failure is None else self.failure.status_code

    def stage_status(self, stage: Stage) -> StageStatus | None:
        """Status recorded for a stage, or None if the run never reached it."""
        for outcome in self.outcomes:
            if outcome.stage == stage:
                return outcome.status
        return None

    def error_body(self) -> dict[str, Any]:
        """JSON body describing the failure to the caller."""
        if self.failure is None:
            raise ValueError("error_body() called on a successful result")

        response = ParseErrorResponse(
            error=self.failure.message,
            transcript=self.transcript or None,
            details=list(self.violations) if self.failure == FailureKind.SCHEMA_INVALID else None,
        )
        return response.model_dump(exclude_none=True)


@dataclass(frozen=True)
class Deadline:
    """A fixed point in monotonic time shared by the external calls of a run."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def hash_preview(text: str) -> str:
    return f"sha256={hashlib.sha256(text.encode('utf-8')).hexdigest()[:12]},len={len(text)}"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _parse_finite(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number {text} is out of range")
    return value


class ParsePipeline:
    """Turns one ParseRequest into validated entry bytes or a typed failure."""

    def __init__(
        self,
        prompt: PromptTemplate,
        schema: EntrySchema,
        settings: Settings | None = None,
        transcriber: TranscriptionClient | None = None,
        extractor: ExtractionClient | None = None,
        validator: SchemaValidator | None = None,
    ):
        self._settings = settings or default_settings
        self._prompt = prompt
        self._schema = schema
        self._transcriber = transcriber or TranscriptionClient(self._settings)
        self._extractor = extractor or ExtractionClient(prompt, self._settings)
        self._validator = validator or SchemaValidator(schema)

    async def run(self, request: ParseRequest) -> PipelineResult:
        """Run every stage in order and return the result."""
        result = PipelineResult()
        deadline = Deadline.after(self._settings.request_timeout_seconds)
        timezone = request.tz if request.tz and request.tz.strip() else self._settings.tz_default

        # Ingest
        if request.has_audio and not is_within_upload_limit(request.audio, self._settings.max_upload_bytes):
            return self._fail(
                result,
                Stage.INGEST,
                FailureKind.UPLOAD_TOO_LARGE,
                f"{len(request.audio)} bytes exceeds {self._settings.max_upload_mb} MB",
            )
        self._record(result, Stage.INGEST, StageStatus.OK)

        # Transcribe
        transcript = ""
        if request.has_audio:
            try:
                transcript = await self._within(
                    deadline,
                    lambda remaining: self._transcriber.transcribe(
                        request.audio_filename, request.audio, timeout=remaining
                    ),
                )
                self._record(result, Stage.TRANSCRIBE, StageStatus.OK, hash_preview(transcript))
            except TimeoutError:
                return self._fail(result, Stage.TRANSCRIBE, FailureKind.TIMEOUT, "deadline expired during transcription")
            except TranscriptionError as e:
                logger.warning(f"stt error: {e}")
                self._record(
                    result, Stage.TRANSCRIBE, StageStatus.SOFT_FAILURE, str(e), ErrorCategory.SOFT_SERVICE_FAILURE
                )
        else:
            self._record(result, Stage.TRANSCRIBE, StageStatus.SKIPPED, "no audio")

        # RequireTranscript
        transcript = transcript.strip()
        if not transcript:
            transcript = (request.hint_text or "").strip()
            source = "hint_text"
        else:
            source = "audio"
        if not transcript:
            return self._fail(result, Stage.REQUIRE_TRANSCRIPT, FailureKind.NO_INPUT)
        result.transcript = transcript
        self._record(result, Stage.REQUIRE_TRANSCRIPT, StageStatus.OK, f"from {source}")

        # Extract
        try:
            raw = await self._within(
                deadline,
                lambda remaining: self._extractor.extract(transcript, timezone, timeout=remaining),
            )
        except TimeoutError:
            return self._fail(result, Stage.EXTRACT, FailureKind.TIMEOUT, "deadline expired during extraction")
        except ExtractionError as e:
            return self._fail(result, Stage.EXTRACT, FailureKind.COULD_NOT_PARSE, str(e))
        self._record(result, Stage.EXTRACT, StageStatus.OK, f"{len(raw)} chars")

        # DecodeJSON
        try:
            entry = json.loads(raw, parse_float=_parse_finite, parse_constant=_reject_constant)
        except ValueError as e:
            return self._fail(result, Stage.DECODE_JSON, FailureKind.INVALID_PARSE_RESPONSE, str(e))
        if not isinstance(entry, dict):
            return self._fail(
                result,
                Stage.DECODE_JSON,
                FailureKind.INVALID_PARSE_RESPONSE,
                f"expected a JSON object, got {type(entry).__name__}",
            )
        payload = raw.encode("utf-8")
        self._record(result, Stage.DECODE_JSON, StageStatus.OK)

        # ResolveDate
        resolution = resolve_date(entry, transcript, timezone, self._settings.tz_default)
        result.date_resolution = resolution
        if resolution is not DateResolution.KEPT:
            try:
                payload = json.dumps(entry, ensure_ascii=False, allow_nan=False).encode("utf-8")
            except (TypeError, ValueError) as e:
                return self._fail(result, Stage.RESOLVE_DATE, FailureKind.SERIALIZATION_FAILED, str(e))
        self._record(result, Stage.RESOLVE_DATE, StageStatus.OK, resolution.value)

        # Validate
        try:
            validation = self._validator.validate(payload)
        except SchemaEngineError as e:
            return self._fail(result, Stage.VALIDATE, FailureKind.VALIDATION_FAILED, str(e))
        if not validation.valid:
            result.violations = validation.violations
            return self._fail(
                result,
                Stage.VALIDATE,
                FailureKind.SCHEMA_INVALID,
                f"{len(validation.violations)} violation(s)",
            )
        self._record(result, Stage.VALIDATE, StageStatus.OK)

        # Done
        result.payload = payload
        self._record(result, Stage.DONE, StageStatus.OK)
        logger.info(f"Parsed entry for transcript {hash_preview(transcript)} (date {resolution.value})")
        return result

    @staticmethod
    async def _within(deadline: Deadline, call: Callable[[float], Awaitable[T]]) -> T:
        """Await an external call, cancelling it when the deadline passes."""
        remaining = deadline.remaining()
        if remaining <= 0:
            raise TimeoutError("deadline expired")
        return await asyncio.wait_for(call(remaining), timeout=remaining)

    @staticmethod
    def _record(
        result: PipelineResult,
        stage: Stage,
        status: StageStatus,
        detail: str | None = None,
        category: ErrorCategory | None = None,
    ) -> None:
        result.outcomes.append(StageOutcome(stage=stage, status=status, detail=detail, category=category))
        logger.info(f"[{stage.value}] {status.value}" + (f" - {detail}" if detail else ""))

    def _fail(
        self,
        result: PipelineResult,
        stage: Stage,
        kind: FailureKind,
        detail: str | None = None,
    ) -> PipelineResult:
        result.failure = kind
        result.detail = detail
        self._record(result, stage, StageStatus.HARD_FAILURE, detail, kind.category)
        log = logger.warning if kind.category == ErrorCategory.INPUT_ERROR else logger.error
        log(f"Parse failed at {stage.value}: {kind.value}" + (f" ({detail})" if detail else ""))
        return result
