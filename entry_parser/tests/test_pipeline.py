"""
Tests for the parsing pipeline.

The external clients are replaced with in-memory fakes so every stage
outcome can be checked step by step.
"""

import json
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from entry_parser.models import ParseRequest
from entry_parser.parsers.dates import DateResolution
from entry_parser.parsers.llm_client import ExtractionError
from entry_parser.parsers.transcription import TranscriptionError
from entry_parser.parsers.validation import SchemaEngineError
from entry_parser.services.pipeline import (
    ErrorCategory,
    FailureKind,
    Stage,
    StageStatus,
)
from entry_parser.tests.fakes import FakeExtractor, FakeTranscriber, FakeValidator, make_pipeline


def today_in(zone: str) -> str:
    return datetime.now(ZoneInfo(zone)).date().isoformat()


@pytest.mark.asyncio
class TestIngest:
    """Test input checks before any external call."""

    async def test_oversized_upload_rejected_before_transcription(self):
        """Should fail with 413 and never call the transcriber."""
        transcriber = FakeTranscriber(text="paid 500")
        extractor = FakeExtractor()
        pipeline = make_pipeline(transcriber, extractor)

        result = await pipeline.run(ParseRequest(audio=b"a" * (1024 * 1024 + 1), audio_filename="big.webm"))

        assert result.failure == FailureKind.UPLOAD_TOO_LARGE
        assert result.status_code == 413
        assert result.failure.category == ErrorCategory.INPUT_ERROR
        assert transcriber.calls == []
        assert extractor.calls == []

    async def test_upload_at_limit_is_transcribed(self):
        """Should accept uploads exactly at the ceiling."""
        transcriber = FakeTranscriber(text="paid 500 for groceries")
        pipeline = make_pipeline(transcriber)

        result = await pipeline.run(ParseRequest(audio=b"a" * (1024 * 1024), audio_filename="ok.webm"))

        assert result.ok
        assert len(transcriber.calls) == 1

    async def test_no_input_is_input_error(self):
        """Should fail with 400 when there is neither audio nor hint text."""
        extractor = FakeExtractor()
        result = await make_pipeline(extractor=extractor).run(ParseRequest())

        assert result.failure == FailureKind.NO_INPUT
        assert result.status_code == 400
        assert result.error_body() == {"error": "no audio or hint_text provided"}
        assert extractor.calls == []

    async def test_blank_hint_is_input_error(self):
        """Should treat whitespace-only hint text as missing."""
        extractor = FakeExtractor()
        result = await make_pipeline(extractor=extractor).run(ParseRequest(hint_text="   \n"))

        assert result.failure == FailureKind.NO_INPUT
        assert extractor.calls == []


@pytest.mark.asyncio
class TestTranscriptionFallback:
    """Test soft-failure handling of the transcription stage."""

    async def test_failed_transcription_falls_back_to_hint(self):
        """Should continue with the hint text when transcription fails."""
        transcriber = FakeTranscriber(error=TranscriptionError("whisper error: 500"))
        extractor = FakeExtractor()
        pipeline = make_pipeline(transcriber, extractor)

        result = await pipeline.run(
            ParseRequest(audio=b"audio", audio_filename="a.webm", hint_text="Paid 500 for groceries today")
        )

        assert result.ok
        assert result.transcript == "Paid 500 for groceries today"
        assert extractor.calls[0][0] == "Paid 500 for groceries today"
        assert result.stage_status(Stage.TRANSCRIBE) == StageStatus.SOFT_FAILURE
        assert result.outcomes[1].category == ErrorCategory.SOFT_SERVICE_FAILURE

    async def test_failed_transcription_without_hint_is_input_error(self):
        """Should collapse to 400, not a service error, when the fallback is empty."""
        transcriber = FakeTranscriber(error=TranscriptionError("whisper error: bad request"))
        extractor = FakeExtractor()

        result = await make_pipeline(transcriber, extractor).run(
            ParseRequest(audio=b"audio", audio_filename="a.webm", hint_text="")
        )

        assert result.failure == FailureKind.NO_INPUT
        assert result.status_code == 400
        assert extractor.calls == []

    async def test_empty_transcription_falls_back_to_hint(self):
        """Should use the hint when nothing was heard."""
        transcriber = FakeTranscriber(text="   ")
        extractor = FakeExtractor()

        result = await make_pipeline(transcriber, extractor).run(
            ParseRequest(audio=b"audio", hint_text="spent 200 on fuel")
        )

        assert result.transcript == "spent 200 on fuel"

    async def test_transcript_preferred_over_hint(self):
        """Should use the audio transcript when it is non-empty."""
        transcriber = FakeTranscriber(text="paid 500 for groceries")
        extractor = FakeExtractor()

        result = await make_pipeline(transcriber, extractor).run(
            ParseRequest(audio=b"audio", hint_text="something else")
        )

        assert extractor.calls[0][0] == "paid 500 for groceries"
        assert result.stage_status(Stage.TRANSCRIBE) == StageStatus.OK

    async def test_skips_transcription_without_audio(self):
        """Should record a skipped transcription stage for text-only requests."""
        transcriber = FakeTranscriber()
        result = await make_pipeline(transcriber).run(ParseRequest(hint_text="paid 500"))

        assert transcriber.calls == []
        assert result.stage_status(Stage.TRANSCRIBE) == StageStatus.SKIPPED


@pytest.mark.asyncio
class TestExtraction:
    """Test hard failures around the extraction stage."""

    async def test_extraction_failure_preserves_transcript(self):
        """Should fail with 422 could_not_parse and echo the transcript."""
        extractor = FakeExtractor(error=ExtractionError("no choices"))

        result = await make_pipeline(extractor=extractor).run(ParseRequest(hint_text="  paid 500 to Ravi  "))

        assert result.failure == FailureKind.COULD_NOT_PARSE
        assert result.status_code == 422
        assert result.failure.category == ErrorCategory.HARD_SERVICE_FAILURE
        assert result.error_body() == {"error": "could_not_parse", "transcript": "paid 500 to Ravi"}

    async def test_timezone_defaults_to_configured(self):
        """Should pass the configured default zone when none is requested."""
        extractor = FakeExtractor()
        await make_pipeline(extractor=extractor, tz_default="Europe/London").run(ParseRequest(hint_text="paid 5"))
        assert extractor.calls[0][1] == "Europe/London"

    async def test_requested_timezone_passed_through(self):
        extractor = FakeExtractor()
        await make_pipeline(extractor=extractor).run(ParseRequest(hint_text="paid 5", tz="America/New_York"))
        assert extractor.calls[0][1] == "America/New_York"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"text"', '{"amount": NaN}', ""])
    async def test_non_object_output_is_malformed(self, raw):
        """Should fail with 500 invalid_parse_response for non-object output."""
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="paid 500"))

        assert result.failure == FailureKind.INVALID_PARSE_RESPONSE
        assert result.status_code == 500
        assert result.failure.category == ErrorCategory.MALFORMED_OUTPUT

    @pytest.mark.parametrize("date", ["2024-11-30", "kal"])
    async def test_out_of_range_number_is_malformed(self, date):
        """Should reject numbers that overflow a float, whatever the date path."""
        raw = '{"title": "X", "type": "expense", "amount": 1e400, "date": "' + date + '"}'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="paid a lot"))

        assert result.failure == FailureKind.INVALID_PARSE_RESPONSE
        assert result.status_code == 500
        assert result.stage_status(Stage.RESOLVE_DATE) is None

    async def test_large_finite_number_is_accepted(self):
        raw = '{"title": "X", "type": "expense", "amount": 1e300, "date": "2024-11-30"}'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="paid a lot"))
        assert result.ok


@pytest.mark.asyncio
class TestDeadline:
    """Test the shared deadline across external calls."""

    async def test_slow_extraction_times_out(self):
        """Should abort extraction and report a timeout with the transcript."""
        extractor = FakeExtractor(delay=5)
        pipeline = make_pipeline(extractor=extractor, request_timeout_seconds=0.05)

        result = await pipeline.run(ParseRequest(hint_text="paid 500"))

        assert result.failure == FailureKind.TIMEOUT
        assert result.status_code == 504
        assert result.error_body() == {"error": "timeout", "transcript": "paid 500"}
        assert result.stage_status(Stage.VALIDATE) is None

    async def test_slow_transcription_times_out(self):
        """Should report a timeout rather than falling back to the hint."""
        transcriber = FakeTranscriber(text="paid 500", delay=5)
        extractor = FakeExtractor()
        pipeline = make_pipeline(transcriber, extractor, request_timeout_seconds=0.05)

        result = await pipeline.run(ParseRequest(audio=b"audio", hint_text="paid 500"))

        assert result.failure == FailureKind.TIMEOUT
        assert extractor.calls == []

    async def test_deadline_is_shared(self):
        """Should give extraction only what transcription left over."""
        transcriber = FakeTranscriber(text="paid 500", delay=0.05)
        extractor = FakeExtractor()
        pipeline = make_pipeline(transcriber, extractor, request_timeout_seconds=1)

        await pipeline.run(ParseRequest(audio=b"audio"))

        transcribe_budget = transcriber.calls[0][2]
        extract_budget = extractor.calls[0][2]
        assert extract_budget < transcribe_budget <= 1


@pytest.mark.asyncio
class TestDateAndValidation:
    """Test date resolution and schema validation."""

    async def test_groceries_scenario(self):
        """Flagged date becomes today in Kolkata and the entry validates."""
        result = await make_pipeline().run(ParseRequest(hint_text="Paid 500 for groceries today", tz="Asia/Kolkata"))

        assert result.ok
        assert result.status_code == 200
        entry = json.loads(result.payload)
        assert entry["date"] == today_in("Asia/Kolkata")
        assert entry["title"] == "Groceries"
        assert entry["amount"] == 500
        assert result.date_resolution == DateResolution.CONFIRMED_TODAY

    async def test_unmutated_payload_is_byte_identical(self):
        """Should emit the extraction bytes untouched when no date change is needed."""
        raw = '{ "type": "income",\n  "title": "Salary", "amount": 85000.50, "date": "2024-11-30" }'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="salary came"))

        assert result.ok
        assert result.payload == raw.encode("utf-8")
        assert result.date_resolution == DateResolution.KEPT

    async def test_reserialization_keeps_field_order(self):
        """Should keep key order and non-ASCII text when the date is rewritten."""
        raw = '{"title": "Chai ☕", "type": "expense", "amount": 20, "date": "kal"}'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="chai 20"))

        assert result.ok
        assert list(json.loads(result.payload)) == ["title", "type", "amount", "date"]
        assert "☕" in result.payload.decode("utf-8")
        assert result.date_resolution == DateResolution.INFERRED_TODAY

    async def test_schema_invalid_reports_violations_and_transcript(self):
        """Should fail with 422 schema_invalid, listing violations."""
        raw = '{"title": "Groceries", "needs_confirmation": {"date": true}}'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="groceries"))

        assert result.failure == FailureKind.SCHEMA_INVALID
        assert result.status_code == 422
        body = result.error_body()
        assert body["error"] == "schema_invalid"
        assert body["transcript"] == "groceries"
        assert len(body["details"]) == 2  # amount and type missing
        assert result.stage_status(Stage.DONE) is None

    async def test_outcomes_follow_stage_order(self):
        """Should record one outcome per stage, in order."""
        result = await make_pipeline().run(ParseRequest(audio=b"audio", hint_text="paid 500"))

        assert [o.stage for o in result.outcomes] == [
            Stage.INGEST,
            Stage.TRANSCRIBE,
            Stage.REQUIRE_TRANSCRIPT,
            Stage.EXTRACT,
            Stage.DECODE_JSON,
            Stage.RESOLVE_DATE,
            Stage.VALIDATE,
            Stage.DONE,
        ]

    async def test_padded_date_is_trimmed_and_validates(self):
        """Should write back a padded but well-formed date instead of rejecting it."""
        raw = '{"title": "Rent", "type": "expense", "amount": 12000, "date": " 2024-11-30 "}'
        result = await make_pipeline(extractor=FakeExtractor(raw=raw)).run(ParseRequest(hint_text="rent"))

        assert result.ok
        assert json.loads(result.payload)["date"] == "2024-11-30"
        assert result.date_resolution == DateResolution.TRIMMED

    async def test_unencodable_rewrite_is_serialization_failure(self):
        """Should fail with 500 serialization_failed when the rewritten entry cannot be encoded."""
        raw = r'{"title": "\ud83d", "type": "expense", "amount": 20, "date": "kal"}'
        validator = FakeValidator()
        result = await make_pipeline(extractor=FakeExtractor(raw=raw), validator=validator).run(
            ParseRequest(hint_text="chai 20")
        )

        assert result.failure == FailureKind.SERIALIZATION_FAILED
        assert result.status_code == 500
        assert result.failure.category == ErrorCategory.INTERNAL_ERROR
        assert result.error_body() == {"error": "serialization_failed", "transcript": "chai 20"}
        assert result.stage_status(Stage.RESOLVE_DATE) == StageStatus.HARD_FAILURE
        assert validator.calls == []

    async def test_engine_error_is_validation_failure(self):
        """Should fail with 500 validation_failed when the validator itself breaks."""
        validator = FakeValidator(error=SchemaEngineError("engine exploded"))
        result = await make_pipeline(validator=validator).run(ParseRequest(hint_text="groceries 500"))

        assert result.failure == FailureKind.VALIDATION_FAILED
        assert result.status_code == 500
        assert result.error_body() == {"error": "validation_failed", "transcript": "groceries 500"}
        assert result.outcomes[-1].category == ErrorCategory.INTERNAL_ERROR
        assert len(validator.calls) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
