"""Validation of uploads and extracted entries."""

import json
import logging
from typing import Any

from jsonschema.exceptions import ValidationError as SchemaViolation
from pydantic import ValidationError

from entry_parser.models import ExtractedEntry, ValidationResult
from entry_parser.resources import EntrySchema

# Configure logging for parsers
logger = logging.getLogger("entry_parser.parsers")


class SchemaEngineError(Exception):
    """Raised when the validation engine itself fails (not a failed validation)."""

    pass


def is_within_upload_limit(contents: bytes | None, max_bytes: int) -> bool:
    """
    Check an upload against the configured size ceiling.

    Args:
        contents: Raw upload bytes (None counts as empty)
        max_bytes: Maximum allowed size in bytes

    Returns:
        True if the upload may be processed
    """
    if not contents:
        return True
    return len(contents) <= max_bytes


def format_schema_violation(error: SchemaViolation) -> str:
    """Render a schema violation as '<path>: <message>'."""
    path = "/".join(str(part) for part in error.absolute_path) or "(root)"
    return f"{path}: {error.message}"


def format_structure_errors(error: ValidationError) -> list[str]:
    """Render pydantic errors from decoding an ExtractedEntry."""
    messages = []
    for item in error.errors():
        path = "/".join(str(part) for part in item["loc"]) or "(root)"
        messages.append(f"{path}: {item['msg']}")
    return messages


class SchemaValidator:
    """Checks extraction output against the compiled entry schema."""

    def __init__(self, schema: EntrySchema):
        self._schema = schema

    def validate(self, payload: bytes | str) -> ValidationResult:
        """
        Validate a JSON payload.

        Violations from the schema come first, ordered by location, followed
        by any structural errors from decoding into ExtractedEntry.

        Raises:
            SchemaEngineError: The payload cannot be decoded or the engine failed
        """
        try:
            document = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SchemaEngineError(f"Payload is not valid JSON: {e}") from e

        try:
            errors = sorted(
                self._schema.validator.iter_errors(document),
                key=lambda e: ([str(part) for part in e.absolute_path], e.message),
            )
        except Exception as e:
            logger.error(f"Schema engine failed on {self._schema.source}: {e}")
            raise SchemaEngineError(f"Schema validation engine error: {e}") from e

        violations = [format_schema_violation(error) for error in errors]
        violations.extend(self._structure_violations(document))

        if violations:
            logger.info(f"Entry failed validation with {len(violations)} violation(s)")
            for violation in violations[:5]:  # Log first 5 violations
                logger.debug(violation)

        return ValidationResult(valid=not violations, violations=violations)

    @staticmethod
    def _structure_violations(document: Any) -> list[str]:
        if not isinstance(document, dict):
            # The schema already reports a non-object root
            return []
        try:
            ExtractedEntry.model_validate(document)
        except ValidationError as e:
            return format_structure_errors(e)
        return []
