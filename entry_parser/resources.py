"""Startup resources: the extraction prompt and the entry schema.

Both are loaded once when the application starts and are never mutated
afterwards. A schema that cannot be read or compiled stops the server.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from jsonschema.exceptions import SchemaError
from jsonschema.protocols import Validator
from jsonschema.validators import validator_for

logger = logging.getLogger(__name__)


class SchemaLoadError(Exception):
    """Raised when the entry schema cannot be loaded or compiled."""

    pass


@dataclass(frozen=True)
class PromptTemplate:
    """Fixed system instruction sent with every extraction request."""

    text: str
    source: str = "<inline>"


@dataclass(frozen=True)
class EntrySchema:
    """A compiled, read-only JSON Schema document."""

    document: Mapping[str, Any]
    validator: Validator
    source: str = "<inline>"

    @classmethod
    def compile(cls, document: dict[str, Any], source: str = "<inline>") -> "EntrySchema":
        """Check and compile a schema document with the draft it declares."""
        if not isinstance(document, dict):
            raise SchemaLoadError(f"Schema {source} is not a JSON object")

        validator_cls = validator_for(document)
        try:
            validator_cls.check_schema(document)
        except SchemaError as e:
            raise SchemaLoadError(f"Schema {source} is invalid: {e.message}") from e

        validator = validator_cls(document, format_checker=validator_cls.FORMAT_CHECKER)
        return cls(document=MappingProxyType(document), validator=validator, source=source)


def load_prompt(path: Path) -> PromptTemplate:
    """Read the extraction prompt from disk."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise SchemaLoadError(f"Could not read prompt {path}: {e}") from e

    if not text.strip():
        raise SchemaLoadError(f"Prompt {path} is empty")

    logger.info(f"Loaded extraction prompt from {path} ({len(text)} chars)")
    return PromptTemplate(text=text, source=str(path))


def load_schema(path: Path) -> EntrySchema:
    """Read and compile the entry schema from disk."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise SchemaLoadError(f"Could not read schema {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SchemaLoadError(f"Schema {path} is not valid JSON: {e}") from e

    schema = EntrySchema.compile(document, source=str(path))
    logger.info(f"Compiled entry schema from {path}")
    return schema
