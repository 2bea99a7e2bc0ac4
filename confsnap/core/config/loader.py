"""
Template loader — reads a YAML template into domain models.

This is the only entry point for turning template text into a typed
Template. It parses YAML, validates against the Pydantic schema and
converts every validation problem into a single SchemaError listing
all of them, so a broken template is rejected before resolution rather
than failing deep inside an extractor.

Parsing has no side effects.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from confsnap.core.errors import SchemaError
from confsnap.core.models.template import Template

logger = logging.getLogger(__name__)


def parse_template(document: bytes | str, source: str = "<template>") -> Template:
    """Parse template text into a Template.

    Unknown keys are ignored; missing required fields and unknown enum
    values are errors.

    Args:
        document: YAML text (bytes are decoded as UTF-8).
        source: Label used in error messages.

    Returns:
        Validated, immutable Template.

    Raises:
        SchemaError: If the YAML is invalid or the schema is violated.
    """
    if isinstance(document, bytes):
        try:
            document = document.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise SchemaError(f"{source} is not valid UTF-8: {e}") from e

    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise SchemaError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise SchemaError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        template = Template.model_validate(data)
    except ValidationError as e:
        problems = [_describe(err) for err in e.errors()]
        summary = "; ".join(problems[:5])
        if len(problems) > 5:
            summary += f" (+{len(problems) - 5} more)"
        raise SchemaError(f"Invalid template {source}: {summary}", problems) from e

    logger.debug(
        "Parsed template '%s' (%d items, %d machine sections)",
        template.metadata.name,
        template.item_count,
        len(template.machine_specific),
    )
    return template


def load_template(path: Path) -> Template:
    """Read and parse a template file.

    Raises:
        SchemaError: If the file is missing, unreadable or invalid.
    """
    path = Path(path)
    if not path.is_file():
        raise SchemaError(f"Template file not found: {path}")

    logger.debug("Loading template from %s", path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise SchemaError(f"Cannot read {path}: {e}") from e

    template = parse_template(raw, source=str(path))
    logger.info("Loaded template '%s' from %s", template.metadata.name, path)
    return template


def _describe(error: dict) -> str:
    """Render one pydantic error as ``location: message``."""
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message
