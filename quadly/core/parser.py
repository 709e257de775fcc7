"""
Quadlet unit-file parser for Quadly.

This module turns raw unit-file text into a QuadletDocument and serializes
documents back to text. Parsing is purely syntactic: unknown sections are
accepted here and left to the validator.

Grammar, line by line:
    - blank lines and lines whose first non-space character is ``#`` or ``;``
      are ignored without closing the current section;
    - ``[Name]`` opens a new section;
    - ``Key=Value`` adds a directive to the open section. The value is the
      remainder of the line after the first ``=``, verbatim. Repeated keys
      accumulate in order.
"""

import logging
import re
from typing import List, Optional, Union

from quadly.shared.exceptions import QuadletParseError
from quadly.shared.models import QuadletDocument, QuadletSection, UnitType

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_.-]*$')
COMMENT_PREFIXES = ('#', ';')


def _is_ignorable(line: str) -> bool:
    stripped = line.lstrip()
    return not stripped or stripped.startswith(COMMENT_PREFIXES)


def _parse_section_header(line: str, line_number: int) -> str:
    stripped = line.strip()
    if not stripped.endswith(']') or len(stripped) < 3:
        raise QuadletParseError(
            f"Malformed section header on line {line_number}: {stripped!r}",
            kind=QuadletParseError.MALFORMED_SECTION,
            line_number=line_number,
            line=line
        )

    name = stripped[1:-1]
    if not name.strip() or '[' in name or ']' in name:
        raise QuadletParseError(
            f"Malformed section header on line {line_number}: {stripped!r}",
            kind=QuadletParseError.MALFORMED_SECTION,
            line_number=line_number,
            line=line
        )
    return name


def parse_sections(raw: Union[str, bytes]) -> List[QuadletSection]:
    """
    Parse unit-file text into an ordered list of sections.

    Raises:
        QuadletParseError: On an orphan directive, a malformed header, or
            a line that is neither a header nor ``Key=Value``.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise QuadletParseError(
                "Quadlet content is not valid UTF-8",
                kind=QuadletParseError.INVALID_ENCODING,
                cause=e
            )

    sections: List[QuadletSection] = []
    current: Optional[QuadletSection] = None

    for line_number, line in enumerate(raw.split('\n'), start=1):
        if _is_ignorable(line):
            continue

        if line.lstrip().startswith('['):
            current = QuadletSection(name=_parse_section_header(line, line_number))
            sections.append(current)
            continue

        key, sep, value = line.partition('=')
        key = key.strip()
        if not sep or not KEY_PATTERN.match(key):
            raise QuadletParseError(
                f"Expected Key=Value on line {line_number}: {line.strip()!r}",
                kind=QuadletParseError.MALFORMED_DIRECTIVE,
                line_number=line_number,
                line=line,
                section=current.name if current else None
            )

        if current is None:
            raise QuadletParseError(
                f"Directive '{key}' on line {line_number} appears before any [Section]",
                kind=QuadletParseError.ORPHAN_DIRECTIVE,
                line_number=line_number,
                line=line
            )

        current.add(key, value)

    return sections


def parse_quadlet(raw: Union[str, bytes], name: str,
                  unit_type: UnitType = UnitType.ANY) -> QuadletDocument:
    """
    Parse ``raw`` into a document identified by ``name`` and ``unit_type``.

    Args:
        raw: Unit-file text (str or UTF-8 bytes)
        name: Quadlet name the text belongs to
        unit_type: Declared type; ``ANY`` when the caller does not know it

    Returns:
        The parsed QuadletDocument (not yet validated)
    """
    sections = parse_sections(raw)
    logger.debug(f"Parsed {name}.{unit_type.value}: {len(sections)} sections")
    return QuadletDocument(name=name, unit_type=unit_type, sections=sections)


def serialize_quadlet(doc: QuadletDocument) -> str:
    """Render a document back to unit-file text."""
    blocks = []
    for section in doc.sections:
        lines = [f"[{section.name}]"]
        lines.extend(f"{key}={value}" for key, value in section.entries)
        blocks.append('\n'.join(lines))
    if not blocks:
        return ""
    return '\n\n'.join(blocks) + '\n'
