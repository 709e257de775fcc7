#!/usr/bin/env python3
"""
Unit tests for the quadlet unit-file parser.

Tests section/directive grammar, repeated keys, comments, error kinds with
line context, and serialization round trips.
"""

import pytest

from quadly.core.parser import parse_quadlet, parse_sections, serialize_quadlet
from quadly.shared.exceptions import QuadletParseError
from quadly.shared.models import QuadletDocument, QuadletSection, UnitType


WEBAPP = """\
# webapp quadlet
[Unit]
Description=Web application

[Container]
Image=docker.io/library/nginx
Volume=/srv/www:/usr/share/nginx/html:ro
Volume=/srv/conf:/etc/nginx/conf.d:ro
Environment=A=1 B=2

[Install]
WantedBy=default.target
"""


class TestParseGrammar:
    """Test the line-oriented grammar."""

    def test_parse_sections_in_order(self):
        """Sections come back in file order."""
        doc = parse_quadlet(WEBAPP, name="webapp", unit_type=UnitType.CONTAINER)

        assert [s.name for s in doc.sections] == ["Unit", "Container", "Install"]
        assert doc.name == "webapp"
        assert doc.unit_type is UnitType.CONTAINER

    def test_repeated_keys_accumulate(self):
        """Repeated keys are kept as an ordered list, not overwritten."""
        doc = parse_quadlet(WEBAPP, name="webapp")
        container = doc.section("Container")

        assert container.get_all("Volume") == [
            "/srv/www:/usr/share/nginx/html:ro",
            "/srv/conf:/etc/nginx/conf.d:ro",
        ]
        assert container.keys() == ["Image", "Volume", "Environment"]

    def test_value_keeps_embedded_equals(self):
        """Only the first '=' separates key and value."""
        doc = parse_quadlet(WEBAPP, name="webapp")

        assert doc.section("Container").get("Environment") == "A=1 B=2"

    def test_value_is_verbatim(self):
        """Whitespace after '=' belongs to the value."""
        sections = parse_sections("[Service]\nExecStart= /bin/true  \n")

        assert sections[0].entries == [("ExecStart", " /bin/true  ")]

    def test_comments_and_blanks_do_not_break_sections(self):
        """Comments between directives keep the section open."""
        raw = "[Container]\nImage=a\n\n# comment\n  ; another\nPublishPort=8080:80\n"
        sections = parse_sections(raw)

        assert len(sections) == 1
        assert sections[0].entries == [("Image", "a"), ("PublishPort", "8080:80")]

    def test_unknown_sections_accepted(self):
        """The parser does not judge section names."""
        sections = parse_sections("[X-Custom]\nFoo=bar\n")

        assert sections[0].name == "X-Custom"

    def test_section_names_are_case_sensitive(self):
        """Section names differing only in case stay distinct."""
        sections = parse_sections("[container]\nImage=a\n[Container]\nImage=b\n")

        assert [s.name for s in sections] == ["container", "Container"]

    def test_repeated_section_header_opens_new_section(self):
        """A second header with the same name starts a separate section."""
        sections = parse_sections("[Container]\nImage=a\n[Install]\nWantedBy=x\n[Container]\nVolume=v\n")

        assert [s.name for s in sections] == ["Container", "Install", "Container"]
        assert sections[2].entries == [("Volume", "v")]

    def test_empty_input(self):
        """Empty or comment-only input yields no sections."""
        assert parse_sections("") == []
        assert parse_sections("# only a comment\n\n") == []

    def test_bytes_input_decoded_as_utf8(self):
        """Byte input is decoded as UTF-8."""
        sections = parse_sections("[Unit]\nDescription=Café\n".encode("utf-8"))

        assert sections[0].get("Description") == "Café"

    def test_crlf_line_endings(self):
        """CRLF endings keep the section header but leave the CR in values."""
        sections = parse_sections("[Container]\r\nImage=a\r\n")

        assert sections[0].name == "Container"
        assert sections[0].get("Image") == "a\r"


class TestParseErrors:
    """Test error kinds and their context."""

    def test_orphan_directive(self):
        """A directive before any section is an OrphanDirective error."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections("# header\nImage=nginx\n[Container]\n")

        error = exc_info.value
        assert error.kind == QuadletParseError.ORPHAN_DIRECTIVE
        assert error.line_number == 2
        assert error.section is None

    def test_malformed_directive_reports_section(self):
        """A line without '=' reports its line number and enclosing section."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections("[Container]\nImage=a\nthis is not a directive\n")

        error = exc_info.value
        assert error.kind == QuadletParseError.MALFORMED_DIRECTIVE
        assert error.line_number == 3
        assert error.section == "Container"

    def test_invalid_key_token(self):
        """Keys containing spaces are rejected."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections("[Container]\nBad Key=value\n")

        assert exc_info.value.kind == QuadletParseError.MALFORMED_DIRECTIVE

    def test_empty_key(self):
        """A directive with an empty key is rejected."""
        with pytest.raises(QuadletParseError):
            parse_sections("[Container]\n=value\n")

    @pytest.mark.parametrize("header", ["[Container", "[]", "[a]b]"])
    def test_malformed_section_header(self, header):
        """Unterminated, empty or nested headers are MalformedSection errors."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections(f"{header}\nImage=a\n")

        assert exc_info.value.kind == QuadletParseError.MALFORMED_SECTION
        assert exc_info.value.line_number == 1

    def test_invalid_utf8(self):
        """Undecodable bytes raise InvalidEncoding."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections(b"[Unit]\nDescription=\xff\xfe\n")

        assert exc_info.value.kind == QuadletParseError.INVALID_ENCODING

    def test_error_serializes_context(self):
        """Parse errors serialize with kind, code and line context."""
        with pytest.raises(QuadletParseError) as exc_info:
            parse_sections("Image=nginx\n")

        data = exc_info.value.to_dict()["error"]
        assert data["kind"] == "QuadletParseError"
        assert data["code"] == "PARSE_1001"
        assert data["context"]["line_number"] == 1


class TestSerialize:
    """Test serialization and round trips."""

    def test_serialize_format(self):
        """Sections are written in order, separated by one blank line."""
        doc = QuadletDocument(
            name="db",
            unit_type=UnitType.CONTAINER,
            sections=[
                QuadletSection("Container", [("Image", "postgres"), ("Volume", "a:b"), ("Volume", "c:d")]),
                QuadletSection("Install", [("WantedBy", "default.target")]),
            ]
        )

        assert serialize_quadlet(doc) == (
            "[Container]\nImage=postgres\nVolume=a:b\nVolume=c:d\n"
            "\n"
            "[Install]\nWantedBy=default.target\n"
        )

    def test_round_trip_preserves_everything(self):
        """parse(serialize(D)) == D including order and multiplicity."""
        original = parse_quadlet(WEBAPP, name="webapp", unit_type=UnitType.CONTAINER)

        again = parse_quadlet(serialize_quadlet(original), name="webapp", unit_type=UnitType.CONTAINER)

        assert again == original

    def test_round_trip_odd_values(self):
        """Padded values, empty values and empty sections survive a round trip."""
        doc = QuadletDocument(
            name="odd",
            unit_type=UnitType.CONTAINER,
            sections=[
                QuadletSection("Container", [("Exec", " spaced = value "), ("Label", "")]),
                QuadletSection("Empty"),
                QuadletSection("Container", [("Image", "x")]),
            ]
        )

        assert parse_quadlet(serialize_quadlet(doc), name="odd", unit_type=UnitType.CONTAINER) == doc

    def test_serialize_empty_document(self):
        """A document without sections serializes to an empty string."""
        doc = QuadletDocument(name="empty", unit_type=UnitType.ANY)

        assert serialize_quadlet(doc) == ""
