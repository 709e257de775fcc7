"""
Semantic validation of quadlet documents.

Each concrete unit type mandates a primary section, and some types mandate
keys inside it. Validation walks the whole document and reports every
violation it finds so callers get complete feedback in one round trip.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from quadly.core.parser import KEY_PATTERN
from quadly.shared.exceptions import QuadletValidationError, ErrorCode
from quadly.shared.models import (
    QuadletDocument, QuadletSection, UnitType, is_valid_name
)

logger = logging.getLogger(__name__)

MISSING_SECTION = "MISSING_SECTION"
MISSING_KEY = "MISSING_KEY"
EMPTY_VALUE = "EMPTY_VALUE"
INVALID_VALUE = "INVALID_VALUE"
TYPE_MISMATCH = "TYPE_MISMATCH"
INVALID_NAME = "INVALID_NAME"

REQUIRED_SECTIONS: Dict[UnitType, Tuple[str, ...]] = {
    UnitType.CONTAINER: ("Container",),
    UnitType.NETWORK: ("Network",),
    UnitType.VOLUME: ("Volume",),
    UnitType.KUBE: ("Kube",),
    UnitType.POD: ("Pod",),
    UnitType.IMAGE: ("Image",),
    UnitType.ANY: (),
}

REQUIRED_KEYS: Dict[UnitType, Tuple[Tuple[str, str], ...]] = {
    UnitType.CONTAINER: (("Container", "Image"),),
    UnitType.IMAGE: (("Image", "Image"),),
    UnitType.KUBE: (("Kube", "Yaml"),),
}

_WHITESPACE = re.compile(r'\s')


@dataclass(frozen=True)
class ValidationViolation:
    """One reason a document is not acceptable for its type."""
    section: Optional[str]
    key: Optional[str]
    reason: str
    message: str

    @property
    def field(self) -> str:
        if self.section and self.key:
            return f"{self.section}.{self.key}"
        return self.section or "Global"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "field": self.field,
            "section": self.section,
            "key": self.key,
            "reason": self.reason,
            "message": self.message
        }


class QuadletValidator:
    """Checks documents against the structural rules of their unit type."""

    def validate(self, doc: QuadletDocument,
                 unit_type: Optional[UnitType] = None) -> List[ValidationViolation]:
        """
        Collect every violation of ``doc`` against ``unit_type``.

        Args:
            doc: Document to check
            unit_type: Type to check against; defaults to the document's own

        Returns:
            All violations found; an empty list means the document is valid
        """
        unit_type = unit_type or doc.unit_type
        violations: List[ValidationViolation] = []

        if unit_type.is_concrete and doc.unit_type.is_concrete and doc.unit_type is not unit_type:
            violations.append(ValidationViolation(
                section=None,
                key=None,
                reason=TYPE_MISMATCH,
                message=f"Document is a {doc.unit_type.value} quadlet, not {unit_type.value}"
            ))

        for section_name in REQUIRED_SECTIONS[unit_type]:
            if not doc.has_section(section_name):
                violations.append(ValidationViolation(
                    section=section_name,
                    key=None,
                    reason=MISSING_SECTION,
                    message=f"Required section [{section_name}] is missing"
                ))

        for section_name, key in REQUIRED_KEYS.get(unit_type, ()):
            section = doc.section(section_name)
            if section is None:
                # already reported as a missing section
                continue
            value = self._merged_get(doc, section_name, key)
            if value is None:
                violations.append(ValidationViolation(
                    section=section_name,
                    key=key,
                    reason=MISSING_KEY,
                    message=f"Key '{key}' is required in [{section_name}]"
                ))
            elif not value.strip():
                violations.append(ValidationViolation(
                    section=section_name,
                    key=key,
                    reason=EMPTY_VALUE,
                    message=f"Key '{key}' in [{section_name}] cannot be empty"
                ))

        if unit_type is UnitType.CONTAINER:
            for section in doc.sections_named("Container"):
                violations.extend(self._check_container_name(section))

        if violations:
            logger.debug(f"{doc.name}: {len(violations)} validation violations")
        return violations

    def validate_or_raise(self, doc: QuadletDocument,
                          unit_type: Optional[UnitType] = None) -> QuadletDocument:
        """Validate and raise QuadletValidationError carrying all violations."""
        violations = self.validate(doc, unit_type)
        if violations:
            summary = "; ".join(v.message for v in violations)
            raise QuadletValidationError(
                f"Quadlet '{doc.name}' is invalid: {summary}",
                violations=violations
            )
        return doc

    @staticmethod
    def _merged_get(doc: QuadletDocument, section_name: str, key: str) -> Optional[str]:
        value = None
        for section in doc.sections_named(section_name):
            found = section.get(key)
            if found is not None:
                value = found
        return value

    @staticmethod
    def _check_container_name(section: QuadletSection) -> List[ValidationViolation]:
        problems = []
        for value in section.get_all("ContainerName"):
            if _WHITESPACE.search(value.strip()):
                problems.append(ValidationViolation(
                    section=section.name,
                    key="ContainerName",
                    reason=INVALID_VALUE,
                    message="ContainerName cannot contain whitespace"
                ))
        return problems


_default_validator = QuadletValidator()


def validate(doc: QuadletDocument, unit_type: Optional[UnitType] = None) -> List[ValidationViolation]:
    """Module-level shortcut for ``QuadletValidator().validate``."""
    return _default_validator.validate(doc, unit_type)


SectionInput = Union[QuadletSection, Tuple[str, Sequence[Tuple[str, str]]]]


def build_document(name: str, unit_type: UnitType,
                   sections: Sequence[SectionInput]) -> QuadletDocument:
    """
    Construct a validated document from an API-submitted structure.

    Raises:
        QuadletValidationError: If the name is invalid or type-mandated
            content is missing
    """
    if not is_valid_name(name):
        raise QuadletValidationError(
            f"Invalid quadlet name: {name!r}",
            violations=[ValidationViolation(
                section=None,
                key=None,
                reason=INVALID_NAME,
                message="Names may only contain letters, digits, '_', '.', '@' and '-'"
            )],
            error_code=ErrorCode.VALIDATION_INVALID_NAME
        )
    if not unit_type.is_concrete:
        raise QuadletValidationError(
            "A stored quadlet needs a concrete type",
            error_code=ErrorCode.VALIDATION_INVALID_TYPE
        )

    built = []
    violations = []
    for item in sections:
        if isinstance(item, QuadletSection):
            section_name, entries = item.name, list(item.entries)
        else:
            section_name, entries = item[0], list(item[1])

        if not section_name or not section_name.strip() or any(c in section_name for c in "[]\n"):
            violations.append(ValidationViolation(
                section=section_name or None,
                key=None,
                reason=INVALID_VALUE,
                message=f"Invalid section name: {section_name!r}"
            ))
            continue

        for key, value in entries:
            if not KEY_PATTERN.match(str(key)):
                violations.append(ValidationViolation(
                    section=section_name,
                    key=str(key),
                    reason=INVALID_VALUE,
                    message=f"Invalid key {key!r} in [{section_name}]"
                ))
            elif '\n' in str(value):
                violations.append(ValidationViolation(
                    section=section_name,
                    key=str(key),
                    reason=INVALID_VALUE,
                    message=f"Value of '{key}' in [{section_name}] cannot span lines"
                ))
        built.append(QuadletSection(name=section_name, entries=entries))

    doc = QuadletDocument(name=name, unit_type=unit_type, sections=built)
    violations.extend(_default_validator.validate(doc))
    if violations:
        summary = "; ".join(v.message for v in violations)
        raise QuadletValidationError(
            f"Quadlet '{name}' is invalid: {summary}",
            violations=violations
        )
    return doc
