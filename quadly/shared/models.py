"""
Core data models for Quadly.

This module defines the data structures shared by the parser, the store, the
service-manager client and the broadcaster: unit types, unit status, quadlet
documents and status change events.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple, Iterator
from enum import Enum


NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.@-]*$')
MAX_NAME_LENGTH = 255


class UnitType(Enum):
    """Quadlet unit types. ``ANY`` is a filter, never a stored type."""
    CONTAINER = "container"
    NETWORK = "network"
    VOLUME = "volume"
    KUBE = "kube"
    POD = "pod"
    IMAGE = "image"
    ANY = "any"

    @property
    def suffix(self) -> str:
        """File extension (without the dot) for this type."""
        if self is UnitType.ANY:
            raise ValueError("Unit type 'any' has no file suffix")
        return self.value

    @property
    def is_concrete(self) -> bool:
        return self is not UnitType.ANY

    @classmethod
    def concrete(cls) -> List["UnitType"]:
        return [t for t in cls if t is not cls.ANY]

    @classmethod
    def from_suffix(cls, text: str) -> "UnitType":
        """Resolve a type from ``container`` or ``.container``."""
        try:
            return cls(text.lstrip('.').lower())
        except ValueError:
            raise ValueError(f"Unsupported quadlet type: {text}") from None

    def matches(self, other: "UnitType") -> bool:
        return self is UnitType.ANY or other is UnitType.ANY or self is other


class UnitStatus(Enum):
    """Unit activity as reported by the service manager."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    FAILED = "Failed"
    ACTIVATING = "Activating"
    DEACTIVATING = "Deactivating"
    UNKNOWN = "Unknown"

    @classmethod
    def from_active_state(cls, state: str) -> "UnitStatus":
        """Map a systemd ``ActiveState`` property value."""
        return _ACTIVE_STATE_MAP.get(state, cls.UNKNOWN)


_ACTIVE_STATE_MAP = {
    "active": UnitStatus.ACTIVE,
    "reloading": UnitStatus.ACTIVE,
    "inactive": UnitStatus.INACTIVE,
    "failed": UnitStatus.FAILED,
    "activating": UnitStatus.ACTIVATING,
    "deactivating": UnitStatus.DEACTIVATING,
}


def service_ref_for(name: str) -> str:
    """Service unit generated for a quadlet named ``name``."""
    return f"{name}.service"


def is_valid_name(name: str) -> bool:
    return bool(name) and len(name) <= MAX_NAME_LENGTH and bool(NAME_PATTERN.match(name))


@dataclass
class QuadletSection:
    """One ``[Section]`` with its ordered, possibly repeated, directives."""
    name: str
    entries: List[Tuple[str, str]] = field(default_factory=list)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Section name cannot be empty")
        self.entries = [(str(k), str(v)) for k, v in self.entries]

    def add(self, key: str, value: str) -> None:
        self.entries.append((key, value))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Last value for ``key``, matching systemd's override semantics."""
        for k, v in reversed(self.entries):
            if k == key:
                return v
        return default

    def get_all(self, key: str) -> List[str]:
        return [v for k, v in self.entries if k == key]

    def has(self, key: str) -> bool:
        return any(k == key for k, _ in self.entries)

    def keys(self) -> List[str]:
        seen = []
        for k, _ in self.entries:
            if k not in seen:
                seen.append(k)
        return seen

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entries": [[k, v] for k, v in self.entries]
        }


@dataclass
class QuadletDocument:
    """
    A parsed quadlet unit file.

    The name is fixed at construction; renaming a quadlet is a delete followed
    by a create. Section order and key order are preserved.
    """
    name: str
    unit_type: UnitType
    sections: List[QuadletSection] = field(default_factory=list)

    def __post_init__(self):
        if not is_valid_name(self.name):
            raise ValueError(f"Invalid quadlet name: {self.name!r}")
        if not isinstance(self.unit_type, UnitType):
            self.unit_type = UnitType.from_suffix(str(self.unit_type))

    def __setattr__(self, key, value):
        if key == "name" and "name" in self.__dict__:
            raise AttributeError("Quadlet name is immutable")
        super().__setattr__(key, value)

    @property
    def service_ref(self) -> str:
        return service_ref_for(self.name)

    @property
    def filename(self) -> str:
        return f"{self.name}.{self.unit_type.suffix}"

    def section(self, name: str) -> Optional[QuadletSection]:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def sections_named(self, name: str) -> List[QuadletSection]:
        return [s for s in self.sections if s.name == name]

    def has_section(self, name: str) -> bool:
        return self.section(name) is not None

    @property
    def description(self) -> Optional[str]:
        unit = self.section("Unit")
        return unit.get("Description") if unit else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "unit_type": self.unit_type.value,
            "service_ref": self.service_ref,
            "sections": [s.to_dict() for s in self.sections]
        }


@dataclass
class QuadletInfo:
    """Summary of a stored quadlet, used for listings."""
    name: str
    unit_type: UnitType
    service_ref: str
    description: Optional[str] = None

    @classmethod
    def from_document(cls, doc: QuadletDocument) -> "QuadletInfo":
        return cls(
            name=doc.name,
            unit_type=doc.unit_type,
            service_ref=doc.service_ref,
            description=doc.description
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "unit_type": self.unit_type.value,
            "service_ref": self.service_ref,
            "description": self.description
        }


@dataclass(frozen=True)
class StatusChange:
    """A unit moved from ``old_status`` (None if never seen) to ``new_status``."""
    ref: str
    old_status: Optional[UnitStatus]
    new_status: UnitStatus
    timestamp: datetime = field(default_factory=datetime.now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref": self.ref,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp.isoformat()
        }
