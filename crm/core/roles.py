"""Role tagged union and the parser used at the persistence boundary.

Role names are stored as free text ("lead of support", "مسئول پشتیبان", ...).
They are parsed once, when a user row is loaded, and nothing past the
repositories looks at the raw string again.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from utils.constants import DEPARTMENT_ALIASES, LEAD_PREFIXES, MANAGER_LABELS, SPECIALIST_PREFIXES


@dataclass(frozen=True, slots=True)
class Manager:
    label: str = field(default="manager", compare=False)


@dataclass(frozen=True, slots=True)
class Lead:
    department: str
    label: str = field(default="", compare=False)


@dataclass(frozen=True, slots=True)
class Specialist:
    department: str
    label: str = field(default="", compare=False)


@dataclass(frozen=True, slots=True)
class OtherRole:
    label: str = field(default="", compare=True)


Role = Manager | Lead | Specialist | OtherRole


def normalize_department(name: str) -> str:
    cleaned = " ".join(name.strip().split()).lower()
    return DEPARTMENT_ALIASES.get(cleaned, cleaned)


def parse_role(raw: str | None) -> Role:
    label = (raw or "").strip()
    lowered = label.lower()
    if lowered in MANAGER_LABELS:
        return Manager(label=label)
    for prefix in LEAD_PREFIXES:
        if lowered.startswith(prefix) and len(lowered) > len(prefix):
            return Lead(department=normalize_department(label[len(prefix):]), label=label)
    for prefix in SPECIALIST_PREFIXES:
        if lowered.startswith(prefix) and len(lowered) > len(prefix):
            return Specialist(department=normalize_department(label[len(prefix):]), label=label)
    return OtherRole(label=label)


def format_role(role: Role) -> str:
    if role.label:
        return role.label
    if isinstance(role, Manager):
        return "manager"
    if isinstance(role, Lead):
        return f"lead of {role.department}"
    if isinstance(role, Specialist):
        return f"specialist of {role.department}"
    return ""


def is_manager(role: Role) -> bool:
    return isinstance(role, Manager)
