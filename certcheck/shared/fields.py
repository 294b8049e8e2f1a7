"""Participant field keys and their resolution against a registration."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

DEFAULT_PARTICIPANT_NAME = "Participant"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


class BuiltInField(str, Enum):
    NAME = "name"
    EMAIL = "email"
    ORGANIZATION = "organization"
    PHONE = "phone"
    ADDRESS = "address"


@dataclass(frozen=True)
class FieldKey:
    """Either a built-in participant field or a custom answer key."""

    key: str
    builtin: BuiltInField | None = None

    @classmethod
    def parse(cls, raw: str | None) -> "FieldKey":
        key = (raw or "").strip()
        try:
            return cls(key=key, builtin=BuiltInField(key))
        except ValueError:
            return cls(key=key)

    @property
    def is_custom(self) -> bool:
        return self.builtin is None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_as_text(item) for item in value if item is not None)
    return str(value).strip()


class RegistrationFieldResolver:
    """Resolve FieldKeys against a registration's general info and answers.

    Built-in keys read ``general_info[key]`` first, then the answer stored
    under ``general_<key>``; ``name`` also consults ``submitted_by``. Custom
    keys read ``answers[key]``. Anything missing resolves to ``""``.
    """

    def __init__(
        self,
        general_info: Mapping[str, Any] | None,
        answers: Mapping[str, Any] | None,
        submitted_by: str | None = None,
    ):
        self.general_info = dict(general_info or {})
        self.answers = dict(answers or {})
        self.submitted_by = submitted_by

    @classmethod
    def for_registration(cls, registration) -> "RegistrationFieldResolver":
        return cls(
            registration.general_info,
            registration.answers,
            registration.submitted_by,
        )

    def __call__(self, key: FieldKey) -> str:
        if key.builtin is None:
            return _as_text(self.answers.get(key.key))
        name = key.builtin.value
        candidates = [self.general_info.get(name)]
        if key.builtin is BuiltInField.NAME:
            candidates.append(self.submitted_by)
        candidates.append(self.answers.get(f"general_{name}"))
        for candidate in candidates:
            text = _as_text(candidate)
            if text:
                return text
        return ""

    def resolve(self, raw_key: str) -> str:
        return self(FieldKey.parse(raw_key))

    @property
    def participant_name(self) -> str:
        return self.resolve("name") or DEFAULT_PARTICIPANT_NAME

    @property
    def email(self) -> str:
        return self.resolve("email")

    def placeholder_values(self) -> dict[str, str]:
        """Values for every built-in field plus every custom answer key."""

        values = {key: _as_text(value) for key, value in self.answers.items()}
        for builtin in BuiltInField:
            values[builtin.value] = self(FieldKey(builtin.value, builtin))
        values["name"] = self.participant_name
        return values


def substitute_placeholders(text: str | None, values: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` tokens; unknown keys become an empty string."""

    if not text:
        return ""
    return _PLACEHOLDER_RE.sub(lambda match: values.get(match.group(1), "") or "", text)
