"""Per-conversation variable store.

Supports:
- Typed read/write: values are always stored as strings
- Template interpolation: "Hello {{name}}!"
- Inline link extraction: "[Book now](https://example.com)"
"""

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

# {{identifier}} with optional inner whitespace; no nesting
_TOKEN_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# [label](url)
_LINK_PATTERN = re.compile(r"\[([^\]\n]+)\]\(([^)\s]+)\)")


@dataclass(frozen=True)
class Link:
    """An inline link found in text content."""

    label: str
    url: str
    start: int
    end: int


class VariableStore:
    """Key/value map of conversation variables.

    Names are case-sensitive. Values are strings; numbers, dates and other
    objects are stored as their string representation.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, str] = {}
        if initial:
            for name, value in initial.items():
                self.set(name, value)

    def get(self, name: str) -> str | None:
        """Return the stored value or None when the variable was never set."""
        return self._values.get(name)

    def set(self, name: str, value: Any) -> None:
        """Store a value, coercing it to its string form (None becomes "")."""
        if not name:
            raise ValueError("Variable name cannot be empty")
        self._values[name] = "" if value is None else str(value)

    def has(self, name: str) -> bool:
        return name in self._values

    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set(name, value)

    def as_dict(self) -> dict[str, str]:
        """Return a copy of the stored values."""
        return dict(self._values)

    def interpolate(self, text: str) -> str:
        """Replace {{identifier}} tokens with stored values.

        Unknown identifiers are left as the literal token. Never raises.

        Examples:
            >>> VariableStore({"name": "Ana"}).interpolate("Hi {{name}}!")
            'Hi Ana!'
            >>> VariableStore().interpolate("Hi {{name}}!")
            'Hi {{name}}!'
        """
        if not text or "{{" not in text:
            return text or ""

        def _substitute(match: re.Match[str]) -> str:
            value = self._values.get(match.group(1))
            return match.group(0) if value is None else value

        return _TOKEN_PATTERN.sub(_substitute, text)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableStore({self._values!r})"


def strip_token(name: str) -> str:
    """Accept a variable name written as "{{name}}" and return "name"."""
    name = (name or "").strip()
    match = _TOKEN_PATTERN.fullmatch(name)
    return match.group(1) if match else name


def extract_links(text: str) -> list[Link]:
    """Find inline [label](url) links in text, in order of appearance."""
    if not text:
        return []
    return [
        Link(label=m.group(1), url=m.group(2), start=m.start(), end=m.end())
        for m in _LINK_PATTERN.finditer(text)
    ]
