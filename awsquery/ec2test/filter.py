"""Attribute filters carried by describe requests of the simulated service."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Protocol

__all__ = ["FilterError", "Filterable", "Filter"]

_FIELD = re.compile(r"Filter\.([+-]?[0-9]+)\.(\S+)")


class FilterError(ValueError):
    """A filter names an unknown attribute or carries a malformed value."""


class Filterable(Protocol):
    """Anything that can be passed through a filter."""

    def match_attr(self, attr: str, value: str) -> bool:
        """Report whether ``attr`` matches ``value``; raise ValueError if unknown or malformed."""


def _first(values: Sequence[str] | str) -> str:
    return values if isinstance(values, str) else values[0]


class Filter(dict):
    """Maps an attribute name to the values it may take.

    An item passes when every attribute named in the filter matches at
    least one of its values.
    """

    @classmethod
    def from_form(cls, form: Mapping[str, Sequence[str] | str]) -> Filter:
        """Build a filter from ``Filter.N.Name`` and ``Filter.N.Value.M`` form fields."""
        names: dict[int, str] = {}
        values: dict[int, list[str]] = {}
        for key, field_values in form.items():
            match = _FIELD.match(key)
            if match is None:
                continue
            ident = int(match.group(1))
            rest = match.group(2)
            if rest == "Name":
                names[ident] = _first(field_values)
            elif rest.startswith("Value."):
                values.setdefault(ident, []).append(_first(field_values))
        return cls({name: values.get(ident, []) for ident, name in names.items()})

    def ok(self, item: Filterable) -> bool:
        """Report whether ``item`` passes through the filter."""
        for attr, candidates in self.items():
            for value in candidates:
                try:
                    if item.match_attr(attr, value):
                        break
                except ValueError as err:
                    raise FilterError(
                        f"bad attribute or value {attr!r}={value!r} "
                        f"for type {type(item).__name__}: {err}"
                    ) from err
            else:
                return False
        return True