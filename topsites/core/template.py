"""Template values used in campaign query configuration.

A template value is either a literal string or a placeholder that defers to a
request header::

    sub1: amazon                  # LiteralValue("amazon")
    h1: "%header:x-region%"       # HeaderRef("x-region")

The grammar is deliberately loose: the raw string is lowercased and split on
runs of the delimiter/separator characters, and it counts as a placeholder
when that yields at least three parts with empty first and last parts.
"""

import re
from dataclasses import dataclass
from typing import Union

DELIMITER = "%"
SEPARATOR = ":"

_SPLIT_RE = re.compile(f"[{re.escape(DELIMITER + SEPARATOR)}]+")

HEADER_KIND = "header"


@dataclass(frozen=True)
class LiteralValue:
    """A value passed through unchanged."""
    value: str


@dataclass(frozen=True)
class HeaderRef:
    """A value read from an inbound request header (lowercased name)."""
    name: str


TemplateValue = Union[LiteralValue, HeaderRef]


def parse_template_value(raw: str) -> TemplateValue:
    """Parse a raw configuration string into a template value.

    Args:
        raw: Raw string from configuration or the inbound query string

    Returns:
        HeaderRef for ``%header:<name>%`` placeholders, LiteralValue otherwise
    """
    parts = _SPLIT_RE.split(raw.lower())
    if len(parts) >= 3 and not parts[0] and not parts[-1]:
        inner = parts[1:-1]
        if len(inner) >= 2 and inner[0] == HEADER_KIND:
            return HeaderRef(name=inner[1])
    return LiteralValue(value=raw)


def header_placeholder(name: str) -> str:
    """Render the placeholder string that refers to header ``name``."""
    return f"{DELIMITER}{HEADER_KIND}{SEPARATOR}{name.lower()}{DELIMITER}"


def render_template_value(value: TemplateValue) -> str:
    """Render a template value back to its configuration form."""
    if isinstance(value, HeaderRef):
        return header_placeholder(value.name)
    return value.value
