"""
Reference labels.

A :class:`Reference` names one source location.  Its rendered label is
the only identity the rest of the system sees: it is the key of the call
relation map, the owner column of a query mapping, and the text shown in
the viewer.  The format is::

    <display_name> (<file_path>:<line>)
    <display_name> (<file_path>:<line>) [<disambiguator>]

The bracketed suffix is only present for elements without a stable name.
It carries a position finer than the line (a column for anonymous code
scopes, a byte offset for mapper tags), so two anonymous elements that
start on the same line still render differently.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

_LOCATION_RE = re.compile(r"\((.+)\)")
_PATH_LINE_RE = re.compile(r"^(.*):(\d+)$")
_DISAMBIGUATOR_RE = re.compile(r" \[.*\]")


@dataclass(frozen=True)
class Reference:
    """A named (or anonymous) source location."""
    display_name: str
    file_path: str
    line: int
    disambiguator: Optional[str] = None

    def render(self) -> str:
        label = f"{self.display_name} ({self.file_path}:{self.line})"
        if self.disambiguator:
            label += f" [{self.disambiguator}]"
        return label

    def to_reference(self) -> "Reference":
        """A reference is trivially its own caller element."""
        return self

    def __str__(self) -> str:
        return self.render()


def normalize_path(path: str) -> str:
    """Render *path* with forward slashes regardless of platform."""
    return path.replace("\\", "/")


def label_location(label: str) -> Optional[str]:
    """Return the ``path:line`` text inside the label's parentheses."""
    match = _LOCATION_RE.search(strip_disambiguator(label))
    return match.group(1) if match else None


def parse_label(label: str) -> Optional[Tuple[str, int]]:
    """Recover ``(file_path, line)`` from a rendered label, or ``None``."""
    location = label_location(label)
    if location is None:
        return None
    match = _PATH_LINE_RE.match(location)
    if not match:
        return None
    return match.group(1), int(match.group(2))


def label_path(label: str) -> Optional[str]:
    """Return only the file path embedded in *label*."""
    parsed = parse_label(label)
    return parsed[0] if parsed else None


def strip_disambiguator(label: str) -> str:
    """Drop a ``" [...]"`` disambiguation suffix, if present."""
    return _DISAMBIGUATOR_RE.sub("", label)
