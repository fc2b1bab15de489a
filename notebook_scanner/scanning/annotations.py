from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from .models import StructuredOutput

TASK = "TODO"
CALENDAR = "CAL"
NOTE = "WA"

# Accepts "--kw TODO: ...", "--kwCAL ...", "-- kw: WA ...", optionally behind stray backticks.
# The category must end at a word boundary: "--kw TODOS" and "--kw WAIT" are plain text.
MARKER_RE = re.compile(
    r"^\s*`{0,3}\s*--\s*kw\s*:?\s*(TODO|CAL|WA)\b\s*:?\s*(.*)$",
    re.IGNORECASE,
)

_INVISIBLE_RE = re.compile("[\u200b\u200c\u200d\ufeff]")
_DASH_RE = re.compile("[\u2013\u2014]")
_NEWLINE_RE = re.compile(r"\r\n?")


def normalize_text(raw_text: Optional[str]) -> str:
    text = _INVISIBLE_RE.sub("", raw_text or "")
    text = _DASH_RE.sub("-", text)
    text = _NEWLINE_RE.sub("\n", text)
    return text.strip()


def match_marker(line: str) -> Optional[Tuple[str, str]]:
    """
    Return ``(category, content)`` for a marker line, else ``None``.

    Stacked markers ("--kw TODO --kw CAL x") collapse to the first category so
    the content never carries a marker into the cleaned text.
    """
    match = MARKER_RE.match(line)
    if not match:
        return None
    category = match.group(1).upper()
    content = match.group(2).strip()
    nested = MARKER_RE.match(content)
    while nested:
        content = nested.group(2).strip()
        nested = MARKER_RE.match(content)
    return category, content


def parse_annotations(raw_text: Optional[str]) -> StructuredOutput:
    text = normalize_text(raw_text)
    if not text:
        return StructuredOutput.empty()

    buckets: Dict[str, List[str]] = {TASK: [], CALENDAR: [], NOTE: []}
    cleaned: List[str] = []
    for line in text.split("\n"):
        marker = match_marker(line)
        if marker is None:
            cleaned.append(line)
            continue
        category, content = marker
        buckets[category].append(content)
        cleaned.append(content)

    return StructuredOutput(
        cleaned_text="\n".join(cleaned).strip(),
        tasks=buckets[TASK],
        calendar=buckets[CALENDAR],
        notes=buckets[NOTE],
    )
