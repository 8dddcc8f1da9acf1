from __future__ import annotations

import re

_UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19,
    "a": 1, "an": 1,
}
_TENS = {"twenty": 20, "thirty": 30, "forty": 40, "fifty": 50, "sixty": 60}
_VAGUE = {"a couple of": 2, "a couple": 2, "couple of": 2, "a few": 3, "few": 3, "several": 5}

_NUMBER_PATTERN = (
    r"(?:\d+(?:\.\d+)?|"
    r"(?:" + "|".join(sorted(_TENS, key=len, reverse=True)) + r")(?:[\s-](?:"
    + "|".join(k for k in sorted(_UNITS, key=len, reverse=True) if k not in {"a", "an", "zero"})
    + r"))?|"
    + "|".join(sorted(_VAGUE, key=len, reverse=True))
    + r"|"
    + "|".join(sorted(_UNITS, key=len, reverse=True))
    + r")"
)
_TIME_AGO_RE = re.compile(
    r"\b(?:about\s+|around\s+|roughly\s+|like\s+|maybe\s+)?"
    r"(?P<qty>" + _NUMBER_PATTERN + r")\s*"
    r"(?P<unit>seconds?|secs?|minutes?|mins?|hours?|hrs?)\s+ago\b",
    re.IGNORECASE,
)
_HALF_HOUR_AGO_RE = re.compile(r"\bhalf\s+an?\s+hour\s+ago\b", re.IGNORECASE)

_CLOCK_RE = re.compile(r"\b\d{1,3}:\d{2}\b")
_SPOKEN_DURATION_RE = re.compile(
    r"\b(\d+)\s*(hours?|hrs?|minutes?|mins?|seconds?|secs?)\b",
    re.IGNORECASE,
)


def format_clock(seconds: int) -> str:
    """Render seconds as MM:SS; minutes are not wrapped into hours."""
    seconds = max(0, int(seconds))
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes:02d}:{remaining:02d}"


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def format_spoken_duration(seconds: int) -> str:
    """Render seconds for speech, e.g. 501 -> "8 minutes and 21 seconds"."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(_plural(hours, "hour"))
    if minutes:
        parts.append(_plural(minutes, "minute"))
    if secs or not parts:
        parts.append(_plural(secs, "second"))
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + " and " + parts[-1]


def describe_time_ago(seconds: int) -> str:
    """Render a back-fill offset, e.g. 300 -> "approximately 5 minutes"."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"approximately {_plural(seconds, 'second')}"
    minutes = int(round(seconds / 60.0))
    if minutes >= 60 and minutes % 60 == 0:
        return f"approximately {_plural(minutes // 60, 'hour')}"
    return f"approximately {_plural(minutes, 'minute')}"


def parse_quantity(raw: str) -> float | None:
    text = re.sub(r"\s+", " ", (raw or "").strip().lower())
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    if text in _VAGUE:
        return float(_VAGUE[text])
    if text in _UNITS:
        return float(_UNITS[text])
    parts = re.split(r"[\s-]+", text)
    if parts and parts[0] in _TENS:
        total = _TENS[parts[0]]
        if len(parts) == 2 and parts[1] in _UNITS:
            total += _UNITS[parts[1]]
        elif len(parts) > 1:
            return None
        return float(total)
    return None


def _unit_seconds(unit: str) -> int:
    unit = unit.lower()
    if unit.startswith("h"):
        return 3600
    if unit.startswith("m"):
        return 60
    return 1


def parse_time_ago(text: str) -> int | None:
    """Find "<quantity> <unit> ago" in text and return the offset in seconds."""
    if _HALF_HOUR_AGO_RE.search(text or ""):
        return 1800
    match = _TIME_AGO_RE.search(text or "")
    if not match:
        return None
    qty = parse_quantity(match.group("qty"))
    if qty is None:
        return None
    return int(round(qty * _unit_seconds(match.group("unit"))))


def parse_time_ago_description(text: str) -> int | None:
    """Parse "approximately 5 minutes" (no trailing "ago") into seconds."""
    cleaned = (text or "").strip()
    if not cleaned:
        return None
    if not re.search(r"\bago\b", cleaned, re.IGNORECASE):
        cleaned = cleaned + " ago"
    return parse_time_ago(cleaned)


def mentioned_durations(text: str) -> list[str]:
    """Return every clock-style or "<n> <unit>" duration mentioned in text."""
    found = [m.group(0) for m in _CLOCK_RE.finditer(text or "")]
    found.extend(m.group(0) for m in _SPOKEN_DURATION_RE.finditer(text or ""))
    return found
