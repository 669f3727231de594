from __future__ import annotations

import math
import re
from datetime import UTC, datetime

_ISO_DURATION_RE = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?$", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(UTC)


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves away from zero for positives (12.5 -> 13), unlike round()'s banker's rounding."""
    scale = 10**ndigits
    return math.floor(value * scale + 0.5) / scale


def meters_to_km(meters: float) -> float:
    return round_half_up(meters / 1000.0, 1)


def parse_number(raw: object) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int | float):
        value = float(raw)
    else:
        text = str(raw or "").strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    return value if math.isfinite(value) else None


def parse_duration_minutes(raw: object) -> int | None:
    """Whole minutes from a second count ("300") or a ``PT#H#M#S`` duration.

    Sub-minute remainders are rounded (``PT90S`` -> 2).
    """
    seconds = parse_number(raw)
    if seconds is not None:
        if seconds < 0:
            return None
        return int(round_half_up(seconds / 60.0))

    text = str(raw or "").strip()
    m = _ISO_DURATION_RE.match(text)
    if not m or not any(m.groups()):
        return None
    hours = int(m.group(1) or 0)
    minutes = int(m.group(2) or 0)
    secs = float(m.group(3) or 0.0)
    return hours * 60 + minutes + int(round_half_up(secs / 60.0))


def parse_timestamp(raw: object) -> datetime | None:
    text = str(raw or "").strip()
    if len(text) < 10:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
