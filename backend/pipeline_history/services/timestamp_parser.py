import re
from datetime import datetime, timezone

# Go encodes time.Time with up to nine fractional digits
_FRACTION = re.compile(r"(\.\d{6})\d+")
_ZERO_YEAR = 1


def parse_legacy_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    text = _FRACTION.sub(r"\1", text)
    candidates = [text, text.replace("Z", "+00:00")]
    for candidate in candidates:
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if parsed.year <= _ZERO_YEAR:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        try:
            return parsed.astimezone(timezone.utc)
        except OverflowError:
            return None
    return None
