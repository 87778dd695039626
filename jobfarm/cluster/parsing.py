"""
Parsers for the free-text ``key: value`` blocks printed by scheduler tools.

Keeping tool phrasing here lets the watchdog and submission logic work on
typed values only.
"""

from jobfarm.errors import SchedulerParseError


def parse_field(blob: str, key: str) -> str:
    """
    Extract the value for ``key`` from a scheduler response.

    Keys are matched case-insensitively against the text before the first
    colon of each line; the value is everything after it, stripped.

    Raises:
        SchedulerParseError: If no line carries the key.
    """
    wanted = key.strip().lower()
    for line in blob.splitlines():
        name, sep, value = line.partition(":")
        if sep and name.strip().lower() == wanted:
            return value.strip()
    raise SchedulerParseError(key, blob)


def parse_number(value: str) -> float:
    """Parse a numeric field; an empty field reads as 0."""
    value = value.strip()
    if not value:
        return 0.0
    try:
        return float(value.split()[0].replace(",", ""))
    except ValueError as e:
        raise SchedulerParseError(f"<number> ({value!r})", value) from e


def parse_duration(value: str) -> float:
    """
    Parse a scheduler duration into seconds.

    Accepts ``D:HH:MM:SS`` (seconds may carry a fraction) and
    ``D:HH:MM:SS:mmm``; shorter ``HH:MM:SS`` forms are left-padded. Anything
    after the first whitespace is ignored and an empty field reads as 0.
    """
    value = value.strip()
    if not value:
        return 0.0

    parts = value.split()[0].split(":")
    try:
        numbers = [float(p) for p in parts]
    except ValueError as e:
        raise SchedulerParseError(f"<duration> ({value!r})", value) from e

    if len(numbers) > 5:
        raise SchedulerParseError(f"<duration> ({value!r})", value)
    millis = numbers.pop() if len(numbers) == 5 else 0.0
    while len(numbers) < 4:
        numbers.insert(0, 0.0)

    days, hours, minutes, seconds = numbers
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds + millis / 1000
